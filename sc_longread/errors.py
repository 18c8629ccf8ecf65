"""
Exception types for sc-longread.

Fatal errors (ConfigError, ResourceError) are raised before any reads are
processed. RecordError is raised for a single malformed read or alignment
and is always caught and counted by the caller.

Author: Kevin R. Roy
"""


class ConfigError(ValueError):
    """Malformed protocol template or configuration value."""


class ResourceError(OSError):
    """An allow-list, index or other required input could not be loaded."""


class RecordError(ValueError):
    """A single input record is malformed."""

    def __init__(self, message: str, record_id: str = None):
        super().__init__(message)
        self.record_id = record_id
