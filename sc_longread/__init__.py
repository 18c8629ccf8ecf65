"""
sc-longread - barcode demultiplexing and variant analysis for single-cell long reads.

Author: Kevin R. Roy
"""

__version__ = "0.1.0"
__author__ = "Kevin R. Roy"

from .config import (
    DemultiplexConfig,
    PipelineConfig,
    ProtocolTemplate,
    Segment,
    UsageConfig,
    VariantConfig,
)
from .core.models import BarcodeStats, CorrectionStatus, MatchFailure
from .errors import ConfigError, RecordError, ResourceError

__all__ = [
    "DemultiplexConfig",
    "PipelineConfig",
    "ProtocolTemplate",
    "Segment",
    "UsageConfig",
    "VariantConfig",
    "BarcodeStats",
    "CorrectionStatus",
    "MatchFailure",
    "ConfigError",
    "RecordError",
    "ResourceError",
    "__version__",
]
