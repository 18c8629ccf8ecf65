"""
Configuration classes for sc-longread.

Holds the protocol template (the ordered adapter/barcode/UMI layout of a
read) and the per-stage settings for demultiplexing, variant calling and
transcript usage testing.

Author: Kevin R. Roy
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import re
import yaml

from .errors import ConfigError

BARCODE_SEGMENT = 'BC'
UMI_SEGMENT = 'UMI'

# Placeholder given as a run of Ns, e.g. "NNNNNNNNNNNNNNNN"
PLACEHOLDER_PATTERN = re.compile(r'^[Nn]+$')
LITERAL_PATTERN = re.compile(r'^[ACGTacgt]+$')

# 10x Genomics 3' v3 layout
DEFAULT_PATTERN = {
    'primer': 'CTACACGACGCTCTTCCGATCT',
    BARCODE_SEGMENT: 16,
    UMI_SEGMENT: 12,
    'polyT': 'TTTTTTTTT',
}


@dataclass
class Segment:
    """One named segment of a protocol template.

    A segment is either a fixed literal (primer, adapter, poly-tail) with a
    sequence, or a variable placeholder (barcode, UMI) with only a length.
    """
    name: str
    length: int
    sequence: Optional[str] = None
    max_edit: Optional[int] = None  # Overrides the matcher-wide budget

    @property
    def is_variable(self) -> bool:
        return self.sequence is None

    def __str__(self) -> str:
        if self.is_variable:
            return f"{self.name}: {self.length} bp placeholder"
        budget = f", max edit {self.max_edit}" if self.max_edit is not None else ""
        return f"{self.name}: {self.sequence} ({self.length} bp{budget})"


def parse_segment(name: str, value: Any) -> Segment:
    """
    Build a Segment from a configuration value.

    Accepted forms:
        - literal sequence:     "CTACACGACGCTCTTCCGATCT"
        - N placeholder:        "NNNNNNNNNNNNNNNN"
        - placeholder length:   16
        - mapping:              {sequence: ..., max_edit: 1} or {length: 12}

    Raises:
        ConfigError: If the value cannot be interpreted
    """
    max_edit = None
    if isinstance(value, dict):
        max_edit = value.get('max_edit')
        if max_edit is not None and (not isinstance(max_edit, int) or max_edit < 0):
            raise ConfigError(f"Segment '{name}': max_edit must be a non-negative integer")
        if 'sequence' in value:
            value = value['sequence']
        elif 'length' in value:
            value = value['length']
        else:
            raise ConfigError(f"Segment '{name}' needs a 'sequence' or 'length' entry")

    # bool is an int subclass; reject it explicitly
    if isinstance(value, int) and not isinstance(value, bool):
        if value <= 0:
            raise ConfigError(f"Segment '{name}' must have a positive length, got {value}")
        return Segment(name=name, length=value, max_edit=max_edit)

    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Segment '{name}' has an empty or invalid value: {value!r}")

    value = value.strip()
    if PLACEHOLDER_PATTERN.match(value):
        return Segment(name=name, length=len(value), max_edit=max_edit)
    if LITERAL_PATTERN.match(value):
        return Segment(name=name, length=len(value), sequence=value.upper(), max_edit=max_edit)

    raise ConfigError(f"Segment '{name}' is neither a DNA literal nor an N placeholder: {value}")


@dataclass
class ProtocolTemplate:
    """Ordered 5'->3' layout of the segments expected in each read."""
    segments: List[Segment]

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Check structural requirements, raising ConfigError on violation."""
        if not self.segments:
            raise ConfigError("Protocol template has no segments")

        names = [s.name for s in self.segments]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate segment names in template: {', '.join(duplicates)}")

        for required in (BARCODE_SEGMENT, UMI_SEGMENT):
            if required not in names:
                raise ConfigError(f"Protocol template is missing the '{required}' segment")
            if not self.segment(required).is_variable:
                raise ConfigError(f"Segment '{required}' must be a placeholder, not a literal")

        if not any(not s.is_variable for s in self.segments):
            raise ConfigError("Protocol template needs at least one literal segment to anchor on")

    @classmethod
    def from_mapping(cls, pattern: Union[Dict[str, Any], List[Dict[str, Any]]]) -> 'ProtocolTemplate':
        """
        Create a template from an ordered mapping or a list of single-key mappings.

        Example:
            >>> template = ProtocolTemplate.from_mapping({
            ...     'primer': 'CTACACGACGCTCTTCCGATCT',
            ...     'BC': 16, 'UMI': 12, 'polyT': 'TTTTTTTTT',
            ... })
            >>> template.min_length
            59
        """
        if isinstance(pattern, dict):
            items = list(pattern.items())
        elif isinstance(pattern, list):
            items = []
            for entry in pattern:
                if not isinstance(entry, dict) or len(entry) != 1:
                    raise ConfigError(f"Pattern list entries must be single-key mappings: {entry!r}")
                items.extend(entry.items())
        else:
            raise ConfigError(f"Pattern must be a mapping or a list, got {type(pattern).__name__}")

        return cls(segments=[parse_segment(str(name), value) for name, value in items])

    @classmethod
    def default(cls) -> 'ProtocolTemplate':
        """10x Genomics 3' layout."""
        return cls.from_mapping(DEFAULT_PATTERN)

    def segment(self, name: str) -> Segment:
        for seg in self.segments:
            if seg.name == name:
                return seg
        raise KeyError(name)

    def index(self, name: str) -> int:
        return [s.name for s in self.segments].index(name)

    @property
    def min_length(self) -> int:
        """Shortest read that can hold every segment."""
        return sum(s.length for s in self.segments)

    @property
    def barcode_length(self) -> int:
        return self.segment(BARCODE_SEGMENT).length

    @property
    def umi_length(self) -> int:
        return self.segment(UMI_SEGMENT).length

    def print_summary(self):
        """Print a human-readable summary of the template."""
        print("\n" + "=" * 60)
        print("=== Protocol Template ===")
        print("=" * 60)
        for i, seg in enumerate(self.segments, start=1):
            print(f"  {i}. {seg}")
        print(f"\nMinimum read length: {self.min_length} bp")
        print(f"Barcode length: {self.barcode_length} bp")
        print(f"UMI length: {self.umi_length} bp")
        print()


@dataclass
class DemultiplexConfig:
    """Settings for barcode/UMI extraction."""
    template: ProtocolTemplate = field(default_factory=ProtocolTemplate.default)
    allow_list: Optional[Path] = None
    max_bc_edit: int = 2
    max_flank_edit: int = 2
    bc_metric: str = 'hamming'  # 'hamming' or 'edit'
    both_strands: bool = True
    unmatched: str = 'drop'  # 'drop' or 'emit'
    batch_size: int = 10000

    def __post_init__(self):
        if self.bc_metric not in ('hamming', 'edit'):
            raise ConfigError(f"bc_metric must be 'hamming' or 'edit', got '{self.bc_metric}'")
        if self.unmatched not in ('drop', 'emit'):
            raise ConfigError(f"unmatched must be 'drop' or 'emit', got '{self.unmatched}'")
        if self.max_bc_edit < 0 or self.max_flank_edit < 0:
            raise ConfigError("Edit distance budgets must be non-negative")
        if self.batch_size <= 0:
            raise ConfigError("batch_size must be positive")

    @classmethod
    def from_dict(cls, d: Dict) -> 'DemultiplexConfig':
        """Create from the 'demultiplex' section of a config file."""
        kwargs = {k: d[k] for k in ('max_bc_edit', 'max_flank_edit', 'bc_metric',
                                    'both_strands', 'unmatched', 'batch_size') if k in d}
        if 'pattern' in d:
            kwargs['template'] = ProtocolTemplate.from_mapping(d['pattern'])
        if d.get('allow_list'):
            kwargs['allow_list'] = Path(d['allow_list'])
        return cls(**kwargs)


@dataclass
class VariantConfig:
    """Settings for pileup-based variant discovery and single-cell calling."""
    min_depth: int = 100
    min_freq: float = 0.2
    max_freq: float = 0.8
    indel: bool = False
    annotated_only: bool = False
    min_mapq: int = 0
    barcode_tag: str = 'CB'
    homopolymer_window: int = 3
    window_size: int = 1_000_000

    def __post_init__(self):
        if self.min_depth < 1:
            raise ConfigError("min_depth must be at least 1")
        if not 0.0 <= self.min_freq < self.max_freq <= 1.0:
            raise ConfigError(
                f"Frequency bounds must satisfy 0 <= min_freq < max_freq <= 1, "
                f"got {self.min_freq} and {self.max_freq}"
            )

    @classmethod
    def from_dict(cls, d: Dict) -> 'VariantConfig':
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class UsageConfig:
    """Settings for the transcript usage test."""
    min_count: int = 15

    @classmethod
    def from_dict(cls, d: Dict) -> 'UsageConfig':
        return cls(min_count=d.get('min_count', 15))


@dataclass
class PipelineConfig:
    """Full configuration."""
    demultiplex: DemultiplexConfig = field(default_factory=DemultiplexConfig)
    variants: VariantConfig = field(default_factory=VariantConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    output_dir: Path = Path('./results')
    threads: int = 4

    @classmethod
    def from_yaml(cls, path: Path) -> 'PipelineConfig':
        """Load configuration from YAML file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Top level of {path} must be a mapping")

        return cls(
            demultiplex=DemultiplexConfig.from_dict(data.get('demultiplex') or {}),
            variants=VariantConfig.from_dict(data.get('variants') or {}),
            usage=UsageConfig.from_dict(data.get('usage') or {}),
            output_dir=Path(data.get('output_dir', './results')),
            threads=data.get('threads', 4),
        )
