"""
Data models for read demultiplexing.

Author: Kevin R. Roy
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..errors import RecordError
from ..utils.sequence import VALID_BASES


class MatchFailure(Enum):
    """Reasons a read does not match the protocol template."""
    NO_ANCHOR_FOUND = 'NoAnchorFound'
    SEGMENT_ORDER_VIOLATION = 'SegmentOrderViolation'
    EDIT_BUDGET_EXCEEDED = 'EditBudgetExceeded'
    READ_TOO_SHORT = 'ReadTooShort'


class CorrectionStatus(Enum):
    """Outcome of barcode correction against the allow-list."""
    EXACT = 'exact'
    CORRECTED = 'corrected'
    UNMATCHED = 'unmatched'


@dataclass(frozen=True)
class RawRead:
    """A sequencing read as it comes off the instrument."""
    read_id: str
    sequence: str
    quality: Optional[str] = None
    comment: Optional[str] = None

    def validate(self):
        """Raise RecordError if the read cannot be processed."""
        if not self.read_id:
            raise RecordError("Read has an empty identifier")
        if self.quality is not None and len(self.quality) != len(self.sequence):
            raise RecordError(
                f"Sequence and quality lengths differ ({len(self.sequence)} vs {len(self.quality)})",
                record_id=self.read_id,
            )
        invalid = set(self.sequence.upper()) - VALID_BASES
        if invalid:
            raise RecordError(
                f"Invalid bases in sequence: {''.join(sorted(invalid))}",
                record_id=self.read_id,
            )


@dataclass
class SegmentMatch:
    """Location of one template segment within the (oriented) read."""
    name: str
    start: int
    end: int  # exclusive
    edit_distance: int = 0


@dataclass
class MatchResult:
    """Result of matching a read against the protocol template.

    Offsets refer to `sequence`, which is the read in template orientation
    (reverse complemented when strand is '-').
    """
    read_id: str
    segments: List[SegmentMatch] = field(default_factory=list)
    edit_distance: int = 0
    strand: str = '+'
    sequence: str = ''
    quality: Optional[str] = None
    failure: Optional[MatchFailure] = None

    @property
    def is_match(self) -> bool:
        return self.failure is None

    def segment(self, name: str) -> SegmentMatch:
        for seg in self.segments:
            if seg.name == name:
                return seg
        raise KeyError(name)

    def extract(self, name: str) -> str:
        """Sequence covered by a named segment."""
        seg = self.segment(name)
        return self.sequence[seg.start:seg.end]

    @property
    def span(self) -> Tuple[int, int]:
        """Start of the first and end of the last matched segment."""
        if not self.segments:
            return 0, 0
        return self.segments[0].start, self.segments[-1].end

    def trimmed(self) -> Tuple[str, Optional[str]]:
        """Sequence and quality with the matched span removed."""
        start, end = self.span
        seq = self.sequence[:start] + self.sequence[end:]
        qual = None
        if self.quality is not None:
            qual = self.quality[:start] + self.quality[end:]
        return seq, qual


@dataclass
class CorrectionResult:
    """Result of correcting one extracted barcode."""
    barcode: Optional[str]
    status: CorrectionStatus
    distance: int = 0
    reason: Optional[str] = None  # 'ambiguous' or 'no_match' when unmatched

    @property
    def is_matched(self) -> bool:
        return self.status != CorrectionStatus.UNMATCHED


@dataclass
class AnnotatedRead:
    """A read rewritten with its corrected barcode and UMI."""
    read_id: str
    sequence: str
    quality: Optional[str]
    source_id: str
    status: CorrectionStatus
    barcode: Optional[str] = None
    umi: Optional[str] = None
    strand: str = '+'
    comment: Optional[str] = None

    def to_fastq(self) -> str:
        header = f"@{self.read_id}"
        if self.comment:
            header += f" {self.comment}"
        qual = self.quality if self.quality is not None else 'I' * len(self.sequence)
        return f"{header}\n{self.sequence}\n+\n{qual}\n"


@dataclass
class BarcodeStats:
    """
    Run-wide demultiplexing counters.

    Each worker fills its own instance; instances are combined with
    `merge`, which is a plain sum and therefore independent of the order
    and number of workers.
    """
    total_reads: int = 0
    exact: int = 0
    corrected: int = 0
    unmatched: int = 0
    reverse_strand: int = 0
    record_errors: int = 0
    failure_reasons: Counter = field(default_factory=Counter)
    barcode_counts: Counter = field(default_factory=Counter)

    @property
    def matched(self) -> int:
        return self.exact + self.corrected

    @property
    def is_consistent(self) -> bool:
        return self.exact + self.corrected + self.unmatched == self.total_reads

    def merge(self, other: 'BarcodeStats') -> 'BarcodeStats':
        """Return the sum of two statistics objects."""
        return BarcodeStats(
            total_reads=self.total_reads + other.total_reads,
            exact=self.exact + other.exact,
            corrected=self.corrected + other.corrected,
            unmatched=self.unmatched + other.unmatched,
            reverse_strand=self.reverse_strand + other.reverse_strand,
            record_errors=self.record_errors + other.record_errors,
            failure_reasons=self.failure_reasons + other.failure_reasons,
            barcode_counts=self.barcode_counts + other.barcode_counts,
        )

    __add__ = merge

    def to_dict(self) -> Dict[str, int]:
        """Flat summary suitable for a two-column table."""
        summary = {
            'total_reads': self.total_reads,
            'matched': self.matched,
            'exact': self.exact,
            'corrected': self.corrected,
            'unmatched': self.unmatched,
            'reverse_strand': self.reverse_strand,
            'record_errors': self.record_errors,
            'unique_barcodes': len(self.barcode_counts),
        }
        for reason, count in sorted(self.failure_reasons.items()):
            summary[f"unmatched_{reason}"] = count
        return summary
