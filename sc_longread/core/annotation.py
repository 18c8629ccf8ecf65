"""
Read annotation: combine template matching and barcode correction.

Author: Kevin R. Roy
"""

from typing import Iterable, List, Optional, Tuple
import logging

from ..config import BARCODE_SEGMENT, UMI_SEGMENT
from ..errors import RecordError
from .correction import BarcodeCorrector
from .matching import PatternMatcher
from .models import AnnotatedRead, BarcodeStats, CorrectionStatus, RawRead

logger = logging.getLogger(__name__)

UNMATCHED_POLICIES = ('drop', 'emit')


def format_read_id(barcode: str, umi: str, read_id: str) -> str:
    """Identifier carrying barcode and UMI: BC_UMI#read_id."""
    return f"{barcode}_{umi}#{read_id}"


def parse_read_id(name: str) -> Tuple[Optional[str], Optional[str], str]:
    """
    Split an annotated identifier back into (barcode, umi, read_id).

    Returns (None, None, name) for identifiers without the BC_UMI# prefix.
    """
    prefix, sep, read_id = name.partition('#')
    if not sep:
        return None, None, name
    barcode, sep, umi = prefix.partition('_')
    if not sep or not barcode:
        return None, None, name
    return barcode, umi, read_id


class ReadAnnotator:
    """
    Turn raw reads into annotated reads and count what happened to them.

    Args:
        matcher: PatternMatcher for the protocol template
        corrector: BarcodeCorrector (pass-through if no allow-list)
        unmatched: 'drop' to discard unmatched reads, 'emit' to output them
            unchanged with status 'unmatched'
    """

    def __init__(
        self,
        matcher: PatternMatcher,
        corrector: BarcodeCorrector,
        unmatched: str = 'drop',
    ):
        if unmatched not in UNMATCHED_POLICIES:
            raise ValueError(f"Unmatched policy must be one of {UNMATCHED_POLICIES}, got '{unmatched}'")
        self.matcher = matcher
        self.corrector = corrector
        self.unmatched = unmatched

    def annotate(self, read: RawRead, stats: BarcodeStats) -> Optional[AnnotatedRead]:
        """
        Annotate a single read, updating stats in place.

        Raises:
            RecordError: If the read is malformed (stats are left untouched)
        """
        read.validate()
        stats.total_reads += 1

        match = self.matcher.match(read)
        if not match.is_match:
            stats.unmatched += 1
            stats.failure_reasons[match.failure.value] += 1
            return self._unmatched(read)

        correction = self.corrector.correct(match.extract(BARCODE_SEGMENT))
        if not correction.is_matched:
            stats.unmatched += 1
            stats.failure_reasons[f"barcode_{correction.reason}"] += 1
            return self._unmatched(read)

        if correction.status == CorrectionStatus.EXACT:
            stats.exact += 1
        else:
            stats.corrected += 1
        if match.strand == '-':
            stats.reverse_strand += 1
        stats.barcode_counts[correction.barcode] += 1

        umi = match.extract(UMI_SEGMENT)
        sequence, quality = match.trimmed()
        return AnnotatedRead(
            read_id=format_read_id(correction.barcode, umi, read.read_id),
            sequence=sequence,
            quality=quality,
            source_id=read.read_id,
            status=correction.status,
            barcode=correction.barcode,
            umi=umi,
            strand=match.strand,
            comment=f"CB:Z:{correction.barcode}\tUB:Z:{umi}",
        )

    def _unmatched(self, read: RawRead) -> Optional[AnnotatedRead]:
        if self.unmatched == 'drop':
            return None
        return AnnotatedRead(
            read_id=read.read_id,
            sequence=read.sequence,
            quality=read.quality,
            source_id=read.read_id,
            status=CorrectionStatus.UNMATCHED,
            comment=read.comment,
        )

    def annotate_batch(self, reads: Iterable[RawRead]) -> Tuple[List[AnnotatedRead], BarcodeStats]:
        """
        Annotate a batch of reads with a fresh statistics accumulator.

        Malformed reads are logged, counted in `record_errors` and skipped.
        """
        stats = BarcodeStats()
        records = []
        for read in reads:
            try:
                annotated = self.annotate(read, stats)
            except RecordError as e:
                logger.warning(f"Skipping malformed read {e.record_id or read.read_id}: {e}")
                stats.record_errors += 1
                continue
            if annotated is not None:
                records.append(annotated)
        return records, stats
