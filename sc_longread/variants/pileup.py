"""
Per-barcode allele pileup over sorted, indexed alignments.

Each scan window ("region") is fetched once and every alignment in it is
walked once, so a read contributes at most one allele to each position it
covers. Windows are disjoint, which lets them run as independent tasks.

Author: Kevin R. Roy
"""

from collections import Counter, defaultdict
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple
import logging

import pysam

from ..core.annotation import parse_read_id
from ..core.cigar import alleles_by_position
from ..errors import ResourceError
from ..io.regions import Region

logger = logging.getLogger(__name__)

# (seqname, 1-based pos) -> keep?
PositionFilter = Callable[[str, int], bool]

# Barcode key used when barcodes are collapsed (bulk mode)
BULK_BARCODE = ''

SKIP_FLAGS = 0x4 | 0x100 | 0x200 | 0x400 | 0x800  # unmapped, secondary, QC fail, duplicate, supplementary


@dataclass
class PileupCell:
    """Allele counts at one position, split by barcode."""
    seqname: str
    pos: int  # 1-based
    counts: Dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))

    def add(self, barcode: str, allele: str, n: int = 1):
        self.counts[barcode][allele] += n

    @property
    def depth(self) -> int:
        return sum(sum(c.values()) for c in self.counts.values())

    @property
    def barcodes(self) -> List[str]:
        return sorted(self.counts)

    def allele_totals(self) -> Counter:
        """Allele counts summed over all barcodes."""
        totals = Counter()
        for counter in self.counts.values():
            totals.update(counter)
        return totals

    def merge(self, other: 'PileupCell') -> 'PileupCell':
        """Add another cell's counts for the same position into this one."""
        if (self.seqname, self.pos) != (other.seqname, other.pos):
            raise ValueError(
                f"Cannot merge {other.seqname}:{other.pos} into {self.seqname}:{self.pos}"
            )
        for barcode, counter in other.counts.items():
            self.counts[barcode].update(counter)
        return self


@dataclass
class PileupStats:
    """
    Alignment counters of a pileup.

    Counts are per window, so a read overlapping two windows is seen by
    both. Instances are summed with `merge`.
    """
    alignments: int = 0
    filtered: int = 0
    missing_sequence: int = 0  # primary records without SEQ or CIGAR
    failed_regions: int = 0

    @property
    def record_errors(self) -> int:
        return self.missing_sequence

    def merge(self, other: 'PileupStats') -> 'PileupStats':
        """Add another set of counters into this one."""
        self.alignments += other.alignments
        self.filtered += other.filtered
        self.missing_sequence += other.missing_sequence
        self.failed_regions += other.failed_regions
        return self

    def to_dict(self) -> Dict[str, int]:
        return {
            'alignments': self.alignments,
            'filtered': self.filtered,
            'missing_sequence': self.missing_sequence,
            'failed_regions': self.failed_regions,
        }


PileupKey = Tuple[str, int]


def read_barcode(read: pysam.AlignedSegment, tag: str = 'CB') -> str:
    """
    Barcode of an alignment.

    Taken from the given tag when present, otherwise from a 'BC_UMI#id'
    read name; empty string when neither is available.
    """
    if tag and read.has_tag(tag):
        return str(read.get_tag(tag))
    barcode, _, _ = parse_read_id(read.query_name or '')
    return barcode or ''


def check_index(bam_path: Path):
    """
    Make sure an alignment file is readable and indexed.

    Raises:
        ResourceError: If the file cannot be opened or has no index
    """
    try:
        with pysam.AlignmentFile(str(bam_path), 'rb') as bam:
            indexed = bam.has_index()
    except (OSError, ValueError) as e:
        raise ResourceError(f"Could not open alignment file {bam_path}: {e}")
    if not indexed:
        raise ResourceError(f"No index found for {bam_path}; run samtools index first")


def pileup_region(
    bam_path: Path,
    region: Region,
    positions: Optional[Set[int]] = None,
    position_filter: Optional[PositionFilter] = None,
    barcodes: Optional[Set[str]] = None,
    indel: bool = False,
    min_mapq: int = 0,
    barcode_tag: str = 'CB',
    collapse_barcodes: bool = False,
    stats: Optional[PileupStats] = None,
) -> Dict[PileupKey, PileupCell]:
    """
    Tabulate per-barcode allele counts over one region.

    Args:
        bam_path: Sorted, indexed BAM
        region: Window to scan; only positions inside it are tabulated
        positions: Optional set of 1-based positions to restrict to
        position_filter: Optional predicate (seqname, pos) -> bool, e.g.
            membership in annotated regions
        barcodes: Optional set of barcodes to keep; others are ignored
        indel: Tabulate deletions and insertions as alleles
        min_mapq: Minimum mapping quality
        barcode_tag: Alignment tag holding the cell barcode
        collapse_barcodes: Count all reads under one key (bulk mode)
        stats: Optional counters updated in place

    Returns:
        Dict mapping (seqname, pos) to PileupCell
    """
    cells: Dict[PileupKey, PileupCell] = {}
    if stats is None:
        stats = PileupStats()

    with pysam.AlignmentFile(str(bam_path), 'rb') as bam:
        for read in bam.fetch(region.seqname, region.start, region.end):
            stats.alignments += 1
            if read.flag & SKIP_FLAGS or read.mapping_quality < min_mapq:
                stats.filtered += 1
                continue
            if read.query_sequence is None or read.cigartuples is None:
                stats.missing_sequence += 1
                logger.debug(f"{read.query_name}: no sequence or CIGAR, skipped")
                continue

            barcode = BULK_BARCODE if collapse_barcodes else read_barcode(read, barcode_tag)
            if barcodes is not None and barcode not in barcodes:
                continue

            for pos, allele in alleles_by_position(read, indel=indel).items():
                if not region.contains(pos):
                    continue
                if positions is not None and pos not in positions:
                    continue
                if position_filter is not None and not position_filter(region.seqname, pos):
                    continue

                key = (region.seqname, pos)
                cell = cells.get(key)
                if cell is None:
                    cell = cells[key] = PileupCell(region.seqname, pos)
                cell.add(barcode, allele)

    logger.debug(f"{region}: {len(cells)} positions, {stats.filtered} alignments filtered")
    return cells


def plan_regions(
    bam_path: Path,
    positions: Optional[Iterable[Tuple[str, int]]] = None,
    regions: Optional[Iterable[Region]] = None,
    window_size: int = 1_000_000,
) -> List[Region]:
    """
    Split the work into disjoint scan windows.

    Candidate positions are grouped into windows of at most window_size;
    otherwise the given regions (merged) or every reference sequence in the
    BAM header are tiled with windows of window_size.
    """
    windows: List[Region] = []

    if positions is not None:
        by_seq: Dict[str, List[int]] = defaultdict(list)
        for seqname, pos in positions:
            by_seq[seqname].append(pos)
        for seqname in sorted(by_seq):
            sorted_pos = sorted(set(by_seq[seqname]))
            first = sorted_pos[0]
            last = first
            for pos in sorted_pos[1:]:
                if pos - first >= window_size:
                    windows.append(Region(seqname, first - 1, last))
                    first = pos
                last = pos
            windows.append(Region(seqname, first - 1, last))
        return windows

    if regions is None:
        with pysam.AlignmentFile(str(bam_path), 'rb') as bam:
            regions = [Region(name, 0, length) for name, length in zip(bam.references, bam.lengths)]

    for region in regions:
        for start in range(region.start, region.end, window_size):
            windows.append(Region(region.seqname, start, min(start + window_size, region.end)))
    return windows


def _pileup_worker(task):
    """Module-level worker so tasks can be pickled for ProcessPoolExecutor."""
    bam_path, region, positions, kwargs, reducer = task
    stats = PileupStats()
    cells = pileup_region(bam_path, region, positions=positions, stats=stats, **kwargs)
    result = reducer(cells) if reducer is not None else cells
    return result, stats


def pileup_regions(
    bam_path: Path,
    regions: List[Region],
    positions: Optional[Iterable[Tuple[str, int]]] = None,
    threads: int = 1,
    reducer: Optional[Callable] = None,
    stats: Optional[PileupStats] = None,
    **kwargs,
) -> Iterator:
    """
    Run pileup_region over many windows, in parallel when threads > 1.

    Args:
        bam_path: Sorted, indexed BAM
        regions: Disjoint windows (see plan_regions)
        positions: Optional candidate (seqname, pos) pairs
        threads: Number of worker processes
        reducer: Optional picklable function applied to each window's
            cells inside the worker (e.g. variant calling), so only its
            result is sent back
        stats: Optional counters; window counts and failed windows are
            merged into it as results arrive
        **kwargs: Passed through to pileup_region

    Yields:
        Per-window results (cells dict, or reducer output). Windows that
        fail are logged and skipped; completion order is not defined.

    Raises:
        ResourceError: If the BAM cannot be opened or is not indexed
    """
    check_index(bam_path)

    by_seq: Dict[str, Set[int]] = defaultdict(set)
    if positions is not None:
        for seqname, pos in positions:
            by_seq[seqname].add(pos)

    def window_positions(region: Region) -> Optional[Set[int]]:
        if positions is None:
            return None
        return {p for p in by_seq.get(region.seqname, ()) if region.contains(p)}

    tasks = [
        (str(bam_path), region, window_positions(region), kwargs, reducer)
        for region in regions
    ]
    logger.info(f"Scanning {len(tasks)} regions with {threads} worker(s)")

    if stats is None:
        stats = PileupStats()

    failed = 0
    if threads <= 1:
        for task in tasks:
            try:
                result, window_stats = _pileup_worker(task)
            except Exception as e:
                failed += 1
                logger.error(f"Region {task[1]} failed: {e}")
                continue
            stats.merge(window_stats)
            yield result
    else:
        with ProcessPoolExecutor(max_workers=threads) as executor:
            future_to_region = {executor.submit(_pileup_worker, task): task[1] for task in tasks}
            for future in as_completed(future_to_region):
                region = future_to_region[future]
                try:
                    result, window_stats = future.result()
                except Exception as e:
                    failed += 1
                    logger.error(f"Region {region} failed: {e}")
                    continue
                stats.merge(window_stats)
                yield result

    stats.failed_regions += failed
    if failed:
        logger.warning(f"{failed} of {len(tasks)} regions failed and were skipped")
    if stats.missing_sequence:
        logger.warning(f"{stats.missing_sequence:,} alignments had no sequence or CIGAR and were skipped")


def pileup(
    bam_path: Path,
    positions: Optional[Iterable[Tuple[str, int]]] = None,
    regions: Optional[Iterable[Region]] = None,
    threads: int = 1,
    window_size: int = 1_000_000,
    **kwargs,
) -> Dict[PileupKey, PileupCell]:
    """
    Pileup over candidate positions, given regions or the whole BAM.

    Returns:
        Dict mapping (seqname, 1-based pos) to PileupCell
    """
    if positions is not None:
        positions = list(positions)
    windows = plan_regions(bam_path, positions=positions, regions=regions, window_size=window_size)

    cells: Dict[PileupKey, PileupCell] = {}
    for window_cells in pileup_regions(bam_path, windows, positions=positions, threads=threads, **kwargs):
        for key, cell in window_cells.items():
            if key in cells:
                cells[key].merge(cell)
            else:
                cells[key] = cell
    return cells
