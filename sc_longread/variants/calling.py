"""
Variant calling from per-barcode pileups.

Bulk discovery collapses barcodes into one allele distribution per
position; single-cell calling reports the dominant allele of each barcode
at requested positions.

Author: Kevin R. Roy
"""

from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple
import logging

import pandas as pd
import pysam

from ..config import VariantConfig
from ..errors import ConfigError, ResourceError
from ..io.output import (
    ALLELE_SCHEMA,
    SINGLE_CELL_SCHEMA,
    VARIANT_SCHEMA,
    records_to_dataframe,
)
from ..io.regions import RegionIndex
from ..utils.sequence import homopolymer_length
from .pileup import PileupCell, PileupStats, pileup_regions, plan_regions

logger = logging.getLogger(__name__)


@dataclass
class VariantCandidate:
    """Bulk allele summary at one position."""
    seqname: str
    pos: int
    ref: str
    alt: Optional[str]
    depth: int
    alt_count: int
    freq: float
    region: Optional[str] = None
    homopolymer: Optional[bool] = None


@dataclass
class SingleCellCall:
    """Dominant allele of one barcode at one position."""
    seqname: str
    pos: int
    barcode: str
    allele: str
    allele_count: int
    cell_total_reads: int
    fraction: float


@dataclass
class AlleleCount:
    """One allele observed in one barcode at one position."""
    seqname: str
    pos: int
    barcode: str
    allele: str
    allele_count: int
    cell_total_reads: int
    pct: float


def _cells(cells) -> List[PileupCell]:
    if isinstance(cells, dict):
        cells = cells.values()
    return sorted(cells, key=lambda c: (c.seqname, c.pos))


def _dominant(counter) -> Tuple[str, int]:
    """Most frequent allele; ties go to the lexicographically smallest."""
    return min(counter.items(), key=lambda kv: (-kv[1], kv[0]))


def open_reference(path: Path) -> pysam.FastaFile:
    """
    Open an indexed FASTA reference.

    Raises:
        ResourceError: If the file or its index cannot be read
    """
    try:
        return pysam.FastaFile(str(path))
    except (OSError, ValueError) as e:
        raise ResourceError(f"Could not open reference {path}: {e}")


def reference_base(reference: pysam.FastaFile, seqname: str, pos: int) -> Optional[str]:
    """Reference base at a 1-based position, or None if unavailable."""
    try:
        base = reference.fetch(seqname, pos - 1, pos).upper()
    except (KeyError, ValueError, IndexError):
        return None
    return base or None


def in_homopolymer(reference: pysam.FastaFile, seqname: str, pos: int, window: int) -> Optional[bool]:
    """
    Whether a position sits in or next to a reference homopolymer of at
    least `window` bases.

    Returns None when the reference has no sequence there (e.g. a contig
    missing from a subset FASTA).
    """
    start = max(0, pos - 1 - window)
    try:
        context = reference.fetch(seqname, start, pos + window).upper()
    except (KeyError, ValueError, IndexError):
        return None
    i = pos - 1 - start
    if i >= len(context):
        return None
    return any(homopolymer_length(context, j) >= window for j in (i - 1, i, i + 1))


def call_bulk_variants(
    cells,
    min_depth: int,
    reference: Optional[pysam.FastaFile] = None,
    region_index: Optional[RegionIndex] = None,
    homopolymer_window: int = 0,
) -> List[VariantCandidate]:
    """
    Summarize pileup cells into variant candidates.

    Depth counts every allele over every barcode. The reference allele is
    the reference base when a FASTA is given, otherwise the major allele;
    the alternate is the most frequent other allele. Cells below min_depth
    (and empty cells) are not reported.

    Args:
        cells: PileupCells, or a dict of them keyed by position
        min_depth: Minimum total depth
        reference: Optional open FASTA for reference bases
        region_index: Optional regions used to label candidates
        homopolymer_window: Flag positions near homopolymers of this length
            (needs a reference; 0 disables)

    Returns:
        Candidates sorted by (seqname, pos)
    """
    candidates = []
    for cell in _cells(cells):
        totals = cell.allele_totals()
        depth = sum(totals.values())
        if depth == 0 or depth < min_depth:
            continue

        ref = reference_base(reference, cell.seqname, cell.pos) if reference is not None else None
        on_reference = ref is not None
        if ref is None:
            ref, _ = _dominant(totals)

        others = {a: n for a, n in totals.items() if a != ref and n > 0}
        if others:
            alt, alt_count = _dominant(others)
        else:
            alt, alt_count = None, 0

        homopolymer = None
        if on_reference and homopolymer_window > 0:
            homopolymer = in_homopolymer(reference, cell.seqname, cell.pos, homopolymer_window)

        candidates.append(VariantCandidate(
            seqname=cell.seqname,
            pos=cell.pos,
            ref=ref,
            alt=alt,
            depth=depth,
            alt_count=alt_count,
            freq=alt_count / depth,
            region=region_index.label(cell.seqname, cell.pos) if region_index is not None else None,
            homopolymer=homopolymer,
        ))

    return candidates


def filter_by_frequency(
    candidates: Iterable[VariantCandidate],
    min_freq: float = 0.2,
    max_freq: float = 0.8,
) -> List[VariantCandidate]:
    """Keep candidates with min_freq < freq < max_freq."""
    return [c for c in candidates if min_freq < c.freq < max_freq]


def group_by_region(candidates: Iterable[VariantCandidate]) -> Dict[str, List[VariantCandidate]]:
    """
    Group candidates by region label.

    A candidate covered by several regions appears under each of them;
    unlabelled candidates are left out.
    """
    groups: Dict[str, List[VariantCandidate]] = defaultdict(list)
    for candidate in candidates:
        if not candidate.region:
            continue
        for label in candidate.region.split(','):
            groups[label].append(candidate)
    return dict(groups)


def call_single_cell(cells, barcodes: Optional[Set[str]] = None) -> List[SingleCellCall]:
    """
    Dominant allele per (position, barcode).

    Barcodes with no reads at a position are omitted, never given a call.
    """
    calls = []
    for cell in _cells(cells):
        for barcode in cell.barcodes:
            if barcodes is not None and barcode not in barcodes:
                continue
            counter = cell.counts[barcode]
            total = sum(counter.values())
            if total == 0:
                continue
            allele, count = _dominant(counter)
            calls.append(SingleCellCall(
                seqname=cell.seqname,
                pos=cell.pos,
                barcode=barcode,
                allele=allele,
                allele_count=count,
                cell_total_reads=total,
                fraction=count / total,
            ))
    return calls


def allele_table(cells, barcodes: Optional[Set[str]] = None) -> List[AlleleCount]:
    """Every allele seen per (position, barcode), with percent of that barcode's reads."""
    rows = []
    for cell in _cells(cells):
        for barcode in cell.barcodes:
            if barcodes is not None and barcode not in barcodes:
                continue
            counter = cell.counts[barcode]
            total = sum(counter.values())
            for allele in sorted(counter):
                count = counter[allele]
                if count == 0:
                    continue
                rows.append(AlleleCount(
                    seqname=cell.seqname,
                    pos=cell.pos,
                    barcode=barcode,
                    allele=allele,
                    allele_count=count,
                    cell_total_reads=total,
                    pct=count / total * 100,
                ))
    return rows


@dataclass
class BulkCaller:
    """Picklable per-window reducer for bulk discovery."""
    min_depth: int
    reference_path: Optional[str] = None
    region_index: Optional[RegionIndex] = None
    homopolymer_window: int = 0

    def __call__(self, cells: Dict) -> List[VariantCandidate]:
        if self.reference_path is None:
            return call_bulk_variants(cells, self.min_depth, region_index=self.region_index)
        with pysam.FastaFile(self.reference_path) as reference:
            return call_bulk_variants(
                cells,
                self.min_depth,
                reference=reference,
                region_index=self.region_index,
                homopolymer_window=self.homopolymer_window,
            )


@dataclass
class SingleCellCaller:
    """Picklable per-window reducer returning (calls, allele rows)."""
    barcodes: Optional[Set[str]] = None

    def __call__(self, cells: Dict) -> Tuple[List[SingleCellCall], List[AlleleCount]]:
        return call_single_cell(cells, self.barcodes), allele_table(cells, self.barcodes)


def find_variants(
    bam_path: Path,
    config: Optional[VariantConfig] = None,
    reference: Optional[Path] = None,
    regions: Optional[RegionIndex] = None,
    positions: Optional[List[Tuple[str, int]]] = None,
    threads: int = 1,
    apply_frequency_filter: bool = True,
    stats: Optional[PileupStats] = None,
) -> pd.DataFrame:
    """
    Bulk variant discovery over a BAM.

    Args:
        bam_path: Sorted, indexed BAM
        config: Variant settings (depth floor, frequency bounds, indel mode)
        reference: Optional indexed FASTA for reference alleles
        regions: Optional annotated regions; used for labels, and as the
            scan restriction when config.annotated_only is set
        positions: Optional candidate positions to restrict to
        threads: Worker processes
        apply_frequency_filter: Apply config.min_freq/max_freq bounds
        stats: Optional counters filled in by the pileup (filtered
            alignments, records without sequence, failed regions)

    Returns:
        DataFrame with VARIANT_SCHEMA columns, sorted by (seqname, pos)

    Raises:
        ConfigError: If annotated_only is set without regions
        ResourceError: If the BAM or reference cannot be opened
    """
    config = config or VariantConfig()
    if config.annotated_only and regions is None:
        raise ConfigError("annotated_only requires a BED file of regions")

    if reference is not None:
        open_reference(reference).close()

    scan_regions = regions.merged() if (config.annotated_only and positions is None) else None
    windows = plan_regions(bam_path, positions=positions, regions=scan_regions, window_size=config.window_size)

    caller = BulkCaller(
        min_depth=config.min_depth,
        reference_path=str(reference) if reference is not None else None,
        region_index=regions,
        homopolymer_window=config.homopolymer_window,
    )

    candidates: List[VariantCandidate] = []
    for window_candidates in pileup_regions(
        bam_path,
        windows,
        positions=positions,
        threads=threads,
        reducer=caller,
        position_filter=regions if config.annotated_only else None,
        indel=config.indel,
        min_mapq=config.min_mapq,
        barcode_tag=config.barcode_tag,
        collapse_barcodes=True,
        stats=stats,
    ):
        candidates.extend(window_candidates)

    candidates.sort(key=lambda c: (c.seqname, c.pos))
    logger.info(f"{len(candidates):,} positions passed depth >= {config.min_depth}")

    if apply_frequency_filter:
        candidates = filter_by_frequency(candidates, config.min_freq, config.max_freq)
        logger.info(
            f"{len(candidates):,} candidates with {config.min_freq} < freq < {config.max_freq}"
        )

    return records_to_dataframe(candidates, VARIANT_SCHEMA)


def sc_mutations(
    bam_path: Path,
    positions: List[Tuple[str, int]],
    barcodes: Optional[Iterable[str]] = None,
    config: Optional[VariantConfig] = None,
    threads: int = 1,
    stats: Optional[PileupStats] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Single-cell allele calls at known positions.

    Args:
        bam_path: Sorted, indexed BAM with cell barcodes
        positions: (seqname, 1-based pos) pairs to report
        barcodes: Optional barcodes to report; default all
        config: Variant settings (indel mode, mapq, barcode tag)
        threads: Worker processes
        stats: Optional counters filled in by the pileup

    Returns:
        (calls, alleles): dominant-allele calls with SINGLE_CELL_SCHEMA
        columns, and per-allele counts with ALLELE_SCHEMA columns
    """
    config = config or VariantConfig()
    positions = list(positions)
    barcode_set = set(barcodes) if barcodes is not None else None

    windows = plan_regions(bam_path, positions=positions, window_size=config.window_size)

    calls: List[SingleCellCall] = []
    alleles: List[AlleleCount] = []
    for window_calls, window_alleles in pileup_regions(
        bam_path,
        windows,
        positions=positions,
        threads=threads,
        reducer=SingleCellCaller(barcode_set),
        barcodes=barcode_set,
        indel=config.indel,
        min_mapq=config.min_mapq,
        barcode_tag=config.barcode_tag,
        stats=stats,
    ):
        calls.extend(window_calls)
        alleles.extend(window_alleles)

    calls.sort(key=lambda c: (c.seqname, c.pos, c.barcode))
    alleles.sort(key=lambda a: (a.seqname, a.pos, a.barcode, a.allele))
    logger.info(
        f"{len(calls):,} cell calls across {len({(c.seqname, c.pos) for c in calls}):,} positions"
    )

    return (
        records_to_dataframe(calls, SINGLE_CELL_SCHEMA),
        records_to_dataframe(alleles, ALLELE_SCHEMA),
    )
