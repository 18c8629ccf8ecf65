"""
Differential transcript usage across cell labels.

Isoforms of a gene that share the same internal splice junctions are
pooled into one splice group, so differences in transcript start and end
alone do not count as usage changes. Each label's counts over the splice
groups are then tested against a uniform distribution.

Author: Kevin R. Roy
"""

from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
import logging
import math

import numpy as np
import pandas as pd

from ..errors import ResourceError
from ..io.output import USAGE_SCHEMA, records_to_dataframe

logger = logging.getLogger(__name__)

Exon = Tuple[int, int]
Junction = Tuple[int, int]


@dataclass(frozen=True)
class Transcript:
    """An annotated isoform."""
    transcript_id: str
    gene_id: str
    exons: Tuple[Exon, ...]

    @property
    def splice_pattern(self) -> Tuple[Junction, ...]:
        return splice_pattern(self.exons)


@dataclass
class UsageResult:
    """Usage test outcome for one gene."""
    gene_id: str
    n_groups: int
    n_labels: int
    statistic: float
    df: int
    p_value: float
    dtu_group: Optional[str] = None
    dtu_label: Optional[str] = None


def splice_pattern(exons: Iterable[Exon]) -> Tuple[Junction, ...]:
    """
    Chain of internal junctions (donor end, acceptor start) of a transcript.

    Outer exon boundaries are ignored, so isoforms differing only in their
    start or end share a pattern. Single-exon transcripts give ().
    """
    ordered = sorted(exons)
    return tuple((ordered[i][1], ordered[i + 1][0]) for i in range(len(ordered) - 1))


def group_by_splice_pattern(transcripts: Iterable[Transcript]) -> Dict[str, Dict[str, str]]:
    """
    Assign each transcript to a splice group within its gene.

    Groups are named after their lexicographically first transcript.

    Returns:
        Dict gene_id -> {transcript_id: group name}
    """
    by_pattern: Dict[Tuple[str, Tuple[Junction, ...]], List[str]] = defaultdict(list)
    for tx in transcripts:
        by_pattern[(tx.gene_id, tx.splice_pattern)].append(tx.transcript_id)

    groups: Dict[str, Dict[str, str]] = defaultdict(dict)
    for (gene_id, _), members in by_pattern.items():
        name = min(members)
        for transcript_id in members:
            groups[gene_id][transcript_id] = name
    return dict(groups)


def _parse_exons(value: str) -> Tuple[Exon, ...]:
    exons = []
    for part in str(value).split(','):
        start, _, end = part.strip().partition('-')
        exons.append((int(start), int(end)))
    return tuple(exons)


def load_transcripts(path: Path) -> List[Transcript]:
    """
    Load isoform structures from a TSV with columns transcript_id, gene_id
    and exons, where exons are written as 'start-end,start-end,...'.

    Raises:
        ResourceError: If the file cannot be read or is malformed
    """
    try:
        df = pd.read_csv(path, sep='\t', comment='#', dtype=str)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ResourceError(f"Could not read {path}: {e}")

    missing = {'transcript_id', 'gene_id', 'exons'} - set(df.columns)
    if missing:
        raise ResourceError(f"{path} is missing columns: {', '.join(sorted(missing))}")

    transcripts = []
    for row in df.itertuples(index=False):
        try:
            exons = _parse_exons(row.exons)
        except ValueError:
            raise ResourceError(f"Invalid exon list for {row.transcript_id} in {path}: {row.exons}")
        transcripts.append(Transcript(row.transcript_id, row.gene_id, exons))

    logger.info(f"Loaded {len(transcripts)} transcripts from {path}")
    return transcripts


def load_transcript_counts(path: Path) -> pd.DataFrame:
    """
    Load a transcript x cell count matrix (first column: transcript id).

    Raises:
        ResourceError: If the file cannot be read
    """
    try:
        df = pd.read_csv(path, sep='\t', index_col=0)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ResourceError(f"Could not read {path}: {e}")
    df.index = df.index.astype(str)
    return df.fillna(0)


def load_labels(path: Path) -> Dict[str, str]:
    """
    Load a two-column cell -> label TSV (e.g. barcode to cluster).

    Raises:
        ResourceError: If the file cannot be read
    """
    try:
        df = pd.read_csv(path, sep='\t', header=None, comment='#', dtype=str)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ResourceError(f"Could not read {path}: {e}")
    if df.shape[1] < 2:
        raise ResourceError(f"Label file {path} needs cell and label columns")
    return dict(zip(df.iloc[:, 0], df.iloc[:, 1]))


class UsageTable:
    """
    Per-gene label x splice group count matrices.

    Example:
        >>> table = build_usage_table(counts, transcripts, labels)
        >>> table['GENE1']
                 tx1  tx3
        cluster1   40    2
        cluster2    3   35
    """

    def __init__(self, genes: Dict[str, pd.DataFrame]):
        self._genes = genes

    def __getitem__(self, gene_id: str) -> pd.DataFrame:
        return self._genes[gene_id]

    def __contains__(self, gene_id: str) -> bool:
        return gene_id in self._genes

    def __len__(self) -> int:
        return len(self._genes)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._genes))

    def items(self) -> Iterator[Tuple[str, pd.DataFrame]]:
        for gene_id in self:
            yield gene_id, self._genes[gene_id]


def build_usage_table(
    counts: pd.DataFrame,
    transcripts: Iterable[Transcript],
    labels: Optional[Dict[str, str]] = None,
) -> UsageTable:
    """
    Aggregate a transcript x cell matrix into per-gene label x splice group counts.

    Args:
        counts: Transcript x cell counts (index: transcript ids)
        transcripts: Annotated isoforms
        labels: Optional cell -> label map; cells without a label are
            dropped. By default every cell is its own label.

    Returns:
        UsageTable keyed by gene id
    """
    groups = group_by_splice_pattern(transcripts)
    gene_of = {tx: gene for gene, members in groups.items() for tx in members}
    group_of = {tx: group for members in groups.values() for tx, group in members.items()}

    known = [tx for tx in counts.index if tx in gene_of]
    if len(known) < len(counts.index):
        logger.warning(f"{len(counts.index) - len(known)} transcripts in counts are not annotated")

    matrix = counts.loc[known]
    if labels is not None:
        cells = [c for c in matrix.columns if c in labels]
        if len(cells) < len(matrix.columns):
            logger.warning(f"{len(matrix.columns) - len(cells)} cells have no label and were dropped")
        if not cells:
            return UsageTable({})
        matrix = matrix[cells]
        by_label = matrix.T.groupby([labels[c] for c in cells]).sum()
    else:
        by_label = matrix.T

    genes: Dict[str, pd.DataFrame] = {}
    tx_by_gene: Dict[str, List[str]] = defaultdict(list)
    for tx in known:
        tx_by_gene[gene_of[tx]].append(tx)

    for gene_id, gene_tx in tx_by_gene.items():
        gene_counts = by_label[gene_tx].T.groupby([group_of[tx] for tx in gene_tx]).sum().T
        genes[gene_id] = gene_counts.sort_index(axis=0).sort_index(axis=1)

    return UsageTable(genes)


def gene_usage_test(gene_id: str, counts: pd.DataFrame, min_count: int = 15) -> Optional[UsageResult]:
    """
    Chi-square usage test for one gene's label x splice group matrix.

    Returns None for genes with fewer than two splice groups.
    """
    from scipy import stats

    n_groups = counts.shape[1]
    if n_groups < 2:
        return None

    statistic = 0.0
    dof = 0
    n_labels = 0
    best_residual = 0.0
    dtu_group = None
    dtu_label = None

    for label, row in counts.iterrows():
        observed = row.to_numpy(dtype=float)
        total = observed.sum()
        if total == 0 or total < min_count:
            continue

        label_stat, _ = stats.chisquare(observed)
        statistic += float(label_stat)
        dof += n_groups - 1
        n_labels += 1

        expected = total / n_groups
        residuals = (observed - expected) / math.sqrt(expected)
        i = int(np.argmax(residuals))
        if residuals[i] > best_residual:
            best_residual = float(residuals[i])
            dtu_group = str(counts.columns[i])
            dtu_label = str(label)

    if n_labels == 0:
        return UsageResult(gene_id, n_groups, 0, math.nan, 0, math.nan)

    return UsageResult(
        gene_id=gene_id,
        n_groups=n_groups,
        n_labels=n_labels,
        statistic=statistic,
        df=dof,
        p_value=float(stats.chi2.sf(statistic, dof)),
        dtu_group=dtu_group,
        dtu_label=dtu_label,
    )


def run_usage_test(table: UsageTable, min_count: int = 15) -> pd.DataFrame:
    """
    Test every gene with at least two splice groups.

    Labels whose total count for a gene is below min_count are excluded
    from that gene's test; genes left with no labels get NaN statistic and
    p-value. No multiple testing correction is applied.

    Returns:
        DataFrame with USAGE_SCHEMA columns, one row per tested gene
    """
    results = []
    for gene_id, counts in table.items():
        result = gene_usage_test(gene_id, counts, min_count)
        if result is not None:
            results.append(result)

    tested = sum(1 for r in results if r.n_labels > 0)
    logger.info(f"Tested {tested:,} of {len(results):,} multi-isoform genes (min_count={min_count})")
    return records_to_dataframe(results, USAGE_SCHEMA)
