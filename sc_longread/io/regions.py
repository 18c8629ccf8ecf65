"""
Loading of annotated regions, candidate positions and barcode lists.

Author: Kevin R. Roy
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
import logging

import numpy as np
import pandas as pd

from ..core.correction import load_allow_list
from ..errors import ResourceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Region:
    """A genomic interval, 0-based half-open like BED."""
    seqname: str
    start: int
    end: int
    name: Optional[str] = None

    def __len__(self) -> int:
        return self.end - self.start

    def contains(self, pos: int) -> bool:
        """Whether a 1-based position lies inside the region."""
        return self.start < pos <= self.end

    def __str__(self) -> str:
        return f"{self.seqname}:{self.start + 1}-{self.end}"


class RegionIndex:
    """
    Point lookup over a set of possibly overlapping regions.

    Used as the position filter for region-restricted pileups and to label
    variants with the name of the region (gene) they fall in.

    Example:
        >>> index = RegionIndex([Region('chr19', 100, 200, 'GENE1')])
        >>> index.contains('chr19', 150)
        True
        >>> index.label('chr19', 150)
        'GENE1'
    """

    def __init__(self, regions: Iterable[Region]):
        self.regions: List[Region] = sorted(regions, key=lambda r: (r.seqname, r.start, r.end))
        self._by_seq: Dict[str, Tuple[np.ndarray, np.ndarray, np.ndarray, List[Optional[str]]]] = {}

        grouped: Dict[str, List[Region]] = {}
        for region in self.regions:
            grouped.setdefault(region.seqname, []).append(region)

        for seqname, regions in grouped.items():
            starts = np.array([r.start for r in regions], dtype=np.int64)
            ends = np.array([r.end for r in regions], dtype=np.int64)
            # Running maximum of ends bounds the backward scan in lookups
            max_ends = np.maximum.accumulate(ends)
            self._by_seq[seqname] = (starts, ends, max_ends, [r.name for r in regions])

    def __len__(self) -> int:
        return len(self.regions)

    def _hits(self, seqname: str, pos: int) -> List[int]:
        entry = self._by_seq.get(seqname)
        if entry is None:
            return []
        starts, ends, max_ends, _ = entry
        # Regions with start < pos
        i = int(np.searchsorted(starts, pos, side='left')) - 1
        hits = []
        while i >= 0 and max_ends[i] >= pos:
            if ends[i] >= pos:
                hits.append(i)
            i -= 1
        return hits

    def contains(self, seqname: str, pos: int) -> bool:
        """Whether a 1-based position lies in any region."""
        return bool(self._hits(seqname, pos))

    __call__ = contains

    def label(self, seqname: str, pos: int) -> Optional[str]:
        """Name(s) of the regions covering a 1-based position, comma-joined."""
        hits = self._hits(seqname, pos)
        if not hits:
            return None
        names = self._by_seq[seqname][3]
        labels = sorted({names[i] for i in hits if names[i]})
        return ','.join(labels) if labels else None

    def merged(self) -> List[Region]:
        """Regions with overlapping intervals on the same sequence merged."""
        merged: List[Region] = []
        for region in self.regions:
            if merged and merged[-1].seqname == region.seqname and region.start <= merged[-1].end:
                last = merged[-1]
                merged[-1] = Region(last.seqname, last.start, max(last.end, region.end))
            else:
                merged.append(Region(region.seqname, region.start, region.end))
        return merged


def _read_table(path: Path, **kwargs) -> pd.DataFrame:
    try:
        return pd.read_csv(path, sep='\t', comment='#', **kwargs)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ResourceError(f"Could not read {path}: {e}")


def load_bed(path: Path) -> RegionIndex:
    """
    Load regions from a BED file (first three columns required, name optional).

    Raises:
        ResourceError: If the file cannot be read or parsed
    """
    df = _read_table(path, header=None, dtype={0: str})
    if df.shape[1] < 3:
        raise ResourceError(f"BED file {path} needs at least 3 columns")

    regions = []
    for row in df.itertuples(index=False):
        name = str(row[3]) if len(row) > 3 and not pd.isna(row[3]) else None
        regions.append(Region(str(row[0]), int(row[1]), int(row[2]), name))

    logger.info(f"Loaded {len(regions)} regions from {path}")
    return RegionIndex(regions)


def load_positions(path: Path) -> List[Tuple[str, int]]:
    """
    Load candidate positions from a TSV with 'seqname' and 'pos' columns
    (1-based). Files without a header are read as two columns.
    """
    df = _read_table(path, dtype=str)
    if not {'seqname', 'pos'}.issubset(df.columns):
        df = _read_table(path, header=None, dtype=str)
        if df.shape[1] < 2:
            raise ResourceError(f"Position file {path} needs seqname and pos columns")
        df = df.iloc[:, :2]
        df.columns = ['seqname', 'pos']

    try:
        positions = [(str(s), int(p)) for s, p in zip(df['seqname'], df['pos'])]
    except ValueError as e:
        raise ResourceError(f"Invalid position in {path}: {e}")

    logger.info(f"Loaded {len(positions)} candidate positions from {path}")
    return positions


def load_barcode_list(path: Path) -> List[str]:
    """Load a one-per-line list of barcodes (cells to report)."""
    return sorted(load_allow_list(path))
