"""
Barcode correction against an allow-list.

A barcode that is not an exact allow-list member is corrected to the
allow-list entry that is uniquely closest within the distance budget.
When two or more entries tie at the smallest distance the barcode is
left unmatched; no tie is ever resolved by picking one of them.

Author: Kevin R. Roy
"""

from functools import lru_cache
from itertools import combinations, product
from pathlib import Path
from typing import FrozenSet, Iterable, Iterator, Optional, Set
import gzip
import logging

from ..errors import ResourceError
from ..utils.sequence import edit_distance, is_dna
from .models import CorrectionResult, CorrectionStatus

logger = logging.getLogger(__name__)

BASES = 'ACGT'

# Distinct non-exact barcodes remembered per corrector
DEFAULT_CACHE_SIZE = 65536


def load_allow_list(path: Path) -> Set[str]:
    """
    Load an allow-list of barcodes.

    Plain or gzipped text, one barcode per line. Blank lines and '#'
    comments are ignored, and a trailing '-1' (Cell Ranger style) is
    stripped.

    Raises:
        ResourceError: If the file cannot be read, is empty, holds non-DNA
            entries or mixes barcode lengths
    """
    path = Path(path)
    opener = gzip.open if str(path).endswith('.gz') else open
    barcodes = set()
    try:
        with opener(path, 'rt') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                barcode = line.split()[0].upper()
                if barcode.endswith('-1'):
                    barcode = barcode[:-2]
                barcodes.add(barcode)
    except (OSError, UnicodeDecodeError) as e:
        raise ResourceError(f"Could not read allow-list {path}: {e}")

    if not barcodes:
        raise ResourceError(f"Allow-list {path} contains no barcodes")

    invalid = sorted(bc for bc in barcodes if not is_dna(bc))
    if invalid:
        raise ResourceError(f"Allow-list {path} has non-DNA barcodes, e.g. {invalid[0]}")

    lengths = {len(bc) for bc in barcodes}
    if len(lengths) > 1:
        raise ResourceError(
            f"Allow-list {path} mixes barcode lengths: {sorted(lengths)}"
        )

    logger.info(f"Loaded {len(barcodes)} barcodes from {path}")
    return barcodes


def hamming_neighbours(barcode: str, distance: int) -> Iterator[str]:
    """
    Yield every sequence at exactly `distance` substitutions from barcode.

    An 'N' in the barcode is always a mismatch, so all four bases are
    tried at that position.
    """
    for positions in combinations(range(len(barcode)), distance):
        choices = [
            [b for b in BASES if b != barcode[p]]
            for p in positions
        ]
        for replacement in product(*choices):
            chars = list(barcode)
            for p, b in zip(positions, replacement):
                chars[p] = b
            yield ''.join(chars)


class BarcodeCorrector:
    """
    Correct extracted barcodes against an allow-list.

    Without an allow-list the corrector is a pass-through and every
    barcode is reported as exact.

    Example:
        >>> corrector = BarcodeCorrector({'AAAACCCCGGGGTTTT'}, max_distance=1)
        >>> corrector.correct('AAAACCCCGGGGTTTA').status
        <CorrectionStatus.CORRECTED: 'corrected'>
    """

    def __init__(
        self,
        allow_list: Optional[Iterable[str]] = None,
        max_distance: int = 2,
        metric: str = 'hamming',
        cache_size: int = DEFAULT_CACHE_SIZE,
    ):
        if metric not in ('hamming', 'edit'):
            raise ValueError(f"Unknown distance metric: {metric}")
        self.allow_list: Optional[FrozenSet[str]] = (
            frozenset(bc.upper() for bc in allow_list) if allow_list is not None else None
        )
        self.max_distance = max_distance
        self.metric = metric
        # Bounded per-instance LRU of non-exact lookups
        self._lookup = lru_cache(maxsize=cache_size)(self._correct_uncached)

    @classmethod
    def from_file(
        cls,
        path: Optional[Path],
        max_distance: int = 2,
        metric: str = 'hamming',
    ) -> 'BarcodeCorrector':
        """Create a corrector from an allow-list file (None for pass-through)."""
        allow_list = load_allow_list(path) if path is not None else None
        return cls(allow_list, max_distance=max_distance, metric=metric)

    @property
    def is_passthrough(self) -> bool:
        return self.allow_list is None

    @property
    def barcode_length(self) -> Optional[int]:
        if not self.allow_list:
            return None
        return len(next(iter(self.allow_list)))

    def correct(self, barcode: str) -> CorrectionResult:
        """
        Correct one barcode.

        Args:
            barcode: Extracted barcode sequence

        Returns:
            CorrectionResult with the allow-list entry (or None) and status
        """
        barcode = barcode.upper()
        if self.allow_list is None:
            return CorrectionResult(barcode=barcode, status=CorrectionStatus.EXACT)

        if barcode in self.allow_list:
            return CorrectionResult(barcode=barcode, status=CorrectionStatus.EXACT)
        return self._lookup(barcode)

    def cache_info(self):
        """Hit/miss statistics of the correction cache."""
        return self._lookup.cache_info()

    def _correct_uncached(self, barcode: str) -> CorrectionResult:
        if self.metric == 'hamming':
            return self._correct_hamming(barcode)
        return self._correct_edit(barcode)

    def _resolve(self, candidates: Set[str], distance: int) -> CorrectionResult:
        if len(candidates) == 1:
            return CorrectionResult(
                barcode=next(iter(candidates)),
                status=CorrectionStatus.CORRECTED,
                distance=distance,
            )
        return CorrectionResult(
            barcode=None,
            status=CorrectionStatus.UNMATCHED,
            distance=distance,
            reason='ambiguous',
        )

    def _correct_hamming(self, barcode: str) -> CorrectionResult:
        if self.barcode_length is not None and len(barcode) != self.barcode_length:
            return CorrectionResult(barcode=None, status=CorrectionStatus.UNMATCHED, reason='no_match')

        for distance in range(1, self.max_distance + 1):
            candidates = {
                neighbour for neighbour in hamming_neighbours(barcode, distance)
                if neighbour in self.allow_list
            }
            if candidates:
                return self._resolve(candidates, distance)

        return CorrectionResult(barcode=None, status=CorrectionStatus.UNMATCHED, reason='no_match')

    def _correct_edit(self, barcode: str) -> CorrectionResult:
        best_distance = None
        candidates: Set[str] = set()
        for entry in self.allow_list:
            limit = self.max_distance if best_distance is None else best_distance
            distance = edit_distance(barcode, entry, max_distance=limit)
            if distance < 0:
                continue
            if best_distance is None or distance < best_distance:
                best_distance = distance
                candidates = {entry}
            elif distance == best_distance:
                candidates.add(entry)

        if not candidates:
            return CorrectionResult(barcode=None, status=CorrectionStatus.UNMATCHED, reason='no_match')
        return self._resolve(candidates, best_distance)
