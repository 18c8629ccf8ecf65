"""
Core read demultiplexing and alignment modules for sc-longread.

Author: Kevin R. Roy
"""

from .annotation import (
    ReadAnnotator,
    format_read_id,
    parse_read_id,
)
from .cigar import (
    CigarBlock,
    alleles_by_position,
    is_indel_allele,
    iter_cigar_blocks,
)
from .correction import (
    BarcodeCorrector,
    hamming_neighbours,
    load_allow_list,
)
from .matching import (
    PatternMatcher,
    find_all_locations,
)
from .models import (
    AnnotatedRead,
    BarcodeStats,
    CorrectionResult,
    CorrectionStatus,
    MatchFailure,
    MatchResult,
    RawRead,
    SegmentMatch,
)

__all__ = [
    # Models
    'RawRead',
    'SegmentMatch',
    'MatchResult',
    'MatchFailure',
    'CorrectionStatus',
    'CorrectionResult',
    'AnnotatedRead',
    'BarcodeStats',
    # Matching
    'PatternMatcher',
    'find_all_locations',
    # Correction
    'BarcodeCorrector',
    'load_allow_list',
    'hamming_neighbours',
    # Annotation
    'ReadAnnotator',
    'format_read_id',
    'parse_read_id',
    # CIGAR
    'CigarBlock',
    'iter_cigar_blocks',
    'alleles_by_position',
    'is_indel_allele',
]
