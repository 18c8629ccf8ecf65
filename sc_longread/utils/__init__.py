"""
Utility modules for sc-longread.

Author: Kevin R. Roy
"""

from .sequence import (
    VALID_BASES,
    edit_distance,
    hamming_distance,
    homopolymer_length,
    is_dna,
    reverse_complement,
)

__all__ = [
    'VALID_BASES',
    'reverse_complement',
    'is_dna',
    'hamming_distance',
    'edit_distance',
    'homopolymer_length',
]
