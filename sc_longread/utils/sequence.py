"""
Sequence manipulation utilities.

Provides common functions for DNA sequence operations.

Author: Kevin R. Roy
"""

import re

import edlib

VALID_BASES = frozenset('ACGTN')

_DNA_PATTERN = re.compile(r'^[ACGTNacgtn]*$')


def reverse_complement(seq: str) -> str:
    """Return reverse complement of DNA sequence."""
    complement = {
        'A': 'T', 'T': 'A', 'G': 'C', 'C': 'G', 'N': 'N',
        'a': 't', 't': 'a', 'g': 'c', 'c': 'g', 'n': 'n'
    }
    return ''.join(complement.get(base, 'N') for base in reversed(seq))


def is_dna(seq: str) -> bool:
    """Check that a string only contains A, C, G, T or N (any case)."""
    return bool(_DNA_PATTERN.match(seq))


def hamming_distance(seq1: str, seq2: str) -> int:
    """Count mismatches between two equal-length sequences.

    Raises ValueError if sequences have different lengths.
    """
    if len(seq1) != len(seq2):
        raise ValueError(f"Sequences must be equal length: {len(seq1)} vs {len(seq2)}")
    return sum(a != b for a, b in zip(seq1.upper(), seq2.upper()))


def edit_distance(seq1: str, seq2: str, max_distance: int = -1) -> int:
    """Levenshtein distance between two sequences.

    Args:
        seq1: First sequence
        seq2: Second sequence
        max_distance: Stop early above this distance (-1 for no limit)

    Returns:
        Edit distance, or -1 if it exceeds max_distance
    """
    if not seq1 or not seq2:
        distance = max(len(seq1), len(seq2))
        if max_distance >= 0 and distance > max_distance:
            return -1
        return distance
    result = edlib.align(seq1.upper(), seq2.upper(), mode='NW', task='distance', k=max_distance)
    return result['editDistance']


def homopolymer_length(sequence: str, index: int) -> int:
    """Length of the homopolymer run covering a 0-based index."""
    if not sequence or index < 0 or index >= len(sequence):
        return 0
    seq = sequence.upper()
    base = seq[index]
    left = index
    while left > 0 and seq[left - 1] == base:
        left -= 1
    right = index
    while right < len(seq) - 1 and seq[right + 1] == base:
        right += 1
    return right - left + 1
