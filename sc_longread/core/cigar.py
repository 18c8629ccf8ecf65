"""
CIGAR walking utilities for per-position allele extraction.

Author: Kevin R. Roy
"""

from typing import Dict, Iterator, NamedTuple

import pysam

MATCH, INS, DEL, REF_SKIP, SOFT_CLIP, HARD_CLIP, PAD, EQUAL, DIFF = range(9)

# Operations advancing along the reference / along the read
REF_CONSUMING_OPS = frozenset({MATCH, DEL, REF_SKIP, EQUAL, DIFF})
QUERY_CONSUMING_OPS = frozenset({MATCH, INS, SOFT_CLIP, EQUAL, DIFF})
ALIGNED_OPS = frozenset({MATCH, EQUAL, DIFF})

DELETION_ALLELE = '-'
INSERTION_PREFIX = '+'


class CigarBlock(NamedTuple):
    """One CIGAR operation placed on 0-based reference and query offsets."""
    op: int
    length: int
    ref_start: int
    query_start: int

    @property
    def ref_end(self) -> int:
        return self.ref_start + (self.length if self.op in REF_CONSUMING_OPS else 0)

    @property
    def query_end(self) -> int:
        return self.query_start + (self.length if self.op in QUERY_CONSUMING_OPS else 0)


def iter_cigar_blocks(read: pysam.AlignedSegment) -> Iterator[CigarBlock]:
    """Yield the CIGAR operations of an alignment with their coordinates."""
    if read.cigartuples is None:
        return
    ref_pos = read.reference_start
    query_pos = 0
    for op, length in read.cigartuples:
        block = CigarBlock(op, length, ref_pos, query_pos)
        yield block
        ref_pos = block.ref_end
        query_pos = block.query_end


def alleles_by_position(read: pysam.AlignedSegment, indel: bool = False) -> Dict[int, str]:
    """
    Map each covered reference position to the allele the read shows there.

    Positions are 1-based. Aligned bases give 'A', 'C', 'G', 'T' or 'N'.
    With indel=True, deleted positions give '-' and an insertion replaces
    the allele of the reference base it follows with '+<inserted bases>',
    so every read contributes at most one allele per position. Intron
    skips (N) are not coverage.

    Args:
        read: pysam AlignedSegment object
        indel: Whether to report deletions and insertions

    Returns:
        Dict mapping 1-based reference position to allele
    """
    query = read.query_sequence
    if query is None:
        return {}
    query = query.upper()

    alleles = {}
    for block in iter_cigar_blocks(read):
        if block.op in ALIGNED_OPS:
            for offset in range(block.length):
                alleles[block.ref_start + offset + 1] = query[block.query_start + offset]
        elif not indel:
            continue
        elif block.op == DEL:
            for pos in range(block.ref_start + 1, block.ref_end + 1):
                alleles[pos] = DELETION_ALLELE
        elif block.op == INS:
            # 1-based position of the preceding reference base
            anchor = block.ref_start
            if anchor in alleles:
                alleles[anchor] = INSERTION_PREFIX + query[block.query_start:block.query_end]

    return alleles


def is_indel_allele(allele: str) -> bool:
    return allele == DELETION_ALLELE or allele.startswith(INSERTION_PREFIX)
