"""
Pileup aggregation and variant calling for sc-longread.

Author: Kevin R. Roy
"""

from .pileup import (
    PileupCell,
    PileupStats,
    check_index,
    pileup,
    pileup_region,
    pileup_regions,
    plan_regions,
    read_barcode,
)
from .calling import (
    AlleleCount,
    SingleCellCall,
    VariantCandidate,
    allele_table,
    call_bulk_variants,
    call_single_cell,
    filter_by_frequency,
    find_variants,
    group_by_region,
    sc_mutations,
)

__all__ = [
    'PileupCell',
    'PileupStats',
    'check_index',
    'pileup',
    'pileup_region',
    'pileup_regions',
    'plan_regions',
    'read_barcode',
    'AlleleCount',
    'SingleCellCall',
    'VariantCandidate',
    'allele_table',
    'call_bulk_variants',
    'call_single_cell',
    'filter_by_frequency',
    'find_variants',
    'group_by_region',
    'sc_mutations',
]
