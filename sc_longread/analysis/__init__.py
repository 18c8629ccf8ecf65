"""
Transcript usage analysis for sc-longread.

Author: Kevin R. Roy
"""

from .statistics import add_adjusted_pvalues, benjamini_hochberg
from .usage import (
    Transcript,
    UsageResult,
    UsageTable,
    build_usage_table,
    group_by_splice_pattern,
    load_labels,
    load_transcript_counts,
    load_transcripts,
    splice_pattern,
    gene_usage_test,
    run_usage_test,
)

__all__ = [
    'add_adjusted_pvalues',
    'benjamini_hochberg',
    'Transcript',
    'UsageResult',
    'UsageTable',
    'build_usage_table',
    'group_by_splice_pattern',
    'load_labels',
    'load_transcript_counts',
    'load_transcripts',
    'splice_pattern',
    'gene_usage_test',
    'run_usage_test',
]
