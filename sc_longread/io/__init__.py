"""
Input/output modules for sc-longread.

Author: Kevin R. Roy
"""

from .fastq import FastqReader, FastqWriter, read_batches
from .output import (
    barcode_counts_to_dataframe,
    records_to_dataframe,
    generate_summary_report,
    stats_to_dataframe,
    write_barcode_stats,
    write_table,
)
from .regions import (
    Region,
    RegionIndex,
    load_barcode_list,
    load_bed,
    load_positions,
)

__all__ = [
    'FastqReader',
    'FastqWriter',
    'read_batches',
    'write_table',
    'write_barcode_stats',
    'stats_to_dataframe',
    'barcode_counts_to_dataframe',
    'records_to_dataframe',
    'generate_summary_report',
    'Region',
    'RegionIndex',
    'load_bed',
    'load_positions',
    'load_barcode_list',
]
