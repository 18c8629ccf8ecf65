"""
Output generation for sc-longread results.

Author: Kevin R. Roy
"""

from dataclasses import asdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import logging

import pandas as pd

from ..core.models import BarcodeStats

logger = logging.getLogger(__name__)

# Column -> dtype for each result table
VARIANT_SCHEMA = {
    'seqname': 'string',
    'pos': 'int64',
    'ref': 'string',
    'alt': 'string',
    'depth': 'int64',
    'alt_count': 'int64',
    'freq': 'float64',
    'region': 'string',
    'homopolymer': 'boolean',
}
SINGLE_CELL_SCHEMA = {
    'seqname': 'string',
    'pos': 'int64',
    'barcode': 'string',
    'allele': 'string',
    'allele_count': 'int64',
    'cell_total_reads': 'int64',
    'fraction': 'float64',
}
ALLELE_SCHEMA = {
    'seqname': 'string',
    'pos': 'int64',
    'barcode': 'string',
    'allele': 'string',
    'allele_count': 'int64',
    'cell_total_reads': 'int64',
    'pct': 'float64',
}
USAGE_SCHEMA = {
    'gene_id': 'string',
    'n_groups': 'int64',
    'n_labels': 'int64',
    'statistic': 'float64',
    'df': 'int64',
    'p_value': 'float64',
    'dtu_group': 'string',
    'dtu_label': 'string',
}

VARIANT_COLUMNS = list(VARIANT_SCHEMA)
SINGLE_CELL_COLUMNS = list(SINGLE_CELL_SCHEMA)
ALLELE_COLUMNS = list(ALLELE_SCHEMA)
USAGE_COLUMNS = list(USAGE_SCHEMA)


def records_to_dataframe(records: Iterable, schema: Dict[str, str]) -> pd.DataFrame:
    """
    Build a table from dataclass records with a fixed column order and dtypes.

    Empty input still yields a frame with every column present.
    """
    rows = [asdict(r) for r in records]
    df = pd.DataFrame(rows, columns=list(schema))
    return df.astype(schema)


def write_table(df: pd.DataFrame, output_path: Path) -> Path:
    """Write a DataFrame as TSV (gzipped if the path ends in .gz)."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, sep='\t', index=False)
    logger.info(f"Wrote {len(df)} rows to {output_path}")
    return output_path


def stats_to_dataframe(stats: BarcodeStats) -> pd.DataFrame:
    """Two-column (metric, value) summary of demultiplexing statistics."""
    summary = stats.to_dict()
    return pd.DataFrame({'metric': list(summary.keys()), 'value': list(summary.values())})


def barcode_counts_to_dataframe(stats: BarcodeStats) -> pd.DataFrame:
    """Per-barcode read counts, most abundant first."""
    df = pd.DataFrame(
        sorted(stats.barcode_counts.items(), key=lambda kv: (-kv[1], kv[0])),
        columns=['barcode', 'reads'],
    )
    return df


def write_barcode_stats(
    stats: BarcodeStats,
    summary_path: Path,
    barcode_path: Optional[Path] = None,
) -> List[Path]:
    """
    Write the demultiplexing summary and per-barcode counts.

    Args:
        stats: Merged statistics for the run
        summary_path: TSV of metric/value pairs
        barcode_path: Optional TSV of barcode/read counts

    Returns:
        Paths written
    """
    written = [write_table(stats_to_dataframe(stats), summary_path)]
    if barcode_path is not None:
        written.append(write_table(barcode_counts_to_dataframe(stats), barcode_path))
    return written


def generate_summary_report(
    stats: BarcodeStats,
    output_path: Path,
    top_n: int = 10,
) -> Path:
    """
    Generate a demultiplexing summary report in markdown format.

    Args:
        stats: Merged statistics for the run
        output_path: Path for output markdown file
        top_n: Number of most abundant barcodes to list

    Returns:
        Path to written file
    """
    total = stats.total_reads

    def pct(n: int) -> str:
        return f"{n / total * 100:.1f}%" if total > 0 else "n/a"

    with open(output_path, 'w') as f:
        f.write("# Demultiplexing Summary\n\n")

        f.write("## Overview\n\n")
        f.write(f"- **Total reads:** {total:,}\n")
        f.write(f"- **Matched:** {stats.matched:,} ({pct(stats.matched)})\n")
        f.write(f"  - exact: {stats.exact:,}\n")
        f.write(f"  - corrected: {stats.corrected:,}\n")
        f.write(f"- **Unmatched:** {stats.unmatched:,} ({pct(stats.unmatched)})\n")
        f.write(f"- **Reverse strand:** {stats.reverse_strand:,}\n")
        f.write(f"- **Malformed records skipped:** {stats.record_errors:,}\n")
        f.write(f"- **Unique barcodes:** {len(stats.barcode_counts):,}\n\n")

        if stats.failure_reasons:
            f.write("## Unmatched Reasons\n\n")
            f.write("| Reason | Reads |\n")
            f.write("|--------|-------|\n")
            for reason, count in stats.failure_reasons.most_common():
                f.write(f"| {reason} | {count:,} |\n")
            f.write("\n")

        if stats.barcode_counts:
            f.write(f"## Top {top_n} Barcodes\n\n")
            f.write("| Barcode | Reads |\n")
            f.write("|---------|-------|\n")
            for barcode, count in barcode_counts_to_dataframe(stats).head(top_n).itertuples(index=False):
                f.write(f"| {barcode} | {count:,} |\n")
            f.write("\n")

    logger.info(f"Wrote summary report to {output_path}")

    return output_path
