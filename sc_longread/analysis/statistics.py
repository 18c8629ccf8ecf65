"""
Multiple testing correction for per-gene usage tests.

Author: Kevin R. Roy
"""

from typing import List, Sequence

import numpy as np
import pandas as pd


def benjamini_hochberg(p_values: Sequence[float]) -> List[float]:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN entries (untested genes) are left as NaN and do not count towards
    the number of tests.

    Example:
        >>> p_adj = benjamini_hochberg([0.01, 0.04, 0.03, 0.5])
        >>> [f'{p:.3f}' for p in p_adj]
        ['0.040', '0.053', '0.053', '0.500']
    """
    p = np.asarray(p_values, dtype=float)
    adjusted = np.full(p.shape, np.nan)

    valid = ~np.isnan(p)
    n_valid = int(valid.sum())
    if n_valid == 0:
        return adjusted.tolist()

    order = np.argsort(p[valid])
    ranked = p[valid][order] * n_valid / np.arange(1, n_valid + 1)
    # Enforce monotonicity from the largest p-value down
    ranked = np.minimum.accumulate(ranked[::-1])[::-1]

    valid_adjusted = np.empty(n_valid)
    valid_adjusted[order] = np.minimum(ranked, 1.0)
    adjusted[valid] = valid_adjusted
    return adjusted.tolist()


def add_adjusted_pvalues(
    df: pd.DataFrame,
    column: str = 'p_value',
    output_column: str = 'p_adj',
) -> pd.DataFrame:
    """Return a copy of df with BH-adjusted p-values in output_column."""
    df = df.copy()
    df[output_column] = benjamini_hochberg(df[column].astype(float).tolist())
    return df
