import logging
from typing import Sequence, Tuple, Union

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import fdrcorrection, multipletests

from .errors import EmptyInputError, IncompleteDataError

logger = logging.getLogger(__name__)

DEFAULT_METHOD = 'fdr_bh'
MISSING_POLICIES = ('propagate', 'raise')
PVALUE_SUFFIX = '_pvalue'
PADJ_SUFFIX = '_padj'


def adjust_pvalues(
    pvalues: Union[Sequence[float], pd.Series],
    method: str = DEFAULT_METHOD,
    missing: str = 'propagate',
) -> pd.Series:
    """
    Correct a whole column of raw p-values for multiple testing.

    Args:
        pvalues: Raw p-values; NaN marks a test that could not be computed
        method: Any statsmodels multipletests method (fdr_bh, fdr_by, bonferroni, holm, ...)
        missing: 'propagate' keeps NaN in place and leaves them out of the number
            of tests; 'raise' refuses to correct a column containing NaN

    Returns:
        Adjusted p-values as a Series with the input's index and order

    Raises:
        EmptyInputError: If no p-values are given
        IncompleteDataError: If missing='raise' and any p-value is NaN
        ValueError: For an unknown method or missing policy
    """
    if missing not in MISSING_POLICIES:
        raise ValueError(f"missing must be one of {MISSING_POLICIES}, got {missing!r}")
    p = pvalues.astype(float) if isinstance(pvalues, pd.Series) else pd.Series(pvalues, dtype=float)
    if len(p) == 0:
        raise EmptyInputError("No p-values to correct")

    mask = p.notna()
    if not mask.all() and missing == 'raise':
        raise IncompleteDataError(f"{int((~mask).sum())} of {len(p)} raw p-values are missing")

    out = pd.Series(np.nan, index=p.index, dtype=float)
    if not mask.any():
        logger.warning("All raw p-values are missing; adjusted values left empty")
        return out
    _, q, _, _ = multipletests(p[mask].to_numpy(), method=method)
    out[mask] = q
    return out


def pvalue_columns(results: pd.DataFrame) -> list:
    return [c for c in results.columns if c.endswith(PVALUE_SUFFIX)]


def add_adjusted(results: pd.DataFrame, method: str = DEFAULT_METHOD,
                 missing: str = 'propagate') -> pd.DataFrame:
    """
    Add a <test>_padj column after every <test>_pvalue column.

    Each column is corrected across all of its taxa. Returns a new frame.
    """
    cols = pvalue_columns(results)
    if not cols:
        raise EmptyInputError("Results table has no p-value columns")
    out = results.copy()
    for col in cols:
        prefix = col[:-len(PVALUE_SUFFIX)]
        adj = adjust_pvalues(out[col], method=method, missing=missing)
        out.insert(out.columns.get_loc(col) + 1, prefix + PADJ_SUFFIX, adj)
        logger.info(f"[{prefix}] {method}: {int((adj <= 0.05).sum())} / {int(adj.notna().sum())} taxa with padj <= 0.05")
    return out


def add_bh(in_fp: str, out_fp: str, pcol_guess: Tuple[str, ...] = ('pvalue',)) -> None:
    """
    Add Benjamini-Hochberg FDR correction to a results file.

    Reads a TSV file with p-values, applies BH correction, and writes the results
    with additional columns for q-values and significance flags. Rows without a
    p-value keep an empty q-value.

    Args:
        in_fp: Input file path containing p-values
        out_fp: Output file path for FDR-corrected results
        pcol_guess: Tuple of possible p-value column names to search for

    Raises:
        RuntimeError: If no p-value column is found in the input file
    """
    df = pd.read_csv(in_fp, sep='\t')
    pcol = next((c for c in pcol_guess if c in df.columns), None)
    if pcol is None:
        raise RuntimeError(f'No p-value column in {in_fp}')
    mask = df[pcol].notna()
    df['qvalue_bh'] = np.nan
    df['significant_bh_0.05'] = False
    if mask.any():
        rej, q = fdrcorrection(df.loc[mask, pcol].astype(float).values, alpha=0.05, method='indep')
        df.loc[mask, 'qvalue_bh'] = q
        df.loc[mask, 'significant_bh_0.05'] = rej
    df.to_csv(out_fp, sep='\t', index=False)
