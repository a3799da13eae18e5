import logging
from typing import Dict, List

import numpy as np
import pandas as pd

from .fdr import PADJ_SUFFIX, PVALUE_SUFFIX, pvalue_columns

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.05


def summarize_results(results: pd.DataFrame, alpha: float = DEFAULT_ALPHA) -> pd.DataFrame:
    """
    Summarize a results table per test method.

    Args:
        results: Output of run_pipeline (or run_tests followed by add_adjusted)
        alpha: Threshold on adjusted p-values; raw p-values are used when a
            test has no adjusted column

    Returns:
        DataFrame with one row per test: n_tested (taxa with a result),
        n_failed, n_significant, min_padj, top_taxon
    """
    rows: List[Dict[str, object]] = []
    for pcol in pvalue_columns(results):
        test = pcol[:-len(PVALUE_SUFFIX)]
        qcol = test + PADJ_SUFFIX
        q = results[qcol] if qcol in results.columns else results[pcol]
        present = q.dropna()
        rows.append({
            "test": test,
            "n_tested": int(len(present)),
            "n_failed": int(results[pcol].isna().sum()),
            "n_significant": int((present <= alpha).sum()),
            "min_padj": float(present.min()) if len(present) else np.nan,
            "top_taxon": present.idxmin() if len(present) else np.nan,
        })
        logger.debug(f"{test}: {rows[-1]['n_significant']} significant at {alpha}")
    return pd.DataFrame(rows, columns=["test", "n_tested", "n_failed", "n_significant",
                                       "min_padj", "top_taxon"])
