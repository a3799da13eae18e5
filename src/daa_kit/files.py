import pathlib
import logging
from typing import List, Optional

import numpy as np
import pandas as pd

from .filter import clean_metadata_values, series_numeric_coerce

logger = logging.getLogger(__name__)


def ensure_dir(p):
    pathlib.Path(p).mkdir(parents=True, exist_ok=True)


def _check_exists(fp: str, what: str) -> pathlib.Path:
    p = pathlib.Path(fp)
    if not p.is_file():
        raise RuntimeError(f"{what} not found: {fp}")
    return p


def read_abundance(fp: str) -> pd.DataFrame:
    """
    Read a taxa x samples TSV (first column = taxon id, header = sample ids).

    Raises:
        RuntimeError: If the file is missing, empty, has duplicate ids, non-numeric
            cells or negative counts
    """
    p = _check_exists(fp, "Abundance table")
    df = pd.read_csv(p, sep='\t', index_col=0)
    if df.empty:
        raise RuntimeError(f"Abundance table is empty: {fp}")
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    if df.index.duplicated().any():
        dup = df.index[df.index.duplicated()].unique().tolist()
        raise RuntimeError(f"Duplicate taxon ids in {fp}: {dup[:5]}")
    if df.columns.duplicated().any():
        raise RuntimeError(f"Duplicate sample ids in {fp}")
    numeric = df.apply(pd.to_numeric, errors='coerce')
    bad = numeric.isna() & df.notna()
    if bad.any().any():
        r, c = np.argwhere(bad.to_numpy())[0]
        raise RuntimeError(f"Non-numeric abundance '{df.iat[r, c]}' for {df.index[r]} / {df.columns[c]} "
                           f"in {fp} ({int(bad.to_numpy().sum())} bad cells)")
    df = numeric
    if (df < 0).any().any():
        raise RuntimeError(f"Negative abundances in {fp}")
    logger.info(f"Loaded abundance table {fp}: {df.shape[0]} taxa x {df.shape[1]} samples")
    return df


def read_metadata(fp: str, sample_col: Optional[str] = None,
                  missing_values: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Read a sample metadata TSV indexed by sample id.

    Missing-value indicators ("NA", "not collected", ...) become NaN and
    mostly-numeric columns are coerced to numbers.

    Args:
        fp: Path to TSV
        sample_col: Column holding sample ids (default: first column)
        missing_values: Extra strings to treat as missing
    """
    p = _check_exists(fp, "Metadata table")
    df = pd.read_csv(p, sep='\t', dtype=str, keep_default_na=False)
    if df.empty:
        raise RuntimeError(f"Metadata table is empty: {fp}")
    sample_col = sample_col or df.columns[0]
    if sample_col not in df.columns:
        raise RuntimeError(f"Sample column '{sample_col}' not in {fp}")
    df = df.set_index(sample_col)
    df.index = df.index.astype(str).str.strip()
    if df.index.duplicated().any():
        raise RuntimeError(f"Duplicate sample ids in {fp}")
    for col in df.columns:
        df[col] = series_numeric_coerce(clean_metadata_values(df[col], missing_values))
    return df


def write_results(df: pd.DataFrame, fp: str) -> None:
    ensure_dir(pathlib.Path(fp).parent)
    out = df.copy()
    if out.index.name is None:
        out.index.name = 'taxon'
    out.to_csv(fp, sep='\t')
    logger.info(f"Wrote {len(out)} rows to {fp}")
