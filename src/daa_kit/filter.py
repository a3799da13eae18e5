import logging
from typing import List, Optional

import numpy as np
import pandas as pd

from .errors import EmptyInputError

logger = logging.getLogger(__name__)

# Constants for taxon filtering
DEFAULT_DETECTION = 0.0
DEFAULT_PREVALENCE = 0.2

# Common missing value indicators (case-insensitive)
MISSING_INDICATORS = {
    'not collected', 'not available', 'unknown', 'n/a', 'na', 'nan', 'none',
    'missing', 'not specified', 'not provided', 'not reported',
    'not applicable', 'not determined', 'pending', 'tbd', ''
}


def prevalence(counts: pd.DataFrame, detection: float = DEFAULT_DETECTION,
               include_lowest: bool = False) -> pd.Series:
    """
    Fraction of samples in which each taxon exceeds the detection threshold.

    Args:
        counts: Abundance table (taxa x samples)
        detection: Detection threshold on the abundance scale
        include_lowest: Count abundances equal to the threshold as detected (>= instead of >)

    Returns:
        Series of prevalence fractions indexed by taxon, in table order
    """
    if counts.shape[1] == 0:
        raise EmptyInputError("Abundance table has no samples")
    x = counts.astype(float)
    detected = (x >= detection) if include_lowest else (x > detection)
    # NaN compares False: unmeasured cells count as absent but stay in the denominator
    return detected.sum(axis=1) / counts.shape[1]


def core_taxa(counts: pd.DataFrame, detection: float = DEFAULT_DETECTION,
              prevalence_threshold: float = DEFAULT_PREVALENCE,
              include_lowest: bool = False) -> List[str]:
    """
    Return taxa whose prevalence meets or exceeds the prevalence threshold.

    Args:
        counts: Abundance table (taxa x samples)
        detection: Detection threshold on the abundance scale
        prevalence_threshold: Minimum fraction of samples (inclusive, in [0, 1])
        include_lowest: Passed to prevalence()

    Returns:
        Taxon identifiers in table order

    Raises:
        ValueError: If prevalence_threshold is outside [0, 1]
        EmptyInputError: If no taxon survives the filter
    """
    if not 0.0 <= prevalence_threshold <= 1.0:
        raise ValueError(f"prevalence threshold must be in [0, 1], got {prevalence_threshold}")
    prev = prevalence(counts, detection=detection, include_lowest=include_lowest)
    keep = [str(t) for t in prev.index[prev >= prevalence_threshold]]
    logger.info(f"Core filter (detection={detection}, prevalence>={prevalence_threshold}) "
                f"kept {len(keep)}/{len(prev)} taxa")
    if not keep:
        raise EmptyInputError(
            f"No taxa pass prevalence >= {prevalence_threshold} at detection {detection}"
        )
    return keep


def clean_metadata_values(series: pd.Series, custom_missing_values: Optional[List[str]] = None) -> pd.Series:
    """
    Convert common "missing" indicators such as "Not collected" or "NA" to NaN.

    Args:
        series: Input pandas Series to clean
        custom_missing_values: Additional missing value indicators to treat as NaN

    Returns:
        Cleaned copy of the series
    """
    indicators = set(MISSING_INDICATORS)
    if custom_missing_values:
        indicators.update({v.lower().strip() for v in custom_missing_values})

    if pd.api.types.is_numeric_dtype(series):
        return series.copy()
    mask = series.astype(str).str.lower().str.strip().isin(indicators) & series.notna()
    cleaned = series.copy()
    if cleaned.dtype == 'bool':
        cleaned = cleaned.astype('object')
    cleaned.loc[mask] = np.nan
    return cleaned


def series_numeric_coerce(s: pd.Series) -> pd.Series:
    """Try numeric coercion without throwing off non-numeric columns."""
    if pd.api.types.is_numeric_dtype(s):
        return s
    coerced = pd.to_numeric(s, errors="coerce")
    # if at least half of non-null values convert, treat as numeric
    non_null = s.notna().sum()
    if non_null > 0 and coerced.notna().sum() >= 0.5 * non_null:
        return coerced
    return s
