"""
Community-composition tests: PERMANOVA on beta-diversity distances and
permutation-tested redundancy analysis (RDA).
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform
from skbio import DistanceMatrix
from skbio.stats.distance import permanova
from skbio.stats.ordination import rda

from .errors import EmptyInputError
from .pipeline import check_alignment
from .transforms import Transform, get_transform

logger = logging.getLogger(__name__)

# ----------------- constants -----------------
DEFAULT_METRIC = "braycurtis"
DEFAULT_PERMUTATIONS = 999
DEFAULT_RDA_TRANSFORM = "hellinger"
# Minimum samples for a distance-based test (4 needed for df > 0 in most tests)
MIN_SAMPLES_DISTANCE_TEST = 4


def beta_distances(counts: pd.DataFrame, metric: str = DEFAULT_METRIC,
                   transform: Union[str, Transform, None] = None) -> DistanceMatrix:
    """
    Pairwise sample distances as a scikit-bio DistanceMatrix.

    Args:
        counts: Abundance table (taxa x samples)
        metric: Any scipy.spatial.distance metric (braycurtis, jaccard, euclidean, ...)
        transform: Optional transform applied to the table first

    Raises:
        ValueError: If the table has missing values or a distance is undefined
    """
    table = get_transform(transform)(counts) if transform is not None else counts.astype(float)
    if table.isna().any().any():
        raise ValueError("Distance calculation requires a complete table")
    X = table.T.to_numpy(dtype=float)
    if metric == "jaccard":
        X = X > 0
    with np.errstate(invalid="ignore", divide="ignore"):
        D = squareform(pdist(X, metric=metric))
    if not np.all(np.isfinite(D)):
        raise ValueError(f"Undefined {metric} distances (empty samples?)")
    return DistanceMatrix(D, ids=[str(s) for s in counts.columns])


def _complete_samples(metadata: pd.DataFrame, columns: Sequence[str]) -> List[str]:
    absent = [c for c in columns if c not in metadata.columns]
    if absent:
        raise KeyError(f"Metadata columns not found: {absent}")
    keep = metadata.dropna(subset=list(columns)).index.astype(str).tolist()
    if len(keep) < MIN_SAMPLES_DISTANCE_TEST:
        raise EmptyInputError(f"Only {len(keep)} samples with complete metadata "
                              f"(need {MIN_SAMPLES_DISTANCE_TEST})")
    return keep


def permanova_test(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    group_col: str,
    *,
    metric: str = DEFAULT_METRIC,
    transform: Union[str, Transform, None] = None,
    permutations: int = DEFAULT_PERMUTATIONS,
    seed: Optional[int] = None,
) -> Dict[str, object]:
    """
    PERMANOVA of community composition against one grouping column.

    Samples with a missing group label are left out.

    Returns:
        Dictionary with test, metric, stat (pseudo-F), pvalue, permutations,
        n_samples, n_groups
    """
    check_alignment(counts, metadata)
    keep = _complete_samples(metadata, [group_col])
    meta = metadata.set_axis(metadata.index.astype(str))
    dm = beta_distances(counts, metric=metric, transform=transform).filter(keep)
    grouping = meta.loc[keep, group_col].astype(str)
    if grouping.nunique() < 2:
        raise EmptyInputError(f"'{group_col}' has fewer than 2 groups among complete samples")

    res = permanova(dm, grouping=grouping.to_numpy(), permutations=permutations, seed=seed)
    logger.info(f"PERMANOVA ({metric}) on '{group_col}': F={res['test statistic']:.4f}, "
                f"p={res['p-value']}")
    return {
        "test": "PERMANOVA",
        "metric": metric,
        "term": group_col,
        "stat": float(res["test statistic"]),
        "pvalue": float(res["p-value"]),
        "permutations": int(permutations),
        "n_samples": int(res["sample size"]),
        "n_groups": int(res["number of groups"]),
    }


def design_matrix(metadata: pd.DataFrame, predictors: Sequence[str]) -> pd.DataFrame:
    """Numeric explanatory matrix: factors become treatment-coded dummies."""
    parts = []
    for p in predictors:
        col = metadata[p]
        if pd.api.types.is_numeric_dtype(col) and not pd.api.types.is_bool_dtype(col):
            parts.append(col.astype(float).rename(p))
        else:
            dummies = pd.get_dummies(col.astype(str), prefix=p, drop_first=True, dtype=float)
            if dummies.shape[1] == 0:
                raise ValueError(f"Predictor '{p}' has a single level")
            parts.append(dummies)
    return pd.concat(parts, axis=1)


def _constrained_fraction(Y: np.ndarray, X: np.ndarray) -> float:
    """Share of total variance in centred Y explained by a least-squares fit on centred X."""
    beta, *_ = np.linalg.lstsq(X, Y, rcond=None)
    fitted = X @ beta
    total = float(np.sum(Y ** 2))
    return float(np.sum(fitted ** 2)) / total if total > 0 else np.nan


def _pseudo_f(r2: float, q: int, n: int) -> float:
    if not np.isfinite(r2) or r2 >= 1.0:
        return np.inf if r2 >= 1.0 else np.nan
    return (r2 / q) / ((1.0 - r2) / (n - q - 1))


def rda_test(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    predictors: Sequence[str],
    *,
    transform: Union[str, Transform, None] = DEFAULT_RDA_TRANSFORM,
    permutations: int = DEFAULT_PERMUTATIONS,
    seed: Optional[int] = None,
) -> Dict[str, object]:
    """
    Redundancy analysis of the (transformed) community on the predictors.

    Significance of the whole constrained model is assessed by permuting
    sample rows of the explanatory matrix, with the +1 correction.

    Returns:
        Dictionary with test, terms, r2 (constrained fraction), stat
        (pseudo-F), pvalue, permutations, n_samples, df_model and the
        scikit-bio OrdinationResults under 'ordination'
    """
    check_alignment(counts, metadata)
    predictors = list(predictors)
    if not predictors:
        raise ValueError("RDA needs at least one predictor")
    keep = _complete_samples(metadata, predictors)
    meta = metadata.set_axis(metadata.index.astype(str)).loc[keep]
    table = get_transform(transform)(counts.set_axis(counts.columns.astype(str), axis=1)[keep])
    if table.isna().any().any():
        raise ValueError("RDA requires a complete table")

    Ydf = table.T
    Xdf = design_matrix(meta, predictors)
    Y = Ydf.to_numpy(dtype=float)
    Y = Y - Y.mean(axis=0)
    X = Xdf.to_numpy(dtype=float)
    X = X - X.mean(axis=0)
    # model df is the rank of the centred constraints; aliased columns add nothing
    n, q = X.shape[0], int(np.linalg.matrix_rank(X))
    if q == 0:
        raise ValueError(f"Predictors {predictors} do not vary across samples")
    if q < X.shape[1]:
        logger.warning(f"RDA design has {X.shape[1]} columns but rank {q}; aliased columns ignored")
    if n - q - 1 <= 0:
        raise EmptyInputError(f"Not enough samples ({n}) for {q} independent explanatory columns")
    r2 = _constrained_fraction(Y, X)
    if not np.isfinite(r2):
        raise EmptyInputError("Community table has no variance")
    obs_F = _pseudo_f(r2, q, n)

    rng = np.random.default_rng(seed)
    exceed = 0
    for _ in range(permutations):
        perm_F = _pseudo_f(_constrained_fraction(Y, X[rng.permutation(n)]), q, n)
        if np.isfinite(perm_F) and perm_F >= obs_F:
            exceed += 1
    pvalue = (exceed + 1) / (permutations + 1)

    ordination = rda(Ydf, Xdf, scale_Y=False, scaling=1)
    logger.info(f"RDA on {predictors}: R2={r2:.4f}, F={obs_F:.4f}, p={pvalue:.4g} ({permutations} perms)")
    return {
        "test": "RDA",
        "terms": "+".join(predictors),
        "r2": float(r2),
        "stat": float(obs_F),
        "pvalue": float(pvalue),
        "permutations": int(permutations),
        "n_samples": int(n),
        "df_model": int(q),
        "ordination": ordination,
    }
