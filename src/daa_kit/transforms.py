"""Abundance transforms applied to a taxa x samples table before parametric tests."""
from typing import Callable, Dict, Union

import numpy as np
import pandas as pd
from skbio.stats.composition import clr as _skbio_clr

Transform = Callable[[pd.DataFrame], pd.DataFrame]

DEFAULT_TRANSFORM = 'log1p'
DEFAULT_CLR_PSEUDOCOUNT = 1.0


def identity(counts: pd.DataFrame) -> pd.DataFrame:
    return counts.astype(float)


def log1p(counts: pd.DataFrame) -> pd.DataFrame:
    return np.log1p(counts.astype(float))


def log10p(counts: pd.DataFrame) -> pd.DataFrame:
    return np.log10(counts.astype(float) + 1.0)


def compositional(counts: pd.DataFrame) -> pd.DataFrame:
    """Per-sample relative abundance; all-zero samples stay zero."""
    x = counts.astype(float)
    totals = x.sum(axis=0, skipna=True)
    return x.div(totals.replace(0.0, np.nan), axis=1).fillna(0.0).where(counts.notna())


def hellinger(counts: pd.DataFrame) -> pd.DataFrame:
    return np.sqrt(compositional(counts))


def clr(counts: pd.DataFrame, pseudocount: float = DEFAULT_CLR_PSEUDOCOUNT) -> pd.DataFrame:
    """
    Centred log-ratio per sample, after adding a pseudocount to every cell.

    Raises:
        ValueError: If the table contains missing values or the pseudocount is not positive
    """
    if pseudocount <= 0:
        raise ValueError(f"pseudocount must be > 0, got {pseudocount}")
    if counts.isna().any().any():
        raise ValueError("clr requires a complete table (no missing abundances)")
    # skbio expects compositions as rows, i.e. samples x taxa
    mat = counts.T.to_numpy(dtype=float) + pseudocount
    out = np.asarray(_skbio_clr(mat))
    return pd.DataFrame(out.T, index=counts.index, columns=counts.columns)


TRANSFORMS: Dict[str, Transform] = {
    'identity': identity,
    'log1p': log1p,
    'log10p': log10p,
    'compositional': compositional,
    'hellinger': hellinger,
    'clr': clr,
}


def get_transform(name: Union[str, Transform, None]) -> Transform:
    """
    Resolve a transform by name; callables pass through and None means identity.

    Raises:
        ValueError: If the name is not a known transform
    """
    if name is None:
        return identity
    if callable(name):
        return name
    try:
        return TRANSFORMS[name]
    except KeyError:
        raise ValueError(f"Unknown transform '{name}'. Choose from: {sorted(TRANSFORMS)}") from None
