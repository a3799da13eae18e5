import sys
import pathlib
import pandas as pd
import numpy as np
import pytest

# Ensure project src/ is on sys.path for imports when running tests locally
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / 'src'
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from daa_kit.transforms import (
    clr,
    compositional,
    get_transform,
    hellinger,
    identity,
    log10p,
    log1p,
)


def _counts():
    return pd.DataFrame([[1, 0, 9], [3, 0, 1]], index=['t1', 't2'], columns=['a', 'b', 'c'])


def test_log_transforms():
    counts = _counts()
    assert np.allclose(log1p(counts).values, np.log1p(counts.values))
    assert log10p(counts).loc['t1', 'c'] == pytest.approx(1.0)


def test_compositional_columns_sum_to_one():
    rel = compositional(_counts())
    assert rel['a'].sum() == pytest.approx(1.0)
    assert rel['c'].sum() == pytest.approx(1.0)
    # all-zero sample stays zero instead of NaN
    assert (rel['b'] == 0).all()


def test_hellinger_is_sqrt_relative():
    h = hellinger(_counts())
    assert h.loc['t1', 'a'] == pytest.approx(np.sqrt(0.25))


def test_clr_centres_each_sample():
    out = clr(_counts())
    assert out.shape == (2, 3)
    assert np.allclose(out.sum(axis=0).values, 0.0)
    with pytest.raises(ValueError):
        clr(_counts().astype(float).where(lambda d: d > 0))


def test_transforms_do_not_mutate_input():
    counts = _counts()
    before = counts.copy()
    for f in (identity, log1p, compositional, hellinger, clr):
        f(counts)
    pd.testing.assert_frame_equal(counts, before)


def test_get_transform():
    assert get_transform(None) is identity
    assert get_transform('log1p') is log1p
    custom = lambda df: df * 2  # noqa: E731
    assert get_transform(custom) is custom
    with pytest.raises(ValueError):
        get_transform('sqrt_of_nothing')
