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

from daa_kit.deseq import RESULT_COLUMNS, _safe_name, deseq_test, design_formula
from daa_kit.errors import AlignmentError, EmptyInputError
from daa_kit.models import ModelSpec


def _simulated(n_taxa=30, seed=21):
    rng = np.random.default_rng(seed)
    samples = [f"S{i}" for i in range(12)]
    condition = ['control'] * 6 + ['treated'] * 6
    mu = rng.uniform(50, 500, size=n_taxa)
    fold = np.ones(n_taxa)
    fold[:3] = 8.0
    rows = []
    for m, f in zip(mu, fold):
        means = np.r_[np.full(6, m), np.full(6, m * f)]
        # negative binomial with dispersion 0.1: n = 1/alpha, p = n / (n + mean)
        rows.append(rng.negative_binomial(10, 10 / (10 + means)))
    counts = pd.DataFrame(rows, index=[f"taxon_{i}" for i in range(n_taxa)], columns=samples)
    meta = pd.DataFrame({'condition': condition, 'depth': rng.uniform(0, 1, 12)}, index=samples)
    return counts, meta


def test_safe_name():
    assert _safe_name('body site') == 'body_site'
    assert _safe_name('2nd') == 'v_2nd'


def test_design_formula():
    spec = ModelSpec(predictors=('group', 'age'), interactions=(('group', 'age'),))
    names = {'group': 'group', 'age': 'age'}
    assert design_formula(spec, names) == '~group + age + group:age'


def test_deseq_detects_upregulated_taxa():
    counts, meta = _simulated()
    spec = ModelSpec(predictors=('condition',))
    res = deseq_test(counts, meta, spec)
    assert list(res.columns) == RESULT_COLUMNS
    assert list(res.index) == list(counts.index)
    up = res.loc[['taxon_0', 'taxon_1', 'taxon_2']]
    assert (up['log2FoldChange'] > 1.5).all()
    assert (up['padj'] < 0.01).all()
    assert set(res['padj'].nsmallest(3).index) == {'taxon_0', 'taxon_1', 'taxon_2'}


def test_deseq_explicit_contrast_flips_sign():
    counts, meta = _simulated()
    spec = ModelSpec(predictors=('condition',))
    res = deseq_test(counts, meta, spec, contrast=('condition', 'control', 'treated'))
    assert (res.loc[['taxon_0', 'taxon_1', 'taxon_2'], 'log2FoldChange'] < -1.5).all()


def test_deseq_taxa_subset_order():
    counts, meta = _simulated()
    order = ['taxon_5', 'taxon_0', 'taxon_20'] + [f"taxon_{i}" for i in range(21, 30)]
    res = deseq_test(counts, meta, ModelSpec(predictors=('condition',)), taxa=order)
    assert list(res.index) == order


def test_deseq_input_validation():
    counts, meta = _simulated()
    spec = ModelSpec(predictors=('condition',))
    with pytest.raises(ValueError, match="integer"):
        deseq_test(counts + 0.5, meta, spec)
    with pytest.raises(ValueError, match="integer"):
        deseq_test(counts - 1000, meta, spec)
    gappy = counts.astype(float)
    gappy.loc['taxon_1', 'S3'] = np.nan
    with pytest.raises(ValueError, match="complete"):
        deseq_test(gappy, meta, spec)
    with pytest.raises(AlignmentError):
        deseq_test(counts, meta.iloc[::-1], spec)
    with pytest.raises(EmptyInputError):
        deseq_test(counts, meta, spec, taxa=[])
    with pytest.raises(ValueError, match="numeric"):
        deseq_test(counts, meta, ModelSpec(predictors=('depth',)))
    with pytest.raises(ValueError, match="not a predictor"):
        deseq_test(counts, meta, spec, contrast=('depth', 'a', 'b'))
