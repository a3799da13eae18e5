import sys
import pathlib
import tempfile
import pandas as pd
import numpy as np
import pytest

# Ensure project src/ is on sys.path for imports when running tests locally
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / 'src'
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from daa_kit.errors import EmptyInputError, IncompleteDataError
from daa_kit.fdr import add_adjusted, add_bh, adjust_pvalues


def test_adjust_pvalues_bh_known_values():
    """BH on a small list, checked by hand."""
    p = pd.Series([0.01, 0.04, 0.03, 0.5], index=['a', 'b', 'c', 'd'])
    q = adjust_pvalues(p)
    assert list(q.index) == ['a', 'b', 'c', 'd']
    assert np.allclose(q.values, [0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.5])


def test_adjust_pvalues_monotone_in_rank():
    """Adjusted values never decrease along ascending raw p-values and never fall below them."""
    rng = np.random.default_rng(0)
    p = pd.Series(rng.uniform(size=200))
    q = adjust_pvalues(p)
    order = np.argsort(p.values)
    assert (np.diff(q.values[order]) >= -1e-12).all()
    assert (q.values >= p.values - 1e-12).all()


def test_adjust_pvalues_max_maps_to_itself():
    p = [0.2, 0.01, 0.73, 0.05]
    q = adjust_pvalues(p)
    assert q.iloc[2] == pytest.approx(0.73)


def test_adjust_pvalues_empty():
    with pytest.raises(EmptyInputError):
        adjust_pvalues([])


def test_adjust_pvalues_propagates_missing():
    """NaN stays NaN and is left out of the number of tests."""
    q = adjust_pvalues([0.01, np.nan, 0.04])
    assert np.isnan(q.iloc[1])
    assert q.iloc[0] == pytest.approx(0.02)
    assert q.iloc[2] == pytest.approx(0.04)


def test_adjust_pvalues_raise_policy():
    with pytest.raises(IncompleteDataError):
        adjust_pvalues([0.01, np.nan], missing='raise')
    # complete columns are fine under the strict policy
    q = adjust_pvalues([0.01, 0.02], missing='raise')
    assert q.notna().all()


def test_adjust_pvalues_all_missing():
    q = adjust_pvalues([np.nan, np.nan])
    assert q.isna().all()


def test_adjust_pvalues_bad_arguments():
    with pytest.raises(ValueError):
        adjust_pvalues([0.1], missing='ignore')
    with pytest.raises(ValueError):
        adjust_pvalues([0.1, 0.2], method='not_a_method')


def test_adjust_pvalues_bonferroni():
    q = adjust_pvalues([0.01, 0.2, 0.5], method='bonferroni')
    assert np.allclose(q.values, [0.03, 0.6, 1.0])


def test_add_adjusted_inserts_columns():
    res = pd.DataFrame({
        't_test_pvalue': [0.01, 0.02, np.nan],
        't_test_effect': [1.0, 2.0, np.nan],
        'wilcoxon_pvalue': [0.1, 0.2, 0.3],
    }, index=pd.Index(['x', 'y', 'z'], name='taxon'))
    out = add_adjusted(res)
    cols = list(out.columns)
    assert cols.index('t_test_padj') == cols.index('t_test_pvalue') + 1
    assert cols.index('wilcoxon_padj') == cols.index('wilcoxon_pvalue') + 1
    assert np.isnan(out.loc['z', 't_test_padj'])
    # input is untouched
    assert 't_test_padj' not in res.columns


def test_add_adjusted_no_pvalue_columns():
    with pytest.raises(EmptyInputError):
        add_adjusted(pd.DataFrame({'x': [1.0]}))


def test_add_bh_basic():
    """Test add_bh with basic p-values."""
    df = pd.DataFrame({
        'test': ['PERMANOVA', 'RDA', 'PERMANOVA', 'RDA'],
        'pvalue': [0.01, 0.05, 0.1, 0.5],
    })

    with tempfile.TemporaryDirectory() as tmp:
        infile = pathlib.Path(tmp) / 'in.tsv'
        outfile = pathlib.Path(tmp) / 'out.tsv'
        df.to_csv(infile, sep='\t', index=False)

        add_bh(str(infile), str(outfile))

        result_df = pd.read_csv(outfile, sep='\t')
        assert 'qvalue_bh' in result_df.columns
        assert 'significant_bh_0.05' in result_df.columns
        sorted_df = result_df.sort_values('pvalue')
        assert (sorted_df['qvalue_bh'].diff().dropna() >= 0).all()


def test_add_bh_keeps_missing_empty():
    df = pd.DataFrame({'pvalue': [0.01, np.nan, 0.03]})
    with tempfile.TemporaryDirectory() as tmp:
        infile = pathlib.Path(tmp) / 'in.tsv'
        outfile = pathlib.Path(tmp) / 'out.tsv'
        df.to_csv(infile, sep='\t', index=False)
        add_bh(str(infile), str(outfile))
        result_df = pd.read_csv(outfile, sep='\t')
        assert pd.isna(result_df.loc[1, 'qvalue_bh'])
        assert not result_df.loc[1, 'significant_bh_0.05']


def test_add_bh_custom_pcol_guess():
    """Test add_bh with custom p-value column names."""
    df = pd.DataFrame({'custom_pval': [0.01, 0.05, 0.1]})
    with tempfile.TemporaryDirectory() as tmp:
        infile = pathlib.Path(tmp) / 'in.tsv'
        outfile = pathlib.Path(tmp) / 'out.tsv'
        df.to_csv(infile, sep='\t', index=False)
        add_bh(str(infile), str(outfile), pcol_guess=('custom_pval',))
        assert 'qvalue_bh' in pd.read_csv(outfile, sep='\t').columns

        with pytest.raises(RuntimeError):
            add_bh(str(infile), str(outfile), pcol_guess=('pvalue',))
