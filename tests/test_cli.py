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

from daa_kit.cli import _model_spec, _parse_interactions, build_parser, main


def _inputs(tmp_path, seed=5):
    rng = np.random.default_rng(seed)
    samples = [f"S{i}" for i in range(12)]
    counts = pd.DataFrame(rng.poisson(30, size=(10, 12)),
                          index=[f"taxon_{i}" for i in range(10)], columns=samples)
    counts.iloc[0, 6:] += 80
    counts.iloc[9] = 0
    counts.index.name = 'taxon'
    # metadata rows deliberately shuffled; main() aligns them to the table
    meta = pd.DataFrame({
        'sample': samples[::-1],
        'group': (['ibd'] * 6 + ['healthy'] * 6),
        'age': rng.integers(20, 70, size=12),
    })
    counts_fp = tmp_path / 'counts.tsv'
    meta_fp = tmp_path / 'meta.tsv'
    counts.to_csv(counts_fp, sep='\t')
    meta.to_csv(meta_fp, sep='\t', index=False)
    return str(counts_fp), str(meta_fp)


def test_parse_interactions():
    assert _parse_interactions(['group:sex', 'a : b : c']) == [('group', 'sex'), ('a', 'b', 'c')]
    assert _parse_interactions(None) == []
    with pytest.raises(ValueError):
        _parse_interactions(['group'])


def test_model_spec_from_args():
    args = build_parser().parse_args([
        '--counts', 'c.tsv', '--metadata', 'm.tsv', '--group', 'group', '--out', 'o',
        '--covariates', 'age', 'sex', '--interactions', 'group:sex', '--glm-family', 'poisson',
    ])
    spec = _model_spec(args)
    assert spec.predictors == ('group', 'age', 'sex')
    assert spec.interactions == (('group', 'sex'),)
    assert spec.family == 'poisson'
    assert spec.test_term == 'group'
    assert 'group' in spec.categorical


def test_main_writes_results(tmp_path):
    counts_fp, meta_fp = _inputs(tmp_path)
    out = tmp_path / 'out'
    rc = main(['--counts', counts_fp, '--metadata', meta_fp, '--group', 'group',
               '--out', str(out), '--tests', 't_test', 'wilcoxon', 'glm',
               '--covariates', 'age', '--prevalence', '0.5', '--workers', '2'])
    assert rc == 0

    res = pd.read_csv(out / 'results.tsv', sep='\t', index_col=0)
    assert 'taxon_9' not in res.index
    assert len(res) == 9
    for test in ('t_test', 'wilcoxon', 'glm'):
        assert f'{test}_pvalue' in res.columns
        assert f'{test}_padj' in res.columns
    assert res['t_test_padj'].idxmin() == 'taxon_0'
    # S6..S11 carry the shift and are the 'ibd' samples once aligned
    assert res.loc['taxon_0', 't_test_effect'] > 0

    summary = pd.read_csv(out / 'summary.tsv', sep='\t')
    assert summary['test'].tolist() == ['t_test', 'wilcoxon', 'glm']


def test_main_community_outputs(tmp_path):
    counts_fp, meta_fp = _inputs(tmp_path)
    out = tmp_path / 'out'
    rc = main(['--counts', counts_fp, '--metadata', meta_fp, '--group', 'group',
               '--out', str(out), '--tests', 'wilcoxon', '--permanova', '--rda', 'group', 'age',
               '--permutations', '49', '--seed', '1'])
    assert rc == 0
    community = pd.read_csv(out / 'community.tsv', sep='\t')
    assert community['test'].tolist() == ['PERMANOVA', 'RDA']
    fdr = pd.read_csv(out / 'community.fdr.tsv', sep='\t')
    assert 'qvalue_bh' in fdr.columns
    assert (fdr['qvalue_bh'] >= fdr['pvalue']).all()


def test_main_bad_group_returns_error(tmp_path):
    counts_fp, meta_fp = _inputs(tmp_path)
    rc = main(['--counts', counts_fp, '--metadata', meta_fp, '--group', 'diet',
               '--out', str(tmp_path / 'out')])
    assert rc == 1
    assert not (tmp_path / 'out' / 'results.tsv').exists()


def test_main_missing_counts_file(tmp_path):
    _, meta_fp = _inputs(tmp_path)
    rc = main(['--counts', str(tmp_path / 'nope.tsv'), '--metadata', meta_fp,
               '--group', 'group', '--out', str(tmp_path / 'out')])
    assert rc == 1
