"""
Per-taxon statistical test adapters.

Every adapter takes a TaxonData (one taxon's values next to the sample
metadata) and returns a StatResult. The numerical work is delegated to
scipy and statsmodels; adapters only check the group structure and raise
PartialResultError when a test is undefined for the taxon.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from .errors import PartialResultError
from .models import RESPONSE_COL, ModelSpec, fit_glm, term_coefficient

MIN_OBS_PARAMETRIC = 2
MIN_OBS_RANK = 1


@dataclass(frozen=True)
class StatResult:
    pvalue: float
    effect: float = np.nan
    statistic: float = np.nan


@dataclass
class TaxonData:
    """One taxon's abundance (column 'abundance') plus metadata, indexed by sample."""
    taxon: str
    frame: pd.DataFrame
    group_col: str

    @property
    def values(self) -> pd.Series:
        return self.frame[RESPONSE_COL]

    def levels(self) -> List[object]:
        """Group levels present, in categorical order if defined, else sorted."""
        g = self.frame[self.group_col]
        present = set(g.dropna().unique())
        if isinstance(g.dtype, pd.CategoricalDtype):
            return [c for c in g.cat.categories if c in present]
        return sorted(present, key=str)

    def groups(self) -> List[np.ndarray]:
        g = self.frame[self.group_col]
        return [self.values[g == lvl].to_numpy(dtype=float) for lvl in self.levels()]


@dataclass(frozen=True)
class StatTest:
    """
    A named test.

    Attributes:
        name: Column prefix in the results table
        func: Callable computing the result for one taxon
        uses_transform: Whether the pipeline's transform is applied before the call
        columns: Extra metadata columns the test needs besides the group column
    """
    name: str
    func: Callable[[TaxonData], StatResult]
    uses_transform: bool = True
    columns: Tuple[str, ...] = field(default_factory=tuple)

    def __call__(self, data: TaxonData) -> StatResult:
        return self.func(data)


def _finite(p: float, what: str) -> float:
    if p is None or not np.isfinite(p):
        raise PartialResultError(f"{what} returned a non-finite p-value")
    return float(p)


def _two_groups(data: TaxonData, min_n: int) -> Tuple[np.ndarray, np.ndarray]:
    levels = data.levels()
    if len(levels) != 2:
        raise PartialResultError(f"two-sample test needs exactly 2 groups, found {len(levels)}")
    x, y = data.groups()
    if len(x) < min_n or len(y) < min_n:
        raise PartialResultError(
            f"group sizes {len(x)}/{len(y)} below minimum {min_n} per group"
        )
    return x, y


def _k_groups(data: TaxonData, min_n: int) -> List[np.ndarray]:
    groups = data.groups()
    if len(groups) < 2:
        raise PartialResultError(f"test needs at least 2 groups, found {len(groups)}")
    if any(len(g) < min_n for g in groups):
        raise PartialResultError(f"a group has fewer than {min_n} observations")
    return groups


def welch_t(data: TaxonData) -> StatResult:
    """Welch two-sample t-test; effect is mean(second level) - mean(first level)."""
    x, y = _two_groups(data, MIN_OBS_PARAMETRIC)
    t_stat, p_val = stats.ttest_ind(x, y, equal_var=False)
    return StatResult(pvalue=_finite(p_val, "t-test"),
                      effect=float(np.mean(y) - np.mean(x)),
                      statistic=float(t_stat))


def wilcoxon_rank_sum(data: TaxonData) -> StatResult:
    """Two-sided Wilcoxon rank-sum (Mann-Whitney U); effect is the difference of medians."""
    x, y = _two_groups(data, MIN_OBS_RANK)
    u_stat, p_val = stats.mannwhitneyu(x, y, alternative='two-sided')
    return StatResult(pvalue=_finite(p_val, "Wilcoxon test"),
                      effect=float(np.median(y) - np.median(x)),
                      statistic=float(u_stat))


def kruskal_wallis(data: TaxonData) -> StatResult:
    groups = _k_groups(data, MIN_OBS_RANK)
    if len(np.unique(np.concatenate(groups))) < 2:
        raise PartialResultError("all values are identical")
    h_stat, p_val = stats.kruskal(*groups)
    return StatResult(pvalue=_finite(p_val, "Kruskal-Wallis"), statistic=float(h_stat))


def anova_oneway(data: TaxonData) -> StatResult:
    groups = _k_groups(data, MIN_OBS_PARAMETRIC)
    f_stat, p_val = stats.f_oneway(*groups)
    return StatResult(pvalue=_finite(p_val, "ANOVA"), statistic=float(f_stat))


def glm_test(spec: ModelSpec, name: str = 'glm') -> StatTest:
    """
    Build a test that fits spec per taxon and reports its test_term coefficient.

    Gaussian models see the transformed abundance; count families see raw counts.
    """
    def _run(data: TaxonData) -> StatResult:
        frame = data.frame
        if spec.response != RESPONSE_COL:
            frame = frame.rename(columns={RESPONSE_COL: spec.response})
        res = fit_glm(frame, spec)
        term, coef, pval = term_coefficient(res, spec, frame)
        return StatResult(pvalue=pval, effect=coef, statistic=float(res.tvalues[term]))

    return StatTest(name=name, func=_run, uses_transform=not spec.uses_counts,
                    columns=tuple(spec.predictors))


TESTS: Dict[str, StatTest] = {
    't_test': StatTest('t_test', welch_t, uses_transform=True),
    'wilcoxon': StatTest('wilcoxon', wilcoxon_rank_sum, uses_transform=False),
    'kruskal': StatTest('kruskal', kruskal_wallis, uses_transform=False),
    'anova': StatTest('anova', anova_oneway, uses_transform=True),
}


def get_test(name: str) -> StatTest:
    """
    Look up a registered test by name.

    Raises:
        ValueError: If the name is not registered
    """
    try:
        return TESTS[name]
    except KeyError:
        raise ValueError(f"Unknown test '{name}'. Choose from: {sorted(TESTS)}") from None
