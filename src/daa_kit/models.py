"""
Structured model specifications and per-taxon GLM fitting.

A ModelSpec replaces free-form formula strings: callers name the response,
predictors, interaction terms and distribution family, and the spec renders
the statsmodels formula itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf

from .errors import AlignmentError, EmptyInputError, PartialResultError
from .transforms import Transform, get_transform

logger = logging.getLogger(__name__)

RESPONSE_COL = 'abundance'
FAMILIES = ('gaussian', 'poisson', 'negative_binomial', 'binomial')
DEFAULT_MAXITER = 200


@dataclass(frozen=True)
class ModelSpec:
    """
    Declarative model configuration.

    Attributes:
        predictors: Metadata columns used as main effects
        interactions: Tuples of predictor names combined as interaction terms
        family: One of gaussian, poisson, negative_binomial, binomial
            (binomial models presence/absence, abundance > 0)
        categorical: Predictors forced to be treated as factors; non-numeric
            columns are always factors
        test_term: Predictor whose coefficient is reported as the effect
            (defaults to the first predictor)
        response: Name of the response column in the per-taxon frame
    """
    predictors: Tuple[str, ...]
    interactions: Tuple[Tuple[str, ...], ...] = ()
    family: str = 'gaussian'
    categorical: Tuple[str, ...] = ()
    test_term: Optional[str] = None
    response: str = RESPONSE_COL

    def __post_init__(self):
        object.__setattr__(self, 'predictors', tuple(self.predictors))
        object.__setattr__(self, 'interactions', tuple(tuple(t) for t in self.interactions))
        object.__setattr__(self, 'categorical', tuple(self.categorical))
        if not self.predictors:
            raise ValueError("ModelSpec needs at least one predictor")
        if len(set(self.predictors)) != len(self.predictors):
            raise ValueError(f"Duplicate predictors: {self.predictors}")
        if self.family not in FAMILIES:
            raise ValueError(f"family must be one of {FAMILIES}, got {self.family!r}")
        for term in self.interactions:
            if len(term) < 2:
                raise ValueError(f"Interaction needs at least two predictors: {term}")
            missing = [p for p in term if p not in self.predictors]
            if missing:
                raise ValueError(f"Interaction {term} uses non-predictors {missing}")
        bad_cat = [c for c in self.categorical if c not in self.predictors]
        if bad_cat:
            raise ValueError(f"categorical names {bad_cat} are not predictors")
        if self.test_term is None:
            object.__setattr__(self, 'test_term', self.predictors[0])
        elif self.test_term not in self.predictors:
            raise ValueError(f"test_term {self.test_term!r} is not a predictor")
        if self.response in self.predictors:
            raise ValueError(f"response {self.response!r} cannot also be a predictor")

    @property
    def uses_counts(self) -> bool:
        """Non-gaussian families model raw abundances; gaussian models transformed values.

        binomial models presence/absence (abundance > 0) of the raw counts.
        """
        return self.family != 'gaussian'

    def term_expr(self, name: str, frame: Optional[pd.DataFrame] = None) -> str:
        quoted = f'Q("{name}")'
        if self.is_categorical(name, frame):
            return f'C({quoted})'
        return quoted

    def is_categorical(self, name: str, frame: Optional[pd.DataFrame] = None) -> bool:
        if name in self.categorical:
            return True
        if frame is None or name not in frame.columns:
            return False
        return not pd.api.types.is_numeric_dtype(frame[name]) or pd.api.types.is_bool_dtype(frame[name])

    def formula(self, frame: Optional[pd.DataFrame] = None) -> str:
        """Render the formula; frame dtypes decide which predictors are factors."""
        terms = [self.term_expr(p, frame) for p in self.predictors]
        terms += [':'.join(self.term_expr(p, frame) for p in inter) for inter in self.interactions]
        return f'Q("{self.response}") ~ ' + ' + '.join(terms)

    def columns(self) -> List[str]:
        return list(self.predictors)


def _family(name: str):
    if name == 'gaussian':
        return sm.families.Gaussian()
    if name == 'poisson':
        return sm.families.Poisson()
    if name == 'binomial':
        return sm.families.Binomial()
    raise ValueError(f"No GLM family object for {name!r}")


def fit_glm(frame: pd.DataFrame, spec: ModelSpec):
    """
    Fit one model to a per-sample frame holding the response and predictors.

    negative_binomial uses statsmodels' discrete NegativeBinomial model so the
    dispersion is estimated per taxon; the other families use GLM.

    Raises:
        PartialResultError: If the frame cannot support the model
    """
    needed = [spec.response] + spec.columns()
    missing = [c for c in needed if c not in frame.columns]
    if missing:
        raise PartialResultError(f"columns missing for model: {missing}")
    data = frame[needed].dropna()
    if spec.family == 'binomial':
        data = data.assign(**{spec.response: (data[spec.response] > 0).astype(float)})
    if len(data) <= len(spec.predictors) + 1:
        raise PartialResultError(f"too few complete observations ({len(data)}) for model")
    for name in spec.predictors:
        if spec.is_categorical(name, data) and data[name].nunique() < 2:
            raise PartialResultError(f"predictor '{name}' has fewer than 2 levels")
    if data[spec.response].nunique() < 2:
        what = "presence/absence" if spec.family == 'binomial' else "response"
        raise PartialResultError(f"{what} is constant")

    formula = spec.formula(data)
    logger.debug(f"Fitting {spec.family} model: {formula}")
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        if spec.family == 'negative_binomial':
            return smf.negativebinomial(formula, data=data).fit(disp=0, maxiter=DEFAULT_MAXITER)
        return smf.glm(formula, data=data, family=_family(spec.family)).fit(maxiter=DEFAULT_MAXITER)


def term_coefficient(result, spec: ModelSpec, frame: Optional[pd.DataFrame] = None) -> Tuple[str, float, float]:
    """
    Return (name, coefficient, p-value) for the first coefficient of spec.test_term.

    Interaction coefficients are skipped; for a factor this is the first
    non-reference level.

    Raises:
        PartialResultError: If no coefficient belongs to the term
    """
    expr = spec.term_expr(spec.test_term, frame)
    for name in result.params.index:
        if ':' in name:
            continue
        if name == expr or name.startswith(expr + '['):
            coef = float(result.params[name])
            pval = float(result.pvalues[name])
            if not np.isfinite(pval):
                raise PartialResultError(f"non-finite p-value for term {name}")
            return name, coef, pval
    raise PartialResultError(f"no coefficient for term '{spec.test_term}'")


def _taxon_frame(values: pd.Series, metadata: pd.DataFrame, spec: ModelSpec) -> pd.DataFrame:
    frame = metadata[spec.columns()].copy()
    frame[spec.response] = values.astype(float)
    return frame.dropna(subset=[spec.response])


def glm_coefficients(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    spec: ModelSpec,
    taxa: Optional[Sequence[str]] = None,
    transform: Union[str, Transform, None] = None,
) -> pd.DataFrame:
    """
    Fit spec to every taxon and return all coefficients in long format.

    Args:
        counts: Abundance table (taxa x samples)
        metadata: Sample metadata indexed by sample id, aligned with counts columns
        spec: Model specification
        taxa: Taxa to fit (default: all, in table order)
        transform: Applied to the table first for gaussian models; count
            families always use raw abundances

    Returns:
        DataFrame with columns taxon, term, coef, std_err, pvalue, error.
        Failed fits contribute one row with NaNs and the error text.
    """
    if list(counts.columns) != list(metadata.index):
        raise AlignmentError("Abundance columns and metadata index differ")
    taxa = list(counts.index) if taxa is None else list(taxa)
    if not taxa:
        raise EmptyInputError("No taxa to fit")
    table = counts.loc[taxa]
    if not spec.uses_counts:
        table = get_transform(transform)(table)

    rows: List[Dict[str, object]] = []
    for taxon in taxa:
        frame = _taxon_frame(table.loc[taxon], metadata, spec)
        try:
            res = fit_glm(frame, spec)
        except Exception as e:
            logger.warning(f"GLM failed for {taxon}: {e}")
            rows.append({"taxon": taxon, "term": np.nan, "coef": np.nan, "std_err": np.nan,
                         "pvalue": np.nan, "error": str(e)})
            continue
        for term in res.params.index:
            rows.append({
                "taxon": taxon,
                "term": term,
                "coef": float(res.params[term]),
                "std_err": float(res.bse[term]),
                "pvalue": float(res.pvalues[term]),
                "error": np.nan,
            })
    return pd.DataFrame(rows, columns=["taxon", "term", "coef", "std_err", "pvalue", "error"])
