"""Negative-binomial (DESeq2) differential abundance through pydeseq2."""
from __future__ import annotations

import logging
import re
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from .errors import EmptyInputError
from .models import ModelSpec
from .pipeline import check_alignment

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.05
RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]


def _safe_name(name: str) -> str:
    safe = re.sub(r'\W+', '_', str(name))
    if not safe or safe[0].isdigit():
        safe = 'v_' + safe
    return safe


def design_formula(spec: ModelSpec, names: Dict[str, str]) -> str:
    """Render a DESeq2 design such as '~group + age + group:age' from a ModelSpec."""
    terms = [names[p] for p in spec.predictors]
    terms += [':'.join(names[p] for p in inter) for inter in spec.interactions]
    return '~' + ' + '.join(terms)


def _design_metadata(metadata: pd.DataFrame, spec: ModelSpec) -> Tuple[pd.DataFrame, Dict[str, str]]:
    names = {p: _safe_name(p) for p in spec.predictors}
    if len(set(names.values())) != len(names):
        raise ValueError(f"Predictor names collide after sanitising: {names}")
    meta = metadata[list(spec.predictors)].rename(columns=names)
    for p, safe in names.items():
        if spec.is_categorical(p, metadata):
            meta[safe] = meta[safe].astype(str)
    if meta.isna().any().any():
        raise ValueError("DESeq2 design variables must not contain missing values")
    return meta, names


def deseq_test(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    spec: ModelSpec,
    contrast: Optional[Sequence[str]] = None,
    *,
    taxa: Optional[Sequence[str]] = None,
    alpha: float = DEFAULT_ALPHA,
    refit_cooks: bool = True,
    n_cpus: int = 1,
) -> pd.DataFrame:
    """
    Run the DESeq2 negative-binomial Wald test for one contrast.

    Args:
        counts: Integer abundance table (taxa x samples)
        metadata: Sample metadata aligned with counts columns
        spec: Design; spec.family is ignored (DESeq2 is always negative binomial)
        contrast: (factor, tested level, reference level); defaults to
            spec.test_term with its last sorted level against the first
        taxa: Taxa to include (default: all); size factors are estimated on these
        alpha: Significance level used for independent filtering
        refit_cooks: Refit after replacing Cook's-distance outliers
        n_cpus: Worker processes used by pydeseq2

    Returns:
        DataFrame indexed by taxon (requested order) with baseMean,
        log2FoldChange, lfcSE, stat, pvalue, padj. Taxa pydeseq2 cannot test
        (e.g. all-zero) carry NaN.
    """
    check_alignment(counts, metadata)
    taxa = list(counts.index) if taxa is None else list(taxa)
    if not taxa:
        raise EmptyInputError("No taxa to test")
    table = counts.loc[taxa]
    if table.isna().any().any():
        raise ValueError("DESeq2 requires a complete count table (no missing values)")
    values = table.to_numpy(dtype=float)
    if (values < 0).any() or not np.all(np.equal(np.mod(values, 1), 0)):
        raise ValueError("DESeq2 requires non-negative integer counts")

    meta, names = _design_metadata(metadata, spec)
    if contrast is None:
        if not spec.is_categorical(spec.test_term, metadata):
            raise ValueError(f"Default contrast needs a categorical test term, '{spec.test_term}' is numeric")
        levels = sorted(meta[names[spec.test_term]].unique())
        if len(levels) < 2:
            raise ValueError(f"'{spec.test_term}' has fewer than 2 levels")
        contrast = (spec.test_term, levels[-1], levels[0])
    factor, tested, reference = contrast
    if factor not in names:
        raise ValueError(f"Contrast factor '{factor}' is not a predictor")
    contrast_safe = [names[factor], str(tested), str(reference)]

    design = design_formula(spec, names)
    logger.info(f"Running DESeq2 on {len(taxa)} taxa x {table.shape[1]} samples, "
                f"design {design}, contrast {contrast_safe}")
    inference = DefaultInference(n_cpus=n_cpus)
    dds = DeseqDataSet(
        counts=pd.DataFrame(values.T.astype(int), index=table.columns.astype(str),
                            columns=[str(t) for t in taxa]),
        metadata=meta.set_axis(table.columns.astype(str)),
        design=design,
        refit_cooks=refit_cooks,
        inference=inference,
        quiet=True,
    )
    dds.deseq2()
    stat_res = DeseqStats(dds, contrast=contrast_safe, alpha=alpha, inference=inference, quiet=True)
    stat_res.summary()

    res = stat_res.results_df.reindex([str(t) for t in taxa])
    res.index = pd.Index(taxa, name='taxon')
    for c in RESULT_COLUMNS:
        if c not in res.columns:
            res[c] = np.nan
    n_sig = int((res['padj'] <= alpha).sum())
    logger.info(f"DESeq2: {n_sig} / {int(res['padj'].notna().sum())} taxa with padj <= {alpha}")
    return res[RESULT_COLUMNS]
