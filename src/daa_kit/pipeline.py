"""
Per-taxon testing pipeline.

For every requested taxon the abundance row is paired with the sample
metadata, each test is applied independently, and the outputs are collected
into one results table indexed by taxon, in the requested order. Multiple
testing correction runs once all raw p-values are in.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .errors import AlignmentError, EmptyInputError, PartialResultError
from .fdr import DEFAULT_METHOD, add_adjusted
from .filter import DEFAULT_DETECTION, core_taxa
from .models import RESPONSE_COL
from .stattests import StatTest, TaxonData, get_test
from .transforms import Transform, get_transform

logger = logging.getLogger(__name__)

TestLike = Union[str, StatTest]


def check_alignment(counts: pd.DataFrame, metadata: pd.DataFrame) -> None:
    """
    Require abundance columns and metadata index to hold the same samples in the same order.

    Raises:
        AlignmentError: On duplicates, missing samples, or a different order
    """
    cols = [str(c) for c in counts.columns]
    rows = [str(i) for i in metadata.index]
    if len(set(cols)) != len(cols):
        raise AlignmentError("Duplicate sample identifiers in abundance table")
    if len(set(rows)) != len(rows):
        raise AlignmentError("Duplicate sample identifiers in metadata")
    if cols == rows:
        return
    only_counts = sorted(set(cols) - set(rows))
    only_meta = sorted(set(rows) - set(cols))
    if only_counts or only_meta:
        raise AlignmentError(
            f"Sample sets differ: {len(only_counts)} only in abundance table {only_counts[:5]}, "
            f"{len(only_meta)} only in metadata {only_meta[:5]}"
        )
    pos = next(i for i, (a, b) in enumerate(zip(cols, rows)) if a != b)
    raise AlignmentError(
        f"Sample order differs at position {pos}: abundance has '{cols[pos]}', metadata has '{rows[pos]}'"
    )


def align_samples(counts: pd.DataFrame, metadata: pd.DataFrame,
                  how: str = 'intersection') -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Explicitly pair abundance columns with metadata rows.

    Args:
        counts: Abundance table (taxa x samples)
        metadata: Sample metadata indexed by sample id
        how: 'intersection' keeps shared samples in abundance-table order;
            'reorder' requires identical sample sets and reorders metadata

    Returns:
        (counts, metadata) copies with matching sample order
    """
    if how not in ('intersection', 'reorder'):
        raise ValueError(f"how must be 'intersection' or 'reorder', got {how!r}")
    counts = counts.copy()
    metadata = metadata.copy()
    counts.columns = counts.columns.astype(str)
    metadata.index = metadata.index.astype(str)
    if how == 'reorder':
        if set(counts.columns) != set(metadata.index) or len(counts.columns) != len(metadata.index):
            check_alignment(counts, metadata)
        metadata = metadata.loc[list(counts.columns)]
    else:
        keep = [s for s in counts.columns if s in set(metadata.index)]
        dropped = len(counts.columns) - len(keep)
        if dropped or len(metadata) != len(keep):
            logger.info(f"Aligned {len(keep)} shared samples "
                        f"({dropped} abundance-only, {len(metadata) - len(keep)} metadata-only dropped)")
        if not keep:
            raise AlignmentError("No shared samples between abundance table and metadata")
        counts = counts[keep]
        metadata = metadata.loc[keep]
    check_alignment(counts, metadata)
    return counts, metadata


def _resolve_tests(tests: Sequence[TestLike]) -> List[StatTest]:
    resolved = [get_test(t) if isinstance(t, str) else t for t in tests]
    if not resolved:
        raise ValueError("No tests requested")
    names = [t.name for t in resolved]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate test names: {names}")
    return resolved


def _resolve_taxa(counts: pd.DataFrame, taxa: Optional[Sequence[str]]) -> List[str]:
    if taxa is None:
        taxa = list(counts.index)
    taxa = list(taxa)
    if not taxa:
        raise EmptyInputError("No taxa to test")
    if len(set(taxa)) != len(taxa):
        raise ValueError("Duplicate taxon identifiers requested")
    missing = [t for t in taxa if t not in counts.index]
    if missing:
        raise KeyError(f"Taxa not in abundance table: {missing[:5]}")
    return taxa


def _test_taxon(taxon: str, raw: pd.Series, transformed: pd.Series, meta: pd.DataFrame,
                group_col: str, tests: List[StatTest]) -> Dict[str, object]:
    row: Dict[str, object] = {"n_samples": int(raw.notna().sum())}
    for test in tests:
        frame = meta.copy()
        frame[RESPONSE_COL] = transformed if test.uses_transform else raw
        frame = frame.dropna(subset=[RESPONSE_COL, group_col])
        data = TaxonData(taxon=taxon, frame=frame, group_col=group_col)
        try:
            res = test(data)
            row.update({f"{test.name}_pvalue": res.pvalue,
                        f"{test.name}_effect": res.effect,
                        f"{test.name}_error": np.nan})
            continue
        except PartialResultError as e:
            err = PartialResultError(str(e), taxon=taxon, test=test.name)
        except Exception as e:
            err = PartialResultError(f"{type(e).__name__}: {e}", taxon=taxon, test=test.name)
        logger.warning(f"Test failed, recording missing result: {err}")
        row.update({f"{test.name}_pvalue": np.nan,
                    f"{test.name}_effect": np.nan,
                    f"{test.name}_error": str(err)})
    return row


def run_tests(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    group_col: str,
    tests: Sequence[TestLike],
    *,
    taxa: Optional[Sequence[str]] = None,
    transform: Union[str, Transform, None] = None,
    covariates: Sequence[str] = (),
    n_workers: int = 1,
) -> pd.DataFrame:
    """
    Apply each test to each taxon and collect raw p-values and effects.

    Args:
        counts: Abundance table (taxa x samples); not modified
        metadata: Sample metadata indexed by sample id, same order as counts columns
        group_col: Grouping column in metadata
        tests: Registered test names or StatTest objects
        taxa: Taxa to test, in output order (default: all, in table order)
        transform: Applied to the whole table before tests with uses_transform
        covariates: Extra metadata columns carried into each test's frame
        n_workers: Threads for the per-taxon loop (1 = sequential)

    Returns:
        DataFrame indexed by taxon with n_samples and <test>_pvalue,
        <test>_effect, <test>_error columns

    Raises:
        AlignmentError: If counts and metadata samples do not match exactly
        EmptyInputError: If no taxa are requested
    """
    check_alignment(counts, metadata)
    tests = _resolve_tests(tests)
    taxa = _resolve_taxa(counts, taxa)

    cols: List[str] = []
    for c in [group_col, *covariates, *(c for t in tests for c in t.columns)]:
        if c not in cols:
            cols.append(c)
    absent = [c for c in cols if c not in metadata.columns]
    if absent:
        raise KeyError(f"Metadata columns not found: {absent}")
    if RESPONSE_COL in cols:
        raise ValueError(f"Metadata column name '{RESPONSE_COL}' is reserved for abundances")
    meta = metadata[cols].copy()
    meta.index = counts.columns

    raw = counts.astype(float)
    transformed = get_transform(transform)(raw) if any(t.uses_transform for t in tests) else raw

    logger.info(f"Testing {len(taxa)} taxa x {len(tests)} tests "
                f"({', '.join(t.name for t in tests)}) on '{group_col}'")
    rows: Dict[str, Dict[str, object]] = {}
    if n_workers > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as ex:
            fut2taxon = {
                ex.submit(_test_taxon, t, raw.loc[t], transformed.loc[t], meta, group_col, tests): t
                for t in taxa
            }
            for fut in as_completed(fut2taxon):
                rows[fut2taxon[fut]] = fut.result()
    else:
        for t in taxa:
            rows[t] = _test_taxon(t, raw.loc[t], transformed.loc[t], meta, group_col, tests)

    out = pd.DataFrame.from_records([rows[t] for t in taxa], index=pd.Index(taxa, name='taxon'))
    n_failed = {t.name: int(out[f"{t.name}_pvalue"].isna().sum()) for t in tests}
    logger.info(f"Finished {len(taxa)} taxa; missing results per test: {n_failed}")
    return out


def run_pipeline(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    group_col: str,
    tests: Sequence[TestLike],
    *,
    taxa: Optional[Sequence[str]] = None,
    transform: Union[str, Transform, None] = None,
    covariates: Sequence[str] = (),
    prevalence: Optional[float] = None,
    detection: float = DEFAULT_DETECTION,
    include_lowest: bool = False,
    method: str = DEFAULT_METHOD,
    missing: str = 'propagate',
    n_workers: int = 1,
) -> pd.DataFrame:
    """
    Optional core-taxa filter, per-taxon tests, then correction per test column.

    With prevalence set, only requested taxa passing core_taxa() are tested
    (requested order kept). Returns the results table with <test>_padj columns.
    """
    check_alignment(counts, metadata)
    if prevalence is not None:
        pool = counts if taxa is None else counts.loc[list(taxa)]
        core = set(core_taxa(pool, detection=detection, prevalence_threshold=prevalence,
                             include_lowest=include_lowest))
        taxa = [t for t in pool.index if str(t) in core]
    results = run_tests(counts, metadata, group_col, tests, taxa=taxa, transform=transform,
                        covariates=covariates, n_workers=n_workers)
    return add_adjusted(results, method=method, missing=missing)
