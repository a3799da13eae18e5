import argparse
import logging
import pathlib
import sys
from typing import List, Optional, Sequence

import pandas as pd

from .community import DEFAULT_METRIC, DEFAULT_PERMUTATIONS, permanova_test, rda_test
from .deseq import deseq_test
from .errors import DAAError
from .fdr import DEFAULT_METHOD, add_bh
from .files import ensure_dir, read_abundance, read_metadata, write_results
from .filter import DEFAULT_DETECTION
from .models import FAMILIES, ModelSpec
from .pipeline import align_samples, run_pipeline
from .stattests import TESTS, StatTest, get_test, glm_test
from .summarize import DEFAULT_ALPHA, summarize_results
from .transforms import DEFAULT_TRANSFORM, TRANSFORMS

logger = logging.getLogger(__name__)


def _parse_interactions(items: Optional[Sequence[str]]) -> List[tuple]:
    out = []
    for item in items or []:
        parts = tuple(p.strip() for p in item.split(':') if p.strip())
        if len(parts) < 2:
            raise ValueError(f"Interaction must look like 'a:b', got {item!r}")
        out.append(parts)
    return out


def _model_spec(args: argparse.Namespace) -> ModelSpec:
    return ModelSpec(
        predictors=(args.group, *args.covariates),
        interactions=tuple(_parse_interactions(args.interactions)),
        family=args.glm_family,
        categorical=(args.group,),
        test_term=args.group,
    )


def _build_tests(args: argparse.Namespace) -> List[StatTest]:
    tests = []
    for name in args.tests:
        if name == 'glm':
            tests.append(glm_test(_model_spec(args)))
        else:
            tests.append(get_test(name))
    return tests


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description='Per-taxon differential abundance tests with multiple-testing correction'
    )
    ap.add_argument('--counts', required=True, help='TSV abundance table: taxa rows, sample columns')
    ap.add_argument('--metadata', required=True, help='TSV sample metadata (first column = sample id)')
    ap.add_argument('--group', required=True, help='metadata column with the grouping factor')
    ap.add_argument('--out', required=True, help='output directory')
    ap.add_argument('--sample-col', default=None, help='metadata column with sample ids (default: first)')
    ap.add_argument('--tests', nargs='+', default=['t_test', 'wilcoxon'],
                    choices=sorted(TESTS) + ['glm'], help='per-taxon tests to run')
    ap.add_argument('--transform', default=DEFAULT_TRANSFORM, choices=sorted(TRANSFORMS),
                    help=f'transform applied before parametric tests (default {DEFAULT_TRANSFORM})')
    ap.add_argument('--covariates', nargs='*', default=[], help='extra predictors for the GLM')
    ap.add_argument('--interactions', nargs='*', default=[], help="GLM interaction terms such as 'group:sex'")
    ap.add_argument('--glm-family', choices=FAMILIES, default='gaussian', help='GLM distribution family')
    ap.add_argument('--prevalence', type=float, default=None,
                    help='keep taxa detected in at least this fraction of samples')
    ap.add_argument('--detection', type=float, default=DEFAULT_DETECTION,
                    help='abundance a taxon must exceed to count as detected')
    ap.add_argument('--method', default=DEFAULT_METHOD, help='statsmodels multipletests method')
    ap.add_argument('--missing', choices=['propagate', 'raise'], default='propagate',
                    help='what correction does with missing raw p-values')
    ap.add_argument('--alpha', type=float, default=DEFAULT_ALPHA, help='significance threshold for summaries')
    ap.add_argument('--workers', type=int, default=1, help='threads for the per-taxon loop')
    ap.add_argument('--deseq', action='store_true', help='also run DESeq2 on the group factor')
    ap.add_argument('--reference', default=None, help='reference level of the group for DESeq2')
    ap.add_argument('--permanova', action='store_true', help='also run PERMANOVA on the group factor')
    ap.add_argument('--metric', default=DEFAULT_METRIC, help='beta-diversity metric for PERMANOVA')
    ap.add_argument('--rda', nargs='+', default=None, help='predictors for a permutation-tested RDA')
    ap.add_argument('--permutations', type=int, default=DEFAULT_PERMUTATIONS, help='permutations for PERMANOVA/RDA')
    ap.add_argument('--seed', type=int, default=None, help='random seed for permutations')
    ap.add_argument('--missing-values', nargs='*', default=None,
                    help='additional metadata values to treat as missing')
    return ap


def _run_deseq(counts: pd.DataFrame, meta: pd.DataFrame, args: argparse.Namespace,
               out_dir: pathlib.Path) -> None:
    spec = ModelSpec(predictors=(args.group, *args.covariates), categorical=(args.group,),
                     family='negative_binomial', test_term=args.group)
    contrast = None
    if args.reference is not None:
        levels = sorted(meta[args.group].dropna().astype(str).unique())
        others = [lv for lv in levels if lv != args.reference]
        if args.reference not in levels or len(others) != 1:
            raise ValueError(f"--reference must be one of two levels of '{args.group}': {levels}")
        contrast = (args.group, others[0], args.reference)
    res = deseq_test(counts, meta, spec, contrast=contrast, alpha=args.alpha)
    write_results(res, str(out_dir / 'deseq.tsv'))


def _run_community(counts: pd.DataFrame, meta: pd.DataFrame, args: argparse.Namespace,
                   out_dir: pathlib.Path) -> None:
    rows = []
    if args.permanova:
        rows.append(permanova_test(counts, meta, args.group, metric=args.metric,
                                   permutations=args.permutations, seed=args.seed))
    if args.rda:
        res = rda_test(counts, meta, args.rda, permutations=args.permutations, seed=args.seed)
        res.pop('ordination')
        rows.append(res)
    master = out_dir / 'community.tsv'
    pd.DataFrame(rows).to_csv(master, sep='\t', index=False)
    add_bh(str(master), str(out_dir / 'community.fdr.tsv'))
    logger.info(f"Community tests written to {master}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Entry point for daa-run.

    Steps:
    1. Load abundance and metadata TSVs and pair their samples
    2. Optionally keep core taxa (prevalence filter)
    3. Run the per-taxon tests and correct each p-value column
    4. Optionally run DESeq2, PERMANOVA and RDA
    5. Write results.tsv, summary.tsv and any extra tables to --out

    Returns:
        Process exit status (1 when a pipeline stage fails)
    """
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    args = build_parser().parse_args(argv)

    out_dir = pathlib.Path(args.out)
    ensure_dir(out_dir)
    logger.info(f"Output directory: {out_dir}")

    try:
        counts = read_abundance(args.counts)
        meta = read_metadata(args.metadata, sample_col=args.sample_col, missing_values=args.missing_values)
        counts, meta = align_samples(counts, meta)

        results = run_pipeline(
            counts, meta, args.group, _build_tests(args),
            transform=args.transform, covariates=args.covariates,
            prevalence=args.prevalence, detection=args.detection,
            method=args.method, missing=args.missing, n_workers=args.workers,
        )
        write_results(results, str(out_dir / 'results.tsv'))
        summary = summarize_results(results, alpha=args.alpha)
        summary.to_csv(out_dir / 'summary.tsv', sep='\t', index=False)
        for _, r in summary.iterrows():
            logger.info(f"[{r['test']}] {r['n_significant']} / {r['n_tested']} taxa significant "
                        f"({r['n_failed']} not computable)")

        if args.deseq:
            _run_deseq(counts.loc[results.index], meta, args, out_dir)
        if args.permanova or args.rda:
            _run_community(counts, meta, args, out_dir)
    except (DAAError, RuntimeError, ValueError, KeyError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
