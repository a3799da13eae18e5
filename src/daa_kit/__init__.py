"""
daa-kit: Python toolkit for differential abundance testing of microbiome count tables.

This package provides tools for:
- Core-taxa (prevalence) filtering and abundance transforms
- Per-taxon t-tests, Wilcoxon rank-sum, Kruskal-Wallis, ANOVA and GLMs
- DESeq2 negative-binomial testing (pydeseq2)
- Community-level PERMANOVA and RDA (scikit-bio)
- Multiple-testing correction of every p-value column

Main entry point: daa-run CLI command
"""

from .errors import (
    AlignmentError,
    DAAError,
    EmptyInputError,
    IncompleteDataError,
    PartialResultError,
)
from .fdr import add_adjusted, adjust_pvalues
from .filter import core_taxa, prevalence
from .models import ModelSpec
from .pipeline import align_samples, run_pipeline, run_tests
from .stattests import TESTS, StatResult, StatTest, glm_test

__version__ = "0.1.0"
