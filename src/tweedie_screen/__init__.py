"""
tweedie-screen: per-feature differential abundance for count matrices.

Every feature (gene, taxon, ...) of a samples x features count table is fit
independently with a count-regression model against a set of covariates,
falling back to simpler model families when a fit does not converge. Effect
sizes are collected into one table and corrected for multiple testing.

Modules
-------
config
    Immutable model specification and its validation.
families
    Registry of model families and their fallback chain.
preprocess
    Sample alignment, library sizes, offsets and feature filtering.
design
    Shared fixed-effect design matrix with reference-level coding.
model
    Single-feature fitters built on statsmodels.
fitter
    Per-feature fitting with fallback.
runner
    Parallel execution and the end-to-end pipeline.
stats
    Result aggregation and FDR correction.
diagnostics
    Dispersion estimation and sparsity checks.
io
    Table loading and result writing.

Example
-------
>>> import tweedie_screen as ts
>>> counts = ts.load_feature_table("data/counts.tsv")
>>> meta = ts.load_metadata("data/metadata.tsv")
>>> spec = ts.ModelSpec(fixed_effects=("diagnosis",), reference={"diagnosis": "nonIBD"})
>>> result = ts.analyze(counts, meta, spec)
"""

__version__ = "0.1.0"

# config
from .config import ModelSpec

# diagnostics
from .diagnostics import (
    estimate_alpha_nb2_moments,
    sparse_levels,
    tweedie_zero_probability,
    zero_fraction,
)

# design
from .design import (
    Design,
    TermLabel,
    build_design,
)

# errors
from .errors import (
    EmptyIntersectionError,
    FatalConfigError,
    MissingOffsetDataError,
    PerFeatureFitFailure,
    TweedieScreenError,
)

# families
from .families import (
    FAMILY_TRAITS,
    FamilyTraits,
    ModelFamily,
    fallback_chain,
    parse_family,
)

# fitter
from .fitter import (
    FeatureFit,
    FitStatus,
    TermEstimate,
    fit_feature,
)

# io
from .io import (
    load_feature_table,
    load_metadata,
    write_results,
)

# model
from .model import (
    ModelFit,
    fit_model,
)

# preprocess
from .preprocess import (
    AlignedData,
    align_samples,
    filter_features,
    library_size,
    resolve_offsets,
)

# runner
from .runner import (
    AnalysisResult,
    analyze,
    run_features,
)

# stats
from .stats import (
    adjust_pvalues,
    assemble_results,
    bh_fdr,
    sort_results,
)

__all__ = [
    # config
    "ModelSpec",
    # diagnostics
    "estimate_alpha_nb2_moments",
    "sparse_levels",
    "tweedie_zero_probability",
    "zero_fraction",
    # design
    "Design",
    "TermLabel",
    "build_design",
    # errors
    "EmptyIntersectionError",
    "FatalConfigError",
    "MissingOffsetDataError",
    "PerFeatureFitFailure",
    "TweedieScreenError",
    # families
    "FAMILY_TRAITS",
    "FamilyTraits",
    "ModelFamily",
    "fallback_chain",
    "parse_family",
    # fitter
    "FeatureFit",
    "FitStatus",
    "TermEstimate",
    "fit_feature",
    # io
    "load_feature_table",
    "load_metadata",
    "write_results",
    # model
    "ModelFit",
    "fit_model",
    # preprocess
    "AlignedData",
    "align_samples",
    "filter_features",
    "library_size",
    "resolve_offsets",
    # runner
    "AnalysisResult",
    "analyze",
    "run_features",
    # stats
    "adjust_pvalues",
    "assemble_results",
    "bh_fdr",
    "sort_results",
]
