"""
Per-feature model fitting with fallback.

:func:`fit_feature` is the per-feature boundary of the pipeline: it decides
whether a feature is fit at all, walks the fallback chain of the requested
model family, and always returns a :class:`FeatureFit`. No exception
raised while fitting one feature escapes it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from .config import ModelSpec
from .design import Design
from .diagnostics import sparse_levels
from .families import ModelFamily, traits
from .model import ModelFit, fit_model

logger = logging.getLogger(__name__)


class FitStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TermEstimate:
    """Estimate for one design term of one feature."""

    metadata: str
    value: str
    coef: float
    stderr: float
    pval: float


@dataclass(frozen=True)
class FeatureFit:
    """Outcome of fitting one feature."""

    feature: str
    #: position of the feature in the input table
    index: int
    status: FitStatus
    model_requested: ModelFamily
    #: family that produced the estimates (last family tried on failure)
    model_used: Optional[ModelFamily]
    converged: bool
    terms: tuple[TermEstimate, ...]
    n: int
    n_not_zero: int
    note: str = ""
    #: (family, outcome) for every family attempted
    attempts: tuple[tuple[str, str], ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is FitStatus.OK


def _nan_terms(design: Design) -> tuple[TermEstimate, ...]:
    return tuple(
        TermEstimate(t.metadata, t.value, np.nan, np.nan, np.nan) for t in design.terms
    )


def _terms_from_fit(fit: ModelFit, design: Design) -> tuple[TermEstimate, ...]:
    out = []
    for col, label in zip(design.term_columns, design.terms):
        out.append(
            TermEstimate(
                metadata=label.metadata,
                value=label.value,
                coef=float(fit.params[col]),
                stderr=float(fit.bse[col]),
                pval=float(fit.pvalues[col]),
            )
        )
    return tuple(out)


def skipped_fit(
    feature: str,
    index: int,
    spec: ModelSpec,
    reason: str,
    n: int = 0,
    n_not_zero: int = 0,
) -> FeatureFit:
    """A :class:`FeatureFit` for a feature that was not fit."""
    return FeatureFit(
        feature=feature,
        index=index,
        status=FitStatus.SKIPPED,
        model_requested=spec.base_model,
        model_used=None,
        converged=False,
        terms=(),
        n=n,
        n_not_zero=n_not_zero,
        note=reason,
    )


def failed_fit(
    feature: str,
    index: int,
    design: Design,
    spec: ModelSpec,
    reason: str,
    n: int = 0,
    n_not_zero: int = 0,
    model_used: Optional[ModelFamily] = None,
    attempts: tuple[tuple[str, str], ...] = (),
) -> FeatureFit:
    """A :class:`FeatureFit` for a feature whose every fit attempt failed."""
    return FeatureFit(
        feature=feature,
        index=index,
        status=FitStatus.FAILED,
        model_requested=spec.base_model,
        model_used=model_used,
        converged=False,
        terms=_nan_terms(design),
        n=n,
        n_not_zero=n_not_zero,
        note=reason,
        attempts=attempts,
    )


def skip_reason(y: np.ndarray, spec: ModelSpec) -> Optional[str]:
    """Reason a response should not be fit, or None."""
    if y.size == 0:
        return "no observations"
    if not np.all(np.isfinite(y)):
        return "non-finite values"
    if np.all(y == y[0]):
        return "zero variance"
    n_not_zero = int(np.count_nonzero(y))
    if n_not_zero < spec.min_nonzero:
        return f"only {n_not_zero} non-zero observations (minimum {spec.min_nonzero})"
    return None


def fit_feature(
    feature: str,
    index: int,
    y: np.ndarray,
    design: Design,
    offset: np.ndarray,
    spec: ModelSpec,
) -> FeatureFit:
    """Fit one feature, falling back along the model family chain.

    Parameters
    ----------
    feature : str
        Feature ID.
    index : int
        Position of the feature in the input table.
    y : np.ndarray
        Response for this feature, aligned to the design rows.
    design : Design
        Shared fixed-effect design.
    offset : np.ndarray
        Per-sample offsets.
    spec : ModelSpec
        Model specification.

    Returns
    -------
    FeatureFit
        ``SKIPPED`` for degenerate responses, ``OK`` with the family that
        converged, or ``FAILED`` once the fallback chain is exhausted.
    """
    y = np.asarray(y, dtype=float)
    n = int(y.size)
    n_not_zero = int(np.count_nonzero(y))

    reason = skip_reason(y, spec)
    if reason is not None:
        logger.debug(f"{feature}: skipped ({reason})")
        return skipped_fit(feature, index, spec, reason, n, n_not_zero)

    notes = []
    flagged = sparse_levels(y, design.level_masks)
    if flagged:
        notes.append("fewer than 2 distinct non-zero values in " + ", ".join(flagged))

    attempts: list[tuple[str, str]] = []
    family = None
    for family in spec.chain:
        if traits(family).requires_positive and n_not_zero <= design.X.shape[1]:
            attempts.append((family.value, "too few positive observations"))
            continue
        try:
            fit = fit_model(
                family,
                y,
                design.X,
                offset,
                design.groups,
                power=spec.tweedie_power,
                standardize=spec.standardize,
                max_iter=spec.max_iter,
            )
        except Exception as e:
            attempts.append((family.value, f"{type(e).__name__}: {e}"))
            logger.debug(f"{feature}: {family.value} raised {type(e).__name__}: {e}")
            continue

        if not fit.converged:
            detail = "; ".join(fit.warnings) if fit.warnings else "did not converge"
            attempts.append((family.value, f"not converged ({detail})"))
            logger.debug(f"{feature}: {family.value} did not converge")
            continue

        attempts.append((family.value, "converged"))
        if family is not spec.base_model:
            notes.append(f"fallback from {spec.base_model.value} to {family.value}")
        return FeatureFit(
            feature=feature,
            index=index,
            status=FitStatus.OK,
            model_requested=spec.base_model,
            model_used=family,
            converged=True,
            terms=_terms_from_fit(fit, design),
            n=n,
            n_not_zero=n_not_zero,
            note="; ".join(notes),
            attempts=tuple(attempts),
        )

    summary = " | ".join(f"{fam}: {outcome}" for fam, outcome in attempts)
    notes.append(f"all model families failed ({summary})")
    return failed_fit(
        feature,
        index,
        design,
        spec,
        "; ".join(notes),
        n=n,
        n_not_zero=n_not_zero,
        model_used=family,
        attempts=tuple(attempts),
    )
