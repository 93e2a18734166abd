"""
Execution of per-feature fits and the end-to-end analysis pipeline.

Functions
---------
run_features
    Fit every feature, serially or on a process pool, in feature order.
analyze
    Align, normalize, fit and correct: the full differential-abundance run.

Classes
-------
AnalysisResult
    Result and skipped tables plus the per-feature fits.
"""
from __future__ import annotations

import logging
import multiprocessing
import os
import time
from dataclasses import dataclass
from multiprocessing import Pool
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .config import ModelSpec
from .design import Design, build_design
from .diagnostics import zero_fraction
from .errors import FatalConfigError
from .fitter import FeatureFit, FitStatus, failed_fit, fit_feature, skipped_fit
from .preprocess import align_samples, filter_features, resolve_offsets
from .stats import adjust_pvalues, assemble_results

logger = logging.getLogger(__name__)

# shared inputs installed once per worker process
_WORKER_CONTEXT: dict = {}
# seconds between checks on pooled fits
_POLL_INTERVAL = 0.05
# a dead worker's fit is declared lost once its result is this many seconds overdue
_CRASH_GRACE = 1.0


@dataclass(frozen=True)
class AnalysisResult:
    """Output of :func:`analyze`."""

    #: one row per (feature, term), original feature order
    results: pd.DataFrame
    #: one row per skipped feature
    skipped: pd.DataFrame
    #: per-feature fits in original feature order
    fits: tuple[FeatureFit, ...]
    spec: ModelSpec
    #: where the offsets came from: "column", "library_size" or "none"
    offset_source: str = "none"

    def summary(self) -> dict[str, int]:
        counts = {s.value: 0 for s in FitStatus}
        for fit in self.fits:
            counts[fit.status.value] += 1
        counts["fallback"] = sum(
            1 for f in self.fits if f.ok and f.model_used is not f.model_requested
        )
        return counts


def _init_worker(
    design: Design,
    offset: np.ndarray,
    spec: ModelSpec,
    started: multiprocessing.SimpleQueue,
) -> None:
    _WORKER_CONTEXT["design"] = design
    _WORKER_CONTEXT["offset"] = offset
    _WORKER_CONTEXT["spec"] = spec
    _WORKER_CONTEXT["started"] = started


def _mark_started(slot: int) -> None:
    """Report to the parent which worker process picked up ``slot``."""
    _WORKER_CONTEXT["started"].put((slot, os.getpid()))


def _guarded_fit(
    index: int,
    feature: str,
    y: np.ndarray,
    design: Design,
    offset: np.ndarray,
    spec: ModelSpec,
) -> FeatureFit:
    try:
        return fit_feature(feature, index, y, design, offset, spec)
    except Exception as e:
        logger.error(f"Unexpected error fitting {feature}: {e}")
        return failed_fit(feature, index, design, spec, f"{type(e).__name__}: {e}", n=len(y))


def _fit_task(slot: int, index: int, feature: str, y: np.ndarray) -> FeatureFit:
    """Fit one feature inside a worker process."""
    _mark_started(slot)
    ctx = _WORKER_CONTEXT
    return _guarded_fit(index, feature, y, ctx["design"], ctx["offset"], ctx["spec"])


def _log_progress(done: int, total: int) -> None:
    step = max(1, total // 10)
    if done % step == 0 or done == total:
        logger.info(f"Fitted {done:,} / {total:,} features")


def _pool_round(
    slots: list[int],
    names: list[str],
    indices: Sequence[int],
    values: np.ndarray,
    design: Design,
    offset: np.ndarray,
    spec: ModelSpec,
    n_workers: int,
    fits: list[Optional[FeatureFit]],
    done: int,
) -> tuple[list[int], int]:
    """Fit ``slots`` on a fresh pool, writing into ``fits``.

    A fit whose worker process dies, or that runs past ``spec.timeout``, is
    recorded as failed. A timed-out worker cannot be reclaimed, so the pool
    is torn down and the unfinished slots are returned for another round.

    Returns
    -------
    remaining : list of int
        Slots still to fit (empty unless a fit timed out).
    done : int
        Updated count of finished features.
    """
    total = len(fits)

    def lost(j: int, reason: str) -> FeatureFit:
        return failed_fit(
            names[j],
            indices[j],
            design,
            spec,
            reason,
            n=design.n_samples,
            n_not_zero=int(np.count_nonzero(values[:, j])),
        )

    started = multiprocessing.SimpleQueue()
    with Pool(
        processes=n_workers,
        initializer=_init_worker,
        initargs=(design, offset, spec, started),
    ) as pool:
        pending = {
            j: pool.apply_async(_fit_task, (j, indices[j], names[j], values[:, j].copy()))
            for j in slots
        }
        # slot -> (worker pid, start time)
        running: dict[int, tuple[int, float]] = {}
        dead_since: dict[int, float] = {}

        while pending:
            while not started.empty():
                j, pid = started.get()
                running[j] = (pid, time.monotonic())
            alive = {p.pid for p in multiprocessing.active_children()}
            now = time.monotonic()
            timed_out = False

            for j in list(pending):
                result = pending[j]
                if result.ready():
                    try:
                        fits[j] = result.get()
                    except Exception as e:
                        logger.error(f"Worker failed on {names[j]}: {e}")
                        fits[j] = lost(j, f"{type(e).__name__}: {e}")
                elif j not in running:
                    continue
                elif running[j][0] not in alive:
                    if now - dead_since.setdefault(j, now) < _CRASH_GRACE:
                        continue
                    logger.error(f"Worker process died while fitting {names[j]}")
                    fits[j] = lost(j, "worker process died during the fit")
                elif spec.timeout is not None and now - running[j][1] > spec.timeout:
                    logger.warning(f"{names[j]}: fit exceeded {spec.timeout}s and was abandoned")
                    fits[j] = lost(j, f"timed out after {spec.timeout}s")
                    timed_out = True
                else:
                    continue
                del pending[j]
                done += 1
                _log_progress(done, total)

            if timed_out:
                return sorted(pending), done
            if pending:
                time.sleep(_POLL_INTERVAL)
    return [], done


def run_features(
    features: pd.DataFrame,
    design: Design,
    offset: np.ndarray,
    spec: ModelSpec,
    indices: Optional[Sequence[int]] = None,
) -> list[FeatureFit]:
    """Fit every column of ``features`` and return the fits in column order.

    Parameters
    ----------
    features : pd.DataFrame
        Samples x features table aligned to the design rows.
    design : Design
        Shared fixed-effect design.
    offset : np.ndarray
        Per-sample offsets.
    spec : ModelSpec
        Model specification; ``worker_count`` sets the pool size and
        ``timeout`` the per-feature time limit for pooled runs.
    indices : sequence of int, optional
        Original positions of the columns; defaults to ``0..n-1``.

    Returns
    -------
    list of FeatureFit
        One fit per feature, in the order of ``features.columns``.

    Notes
    -----
    A feature whose fit raises, kills its worker process or exceeds the
    timeout is returned as a failed fit; the other features are unaffected.
    The timeout is counted from the moment a worker picks the feature up.
    """
    names = [str(c) for c in features.columns]
    if indices is None:
        indices = list(range(len(names)))
    values = features.to_numpy(dtype=float)
    total = len(names)
    n_workers = min(int(spec.worker_count), max(total, 1))

    fits: list[Optional[FeatureFit]] = [None] * total
    if n_workers <= 1:
        logger.info(f"Fitting {total:,} features serially")
        for j, (idx, name) in enumerate(zip(indices, names)):
            fits[j] = _guarded_fit(idx, name, values[:, j].copy(), design, offset, spec)
            _log_progress(j + 1, total)
        return fits

    logger.info(f"Fitting {total:,} features on {n_workers} worker processes")
    remaining, done = list(range(total)), 0
    while remaining:
        remaining, done = _pool_round(
            remaining, names, indices, values, design, offset, spec, n_workers, fits, done
        )
        if remaining:
            logger.info(f"Restarting worker pool for {len(remaining):,} unfinished features")
    return fits


def _check_counts(features: pd.DataFrame) -> pd.DataFrame:
    try:
        features = features.apply(pd.to_numeric, errors="raise").astype(float)
    except (ValueError, TypeError) as e:
        raise FatalConfigError(f"Feature table must be numeric: {e}") from e
    if (features < 0).to_numpy().any():
        raise FatalConfigError("Feature table contains negative values")
    return features


def analyze(
    features: pd.DataFrame,
    metadata: pd.DataFrame,
    spec: ModelSpec,
    features_as_rows: bool = False,
) -> AnalysisResult:
    """Run per-feature differential-abundance analysis.

    Parameters
    ----------
    features : pd.DataFrame
        Count table, samples x features (features x samples when
        ``features_as_rows`` is True).
    metadata : pd.DataFrame
        Sample metadata indexed by sample ID.
    spec : ModelSpec
        Model specification.
    features_as_rows : bool, default False
        Orientation of ``features``.

    Returns
    -------
    AnalysisResult
        Result table with q-values, skipped table and per-feature fits.

    Raises
    ------
    FatalConfigError
        If the specification does not match the metadata (raised before
        any feature is fit).
    EmptyIntersectionError
        If the tables share no samples.
    MissingOffsetDataError
        If offsets are requested but cannot be computed.

    Examples
    --------
    >>> spec = ModelSpec(fixed_effects=("diagnosis",), reference={"diagnosis": "control"})
    >>> out = analyze(counts, meta, spec)
    >>> out.results.head()
    """
    aligned = align_samples(features, metadata, features_as_rows=features_as_rows)
    spec.validate(aligned.metadata)
    counts = _check_counts(aligned.features)
    logger.info(
        f"Analyzing {counts.shape[1]:,} features across {counts.shape[0]} samples "
        f"with base model {spec.base_model.value} "
        f"(chain: {' -> '.join(f.value for f in spec.chain)})"
    )
    logger.info(f"Median zero fraction across features: {float(zero_fraction(counts).median()):.2f}")

    offset, offset_source = resolve_offsets(counts, aligned.metadata, spec)
    design = build_design(aligned.metadata, spec)

    kept, removed = filter_features(counts, spec.min_total_count, spec.min_prevalence)
    position = {name: i for i, name in enumerate(counts.columns)}

    fits = run_features(
        counts[kept], design, offset, spec, indices=[position[f] for f in kept]
    )
    for feat, reason in removed.items():
        col = counts[feat]
        fits.append(
            skipped_fit(feat, position[feat], spec, reason, len(col), int((col != 0).sum()))
        )
    fits.sort(key=lambda f: f.index)

    results, skipped = assemble_results(fits)
    results = adjust_pvalues(results, spec.correction)

    out = AnalysisResult(
        results=results,
        skipped=skipped,
        fits=tuple(fits),
        spec=spec,
        offset_source=offset_source,
    )
    summary = out.summary()
    logger.info(
        f"Done: {summary['ok']} fitted ({summary['fallback']} via fallback), "
        f"{summary['failed']} failed, {summary['skipped']} skipped"
    )
    return out
