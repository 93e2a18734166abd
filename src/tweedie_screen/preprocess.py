"""
Data preprocessing utilities.

This module reconciles the feature and metadata tables to a common set of
samples, computes library sizes and per-sample offsets, and filters
low-abundance features before model fitting.

Functions
---------
align_samples
    Restrict both tables to their shared samples, in metadata order.
library_size
    Compute per-sample total counts.
resolve_offsets
    Per-sample normalization offsets on the log-link scale.
filter_features
    Flag features below abundance or prevalence thresholds.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .config import ModelSpec
from .errors import EmptyIntersectionError, FatalConfigError, MissingOffsetDataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlignedData:
    """Feature and metadata tables sharing an identical sample index."""

    #: samples x features
    features: pd.DataFrame
    #: samples x covariates
    metadata: pd.DataFrame
    #: number of samples only present in the feature table
    dropped_features_only: int = 0
    #: number of samples only present in the metadata table
    dropped_metadata_only: int = 0

    @property
    def n_samples(self) -> int:
        return len(self.metadata.index)

    @property
    def n_features(self) -> int:
        return self.features.shape[1]


def _check_unique(index: pd.Index, what: str) -> None:
    dupes = index[index.duplicated()].unique()
    if len(dupes):
        raise FatalConfigError(f"{what} contains {len(dupes)} duplicated sample IDs")


def align_samples(
    features: pd.DataFrame,
    metadata: pd.DataFrame,
    features_as_rows: bool = False,
) -> AlignedData:
    """Restrict the feature and metadata tables to their shared samples.

    Parameters
    ----------
    features : pd.DataFrame
        Feature table, samples as rows (or as columns when
        ``features_as_rows`` is True).
    metadata : pd.DataFrame
        Metadata table indexed by sample ID.
    features_as_rows : bool, default False
        Set when the feature table is features x samples.

    Returns
    -------
    AlignedData
        Both tables restricted to the intersection, in metadata order.

    Raises
    ------
    EmptyIntersectionError
        If the two tables share no sample IDs.

    Examples
    --------
    >>> feats = pd.DataFrame({"g1": [1, 2, 3]}, index=["s1", "s2", "s3"])
    >>> meta = pd.DataFrame({"grp": ["a", "b"]}, index=["s3", "s1"])
    >>> aligned = align_samples(feats, meta)
    >>> list(aligned.features.index)
    ['s3', 's1']
    """
    if features_as_rows:
        features = features.T

    features = features.copy()
    metadata = metadata.copy()
    features.index = features.index.astype(str)
    features.columns = features.columns.astype(str)
    metadata.index = metadata.index.astype(str)

    _check_unique(features.index, "Feature table")
    _check_unique(metadata.index, "Metadata table")

    feature_samples = set(features.index)
    common = [s for s in metadata.index if s in feature_samples]
    if not common:
        raise EmptyIntersectionError(
            "Feature table and metadata share no sample IDs; check the orientation "
            "of the feature table and the sample ID columns."
        )

    common_set = set(common)
    dropped_features = int(sum(1 for s in features.index if s not in common_set))
    dropped_meta = int(len(metadata.index) - len(common))
    if dropped_features or dropped_meta:
        logger.warning(
            f"Dropped {dropped_features} samples only in the feature table and "
            f"{dropped_meta} samples only in the metadata; {len(common)} samples remain"
        )

    return AlignedData(
        features=features.loc[common],
        metadata=metadata.loc[common],
        dropped_features_only=dropped_features,
        dropped_metadata_only=dropped_meta,
    )


def library_size(features: pd.DataFrame) -> pd.Series:
    """Total counts per sample.

    Parameters
    ----------
    features : pd.DataFrame
        Samples x features count table.

    Returns
    -------
    pd.Series
        Library size indexed by sample ID.

    Raises
    ------
    MissingOffsetDataError
        If the table has no features or any total is not finite.
    """
    if features.shape[1] == 0 or features.shape[0] == 0:
        raise MissingOffsetDataError("Cannot compute library sizes from an empty feature table")
    lib = features.apply(pd.to_numeric, errors="coerce").sum(axis=1, min_count=1)
    lib = lib.rename("lib_size")
    if not np.all(np.isfinite(lib.to_numpy(dtype=float))):
        raise MissingOffsetDataError("Library sizes are not finite for every sample")
    return lib


def resolve_offsets(
    features: pd.DataFrame,
    metadata: pd.DataFrame,
    spec: ModelSpec,
) -> tuple[np.ndarray, str]:
    """Per-sample offsets for the model's linear predictor.

    - ``adjust_offset`` with the normalization column present: the column
      is used as-is (it is expected on the log-link scale).
    - ``adjust_offset`` without the column: log library size, with library
      sizes clipped to a minimum of 1.
    - ``adjust_offset`` disabled: zeros.

    Returns
    -------
    offset : np.ndarray
        Offset aligned to ``features.index``.
    source : str
        One of ``"column"``, ``"library_size"``, ``"none"``.
    """
    n = len(features.index)
    if not spec.adjust_offset:
        logger.info("Offsets disabled; no normalization term in the models")
        return np.zeros(n, dtype=float), "none"

    col = spec.normalization_column
    if col in metadata.columns:
        offset = pd.to_numeric(metadata.loc[features.index, col], errors="coerce")
        offset = offset.to_numpy(dtype=float)
        if not np.all(np.isfinite(offset)):
            raise MissingOffsetDataError(f"Normalization column '{col}' has non-finite values")
        logger.info(f"Using metadata column '{col}' as the per-sample offset")
        return offset, "column"

    lib = library_size(features)
    offset = np.log(lib.clip(lower=1).astype(float)).to_numpy()
    logger.info(
        f"No '{col}' column in metadata; using log library size "
        f"(median {float(np.median(lib)):,.0f} counts) as offset"
    )
    return offset, "library_size"


def filter_features(
    features: pd.DataFrame,
    min_total_count: float = 0.0,
    min_prevalence: float = 0.0,
) -> tuple[list[str], dict[str, str]]:
    """Flag features below minimum abundance or prevalence.

    Parameters
    ----------
    features : pd.DataFrame
        Samples x features count table.
    min_total_count : float, default 0
        Minimum count summed across samples.
    min_prevalence : float, default 0
        Minimum fraction of samples with a non-zero count.

    Returns
    -------
    kept : list of str
        Feature IDs passing both thresholds, in table order.
    removed : dict
        Feature ID -> reason for features that failed a threshold.

    Examples
    --------
    >>> counts = pd.DataFrame({"low": [1, 0, 0], "high": [10, 20, 5]})
    >>> kept, removed = filter_features(counts, min_total_count=5)
    >>> kept
    ['high']
    """
    totals = features.sum(axis=0)
    prevalence = (features > 0).mean(axis=0)

    kept: list[str] = []
    removed: dict[str, str] = {}
    for feat in features.columns:
        if totals[feat] < min_total_count:
            removed[feat] = f"total count {totals[feat]:g} below {min_total_count:g}"
        elif prevalence[feat] < min_prevalence:
            removed[feat] = f"prevalence {prevalence[feat]:.3f} below {min_prevalence:g}"
        else:
            kept.append(feat)

    if removed:
        logger.warning(f"Filtered {len(removed)} of {features.shape[1]} features before fitting")
    return kept, removed
