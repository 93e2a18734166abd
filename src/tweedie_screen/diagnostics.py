"""
Per-feature diagnostics and dispersion estimation.

Functions
---------
estimate_alpha_nb2_moments
    Estimate NB2 dispersion parameter using method of moments.
tweedie_zero_probability
    Probability of an exact zero under a compound Poisson distribution.
zero_fraction
    Fraction of zero observations per feature.
sparse_levels
    Categorical levels with too few distinct non-zero values.
"""
from __future__ import annotations

from typing import Iterable

import numpy as np
import pandas as pd


def estimate_alpha_nb2_moments(y: np.ndarray, mu: np.ndarray) -> float:
    """Estimate NB2 dispersion parameter using method of moments.

    Estimates the dispersion parameter alpha for the NB2 (quadratic)
    parameterization where Var(Y) = mu + alpha * mu^2.

    The estimator solves: sum((y - mu)^2 - mu) = alpha * sum(mu^2)

    Parameters
    ----------
    y : np.ndarray
        Observed counts.
    mu : np.ndarray
        Fitted mean values from the model.

    Returns
    -------
    float
        Estimated alpha, clipped to be non-negative.

    Notes
    -----
    Alpha = 0 corresponds to Poisson (no overdispersion).
    Larger alpha indicates more overdispersion.

    Examples
    --------
    >>> y = np.array([10, 20, 5, 15])
    >>> mu = np.array([12, 18, 7, 14])
    >>> alpha = estimate_alpha_nb2_moments(y, mu)
    """
    mu = np.clip(mu, 1e-9, None)
    num = np.sum((y - mu) ** 2 - mu)
    den = np.sum(mu**2)
    alpha = num / max(den, 1e-12)
    return float(max(alpha, 0.0))


def tweedie_zero_probability(mu: np.ndarray, phi: float, power: float) -> np.ndarray:
    """Probability of an exact zero under a Tweedie (compound Poisson) law.

    For 1 < p < 2 the Tweedie distribution is a Poisson sum of Gamma
    variables with Poisson rate ``lambda = mu^(2-p) / (phi * (2-p))``, so
    ``P(Y = 0) = exp(-lambda)``.

    Parameters
    ----------
    mu : np.ndarray
        Mean of the distribution.
    phi : float
        Dispersion.
    power : float
        Variance power, strictly between 1 and 2.

    Returns
    -------
    np.ndarray
        Zero probabilities, same shape as ``mu``.
    """
    mu = np.clip(np.asarray(mu, dtype=float), 1e-12, None)
    phi = max(float(phi), 1e-12)
    lam = mu ** (2.0 - power) / (phi * (2.0 - power))
    return np.exp(-lam)


def zero_fraction(features: pd.DataFrame) -> pd.Series:
    """Compute the fraction of zero counts per feature.

    Parameters
    ----------
    features : pd.DataFrame
        Samples x features count table.

    Returns
    -------
    pd.Series
        Fraction of zeros for each feature (values between 0 and 1).

    Examples
    --------
    >>> counts = pd.DataFrame({"g1": [0, 10, 0, 5], "g2": [1, 0, 3, 0]})
    >>> zero_fraction(counts)
    g1    0.5
    g2    0.5
    dtype: float64
    """
    return (features == 0).mean(axis=0)


def sparse_levels(
    y: np.ndarray,
    level_masks: Iterable[tuple[str, str, np.ndarray]],
    min_distinct: int = 2,
) -> list[str]:
    """Categorical levels with fewer than ``min_distinct`` distinct non-zero values.

    Returns labels of the form ``"covariate=level"``.
    """
    flagged = []
    for col, level, mask in level_masks:
        vals = y[mask]
        if np.unique(vals[vals != 0]).size < min_distinct:
            flagged.append(f"{col}={level}")
    return flagged
