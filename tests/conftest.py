"""Shared synthetic data for the test suite."""
import numpy as np
import pandas as pd
import pytest


def simulate_counts(
    n_samples: int = 50,
    n_features: int = 100,
    n_true: int = 10,
    effect: float = np.log(3.0),
    dispersion: float = 0.3,
    seed: int = 1,
):
    """Negative binomial counts with a binary group effect on the first ``n_true`` features."""
    rng = np.random.default_rng(seed)
    samples = [f"S{i:03d}" for i in range(n_samples)]
    group = np.where(np.arange(n_samples) % 2 == 0, "control", "case")
    lib = rng.uniform(0.5, 1.5, size=n_samples)

    base = rng.uniform(1.0, 4.0, size=n_features)
    beta = np.zeros(n_features)
    beta[:n_true] = effect

    mu = np.exp(base[None, :] + np.outer(group == "case", beta)) * lib[:, None]
    # NB2 via gamma-Poisson mixture
    shape = 1.0 / dispersion
    lam = rng.gamma(shape, mu / shape)
    counts = rng.poisson(lam)

    features = pd.DataFrame(
        counts,
        index=samples,
        columns=[f"F{j:03d}" for j in range(n_features)],
    )
    metadata = pd.DataFrame(
        {
            "group": group,
            "age": rng.normal(40, 10, size=n_samples).round(1),
            "subject": [f"P{i // 5}" for i in range(n_samples)],
        },
        index=samples,
    )
    return features, metadata


@pytest.fixture
def counts_and_meta():
    return simulate_counts()


@pytest.fixture
def small_counts_and_meta():
    return simulate_counts(n_samples=30, n_features=12, n_true=3, seed=7)
