"""Single-feature fitters."""
import numpy as np
import pytest

pytest.importorskip("statsmodels")

from tweedie_screen import (
    ModelFamily,
    PerFeatureFitFailure,
    estimate_alpha_nb2_moments,
    fit_model,
    tweedie_zero_probability,
)
from tweedie_screen.model import (
    TWEEDIE_POWER_GRID,
    fit_gamma_glm,
    fit_zicp_em,
    tweedie_profile_loglike,
)


@pytest.fixture
def two_group():
    rng = np.random.default_rng(3)
    n = 60
    g = np.repeat([0.0, 1.0], n // 2)
    X = np.column_stack([np.ones(n), g])
    mu = np.exp(2.0 + np.log(2.0) * g)
    y = rng.poisson(rng.gamma(3.0, mu / 3.0)).astype(float)
    return y, X, np.zeros(n)


def test_cplm_recovers_group_effect(two_group):
    y, X, offset = two_group
    fit = fit_model(ModelFamily.CPLM, y, X, offset)

    assert fit.converged
    assert fit.family is ModelFamily.CPLM
    assert fit.params.shape == (2,)
    assert fit.params[1] == pytest.approx(np.log(2.0), abs=0.35)
    assert fit.pvalues[1] < 0.05
    assert fit.extras["power"] in TWEEDIE_POWER_GRID


def test_cplm_fixed_power(two_group):
    y, X, offset = two_group
    fit = fit_model(ModelFamily.CPLM, y, X, offset, power=1.5)
    assert fit.extras["power"] == 1.5


def test_nb_estimates_positive_alpha(two_group):
    y, X, offset = two_group
    fit = fit_model(ModelFamily.NB, y, X, offset)
    assert fit.converged
    assert fit.extras["alpha"] > 0
    assert fit.params[1] > 0


def test_linear_model_with_random_intercept(two_group):
    y, X, offset = two_group
    groups = np.arange(len(y)) // 6
    fit = fit_model(ModelFamily.LM, y, X, offset, groups)
    assert fit.params.shape == (2,)
    assert fit.pvalues.shape == (2,)
    assert "group_var" in fit.extras


def test_linear_model_without_groups_is_ols(two_group):
    y, X, offset = two_group
    fit = fit_model(ModelFamily.LM, y, X, offset)
    assert fit.converged
    assert "sigma2" in fit.extras


def test_gamma_uses_positive_observations(two_group):
    y, X, offset = two_group
    y = y.copy()
    y[:5] = 0
    fit = fit_model(ModelFamily.GAMMA, y, X, offset)
    assert fit.n_obs == int((y > 0).sum())


def test_gamma_too_few_positive_raises():
    X = np.column_stack([np.ones(6), [0, 0, 0, 1, 1, 1]])
    y = np.array([0, 0, 0, 0, 3.0, 0])
    with pytest.raises(PerFeatureFitFailure):
        fit_gamma_glm(y, X, np.zeros(6))


def test_zicp_estimates_zero_inflation():
    rng = np.random.default_rng(11)
    n = 80
    g = np.repeat([0.0, 1.0], n // 2)
    X = np.column_stack([np.ones(n), g])
    y = rng.poisson(np.exp(2.5 + 0.5 * g)).astype(float)
    y[rng.uniform(size=n) < 0.3] = 0

    fit = fit_model(ModelFamily.ZICP, y, X, np.zeros(n), power=1.3)

    assert 0.0 < fit.extras["pi"] < 1.0
    assert np.all(np.isfinite(fit.params))


def test_zicp_without_zeros_raises(two_group):
    y, X, offset = two_group
    with pytest.raises(PerFeatureFitFailure):
        fit_zicp_em(y + 1, X, offset)


def test_tweedie_zero_probability_decreases_with_mean():
    p0 = tweedie_zero_probability(np.array([0.1, 1.0, 10.0]), phi=1.0, power=1.5)
    assert np.all(np.diff(p0) < 0)
    assert np.all((p0 > 0) & (p0 < 1))


def test_alpha_moments_zero_for_poisson_like():
    y = np.array([1.0, 2.0, 3.0])
    assert estimate_alpha_nb2_moments(y, y) == 0.0


def test_profile_loglike_is_finite_with_zeros():
    y = np.array([0, 1, 3, 5, 0, 2, 8, 4, 6, 1], dtype=float)
    mu = np.full(y.shape, y.mean())
    for power in TWEEDIE_POWER_GRID:
        assert np.isfinite(tweedie_profile_loglike(y, mu, phi=2.0, power=power))


def test_profile_loglike_of_zeros_is_log_zero_mass():
    mu = np.array([0.5, 2.0])
    expected = np.log(tweedie_zero_probability(mu, 1.5, 1.3)).sum()
    assert tweedie_profile_loglike(np.zeros(2), mu, 1.5, 1.3) == pytest.approx(expected)


def test_cplm_profiles_power_when_response_has_zeros(two_group):
    y, X, offset = two_group
    y = y.copy()
    y[::7] = 0

    fit = fit_model(ModelFamily.CPLM, y, X, offset)

    assert fit.converged
    assert fit.extras["power"] in TWEEDIE_POWER_GRID


def test_zicp_profiles_power_when_not_given():
    rng = np.random.default_rng(11)
    n = 80
    g = np.repeat([0.0, 1.0], n // 2)
    X = np.column_stack([np.ones(n), g])
    y = rng.poisson(np.exp(2.5 + 0.5 * g)).astype(float)
    y[rng.uniform(size=n) < 0.3] = 0

    fit = fit_model(ModelFamily.ZICP, y, X, np.zeros(n))

    assert fit.extras["power"] in TWEEDIE_POWER_GRID
    assert 0.0 < fit.extras["pi"] < 1.0
