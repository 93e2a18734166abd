"""
Single-feature model fitting for every registered model family.

Each fitter takes one feature's response vector, the shared design matrix,
the offset vector and optional random-effect groups, and returns a
:class:`ModelFit` holding coefficients, standard errors, Wald p-values and
a convergence flag. The numerical work is delegated to statsmodels.

Functions
---------
fit_model
    Dispatch to the fitter for a :class:`ModelFamily`.
tweedie_profile_loglike
    Criterion for choosing the Tweedie variance power.
fit_tweedie_glm
    Compound Poisson GLM, optionally profiling the variance power.
fit_zicp_em
    Zero-inflated compound Poisson GLM fit by expectation-maximization.
fit_nb_glm_iter_alpha
    Negative binomial GLM with iterative alpha estimation.
fit_gamma_glm
    Gamma GLM on the non-zero observations.
fit_linear
    Linear (mixed) model on the log1p-transformed response.

Classes
-------
ModelFit
    Container for one fitted model.
"""
from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import statsmodels.api as sm
from scipy.special import logit
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .diagnostics import estimate_alpha_nb2_moments, tweedie_zero_probability
from .errors import PerFeatureFitFailure
from .families import ModelFamily

TWEEDIE_POWER_GRID = (1.1, 1.3, 1.5, 1.7, 1.9)


@dataclass
class ModelFit:
    """Container for one fitted single-feature model."""

    family: ModelFamily
    #: coefficients, one per design column (intercept first)
    params: np.ndarray
    bse: np.ndarray
    pvalues: np.ndarray
    converged: bool
    #: number of observations the model was fit on
    n_obs: int
    #: family-specific parameters (variance power, dispersion, zero-inflation)
    extras: dict = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def _glm_fit(model: sm.GLM, groups: Optional[np.ndarray], max_iter: int, **kwargs):
    """Fit a GLM with cluster-robust SEs when random-effect groups are given."""
    if groups is not None and np.unique(groups).size > 1:
        try:
            return model.fit(
                maxiter=max_iter,
                cov_type="cluster",
                cov_kwds={"groups": groups},
                **kwargs,
            )
        except (ValueError, np.linalg.LinAlgError):
            warnings.warn("Cluster-robust SEs failed; using standard SEs.")
    return model.fit(maxiter=max_iter, **kwargs)


def _converged(res) -> bool:
    return bool(getattr(res, "converged", True))


def _quiet_fit(model: sm.GLM, **kwargs):
    """Fit an intermediate model; only the final fit's warnings are reported."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return model.fit(**kwargs)


def _tweedie_model(y, X, offset, power, var_weights=None) -> sm.GLM:
    fam = sm.families.Tweedie(var_power=power, eql=True)
    return sm.GLM(y, X, family=fam, offset=offset, var_weights=var_weights)


def tweedie_profile_loglike(y: np.ndarray, mu: np.ndarray, phi: float, power: float) -> float:
    """Log-likelihood used to compare variance powers.

    Positive observations contribute the extended quasi-likelihood; zeros,
    where the EQL is undefined, contribute the exact compound Poisson zero
    mass ``log P(Y = 0) = -mu^(2-p) / (phi * (2-p))``.
    """
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    pos = y > 0
    ll = float(np.sum(np.log(tweedie_zero_probability(mu[~pos], phi, power))))
    if pos.any():
        fam = sm.families.Tweedie(var_power=power, eql=True)
        ll += float(np.sum(fam.loglike_obs(y[pos], mu[pos], scale=phi)))
    return ll


def _profile_tweedie_power(y, X, offset, max_iter: int) -> float:
    best_power, best_llf = None, -np.inf
    for power in TWEEDIE_POWER_GRID:
        try:
            res = _quiet_fit(_tweedie_model(y, X, offset, power), maxiter=max_iter)
        except (ValueError, np.linalg.LinAlgError, FloatingPointError):
            continue
        with np.errstate(all="ignore"):
            llf = tweedie_profile_loglike(y, res.mu, res.scale, power)
        if _converged(res) and np.isfinite(llf) and llf > best_llf:
            best_power, best_llf = power, llf
    if best_power is None:
        raise PerFeatureFitFailure("Tweedie fit failed for every variance power in the grid")
    return best_power


def fit_tweedie_glm(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    groups: Optional[np.ndarray] = None,
    power: Optional[float] = None,
    max_iter: int = 100,
) -> ModelFit:
    """Fit a compound Poisson (Tweedie) GLM with log link.

    Parameters
    ----------
    y : np.ndarray
        Non-negative response.
    X : np.ndarray
        Design matrix including the intercept column.
    offset : np.ndarray
        Offset on the log scale.
    groups : np.ndarray or None
        Random-effect group codes; used for cluster-robust SEs.
    power : float or None
        Variance power in (1, 2). If None, the power in
        ``TWEEDIE_POWER_GRID`` with the highest
        :func:`tweedie_profile_loglike` is used.
    max_iter : int, default 100
        Maximum IRLS iterations.

    Returns
    -------
    ModelFit
        ``extras`` holds the variance ``power`` and dispersion ``phi``.
    """
    if power is None:
        power = _profile_tweedie_power(y, X, offset, max_iter)
    res = _glm_fit(_tweedie_model(y, X, offset, power), groups, max_iter)
    return ModelFit(
        family=ModelFamily.CPLM,
        params=np.asarray(res.params, dtype=float),
        bse=np.asarray(res.bse, dtype=float),
        pvalues=np.asarray(res.pvalues, dtype=float),
        converged=_converged(res),
        n_obs=int(res.nobs),
        extras={"power": float(power), "phi": float(res.scale)},
    )


def fit_zicp_em(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    groups: Optional[np.ndarray] = None,
    power: Optional[float] = None,
    max_iter: int = 100,
    em_iter: int = 100,
    tol: float = 1e-4,
) -> ModelFit:
    """Fit a zero-inflated compound Poisson GLM by EM.

    The response is modelled as a mixture of a point mass at zero (with
    probability ``pi``) and a Tweedie GLM. Each EM step computes the
    posterior probability that a zero is structural,

        w_i = pi / (pi + (1 - pi) * P_tweedie(Y_i = 0))

    and refits the Tweedie GLM with prior weights ``1 - w``. The
    zero-inflation part is intercept only, so ``pi`` is the mean of ``w``.

    Returns
    -------
    ModelFit
        ``extras`` holds ``power``, ``phi``, ``pi`` and ``zi_logit``.

    Raises
    ------
    PerFeatureFitFailure
        If the response has no zeros to model.
    """
    is_zero = y == 0
    if not is_zero.any():
        raise PerFeatureFitFailure("No zero observations; zero-inflation is not identifiable")

    if power is None:
        power = _profile_tweedie_power(y, X, offset, max_iter)

    res = _quiet_fit(_tweedie_model(y, X, offset, power), maxiter=max_iter)
    pi = float(np.clip(0.5 * is_zero.mean(), 0.01, 0.9))
    params = np.asarray(res.params, dtype=float)
    em_converged = False

    for _ in range(em_iter):
        p0 = tweedie_zero_probability(res.fittedvalues, res.scale, power)
        w = np.where(is_zero, pi / (pi + (1.0 - pi) * p0), 0.0)
        w = np.clip(w, 0.0, 1.0 - 1e-8)
        pi_new = float(w.mean())

        res = _quiet_fit(
            _tweedie_model(y, X, offset, power, var_weights=1.0 - w), maxiter=max_iter
        )
        params_new = np.asarray(res.params, dtype=float)
        if not np.all(np.isfinite(params_new)):
            raise PerFeatureFitFailure("Non-finite coefficients during EM")

        delta = max(np.max(np.abs(params_new - params)), abs(pi_new - pi))
        params, pi = params_new, pi_new
        if delta < tol:
            em_converged = True
            break

    p0 = tweedie_zero_probability(res.fittedvalues, res.scale, power)
    w = np.clip(np.where(is_zero, pi / (pi + (1.0 - pi) * p0), 0.0), 0.0, 1.0 - 1e-8)
    final = _glm_fit(_tweedie_model(y, X, offset, power, var_weights=1.0 - w), groups, max_iter)

    return ModelFit(
        family=ModelFamily.ZICP,
        params=np.asarray(final.params, dtype=float),
        bse=np.asarray(final.bse, dtype=float),
        pvalues=np.asarray(final.pvalues, dtype=float),
        converged=em_converged and _converged(final),
        n_obs=int(final.nobs),
        extras={
            "power": float(power),
            "phi": float(final.scale),
            "pi": pi,
            "zi_logit": float(logit(np.clip(pi, 1e-12, 1 - 1e-12))),
        },
    )


def fit_nb_glm_iter_alpha(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    groups: Optional[np.ndarray] = None,
    max_iter: int = 8,
    alpha_init: float = 0.1,
    glm_max_iter: int = 100,
) -> ModelFit:
    """Fit a negative binomial GLM with iterative dispersion estimation.

    Fits a negative binomial GLM (NB2 parameterization) using an iterative
    procedure to estimate the dispersion parameter alpha:

    1. Fit GLM with current alpha
    2. Update alpha using method-of-moments from residuals
    3. Repeat until the relative change is below 5%

    The NB2 variance function is: Var(Y) = mu + alpha * mu^2

    Notes
    -----
    If a fit fails due to numerical issues, L2 regularization is used to
    get start parameters and the model is refit unregularized.
    """
    alpha = float(alpha_init)
    glm_res = None

    for iteration in range(max_iter):
        model = sm.GLM(y, X, family=sm.families.NegativeBinomial(alpha=alpha), offset=offset)
        try:
            glm_res = _quiet_fit(model, maxiter=glm_max_iter)
        except (ValueError, np.linalg.LinAlgError):
            warnings.warn(
                f"Standard fit failed on iteration {iteration}; "
                "using L2 regularization to initialize, then refitting unregularized."
            )
            reg_res = model.fit_regularized(alpha=0.01, L1_wt=0)
            glm_res = _quiet_fit(
                model, start_params=np.asarray(reg_res.params), maxiter=glm_max_iter * 2
            )

        alpha_new = estimate_alpha_nb2_moments(y, np.asarray(glm_res.fittedvalues))
        # stabilize updates
        alpha_new = 0.5 * alpha + 0.5 * alpha_new
        alpha_new = float(np.clip(alpha_new, 1e-4, 100.0))
        if abs(alpha_new - alpha) / (alpha + 1e-9) < 0.05:
            alpha = alpha_new
            break
        alpha = alpha_new

    # Final refit with the final alpha so that the SEs match it
    model_final = sm.GLM(y, X, family=sm.families.NegativeBinomial(alpha=alpha), offset=offset)
    glm_res = _glm_fit(model_final, groups, glm_max_iter * 2)

    return ModelFit(
        family=ModelFamily.NB,
        params=np.asarray(glm_res.params, dtype=float),
        bse=np.asarray(glm_res.bse, dtype=float),
        pvalues=np.asarray(glm_res.pvalues, dtype=float),
        converged=_converged(glm_res),
        n_obs=int(glm_res.nobs),
        extras={"alpha": alpha},
    )


def fit_gamma_glm(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    groups: Optional[np.ndarray] = None,
    max_iter: int = 100,
) -> ModelFit:
    """Fit a log-link Gamma GLM on the strictly positive observations."""
    pos = y > 0
    n_pos = int(pos.sum())
    if n_pos <= X.shape[1]:
        raise PerFeatureFitFailure(
            f"Only {n_pos} positive observations for {X.shape[1]} coefficients"
        )
    Xp = X[pos]
    if np.linalg.matrix_rank(Xp) < X.shape[1]:
        raise PerFeatureFitFailure("Design is singular on the positive observations")

    fam = sm.families.Gamma(link=sm.families.links.Log())
    model = sm.GLM(y[pos], Xp, family=fam, offset=offset[pos])
    res = _glm_fit(model, None if groups is None else groups[pos], max_iter)
    return ModelFit(
        family=ModelFamily.GAMMA,
        params=np.asarray(res.params, dtype=float),
        bse=np.asarray(res.bse, dtype=float),
        pvalues=np.asarray(res.pvalues, dtype=float),
        converged=_converged(res),
        n_obs=n_pos,
        extras={"phi": float(res.scale)},
    )


def fit_linear(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    groups: Optional[np.ndarray] = None,
    standardize: bool = False,
    max_iter: int = 100,
) -> ModelFit:
    """Fit a linear model to ``log1p(y) - offset``.

    With random-effect groups a random-intercept linear mixed model
    (statsmodels ``MixedLM``, REML) is fit; otherwise ordinary least
    squares. With ``standardize`` the transformed response is centered and
    scaled to unit variance first.
    """
    z = np.log1p(y) - offset
    if standardize:
        sd = z.std(ddof=1)
        if sd > 0:
            z = (z - z.mean()) / sd

    k = X.shape[1]
    if groups is not None and np.unique(groups).size > 1:
        res = sm.MixedLM(z, X, groups=groups).fit(reml=True, maxiter=max_iter)
        extras = {"group_var": float(np.asarray(res.cov_re).ravel()[0])}
        return ModelFit(
            family=ModelFamily.LM,
            params=np.asarray(res.fe_params, dtype=float),
            bse=np.asarray(res.bse_fe, dtype=float),
            pvalues=np.asarray(res.pvalues, dtype=float)[:k],
            converged=_converged(res),
            n_obs=int(res.nobs),
            extras=extras,
        )

    res = sm.OLS(z, X).fit()
    return ModelFit(
        family=ModelFamily.LM,
        params=np.asarray(res.params, dtype=float),
        bse=np.asarray(res.bse, dtype=float),
        pvalues=np.asarray(res.pvalues, dtype=float),
        converged=True,
        n_obs=int(res.nobs),
        extras={"sigma2": float(res.scale)},
    )


def fit_model(
    family: ModelFamily,
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    groups: Optional[np.ndarray] = None,
    *,
    power: Optional[float] = None,
    standardize: bool = False,
    max_iter: int = 100,
) -> ModelFit:
    """Fit one model family to one feature.

    Warnings raised by statsmodels are captured on the returned fit; a
    :class:`ConvergenceWarning` or non-finite estimate marks the fit as
    not converged.

    Raises
    ------
    PerFeatureFitFailure, ValueError, np.linalg.LinAlgError
        Propagated to the caller, which records them.
    """
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        if family is ModelFamily.CPLM:
            fit = fit_tweedie_glm(y, X, offset, groups, power=power, max_iter=max_iter)
        elif family is ModelFamily.ZICP:
            fit = fit_zicp_em(y, X, offset, groups, power=power, max_iter=max_iter)
        elif family is ModelFamily.NB:
            fit = fit_nb_glm_iter_alpha(y, X, offset, groups, glm_max_iter=max_iter)
        elif family is ModelFamily.GAMMA:
            fit = fit_gamma_glm(y, X, offset, groups, max_iter=max_iter)
        elif family is ModelFamily.LM:
            fit = fit_linear(y, X, offset, groups, standardize=standardize, max_iter=max_iter)
        else:
            raise ValueError(f"No fitter registered for {family}")

    fit.warnings = [f"{w.category.__name__}: {w.message}" for w in caught]
    # MixedLM reports a zero group variance as a boundary ConvergenceWarning
    if any(
        issubclass(w.category, ConvergenceWarning) and "boundary" not in str(w.message)
        for w in caught
    ):
        fit.converged = False
    estimates = np.concatenate([fit.params, fit.bse, fit.pvalues])
    if not np.all(np.isfinite(estimates)):
        fit.converged = False
        fit.warnings.append("non-finite estimates")
    return fit
