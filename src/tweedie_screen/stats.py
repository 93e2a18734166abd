"""
Result aggregation and multiple comparison correction.

Functions
---------
bh_fdr
    Benjamini-Hochberg FDR adjustment.
adjust_pvalues
    Per-term p-value adjustment across features.
assemble_results
    Collect per-feature fits into the result and skipped tables.
sort_results
    Display order: grouped by covariate, ascending p-value.
"""
from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from .errors import FatalConfigError
from .fitter import FeatureFit, FitStatus

RESULT_COLUMNS = [
    "feature",
    "metadata",
    "value",
    "coef",
    "stderr",
    "pval",
    "qval",
    "N",
    "N_not_zero",
    "model_used",
    "converged",
    "note",
]

SKIPPED_COLUMNS = ["feature", "reason", "N", "N_not_zero"]

_MULTIPLETESTS_METHODS = {"BY": "fdr_by", "bonferroni": "bonferroni", "holm": "holm"}


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg FDR adjustment.

    Adjusts p-values to control the false discovery rate using the
    Benjamini-Hochberg procedure.

    Parameters
    ----------
    pvals : array-like
        Raw p-values. NaN entries are excluded from the number of tests.

    Returns
    -------
    qvals : np.ndarray
        BH-adjusted q-values, same shape as pvals, NaN where the input is
        NaN.

    Notes
    -----
    The procedure ranks p-values and computes q_i = p_i * m / rank_i,
    then enforces monotonicity (q_i >= q_{i-1} for sorted p-values).

    Examples
    --------
    >>> bh_fdr(np.array([0.01, 0.02, 0.03, 0.04, 0.50]))
    array([0.05, 0.05, 0.05, 0.05, 0.5 ])
    """
    pvals = np.asarray(pvals, dtype=float)
    out = np.full(pvals.shape, np.nan, dtype=float)

    ok = np.isfinite(pvals)
    if ok.sum() == 0:
        return out

    p = pvals[ok]
    order = np.argsort(p, kind="mergesort")
    ranks = np.arange(1, p.size + 1)

    q = p[order] * p.size / ranks
    # enforce monotonicity
    q = np.minimum.accumulate(q[::-1])[::-1]
    q = np.clip(q, 0.0, 1.0)

    out_idx = np.where(ok)[0][order]
    out[out_idx] = q
    return out


def _adjust(pvals: np.ndarray, method: str) -> np.ndarray:
    if method == "BH":
        return bh_fdr(pvals)
    if method not in _MULTIPLETESTS_METHODS:
        raise FatalConfigError(f"Unknown adjust='{method}'. Use 'BH', 'BY', 'bonferroni' or 'holm'.")
    out = np.full(pvals.shape, np.nan, dtype=float)
    ok = np.isfinite(pvals)
    if ok.any():
        _, q, _, _ = multipletests(pvals[ok], method=_MULTIPLETESTS_METHODS[method])
        out[ok] = np.clip(q, 0.0, 1.0)
    return out


def adjust_pvalues(results: pd.DataFrame, method: str = "BH") -> pd.DataFrame:
    """Add a ``qval`` column, adjusting within each (metadata, value) term.

    Rows with a missing p-value (failed fits) get a missing q-value and do
    not count towards the number of tests.
    """
    results = results.copy()
    results["qval"] = np.nan
    if results.empty:
        return results
    for _, idx in results.groupby(["metadata", "value"], sort=False).groups.items():
        pvals = results.loc[idx, "pval"].to_numpy(dtype=float)
        results.loc[idx, "qval"] = _adjust(pvals, method)
    return results


def assemble_results(fits: Iterable[FeatureFit]) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Collect per-feature fits into result and skipped tables.

    Parameters
    ----------
    fits : iterable of FeatureFit
        Fits in any order; rows are emitted in original feature order.

    Returns
    -------
    results : pd.DataFrame
        One row per (feature, term) for fitted and failed features, with
        columns ``RESULT_COLUMNS`` (``qval`` still missing).
    skipped : pd.DataFrame
        One row per skipped feature, columns ``SKIPPED_COLUMNS``.
    """
    rows = []
    skipped = []
    for fit in sorted(fits, key=lambda f: f.index):
        if fit.status is FitStatus.SKIPPED:
            skipped.append(
                {"feature": fit.feature, "reason": fit.note, "N": fit.n, "N_not_zero": fit.n_not_zero}
            )
            continue
        model_used = fit.model_used.value if fit.model_used is not None else None
        for term in fit.terms:
            rows.append(
                {
                    "feature": fit.feature,
                    "metadata": term.metadata,
                    "value": term.value,
                    "coef": term.coef,
                    "stderr": term.stderr,
                    "pval": term.pval,
                    "qval": np.nan,
                    "N": fit.n,
                    "N_not_zero": fit.n_not_zero,
                    "model_used": model_used,
                    "converged": fit.converged,
                    "note": fit.note,
                }
            )

    results = pd.DataFrame(rows, columns=RESULT_COLUMNS)
    results = results.astype({"coef": float, "stderr": float, "pval": float, "qval": float})
    return results, pd.DataFrame(skipped, columns=SKIPPED_COLUMNS)


def sort_results(results: pd.DataFrame, covariate_order: Sequence[str] = ()) -> pd.DataFrame:
    """Group rows by covariate and sort by ascending p-value within each group.

    Covariates listed in ``covariate_order`` come first in that order;
    missing p-values sort last. The sort is stable.
    """
    if results.empty:
        return results
    order = {c: i for i, c in enumerate(covariate_order)}
    rank = results["metadata"].map(lambda c: order.get(c, len(order)))
    out = results.assign(_rank=rank)
    out = out.sort_values(
        ["_rank", "metadata", "pval"], ascending=True, na_position="last", kind="mergesort"
    )
    return out.drop(columns="_rank").reset_index(drop=True)
