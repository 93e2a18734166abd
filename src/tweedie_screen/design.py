"""
Design matrix construction.

The fixed-effect design is built once per run from the aligned metadata
and shared by every per-feature fit. Categorical covariates use treatment
coding against an explicit reference level; continuous covariates are
optionally z-scored.

Functions
---------
build_design
    Build the shared :class:`Design` for a model specification.
is_categorical
    Decide whether a covariate is treated as categorical.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
import patsy

from .config import ModelSpec
from .errors import FatalConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TermLabel:
    """Covariate name and value reported for one design column."""

    #: covariate name
    metadata: str
    #: factor level for categorical covariates, covariate name otherwise
    value: str


@dataclass(frozen=True)
class Design:
    """Shared fixed-effect design for all features."""

    #: n_samples x n_columns, first column is the intercept
    X: np.ndarray
    column_names: tuple[str, ...]
    #: one label per non-intercept column, in column order
    terms: tuple[TermLabel, ...]
    #: integer group codes for random effects, or None
    groups: Optional[np.ndarray] = None
    #: (covariate, level, sample mask) for every categorical level
    level_masks: tuple[tuple[str, str, np.ndarray], ...] = ()

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def term_columns(self) -> np.ndarray:
        """Indices of the non-intercept columns."""
        return np.arange(1, self.X.shape[1])


def is_categorical(metadata: pd.DataFrame, col: str, spec: ModelSpec) -> bool:
    """A covariate is categorical if it is non-numeric or has a reference level."""
    if col in spec.reference_levels:
        return True
    s = metadata[col]
    return not pd.api.types.is_numeric_dtype(s) or pd.api.types.is_bool_dtype(s)


def _categorical_block(
    values: pd.Series,
    col: str,
    reference: Optional[str],
) -> tuple[pd.DataFrame, list[TermLabel], list[tuple[str, str, np.ndarray]]]:
    values = values.astype(str)
    levels = sorted(values.unique())
    ref = reference if reference is not None else levels[0]
    if ref not in levels:
        raise FatalConfigError(f"Reference level '{ref}' not found in covariate '{col}'")

    formula = f"C(v, Treatment(reference={ref!r}), levels={levels!r})"
    block = patsy.dmatrix(formula, {"v": values.to_numpy()}, return_type="dataframe")
    block = block.drop(columns="Intercept")

    others = [lv for lv in levels if lv != ref]
    block.columns = [f"{col}[T.{lv}]" for lv in others]
    labels = [TermLabel(metadata=col, value=lv) for lv in others]
    masks = [(col, lv, (values == lv).to_numpy()) for lv in levels]
    return block, labels, masks


def _numeric_block(values: pd.Series, col: str, standardize: bool) -> pd.DataFrame:
    v = pd.to_numeric(values, errors="raise").astype(float)
    if standardize:
        sd = v.std(ddof=1)
        v = (v - v.mean()) / sd if sd > 0 else v - v.mean()
    return pd.DataFrame({col: v.to_numpy()}, index=values.index)


def _group_codes(metadata: pd.DataFrame, random_effects: tuple[str, ...]) -> Optional[np.ndarray]:
    if not random_effects:
        return None
    if len(random_effects) == 1:
        key = metadata[random_effects[0]].astype(str)
    else:
        # multiple grouping variables are combined into one grouping factor
        key = metadata[list(random_effects)].astype(str).agg("|".join, axis=1)
    codes, _ = pd.factorize(key, sort=True)
    return codes.astype(int)


def build_design(metadata: pd.DataFrame, spec: ModelSpec) -> Design:
    """Build the fixed-effect design matrix shared by every feature.

    Parameters
    ----------
    metadata : pd.DataFrame
        Aligned metadata table.
    spec : ModelSpec
        Model specification; ``fixed_effects`` fixes the column order,
        ``reference`` the baseline levels and ``standardize`` whether
        continuous covariates are z-scored.

    Returns
    -------
    Design
        Intercept plus one column per continuous covariate and one column
        per non-reference level of each categorical covariate.

    Raises
    ------
    FatalConfigError
        If the resulting design is rank deficient.

    Examples
    --------
    >>> meta = pd.DataFrame({"grp": ["a", "b", "a", "c"], "age": [1, 2, 3, 4]})
    >>> design = build_design(meta, ModelSpec(fixed_effects=("grp", "age")))
    >>> [(t.metadata, t.value) for t in design.terms]
    [('grp', 'b'), ('grp', 'c'), ('age', 'age')]
    """
    refs = spec.reference_levels
    blocks = [pd.DataFrame({"Intercept": np.ones(len(metadata.index))}, index=metadata.index)]
    labels: list[TermLabel] = []
    masks: list[tuple[str, str, np.ndarray]] = []

    for col in spec.fixed_effects:
        if is_categorical(metadata, col, spec):
            block, col_labels, col_masks = _categorical_block(metadata[col], col, refs.get(col))
            block.index = metadata.index
            masks.extend(col_masks)
        else:
            block = _numeric_block(metadata[col], col, spec.standardize)
            col_labels = [TermLabel(metadata=col, value=col)]
        blocks.append(block)
        labels.extend(col_labels)

    X = pd.concat(blocks, axis=1)
    rank = np.linalg.matrix_rank(X.to_numpy(dtype=float))
    if rank < X.shape[1]:
        raise FatalConfigError(
            f"Design matrix is rank deficient (rank {rank} < {X.shape[1]} columns); "
            "check for collinear or nested fixed effects."
        )
    if X.shape[0] <= X.shape[1]:
        raise FatalConfigError(
            f"Design has {X.shape[1]} columns but only {X.shape[0]} samples"
        )

    logger.info(f"Design matrix: {X.shape[0]} samples x {X.shape[1]} columns")
    return Design(
        X=X.to_numpy(dtype=float),
        column_names=tuple(X.columns),
        terms=tuple(labels),
        groups=_group_codes(metadata, spec.random_effects),
        level_masks=tuple(masks),
    )
