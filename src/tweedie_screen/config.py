"""
Model specification for a differential-abundance run.

A :class:`ModelSpec` is built once, validated against the metadata table
before any fitting begins, and passed unchanged to every component.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Mapping, Optional

import pandas as pd

from .errors import FatalConfigError
from .families import ModelFamily, fallback_chain, parse_family

CORRECTION_METHODS = ("BH", "BY", "bonferroni", "holm")


def _pairs(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, Mapping):
        return tuple(value.items())
    return tuple(tuple(p) for p in value)


@dataclass(frozen=True)
class ModelSpec:
    """Immutable configuration of one analysis run.

    Mapping-valued options (``reference``, ``fallbacks``) may be passed as
    dicts; they are stored as tuples of pairs so the spec stays hashable and
    picklable for worker processes.
    """

    fixed_effects: tuple[str, ...]
    base_model: ModelFamily = ModelFamily.CPLM
    random_effects: tuple[str, ...] = ()
    #: covariate -> baseline level for categorical covariates
    reference: tuple[tuple[str, str], ...] = ()
    standardize: bool = True
    adjust_offset: bool = True
    normalization_column: str = "scale_factor"
    worker_count: int = 1
    #: family -> replacement fallback family (None ends the chain)
    fallbacks: tuple[tuple[ModelFamily, Optional[ModelFamily]], ...] = ()
    #: features with fewer non-zero observations are skipped
    min_nonzero: int = 1
    min_total_count: float = 0.0
    min_prevalence: float = 0.0
    #: Tweedie variance power; None profiles over TWEEDIE_POWER_GRID
    tweedie_power: Optional[float] = None
    correction: str = "BH"
    #: per-feature timeout in seconds (parallel runs only)
    timeout: Optional[float] = None
    max_iter: int = 100

    def __post_init__(self):
        fixed = (self.fixed_effects,) if isinstance(self.fixed_effects, str) else self.fixed_effects
        rand = (self.random_effects,) if isinstance(self.random_effects, str) else self.random_effects
        object.__setattr__(self, "fixed_effects", tuple(str(c) for c in (fixed or ())))
        object.__setattr__(self, "random_effects", tuple(str(c) for c in (rand or ())))
        object.__setattr__(self, "base_model", parse_family(self.base_model))
        object.__setattr__(
            self, "reference", tuple((str(k), str(v)) for k, v in _pairs(self.reference))
        )
        object.__setattr__(
            self,
            "fallbacks",
            tuple(
                (parse_family(k), None if v is None else parse_family(v))
                for k, v in _pairs(self.fallbacks)
            ),
        )

        if not self.fixed_effects:
            raise FatalConfigError("At least one fixed effect is required.")
        if len(set(self.fixed_effects)) != len(self.fixed_effects):
            raise FatalConfigError(f"Duplicate fixed effects: {list(self.fixed_effects)}")
        overlap = set(self.fixed_effects) & set(self.random_effects)
        if overlap:
            raise FatalConfigError(
                f"Covariates cannot be both fixed and random effects: {sorted(overlap)}"
            )
        unknown_ref = [k for k, _ in self.reference if k not in self.fixed_effects]
        if unknown_ref:
            raise FatalConfigError(
                f"Reference levels given for covariates that are not fixed effects: {unknown_ref}"
            )
        if int(self.worker_count) < 1:
            raise FatalConfigError(f"worker_count must be >= 1, got {self.worker_count}")
        if self.min_nonzero < 0:
            raise FatalConfigError(f"min_nonzero must be >= 0, got {self.min_nonzero}")
        if not 0.0 <= self.min_prevalence <= 1.0:
            raise FatalConfigError(f"min_prevalence must be in [0, 1], got {self.min_prevalence}")
        if self.tweedie_power is not None and not 1.0 < self.tweedie_power < 2.0:
            raise FatalConfigError(
                f"tweedie_power must lie strictly between 1 and 2, got {self.tweedie_power}"
            )
        if self.correction not in CORRECTION_METHODS:
            raise FatalConfigError(
                f"Unknown correction '{self.correction}'. Use one of {list(CORRECTION_METHODS)}."
            )
        if self.timeout is not None and self.timeout <= 0:
            raise FatalConfigError(f"timeout must be positive, got {self.timeout}")

        # raises on cycles
        fallback_chain(self.base_model, self.fallback_overrides)

    @property
    def reference_levels(self) -> dict[str, str]:
        return dict(self.reference)

    @property
    def fallback_overrides(self) -> dict[ModelFamily, Optional[ModelFamily]]:
        return dict(self.fallbacks)

    @property
    def chain(self) -> list[ModelFamily]:
        """Families attempted for every feature, in order."""
        return fallback_chain(self.base_model, self.fallback_overrides)

    def replace(self, **changes) -> "ModelSpec":
        return replace(self, **changes)

    def validate(self, metadata: pd.DataFrame) -> None:
        """Check the specification against a metadata table.

        Raises
        ------
        FatalConfigError
            If a fixed or random effect is missing, contains missing values,
            or a reference level does not occur in its covariate.
        """
        covariates = list(self.fixed_effects) + list(self.random_effects)
        missing = [c for c in covariates if c not in metadata.columns]
        if missing:
            raise FatalConfigError(
                f"Covariates not found in metadata: {missing}. "
                f"Available columns: {list(metadata.columns)}"
            )

        for col in covariates:
            n_na = int(metadata[col].isna().sum())
            if n_na:
                raise FatalConfigError(
                    f"Covariate '{col}' has {n_na} missing values; remove or impute those samples."
                )

        for col, level in self.reference:
            levels = set(metadata[col].astype(str))
            if level not in levels:
                raise FatalConfigError(
                    f"Reference level '{level}' not found in covariate '{col}'. "
                    f"Observed levels: {sorted(levels)}"
                )

        for col in self.fixed_effects:
            if metadata[col].nunique() < 2:
                raise FatalConfigError(f"Fixed effect '{col}' is constant across samples.")
