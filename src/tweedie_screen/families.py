"""
Model family registry.

Every supported count-model family is a member of :class:`ModelFamily`.
Each member carries a :class:`FamilyTraits` record describing what the
family can handle and which simpler family to try when it fails.

Functions
---------
parse_family
    Resolve a user-supplied family name.
fallback_chain
    Ordered list of families to attempt for a requested base model.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from .errors import FatalConfigError


class ModelFamily(str, Enum):
    """Closed set of supported model families."""

    #: Zero-inflated compound Poisson (Tweedie) GLM fit by EM.
    ZICP = "ZICP"
    #: Compound Poisson (Tweedie, 1 < p < 2) GLM with log link.
    CPLM = "CPLM"
    #: Negative binomial (NB2) GLM with iterated dispersion.
    NB = "NB"
    #: Gamma GLM with log link, fit on the non-zero observations only.
    GAMMA = "GAMMA"
    #: Gaussian linear (or linear mixed) model on log1p(y).
    LM = "LM"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FamilyTraits:
    """Fitting requirements of one model family."""

    #: Family models excess zeros explicitly.
    zero_inflated: bool
    #: Family needs a strictly positive response (zeros are dropped).
    requires_positive: bool
    #: Family fits random effects natively (otherwise cluster-robust SEs).
    mixed_effects: bool
    #: Family tried next when this one fails, or None at the end of the chain.
    fallback: Optional[ModelFamily]
    description: str = ""


FAMILY_TRAITS: dict[ModelFamily, FamilyTraits] = {
    ModelFamily.ZICP: FamilyTraits(
        zero_inflated=True,
        requires_positive=False,
        mixed_effects=False,
        fallback=ModelFamily.CPLM,
        description="zero-inflated compound Poisson GLM",
    ),
    ModelFamily.CPLM: FamilyTraits(
        zero_inflated=False,
        requires_positive=False,
        mixed_effects=False,
        fallback=ModelFamily.LM,
        description="compound Poisson (Tweedie) GLM",
    ),
    ModelFamily.NB: FamilyTraits(
        zero_inflated=False,
        requires_positive=False,
        mixed_effects=False,
        fallback=ModelFamily.LM,
        description="negative binomial GLM",
    ),
    ModelFamily.GAMMA: FamilyTraits(
        zero_inflated=False,
        requires_positive=True,
        mixed_effects=False,
        fallback=ModelFamily.LM,
        description="Gamma GLM on non-zero observations",
    ),
    ModelFamily.LM: FamilyTraits(
        zero_inflated=False,
        requires_positive=False,
        mixed_effects=True,
        fallback=None,
        description="linear model on log1p-transformed response",
    ),
}


def traits(family: ModelFamily) -> FamilyTraits:
    return FAMILY_TRAITS[family]


def parse_family(name: str | ModelFamily) -> ModelFamily:
    """Resolve a family name (case-insensitive) to a :class:`ModelFamily`.

    Raises
    ------
    FatalConfigError
        If the name is not a registered family.
    """
    if isinstance(name, ModelFamily):
        return name
    key = str(name).strip().upper()
    try:
        return ModelFamily(key)
    except ValueError:
        known = ", ".join(f.value for f in ModelFamily)
        raise FatalConfigError(f"Unknown model family '{name}'. Choose one of: {known}") from None


def fallback_chain(
    family: ModelFamily,
    overrides: Optional[Mapping[ModelFamily, Optional[ModelFamily]]] = None,
) -> list[ModelFamily]:
    """Ordered list of families to attempt, starting with ``family``.

    Parameters
    ----------
    family : ModelFamily
        Requested base model.
    overrides : mapping, optional
        Replacement fallback pointers. A value of None ends the chain at
        that family.

    Returns
    -------
    list of ModelFamily
        The requested family followed by its fallbacks.

    Raises
    ------
    FatalConfigError
        If the pointers form a cycle.

    Examples
    --------
    >>> [f.value for f in fallback_chain(ModelFamily.ZICP)]
    ['ZICP', 'CPLM', 'LM']
    """
    overrides = dict(overrides or {})
    chain: list[ModelFamily] = []
    current: Optional[ModelFamily] = family
    while current is not None:
        if current in chain:
            path = " -> ".join(f.value for f in chain + [current])
            raise FatalConfigError(f"Fallback chain contains a cycle: {path}")
        chain.append(current)
        if current in overrides:
            current = overrides[current]
        else:
            current = FAMILY_TRAITS[current].fallback
    return chain
