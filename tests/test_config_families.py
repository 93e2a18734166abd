"""Model family registry and specification validation."""
import pandas as pd
import pytest

from tweedie_screen import (
    FAMILY_TRAITS,
    FatalConfigError,
    ModelFamily,
    ModelSpec,
    fallback_chain,
    parse_family,
)


def test_default_chains_end_at_linear_model():
    assert fallback_chain(ModelFamily.ZICP) == [ModelFamily.ZICP, ModelFamily.CPLM, ModelFamily.LM]
    assert fallback_chain(ModelFamily.CPLM) == [ModelFamily.CPLM, ModelFamily.LM]
    assert fallback_chain(ModelFamily.NB) == [ModelFamily.NB, ModelFamily.LM]
    assert fallback_chain(ModelFamily.GAMMA) == [ModelFamily.GAMMA, ModelFamily.LM]
    assert fallback_chain(ModelFamily.LM) == [ModelFamily.LM]


def test_every_family_has_traits():
    assert set(FAMILY_TRAITS) == set(ModelFamily)
    assert FAMILY_TRAITS[ModelFamily.GAMMA].requires_positive
    assert FAMILY_TRAITS[ModelFamily.ZICP].zero_inflated
    assert FAMILY_TRAITS[ModelFamily.LM].fallback is None


def test_override_can_end_or_redirect_chain():
    chain = fallback_chain(ModelFamily.ZICP, {ModelFamily.CPLM: ModelFamily.NB})
    assert chain == [ModelFamily.ZICP, ModelFamily.CPLM, ModelFamily.NB, ModelFamily.LM]

    assert fallback_chain(ModelFamily.CPLM, {ModelFamily.CPLM: None}) == [ModelFamily.CPLM]


def test_cyclic_override_raises():
    with pytest.raises(FatalConfigError, match="cycle"):
        fallback_chain(ModelFamily.NB, {ModelFamily.LM: ModelFamily.NB})


@pytest.mark.parametrize("name", ["cplm", " NB ", "Gamma", ModelFamily.LM])
def test_parse_family_is_case_insensitive(name):
    assert isinstance(parse_family(name), ModelFamily)


def test_parse_unknown_family_raises():
    with pytest.raises(FatalConfigError, match="Unknown model family"):
        parse_family("poisson")


def test_spec_normalizes_inputs():
    spec = ModelSpec(
        fixed_effects="diagnosis",
        base_model="zicp",
        reference={"diagnosis": "control"},
        fallbacks={"CPLM": "nb"},
    )
    assert spec.fixed_effects == ("diagnosis",)
    assert spec.base_model is ModelFamily.ZICP
    assert spec.reference_levels == {"diagnosis": "control"}
    assert spec.chain == [ModelFamily.ZICP, ModelFamily.CPLM, ModelFamily.NB, ModelFamily.LM]
    # hashable, so it can be shipped to worker processes and compared
    assert hash(spec) == hash(spec.replace())


@pytest.mark.parametrize(
    "kwargs",
    [
        {"fixed_effects": ()},
        {"fixed_effects": ("a", "a")},
        {"fixed_effects": ("a",), "random_effects": ("a",)},
        {"fixed_effects": ("a",), "reference": {"b": "x"}},
        {"fixed_effects": ("a",), "worker_count": 0},
        {"fixed_effects": ("a",), "min_prevalence": 1.5},
        {"fixed_effects": ("a",), "tweedie_power": 2.0},
        {"fixed_effects": ("a",), "correction": "storey"},
        {"fixed_effects": ("a",), "timeout": 0},
        {"fixed_effects": ("a",), "fallbacks": {"LM": "CPLM"}},
    ],
)
def test_invalid_spec_raises(kwargs):
    with pytest.raises(FatalConfigError):
        ModelSpec(**kwargs)


@pytest.fixture
def meta():
    return pd.DataFrame(
        {
            "diagnosis": ["control", "case", "case", "control"],
            "age": [30.0, 41.0, 52.0, 28.0],
            "site": ["x", "x", "x", "x"],
            "scale_factor": [0.1, 0.2, 0.3, 0.4],
        },
        index=["s1", "s2", "s3", "s4"],
    )


def test_validate_accepts_good_spec(meta):
    ModelSpec(fixed_effects=("diagnosis", "age"), reference={"diagnosis": "control"}).validate(meta)


def test_validate_missing_covariate(meta):
    with pytest.raises(FatalConfigError, match="not found in metadata"):
        ModelSpec(fixed_effects=("bmi",)).validate(meta)


def test_validate_missing_reference_level(meta):
    spec = ModelSpec(fixed_effects=("diagnosis",), reference={"diagnosis": "healthy"})
    with pytest.raises(FatalConfigError, match="Reference level 'healthy'"):
        spec.validate(meta)


def test_validate_constant_fixed_effect(meta):
    with pytest.raises(FatalConfigError, match="constant"):
        ModelSpec(fixed_effects=("site",)).validate(meta)


def test_validate_missing_values(meta):
    meta.loc["s2", "age"] = float("nan")
    with pytest.raises(FatalConfigError, match="missing values"):
        ModelSpec(fixed_effects=("age",)).validate(meta)


def test_validate_leaves_offset_column_to_offset_resolution(meta):
    meta["scale_factor"] = ["a", "b", "c", "d"]
    ModelSpec(fixed_effects=("diagnosis",)).validate(meta)
