"""Sample alignment, offsets and feature filtering."""
import logging

import numpy as np
import pandas as pd
import pytest

from tweedie_screen import (
    EmptyIntersectionError,
    FatalConfigError,
    MissingOffsetDataError,
    ModelSpec,
    align_samples,
    filter_features,
    library_size,
    resolve_offsets,
)


def test_align_keeps_intersection_in_metadata_order():
    feats = pd.DataFrame({"g1": [1, 2, 3, 4]}, index=["s1", "s2", "s3", "s4"])
    meta = pd.DataFrame({"grp": ["a", "b", "a"]}, index=["s3", "s1", "s9"])

    aligned = align_samples(feats, meta)

    assert list(aligned.features.index) == ["s3", "s1"]
    assert list(aligned.metadata.index) == ["s3", "s1"]
    assert aligned.features["g1"].tolist() == [3, 1]
    assert aligned.dropped_features_only == 2
    assert aligned.dropped_metadata_only == 1
    assert aligned.n_samples == 2
    assert aligned.n_features == 1


def test_align_logs_counts_not_identities(caplog):
    feats = pd.DataFrame({"g1": [1, 2, 3]}, index=["keep1", "keep2", "secretA"])
    meta = pd.DataFrame({"grp": ["a", "b"]}, index=["keep1", "keep2"])

    with caplog.at_level(logging.WARNING, logger="tweedie_screen.preprocess"):
        align_samples(feats, meta)

    assert "1 samples only in the feature table" in caplog.text
    assert "secretA" not in caplog.text


def test_align_transposes_features_as_rows():
    feats = pd.DataFrame({"s1": [1, 5], "s2": [2, 6]}, index=["g1", "g2"])
    meta = pd.DataFrame({"grp": ["a", "b"]}, index=["s2", "s1"])

    aligned = align_samples(feats, meta, features_as_rows=True)

    assert list(aligned.features.columns) == ["g1", "g2"]
    assert aligned.features.loc["s1"].tolist() == [1, 5]


def test_align_compares_ids_as_strings():
    feats = pd.DataFrame({"g1": [1, 2]}, index=[101, 102])
    meta = pd.DataFrame({"grp": ["a", "b"]}, index=["101", "102"])

    aligned = align_samples(feats, meta)

    assert aligned.n_samples == 2


def test_align_empty_intersection_raises():
    feats = pd.DataFrame({"g1": [1, 2]}, index=["s1", "s2"])
    meta = pd.DataFrame({"grp": ["a", "b"]}, index=["x1", "x2"])

    with pytest.raises(EmptyIntersectionError):
        align_samples(feats, meta)


def test_align_duplicate_ids_raise():
    feats = pd.DataFrame({"g1": [1, 2]}, index=["s1", "s1"])
    meta = pd.DataFrame({"grp": ["a"]}, index=["s1"])

    with pytest.raises(FatalConfigError):
        align_samples(feats, meta)


def test_library_size_sums_rows():
    feats = pd.DataFrame({"g1": [1, 0], "g2": [4, 0]}, index=["s1", "s2"])
    lib = library_size(feats)
    assert lib.tolist() == [5, 0]


def test_library_size_empty_table_raises():
    with pytest.raises(MissingOffsetDataError):
        library_size(pd.DataFrame(index=["s1", "s2"]))


def test_offsets_from_normalization_column():
    feats = pd.DataFrame({"g1": [1, 2]}, index=["s1", "s2"])
    meta = pd.DataFrame({"grp": ["a", "b"], "scale_factor": [0.5, -0.25]}, index=["s1", "s2"])
    spec = ModelSpec(fixed_effects=("grp",))

    offset, source = resolve_offsets(feats, meta, spec)

    assert source == "column"
    np.testing.assert_allclose(offset, [0.5, -0.25])


def test_offsets_from_library_size_clip_at_one():
    feats = pd.DataFrame({"g1": [10, 0], "g2": [10, 0]}, index=["s1", "s2"])
    meta = pd.DataFrame({"grp": ["a", "b"]}, index=["s1", "s2"])
    spec = ModelSpec(fixed_effects=("grp",))

    offset, source = resolve_offsets(feats, meta, spec)

    assert source == "library_size"
    np.testing.assert_allclose(offset, [np.log(20.0), 0.0])


def test_offsets_disabled_are_zero():
    feats = pd.DataFrame({"g1": [10, 3]}, index=["s1", "s2"])
    meta = pd.DataFrame({"grp": ["a", "b"], "scale_factor": [1.0, 2.0]}, index=["s1", "s2"])
    spec = ModelSpec(fixed_effects=("grp",), adjust_offset=False)

    offset, source = resolve_offsets(feats, meta, spec)

    assert source == "none"
    assert offset.tolist() == [0.0, 0.0]


def test_offsets_missing_library_data_raise():
    feats = pd.DataFrame({"g1": [1.0, np.nan]}, index=["s1", "s2"])
    meta = pd.DataFrame({"grp": ["a", "b"]}, index=["s1", "s2"])
    spec = ModelSpec(fixed_effects=("grp",))

    with pytest.raises(MissingOffsetDataError):
        resolve_offsets(feats, meta, spec)


def test_filter_features_reports_reasons():
    counts = pd.DataFrame(
        {"low": [1, 0, 0, 0], "rare": [50, 0, 0, 0], "ok": [10, 20, 5, 1]}
    )

    kept, removed = filter_features(counts, min_total_count=5, min_prevalence=0.5)

    assert kept == ["ok"]
    assert set(removed) == {"low", "rare"}
    assert "total count" in removed["low"]
    assert "prevalence" in removed["rare"]


def test_filter_features_defaults_keep_everything():
    counts = pd.DataFrame({"a": [0, 0, 0], "b": [1, 2, 3]})
    kept, removed = filter_features(counts)
    assert kept == ["a", "b"]
    assert removed == {}
