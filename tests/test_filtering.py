from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from pvhier.data.features import derive_features
from pvhier.data.filtering import (
    InclusionRules,
    ModelDataset,
    filter_modeling_rows,
    require_defined_normalization,
    subsample_panel,
)
from pvhier.errors import InsufficientData, UndefinedNormalization


def _panel_frame(n_rows: int = 3000, panel_id: int = 3) -> pd.DataFrame:
    rng = np.random.default_rng(1)
    return pd.DataFrame(
        {
            "panel_id": panel_id,
            "timestamp": pd.date_range("2024-01-01", periods=n_rows, freq="15min", tz="UTC"),
            "y": rng.uniform(0, 100, size=n_rows),
            "nIrr": rng.uniform(0.2, 1.0, size=n_rows),
            "cloud_category_raw": "r2",
        }
    )


def test_filter_rules(features):
    out = filter_modeling_rows(features)
    assert (out["nIrr"] > 0.1).all()
    assert out["cloud_category_raw"].notna().all()
    assert out["yNorm_defined"].all()
    assert len(out) < len(features)


def test_filter_is_idempotent(features):
    once = filter_modeling_rows(features)
    twice = filter_modeling_rows(once)
    pd.testing.assert_frame_equal(once, twice)


def test_filter_boundary_is_exclusive():
    df = pd.DataFrame(
        {
            "timestamp": pd.date_range("2024-06-03 10:00", periods=3, freq="15min", tz="UTC"),
            "nIrr": [0.1, 0.1000001, 0.5],
            "cloud_category_raw": ["r1", "r1", np.nan],
        }
    )
    out = filter_modeling_rows(df)
    assert out.index.tolist() == [1]

    relaxed = filter_modeling_rows(df, InclusionRules(min_irradiance=0.1, require_cloud_category=False))
    assert relaxed.index.tolist() == [1, 2]


def test_rows_without_a_timestamp_are_excluded(observations):
    obs = observations.copy()
    obs["timestamp"] = obs["timestamp"].astype(object)
    lit = obs.index[(obs["nIrr"] > 0.5) & obs["cloud_category_raw"].notna()]
    obs.loc[lit[0], "timestamp"] = "garbage"

    features = derive_features(obs)
    assert pd.isna(features.loc[lit[0], "timestamp"])
    assert pd.isna(features.loc[lit[0], "hour"])

    out = filter_modeling_rows(features)
    assert lit[0] not in out.index
    assert out["timestamp"].notna().all()
    assert lit[1] in out.index


def test_subsample_is_deterministic():
    df = pd.concat([_panel_frame(3000, panel_id=3), _panel_frame(500, panel_id=4)], ignore_index=True)
    a = subsample_panel(df, 3, n=2000, seed=4534)
    b = subsample_panel(df, 3, n=2000, seed=4534)
    pd.testing.assert_frame_equal(a, b)
    assert len(a) == 2000
    assert (a["panel_id"] == 3).all()
    assert a.index.is_unique
    assert a.index.is_monotonic_increasing

    expected = np.sort(np.random.default_rng(4534).choice(3000, size=2000, replace=False))
    assert a.index.tolist() == expected.tolist()

    c = subsample_panel(df, 3, n=2000, seed=1)
    assert a.index.tolist() != c.index.tolist()


def test_subsample_larger_than_panel_raises():
    df = _panel_frame(100)
    with pytest.raises(InsufficientData):
        subsample_panel(df, 3, n=101)


def test_require_defined_normalization(features, modeling):
    require_defined_normalization(modeling)
    with pytest.raises(UndefinedNormalization) as err:
        require_defined_normalization(features)
    assert err.value.n_rows > 0
    assert err.value.panel_ids


def test_model_dataset_is_a_frozen_copy(modeling):
    ds = ModelDataset.from_frame(modeling, name="all")
    frame = ds.to_frame()
    frame["yNorm"] = 0.0
    assert not (ds.to_frame()["yNorm"] == 0.0).all()
    assert ds.n_rows == len(modeling)
    assert ds.panels == sorted(modeling["panel_id"].unique().tolist(), key=str)

    same = ModelDataset.from_frame(modeling.copy(), name="again")
    assert same.fingerprint == ds.fingerprint
    other = ModelDataset.from_frame(modeling.iloc[1:], name="other")
    assert other.fingerprint != ds.fingerprint

    with pytest.raises(AttributeError):
        ds.name = "changed"
