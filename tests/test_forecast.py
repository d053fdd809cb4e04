from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from pvhier.data.features import derive_features
from pvhier.models.fitting import fit
from pvhier.models.forecast import forecast_production, next_day_rows, score_forecast, simulate_production
from pvhier.models.registry import default_registry
from pvhier.models.sampler import SamplerConfig

from conftest import make_observations


@pytest.fixture(scope="module")
def fits(small_dataset):
    cfg = SamplerConfig(warmup_iterations=200, total_iterations=400, chains=2, seed=8)
    reg = default_registry()
    return {
        "pooled_lognormal": fit(reg.get("pooled_lognormal"), small_dataset, cfg),
        "multi_panel_hierarchical": fit(reg.get("multi_panel_hierarchical"), small_dataset, cfg),
    }


@pytest.fixture(scope="module")
def next_day():
    obs = make_observations(n_panels=5, days=8, seed=1)
    feats = derive_features(obs)
    return next_day_rows(feats, day="2024-06-10")


def test_next_day_rows(next_day):
    assert len(next_day) > 0
    assert (next_day["timestamp"].dt.date == pd.Timestamp("2024-06-10").date()).all()
    assert next_day["panel_id"].nunique() == 5


def test_next_day_rows_local_day():
    feats = derive_features(make_observations(n_panels=1, days=3, seed=2, missing_frac=0.0))
    local = next_day_rows(feats, day="2024-06-04", tz="Europe/Berlin")
    # local midnight is 22:00 UTC the day before
    assert local["timestamp"].min() == pd.Timestamp("2024-06-03 22:00", tz="UTC")
    assert len(local) == 96


@pytest.mark.parametrize("name", ["pooled_lognormal", "multi_panel_hierarchical"])
def test_forecast_bounds(fits, next_day, name):
    fc = forecast_production(fits[name], next_day, seed=3)
    assert len(fc) == len(next_day)
    assert {"panel_id", "timestamp", "mean", "p10", "p50", "p90"} <= set(fc.columns)

    dark = (next_day["nIrr"] <= 0.1).to_numpy()
    assert (fc.loc[dark, ["mean", "p10", "p50", "p90"]] == 0.0).all().all()

    lit = ~dark & next_day["cloud_category_raw"].notna().to_numpy()
    sub = fc.loc[lit]
    assert sub[["mean", "p10", "p50", "p90"]].notna().all().all()
    assert (sub["p10"] >= 0).all()
    assert (sub["p10"] <= sub["p50"]).all()
    assert (sub["p50"] <= sub["p90"]).all()


def test_forecast_rows_without_cloud_category_are_missing(fits, next_day):
    df = next_day.copy()
    lit = df.index[df["nIrr"] > 0.1]
    df.loc[lit[0], "cloud_category_raw"] = np.nan
    df.loc[lit[0], "cloud_category_collapsed"] = np.nan
    fc = forecast_production(fits["pooled_lognormal"], df, seed=3)
    assert np.isnan(fc.loc[lit[0], "mean"])


def test_unseen_panels_draw_from_group_sd(fits, next_day):
    # panel 5 was not in the four-panel fit
    assert 5 in set(next_day["panel_id"])
    sims = simulate_production(fits["multi_panel_hierarchical"], next_day, seed=4)
    rows = ((next_day["panel_id"] == 5) & (next_day["nIrr"] > 0.1) & next_day["cloud_category_raw"].notna()).to_numpy()
    assert rows.any()
    assert np.isfinite(sims[rows]).all()


def test_forecast_is_seeded(fits, next_day):
    a = forecast_production(fits["pooled_lognormal"], next_day, seed=11)
    b = forecast_production(fits["pooled_lognormal"], next_day, seed=11)
    pd.testing.assert_frame_equal(a, b)


def test_forecast_tracks_production(fits, next_day):
    fc = forecast_production(fits["pooled_lognormal"], next_day, seed=1)
    scores = score_forecast(fc, next_day)
    assert scores["n"] > 0
    assert scores["r2"] > 0.3


def test_score_forecast_perfect():
    actual = pd.DataFrame(
        {
            "panel_id": [1, 1, 2],
            "timestamp": pd.date_range("2024-06-10", periods=3, freq="15min", tz="UTC"),
            "y": [0.0, 10.0, 20.0],
        }
    )
    forecast = actual.rename(columns={"y": "mean"})
    scores = score_forecast(forecast, actual)
    assert scores["rmse"] == 0.0
    assert scores["mae"] == 0.0
    assert scores["r2"] == 1.0


def test_invalid_quantile(fits, next_day):
    with pytest.raises(ValueError):
        forecast_production(fits["pooled_lognormal"], next_day, quantiles=(0.5, 1.0))
