from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from pvhier.data.features import derive_features
from pvhier.data.filtering import ModelDataset, filter_modeling_rows
from pvhier.models.registry import Family, Grouping, ModelSpec, RandomTerm, ResponseSpec
from pvhier.models.sampler import SamplerConfig

# r1 ("full") is full cloud cover, r9/r10 ("none") clear sky
CAPTURED = {"full": 0.25, "mid": 0.6, "none": 0.95}


def make_observations(
    n_panels: int = 19,
    days: int = 7,
    start: str = "2024-06-03",
    seed: int = 0,
    missing_frac: float = 0.05,
) -> pd.DataFrame:
    """Synthetic 15-minute panel series with a cloud-driven captured fraction."""

    rng = np.random.default_rng(seed)
    ts = pd.date_range(start, periods=days * 96, freq="15min", tz="UTC")
    hours = np.asarray(ts.hour + ts.minute / 60.0, dtype=float)
    clear_sky = np.clip(np.sin(np.pi * (hours - 4.0) / 16.0), 0.0, None)

    frames = []
    for p in range(1, n_panels + 1):
        capacity = 150.0 + 10.0 * p
        panel_effect = rng.normal(0.0, 0.1)

        hourly = rng.integers(1, 11, size=len(ts) // 4 + 1)
        raw = np.repeat(hourly, 4)[: len(ts)]
        collapsed = np.where(raw == 1, "full", np.where(raw >= 9, "none", "mid"))
        captured = np.array([CAPTURED[c] for c in collapsed])

        nirr = np.clip(clear_sky * rng.uniform(0.9, 1.0, size=len(ts)), 0.0, 1.0)
        noise = rng.normal(0.0, 0.15, size=len(ts))
        y = capacity * nirr * captured * np.exp(panel_effect + noise)

        cloud = pd.Series([f"r{v}" for v in raw], dtype=object)
        cloud[rng.uniform(size=len(ts)) < 0.02] = np.nan

        df = pd.DataFrame(
            {
                "panel_id": p,
                "timestamp": ts,
                "y": y,
                "capacity": capacity,
                "nIrr": nirr,
                "cloud_category_raw": cloud.to_numpy(),
            }
        )
        keep = rng.uniform(size=len(df)) >= missing_frac
        frames.append(df.loc[keep])

    return pd.concat(frames, ignore_index=True)


def random_intercept_frame(n_levels: int = 8, n_per: int = 50, seed: int = 0) -> pd.DataFrame:
    """``yCap = 0.5 + u[panel] + e`` with ``u ~ N(0, 0.5)`` and ``e ~ N(0, 0.3)``."""
    rng = np.random.default_rng(seed)
    u = rng.normal(0.0, 0.5, size=n_levels)
    panel = np.repeat(np.arange(1, n_levels + 1), n_per)
    y = 0.5 + u[panel - 1] + rng.normal(0.0, 0.3, size=panel.size)
    return pd.DataFrame({"panel_id": panel, "yCap": y, "capacity": 1.0, "nIrr": 1.0})


RANDOM_INTERCEPT_SPEC = ModelSpec(
    name="panel_intercepts",
    response=ResponseSpec(name="yCap", column="yCap"),
    terms=(),
    grouping=(RandomTerm(Grouping.PANEL),),
    family=Family.GAUSSIAN,
)


@pytest.fixture(scope="session")
def observations() -> pd.DataFrame:
    return make_observations()


@pytest.fixture(scope="session")
def features(observations) -> pd.DataFrame:
    return derive_features(observations, tz="UTC")


@pytest.fixture(scope="session")
def modeling(features) -> pd.DataFrame:
    return filter_modeling_rows(features)


@pytest.fixture(scope="session")
def small_modeling(modeling) -> pd.DataFrame:
    """Four panels of the filtered data, enough for quick fits."""
    return modeling.loc[modeling["panel_id"].isin([1, 2, 3, 4])].copy()


@pytest.fixture(scope="session")
def small_dataset(small_modeling) -> ModelDataset:
    return ModelDataset.from_frame(small_modeling, name="four_panels")


@pytest.fixture
def fast_sampler() -> SamplerConfig:
    return SamplerConfig(warmup_iterations=200, total_iterations=500, chains=2, seed=11)
