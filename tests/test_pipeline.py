from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import make_observations
from pvhier.config import PipelineConfig
from pvhier.models.fitting import FitFailure, FittedModel
from pvhier.models.priors import PriorFamily
from pvhier.models.sampler import SamplerConfig
from pvhier.pipeline import run_pipeline

EXAMPLE_CONFIG = Path(__file__).resolve().parents[1] / "config" / "pipeline.example.json"

FAST = SamplerConfig(warmup_iterations=100, total_iterations=250, chains=2, seed=3)


@pytest.fixture(scope="module")
def obs():
    df = make_observations(n_panels=6, days=5, seed=7)
    df.loc[df["panel_id"] == 6, "capacity"] = 0.0
    return df


def test_example_config_parses():
    cfg = PipelineConfig.from_json(EXAMPLE_CONFIG)
    assert cfg.tz == "Europe/Berlin"
    assert cfg.subsample_panel == "3"
    assert cfg.subsample_size == 2000
    assert cfg.subsample_seed == 4534
    assert cfg.sampler.chains == 4
    assert cfg.rules.min_irradiance == 0.1
    assert len(cfg.models) == 4
    assert cfg.column_map["Production"] == "y"


def test_config_from_dict_validation():
    with pytest.raises(KeyError):
        PipelineConfig.from_dict({"plots": {}})
    with pytest.raises(KeyError):
        PipelineConfig.from_dict({"sampler": {"draws": 5}})
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"models": {"intercept": "maybe"}})
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"ppc": {"statistics": ["max"]}})

    cfg = PipelineConfig.from_dict(
        {"models": {"priors": {"group_sd": {"family": "half_cauchy", "params": [0.5]}}}}
    )
    assert cfg.priors.group_sd.family is PriorFamily.HALF_CAUCHY


def test_run_pipeline(obs, tmp_path):
    cfg = PipelineConfig(
        subsample_panel="2",
        subsample_size=150,
        sampler=FAST,
        ppc_statistics=("mean",),
        ppc_replicates=20,
        output_dir=str(tmp_path / "out"),
    )
    result = run_pipeline(obs, cfg)

    assert list(result.panel_errors) == [6]
    assert 6 not in set(result.features["panel_id"])
    assert result.datasets["single_panel"].n_rows == 150
    assert result.datasets["single_panel"].panels == [2]
    assert set(result.fits) == {
        "pooled_lognormal",
        "pooled_lognormal_tod",
        "panel_hierarchical",
        "multi_panel_hierarchical",
    }
    assert all(isinstance(f, FittedModel) for f in result.fits.values())

    table = result.comparison_table()
    assert set(table["model"]) == set(result.fits)
    pooled = table.loc[(table["dataset"] == "all_panels") & (table["response"] == "yNorm")]
    assert sorted(pooled["rank"].tolist()) == [1, 2]
    assert "ppc_p_mean" in table.columns

    out = tmp_path / "out"
    for name in ("comparison.csv", "diagnostics.csv", "parameter_summary.csv", "derived_quantities.csv", "ppc.csv"):
        assert (out / name).exists()
    assert json.loads((out / "panel_errors.json").read_text()) == {"6": str(result.panel_errors[6])}


def test_failed_dataset_shows_up_unranked(obs):
    cfg = PipelineConfig(
        models=("pooled_lognormal", "panel_hierarchical"),
        subsample_panel="2",
        subsample_size=100000,
        sampler=FAST,
        ppc_statistics=(),
    )
    result = run_pipeline(obs, cfg)
    failure = result.fits["panel_hierarchical"]
    assert isinstance(failure, FitFailure)
    assert failure.reason.startswith("InsufficientData")
    assert result.failures == [failure]

    table = result.comparison_table()
    row = table.loc[table["model"] == "panel_hierarchical"].iloc[0]
    assert row["status"] == "failed"
    assert row["reason"].startswith("InsufficientData")
    assert table.loc[table["model"] == "pooled_lognormal", "rank"].iloc[0] == 1


def test_parallel_fits_match_serial(obs):
    base = dict(models=("pooled_lognormal", "pooled_lognormal_tod"), sampler=FAST, ppc_statistics=())
    serial = run_pipeline(obs, PipelineConfig(**base, n_jobs=1))
    parallel = run_pipeline(obs, PipelineConfig(**base, n_jobs=2))
    for name in base["models"]:
        a = serial.fits[name].draws["sigma"].values
        b = parallel.fits[name].draws["sigma"].values
        assert (a == b).all()
