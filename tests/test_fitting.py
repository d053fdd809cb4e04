from __future__ import annotations

import pickle

import numpy as np
import pytest
import xarray as xr

from conftest import RANDOM_INTERCEPT_SPEC, random_intercept_frame
from pvhier.config import PipelineConfig
from pvhier.data.filtering import ModelDataset
from pvhier.diagnostics.convergence import convergence_table, split_rhat
from pvhier.errors import InsufficientData, NonConvergence, UndefinedNormalization, UnrecognizedCloudCategory
from pvhier.models.design import build_structure
from pvhier.models.fitting import FitFailure, FittedModel, fit, fit_or_failure, load_fitted, refit
from pvhier.models.priors import ParameterRole, PriorSpec
from pvhier.models.registry import default_registry
from pvhier.models.sampler import SAMPLER_SEED, SampleResult, SamplerConfig


class FailingEngine:
    def sample(self, structure, priors, config):
        return SampleResult(draws=None, failed=True, message="chain 0: non-finite log posterior")


class DivergentEngine:
    def sample(self, structure, priors, config):
        return SampleResult(draws=xr.Dataset(), divergences={"sd_cloud": 7, "sigma": 0})


def test_sampler_config_validation():
    SamplerConfig(warmup_iterations=10, total_iterations=20)
    with pytest.raises(ValueError):
        SamplerConfig(warmup_iterations=20, total_iterations=20)
    with pytest.raises(ValueError):
        SamplerConfig(target_acceptance_rate=1.0)
    with pytest.raises(ValueError):
        SamplerConfig(chains=0)
    with pytest.raises(KeyError):
        SamplerConfig.from_dict({"iterations": 10})
    assert SamplerConfig.from_dict({"chains": 2}).chains == 2


def test_structure_layout(small_dataset):
    spec = default_registry().get("multi_panel_hierarchical")
    s = build_structure(spec, small_dataset)
    assert s.population_names == ("Intercept", "morning")
    assert [b.name for b in s.blocks] == ["cloud", "panel", "panel_morning", "panel_cloud"]
    assert s.blocks[0].levels == ("full", "mid", "none")
    assert s.blocks[1].size == 4
    assert s.blocks[3].size == 12
    assert s.W.shape == (s.n_obs, 2 + 3 + 4 + 4 + 12)
    np.testing.assert_allclose(s.y, small_dataset.to_frame()["yCap"].to_numpy() - 1.0)


def test_fixed_intercept_becomes_offset(small_dataset):
    spec = default_registry(intercept="fixed").get("pooled_lognormal")
    s = build_structure(spec, small_dataset)
    assert s.population_names == ()
    assert s.offset == 0.0


def test_empty_dataset_is_insufficient(small_modeling):
    empty = ModelDataset.from_frame(small_modeling.iloc[0:0], name="empty")
    with pytest.raises(InsufficientData):
        fit(default_registry().get("pooled_lognormal"), empty)


def test_empty_cloud_level_is_insufficient(small_modeling, fast_sampler):
    no_overcast = small_modeling.loc[small_modeling["cloud_category_collapsed"] != "full"]
    ds = ModelDataset.from_frame(no_overcast, name="no_full")

    class MustNotRun:
        def sample(self, *args):
            raise AssertionError("engine called despite insufficient data")

    with pytest.raises(InsufficientData, match="full"):
        fit(default_registry().get("pooled_lognormal"), ds, fast_sampler, engine=MustNotRun())


def test_lognormal_model_needs_defined_normalization(features):
    ds = ModelDataset.from_frame(features.loc[features["panel_id"] == 1], name="unfiltered")
    with pytest.raises(UndefinedNormalization):
        fit(default_registry().get("pooled_lognormal"), ds)


def test_engine_failure_surfaces_as_non_convergence(small_dataset, fast_sampler):
    spec = default_registry().get("pooled_lognormal")
    with pytest.raises(NonConvergence, match="non-finite"):
        fit(spec, small_dataset, fast_sampler, engine=FailingEngine())

    with pytest.raises(NonConvergence) as err:
        fit(spec, small_dataset, fast_sampler, engine=DivergentEngine())
    assert err.value.divergences == {"sd_cloud": 7, "sigma": 0}
    assert err.value.total_divergences == 7
    assert err.value.model_name == "pooled_lognormal"
    assert "sd_cloud=7" in str(err.value)


def test_fit_or_failure_records_reason(small_dataset, fast_sampler):
    out = fit_or_failure(default_registry().get("pooled_lognormal"), small_dataset, fast_sampler, engine=FailingEngine())
    assert isinstance(out, FitFailure)
    assert out.model_name == "pooled_lognormal"
    assert out.reason.startswith("NonConvergence")
    assert out.dataset_fingerprint == small_dataset.fingerprint


def test_errors_survive_pickling():
    err = NonConvergence("sampler failed", model_name="m", divergences={"sigma": 2})
    back = pickle.loads(pickle.dumps(err))
    assert str(back) == str(err)
    assert back.divergences == {"sigma": 2}

    label_err = UnrecognizedCloudCategory([5], 3, ["r11"])
    back = pickle.loads(pickle.dumps(label_err))
    assert str(back) == str(label_err)
    assert back.panel_ids == [5]
    assert back.n_rows == 3


def test_rhat_on_well_specified_model():
    ds = ModelDataset.from_frame(random_intercept_frame(n_levels=8, n_per=50, seed=3), name="synthetic")
    cfg = SamplerConfig(warmup_iterations=500, total_iterations=1500, chains=4, seed=2024)
    fitted = fit(RANDOM_INTERCEPT_SPEC, ds, cfg)

    assert fitted.draws.sizes["chain"] == 4
    assert fitted.draws.sizes["draw"] == 1000
    assert fitted.draws.sizes["panel_level"] == 8

    for var in ("b_Intercept", "sd_panel", "sigma"):
        assert 0.99 <= split_rhat(fitted.draws[var]) <= 1.05
    table = convergence_table(fitted)
    assert table["rhat"].between(0.99, 1.05).all()

    sigma = float(fitted.draws["sigma"].mean())
    assert 0.25 < sigma < 0.36


def test_fitted_model_accessors(small_dataset, fast_sampler, tmp_path):
    fitted = fit(default_registry().get("pooled_lognormal"), small_dataset, fast_sampler)
    assert fitted.dataset_fingerprint == small_dataset.fingerprint
    assert fitted.location_draws().shape == (fitted.n_draws, 4)
    assert fitted.linear_predictor().shape == (fitted.structure.n_obs, fitted.n_draws)

    summary = fitted.summary()
    assert {"model", "parameter", "level", "mean", "sd", "q0.025", "q0.975"} <= set(summary.columns)
    assert set(summary["parameter"]) == {"b_Intercept", "sd_cloud", "r_cloud", "sigma"}

    derived = fitted.derived_quantities().set_index(["quantity", "level"])
    expected = derived["mean"]
    assert expected[("expected_yNorm", "none")] > expected[("expected_yNorm", "mid")] > expected[("expected_yNorm", "full")]
    for lvl in ("full", "mid", "none"):
        assert expected[("loss_fraction", lvl)] == pytest.approx(1.0 - expected[("captured_fraction", lvl)])
        assert expected[("expected_yNorm", lvl)] > expected[("median_yNorm", lvl)]

    loss = derived.xs("loss_fraction", level="quantity")
    assert (loss["q0.025"] >= 0.0).all()
    assert (loss["q0.975"] <= 1.0).all()
    # clear sky anchors the baseline; full cloud keeps about a quarter of it
    assert expected[("captured_fraction", "none")] > 0.9
    assert 0.15 < expected[("captured_fraction", "full")] < 0.4

    path = fitted.save(tmp_path / "fit.joblib")
    back = load_fitted(path)
    assert isinstance(back, FittedModel)
    np.testing.assert_allclose(back.location_draws(), fitted.location_draws())


def test_gaussian_model_has_no_captured_fraction(small_dataset, fast_sampler):
    fitted = fit(RANDOM_INTERCEPT_SPEC, ModelDataset.from_frame(random_intercept_frame(), name="s"), fast_sampler)
    with pytest.raises(ValueError):
        fitted.derived_quantities()


def test_refit_with_tighter_prior(small_dataset, fast_sampler):
    spec = default_registry().get("pooled_lognormal")
    fitted = fit(spec, small_dataset, fast_sampler)
    tight = spec.priors.with_override(ParameterRole.GROUP_SD, PriorSpec.half_normal(0.05))
    again = refit(fitted, priors=tight)
    assert again.spec.priors.group_sd == PriorSpec.half_normal(0.05)
    assert again.dataset is fitted.dataset
    assert float(again.draws["sd_cloud"].mean()) < float(fitted.draws["sd_cloud"].mean())

    failure = FitFailure(model_name="pooled_lognormal", reason="x")
    with pytest.raises(ValueError):
        refit(failure)


def test_same_seed_same_draws(small_dataset, fast_sampler):
    spec = default_registry().get("pooled_lognormal")
    a = fit(spec, small_dataset, fast_sampler)
    b = fit(spec, small_dataset, fast_sampler)
    np.testing.assert_array_equal(a.draws["sigma"].values, b.draws["sigma"].values)


def test_default_sampler_config_is_seeded(small_dataset):
    assert SamplerConfig().seed == SAMPLER_SEED
    assert PipelineConfig().sampler.seed == SAMPLER_SEED

    cfg = SamplerConfig(warmup_iterations=100, total_iterations=200, chains=2)
    spec = default_registry().get("pooled_lognormal")
    a = fit(spec, small_dataset, cfg)
    b = fit(spec, small_dataset, cfg)
    np.testing.assert_array_equal(a.draws["sigma"].values, b.draws["sigma"].values)
