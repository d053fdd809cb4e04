from __future__ import annotations

import pytest

from pvhier.models.priors import ParameterRole, PriorConfig, PriorFamily, PriorSpec, default_priors
from pvhier.models.registry import (
    Family,
    Grouping,
    ModelRegistry,
    ModelSpec,
    RandomTerm,
    Y_NORM,
    default_registry,
)


def test_default_catalog():
    reg = default_registry()
    assert reg.names() == [
        "pooled_lognormal",
        "pooled_lognormal_tod",
        "panel_hierarchical",
        "multi_panel_hierarchical",
    ]
    pooled = reg.get("pooled_lognormal")
    assert pooled.family is Family.LOGNORMAL
    assert pooled.response.column == "yNorm"
    assert [t.grouping for t in pooled.grouping] == [Grouping.CLOUD]

    single = reg.get("panel_hierarchical")
    multi = reg.get("multi_panel_hierarchical")
    assert single.scope == "single_panel"
    assert multi.scope == "all_panels"
    assert single.grouping == multi.grouping
    assert single.terms == ("morning",)
    assert single.response.shift == -1.0
    names = [t.name for t in multi.grouping]
    assert names == ["cloud", "panel", "panel_morning", "panel_cloud"]


def test_cloud_within_panel_is_distinct_from_cloud(features):
    cloud = Grouping.CLOUD.labels(features)
    nested = Grouping.CLOUD_WITHIN_PANEL.labels(features)
    assert nested.dropna().nunique() > cloud.dropna().nunique()
    assert nested.isna().equals(cloud.isna())
    assert nested.dropna().str.contains(":").all()


def test_formula():
    spec = default_registry().get("multi_panel_hierarchical")
    assert spec.formula == (
        "yCap - 1 ~ Intercept + morning + (1 | cloud) + (1 | panel) + (morning | panel) + (1 | panel_cloud)"
    )
    assert default_registry().get("pooled_lognormal").formula == "log(yNorm) ~ Intercept + (1 | cloud)"


def test_default_priors_are_weakly_informative():
    p = default_priors()
    assert p.intercept == PriorSpec.normal(0.0, 1.0)
    assert p.coefficient == PriorSpec.normal(0.0, 1.0)
    assert p.group_sd == PriorSpec.half_normal(1.0)
    assert p.residual_sd == PriorSpec.half_normal(1.0)
    assert not p.intercept_fixed


def test_fixed_intercept_option():
    reg = default_registry(intercept="fixed")
    for spec in reg:
        assert spec.priors.intercept_fixed
        assert spec.priors.intercept.params == (0.0,)
    with pytest.raises(ValueError):
        default_registry(intercept="sometimes")


def test_override_replaces_exactly_one_role():
    base = default_priors()
    new = base.with_override(ParameterRole.GROUP_SD, PriorSpec.half_student_t(3.0, 0.5))
    assert new.group_sd.family is PriorFamily.HALF_STUDENT_T
    for role in (ParameterRole.INTERCEPT, ParameterRole.COEFFICIENT, ParameterRole.RESIDUAL_SD):
        assert new[role] == base[role]
    assert base.group_sd == PriorSpec.half_normal(1.0)


def test_group_specific_sd_override():
    p = default_priors().with_group_sd("panel_cloud", PriorSpec.exponential(2.0))
    assert p.group_sd_for("panel_cloud") == PriorSpec.exponential(2.0)
    assert p.group_sd_for("cloud") == p.group_sd


@pytest.mark.parametrize(
    "role, spec",
    [
        (ParameterRole.GROUP_SD, PriorSpec.normal(0.0, 1.0)),
        (ParameterRole.RESIDUAL_SD, PriorSpec.constant(1.0)),
        (ParameterRole.COEFFICIENT, PriorSpec.half_normal(1.0)),
        (ParameterRole.COEFFICIENT, PriorSpec.constant(0.0)),
        (ParameterRole.INTERCEPT, PriorSpec.half_cauchy(1.0)),
    ],
)
def test_invalid_family_role_pairs(role, spec):
    with pytest.raises(ValueError):
        default_priors().with_override(role, spec)


def test_prior_spec_validation():
    with pytest.raises(ValueError):
        PriorSpec.normal(0.0, -1.0)
    with pytest.raises(ValueError):
        PriorSpec(PriorFamily.HALF_NORMAL, (1.0, 2.0))
    with pytest.raises(ValueError):
        PriorSpec.from_dict({"family": "gamma", "params": [1.0]})


def test_prior_config_dict_round_trip():
    cfg = default_priors(intercept="fixed").with_group_sd("cloud", PriorSpec.half_cauchy(0.5))
    assert PriorConfig.from_dict(cfg.to_dict()) == cfg
    with pytest.raises(KeyError):
        PriorConfig.from_dict({"slope": {"family": "normal", "params": [0, 1]}})


def test_registry_override_does_not_mutate():
    reg = default_registry()
    tight = reg.with_priors("pooled_lognormal", ParameterRole.RESIDUAL_SD, PriorSpec.half_normal(0.2))
    assert tight.priors.residual_sd == PriorSpec.half_normal(0.2)
    assert reg.get("pooled_lognormal").priors.residual_sd == PriorSpec.half_normal(1.0)


def test_registry_register_and_lookup():
    reg = ModelRegistry()
    spec = ModelSpec(name="tod_only", response=Y_NORM, terms=(), grouping=(RandomTerm("tod"),), family="lognormal")
    reg.register(spec)
    assert "tod_only" in reg
    assert reg.get("tod_only").grouping[0].grouping is Grouping.TIME_OF_DAY
    with pytest.raises(KeyError):
        reg.register(spec)
    reg.register(spec, overwrite=True)
    assert len(reg) == 1
    with pytest.raises(KeyError):
        reg.get("missing")


def test_spec_validation():
    with pytest.raises(ValueError):
        ModelSpec(name="x", response=Y_NORM, terms=("wind",), grouping=(), family="gaussian")
    with pytest.raises(ValueError):
        ModelSpec(name="x", response=Y_NORM, terms=(), grouping=(), family="gaussian", scope="some_panels")
    with pytest.raises(ValueError):
        ModelSpec(
            name="x",
            response=Y_NORM,
            terms=(),
            grouping=(RandomTerm(Grouping.CLOUD), RandomTerm(Grouping.CLOUD)),
            family="gaussian",
        )
    with pytest.raises(ValueError):
        RandomTerm(Grouping.PANEL, "temperature")
