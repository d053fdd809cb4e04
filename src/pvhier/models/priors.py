"""Typed prior configuration for the hierarchical models.

A :class:`PriorConfig` maps every parameter role to one :class:`PriorSpec`.
The intercept accepts a ``normal`` or a ``constant`` prior (the latter fixes
it), coefficients a ``normal`` prior. Scale roles (group and residual
standard deviations) accept positive-support families only.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Tuple

import numpy as np
from scipy import stats


class PriorFamily(str, Enum):
    NORMAL = "normal"
    CONSTANT = "constant"
    HALF_NORMAL = "half_normal"
    HALF_STUDENT_T = "half_student_t"
    HALF_CAUCHY = "half_cauchy"
    EXPONENTIAL = "exponential"


class ParameterRole(str, Enum):
    INTERCEPT = "intercept"
    COEFFICIENT = "coefficient"
    GROUP_SD = "group_sd"
    RESIDUAL_SD = "residual_sd"


LOCATION_ROLES = (ParameterRole.INTERCEPT, ParameterRole.COEFFICIENT)
SCALE_ROLES = (ParameterRole.GROUP_SD, ParameterRole.RESIDUAL_SD)

LOCATION_FAMILIES = (PriorFamily.NORMAL, PriorFamily.CONSTANT)
SCALE_FAMILIES = (
    PriorFamily.HALF_NORMAL,
    PriorFamily.HALF_STUDENT_T,
    PriorFamily.HALF_CAUCHY,
    PriorFamily.EXPONENTIAL,
)

# Number of hyperparameters each family takes
_N_PARAMS = {
    PriorFamily.NORMAL: 2,  # mu, sigma
    PriorFamily.CONSTANT: 1,  # value
    PriorFamily.HALF_NORMAL: 1,  # sigma
    PriorFamily.HALF_STUDENT_T: 2,  # nu, sigma
    PriorFamily.HALF_CAUCHY: 1,  # scale
    PriorFamily.EXPONENTIAL: 1,  # rate
}


@dataclass(frozen=True)
class PriorSpec:
    family: PriorFamily
    params: Tuple[float, ...]

    def __post_init__(self):
        family = PriorFamily(self.family)
        params = tuple(float(p) for p in self.params)
        if len(params) != _N_PARAMS[family]:
            raise ValueError(f"{family.value} prior takes {_N_PARAMS[family]} parameter(s), got {params}")
        if family is PriorFamily.NORMAL and params[1] <= 0:
            raise ValueError("normal prior needs a positive sigma")
        if family in SCALE_FAMILIES and params[-1] <= 0:
            raise ValueError(f"{family.value} prior needs a positive scale/rate")
        if family is PriorFamily.HALF_STUDENT_T and params[0] <= 0:
            raise ValueError("half_student_t prior needs positive degrees of freedom")
        object.__setattr__(self, "family", family)
        object.__setattr__(self, "params", params)

    # -- constructors -------------------------------------------------------

    @classmethod
    def normal(cls, mu: float = 0.0, sigma: float = 1.0) -> "PriorSpec":
        return cls(PriorFamily.NORMAL, (mu, sigma))

    @classmethod
    def constant(cls, value: float = 0.0) -> "PriorSpec":
        return cls(PriorFamily.CONSTANT, (value,))

    @classmethod
    def half_normal(cls, sigma: float = 1.0) -> "PriorSpec":
        return cls(PriorFamily.HALF_NORMAL, (sigma,))

    @classmethod
    def half_student_t(cls, nu: float = 3.0, sigma: float = 1.0) -> "PriorSpec":
        return cls(PriorFamily.HALF_STUDENT_T, (nu, sigma))

    @classmethod
    def half_cauchy(cls, scale: float = 1.0) -> "PriorSpec":
        return cls(PriorFamily.HALF_CAUCHY, (scale,))

    @classmethod
    def exponential(cls, rate: float = 1.0) -> "PriorSpec":
        return cls(PriorFamily.EXPONENTIAL, (rate,))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PriorSpec":
        """``{"family": "half_normal", "params": [0.5]}``."""
        return cls(PriorFamily(d["family"]), tuple(d.get("params", ())))

    def to_dict(self) -> Dict[str, Any]:
        return {"family": self.family.value, "params": list(self.params)}

    # -- evaluation ---------------------------------------------------------

    @property
    def is_fixed(self) -> bool:
        return self.family is PriorFamily.CONSTANT

    @property
    def is_location(self) -> bool:
        return self.family in LOCATION_FAMILIES

    def logpdf(self, x: float) -> float:
        """Log density of a scale prior (location priors are handled in closed form)."""
        if self.family is PriorFamily.HALF_NORMAL:
            return float(stats.halfnorm.logpdf(x, scale=self.params[0]))
        if self.family is PriorFamily.HALF_CAUCHY:
            return float(stats.halfcauchy.logpdf(x, scale=self.params[0]))
        if self.family is PriorFamily.HALF_STUDENT_T:
            nu, sigma = self.params
            if x < 0:
                return -np.inf
            return float(np.log(2.0) + stats.t.logpdf(x, df=nu, scale=sigma))
        if self.family is PriorFamily.EXPONENTIAL:
            return float(stats.expon.logpdf(x, scale=1.0 / self.params[0]))
        raise ValueError(f"logpdf is only defined for scale priors, not {self.family.value}")

    def __str__(self) -> str:
        return f"{self.family.value}({', '.join(f'{p:g}' for p in self.params)})"


def _check_role(role: ParameterRole, spec: PriorSpec) -> None:
    if role is ParameterRole.COEFFICIENT and spec.family is not PriorFamily.NORMAL:
        raise ValueError(f"coefficient prior must be normal, got {spec}; drop the term to fix it at zero")
    if role in LOCATION_ROLES and spec.family not in LOCATION_FAMILIES:
        raise ValueError(f"{role.value} prior must be one of {[f.value for f in LOCATION_FAMILIES]}, got {spec}")
    if role in SCALE_ROLES and spec.family not in SCALE_FAMILIES:
        raise ValueError(f"{role.value} prior must be one of {[f.value for f in SCALE_FAMILIES]}, got {spec}")


@dataclass(frozen=True)
class PriorConfig:
    """Prior per parameter role, with optional per-grouping SD overrides."""

    intercept: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 1.0))
    coefficient: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 1.0))
    group_sd: PriorSpec = field(default_factory=lambda: PriorSpec.half_normal(1.0))
    residual_sd: PriorSpec = field(default_factory=lambda: PriorSpec.half_normal(1.0))
    group_sd_by_term: Tuple[Tuple[str, PriorSpec], ...] = ()

    def __post_init__(self):
        for role in ParameterRole:
            _check_role(role, self[role])
        for _, spec in self.group_sd_by_term:
            _check_role(ParameterRole.GROUP_SD, spec)

    def __getitem__(self, role: ParameterRole) -> PriorSpec:
        return getattr(self, ParameterRole(role).value)

    def with_override(self, role: ParameterRole, spec: PriorSpec) -> "PriorConfig":
        """Return a copy with exactly one role replaced."""
        role = ParameterRole(role)
        _check_role(role, spec)
        return replace(self, **{role.value: spec})

    def with_group_sd(self, term: str, spec: PriorSpec) -> "PriorConfig":
        """Return a copy with the SD prior of one random-effect term replaced."""
        _check_role(ParameterRole.GROUP_SD, spec)
        others = tuple((t, s) for t, s in self.group_sd_by_term if t != term)
        return replace(self, group_sd_by_term=others + ((term, spec),))

    def group_sd_for(self, term: str) -> PriorSpec:
        for t, spec in self.group_sd_by_term:
            if t == term:
                return spec
        return self.group_sd

    @property
    def intercept_fixed(self) -> bool:
        return self.intercept.is_fixed

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PriorConfig":
        """Build from ``{"intercept": {...}, "group_sd": {...}, "group_sd_by_term": {"cloud": {...}}}``.

        Unknown keys raise ``KeyError``; omitted roles keep their defaults.
        """
        known = {r.value for r in ParameterRole} | {"group_sd_by_term"}
        unknown = set(d) - known
        if unknown:
            raise KeyError(f"Unknown prior role(s): {sorted(unknown)}")
        kwargs: Dict[str, Any] = {
            r.value: PriorSpec.from_dict(d[r.value]) for r in ParameterRole if r.value in d
        }
        by_term = d.get("group_sd_by_term") or {}
        kwargs["group_sd_by_term"] = tuple((t, PriorSpec.from_dict(s)) for t, s in by_term.items())
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {r.value: self[r].to_dict() for r in ParameterRole}
        out["group_sd_by_term"] = {t: s.to_dict() for t, s in self.group_sd_by_term}
        return out


def default_priors(*, intercept: str = "estimated") -> PriorConfig:
    """Weakly-informative defaults.

    ``intercept="fixed"`` pins the population intercept at zero,
    ``intercept="estimated"`` gives it a Normal(0, 1) prior.
    """
    if intercept == "fixed":
        return PriorConfig(intercept=PriorSpec.constant(0.0))
    if intercept == "estimated":
        return PriorConfig()
    raise ValueError(f"intercept must be 'fixed' or 'estimated', got {intercept!r}")

