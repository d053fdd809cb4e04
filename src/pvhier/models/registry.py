"""Catalog of candidate model structures.

Every entry is a :class:`ModelSpec`: name, response, population-level terms,
random-effect grouping structure, likelihood family and prior configuration.
The default catalog mirrors the modelling progression

1. ``pooled_lognormal`` – normalized production on the log scale with a
   captured-fraction interpretation: ``yNorm = baseline * captured``, where
   ``log(captured)`` varies by collapsed cloud category
   (``pooled_lognormal_tod`` adds a time-of-day intercept)
2. ``panel_hierarchical`` – ``yCap - 1`` for a single panel with a morning
   slope, cloud intercepts, per-panel intercept and morning slope and a
   cloud-within-panel intercept
3. ``multi_panel_hierarchical`` – the same structure over all panels
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd

from pvhier.data.features import COLLAPSED_CLOUD_LEVELS
from pvhier.models.priors import ParameterRole, PriorConfig, PriorSpec, default_priors


SCOPES = ("single_panel", "all_panels")

# Population-level and random-slope covariates the design builder knows about
COVARIATES = ("morning", "nIrr")

TIME_OF_DAY_LEVELS = ("afternoon", "morning")


class Family(str, Enum):
    GAUSSIAN = "gaussian"
    LOGNORMAL = "lognormal"


class Grouping(str, Enum):
    CLOUD = "cloud"
    TIME_OF_DAY = "tod"
    PANEL = "panel"
    CLOUD_WITHIN_PANEL = "panel_cloud"

    @property
    def declared_levels(self) -> Optional[Tuple[str, ...]]:
        """Levels that must all be present in the data, or None when data-driven."""
        if self is Grouping.CLOUD:
            return COLLAPSED_CLOUD_LEVELS
        if self is Grouping.TIME_OF_DAY:
            return TIME_OF_DAY_LEVELS
        return None

    def labels(self, df: pd.DataFrame) -> pd.Series:
        """Group label of every row (string, NaN where the row has no group)."""
        if self is Grouping.CLOUD:
            return df["cloud_category_collapsed"].astype(object)
        if self is Grouping.TIME_OF_DAY:
            return df["morning"].map({True: "morning", False: "afternoon"}).astype(object)
        if self is Grouping.PANEL:
            return df["panel_id"].astype(str)
        cloud = df["cloud_category_collapsed"].astype(object)
        out = df["panel_id"].astype(str) + ":" + cloud.astype(str)
        return out.where(cloud.notna(), np.nan)


@dataclass(frozen=True)
class RandomTerm:
    """A random intercept (``covariate=None``) or random slope varying by ``grouping``."""

    grouping: Grouping
    covariate: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "grouping", Grouping(self.grouping))
        if self.covariate is not None and self.covariate not in COVARIATES:
            raise ValueError(f"Unknown random-slope covariate {self.covariate!r}; expected one of {COVARIATES}")

    @property
    def name(self) -> str:
        if self.covariate is None:
            return self.grouping.value
        return f"{self.grouping.value}_{self.covariate}"

    def __str__(self) -> str:
        lhs = "1" if self.covariate is None else self.covariate
        return f"({lhs} | {self.grouping.value})"


@dataclass(frozen=True)
class ResponseSpec:
    """Modelled quantity: ``frame[column] + shift`` (log-transformed by the lognormal family)."""

    name: str
    column: str
    shift: float = 0.0

    def values(self, df: pd.DataFrame) -> np.ndarray:
        return pd.to_numeric(df[self.column], errors="coerce").to_numpy(dtype=float) + float(self.shift)

    def to_production(self, response: np.ndarray, df: pd.DataFrame) -> np.ndarray:
        """Map response-scale values (rows x draws) back to production units."""
        base = np.asarray(response, dtype=float) - float(self.shift)
        cap = pd.to_numeric(df["capacity"], errors="coerce").to_numpy(dtype=float)
        if self.column == "yCap":
            scale = cap
        elif self.column == "yNorm":
            scale = cap * pd.to_numeric(df["nIrr"], errors="coerce").to_numpy(dtype=float)
        else:
            raise ValueError(f"No production back-transform for response column {self.column!r}")
        if base.ndim == 2:
            scale = scale[:, None]
        return base * scale


Y_NORM = ResponseSpec(name="yNorm", column="yNorm")
Y_CAP_MINUS_ONE = ResponseSpec(name="yCap - 1", column="yCap", shift=-1.0)


@dataclass(frozen=True)
class ModelSpec:
    name: str
    response: ResponseSpec
    terms: Tuple[str, ...]
    grouping: Tuple[RandomTerm, ...]
    family: Family
    priors: PriorConfig = field(default_factory=PriorConfig)
    scope: str = "all_panels"
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, "family", Family(self.family))
        object.__setattr__(self, "terms", tuple(self.terms))
        object.__setattr__(self, "grouping", tuple(self.grouping))
        unknown = [t for t in self.terms if t not in COVARIATES]
        if unknown:
            raise ValueError(f"Unknown population-level term(s) {unknown}; expected from {COVARIATES}")
        if len(set(self.terms)) != len(self.terms):
            raise ValueError(f"Duplicate population-level terms in {self.terms}")
        names = [g.name for g in self.grouping]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate random-effect terms in {names}")
        if self.scope not in SCOPES:
            raise ValueError(f"scope must be one of {SCOPES}, got {self.scope!r}")

    @property
    def linear_predictor_terms(self) -> Tuple[str, ...]:
        return ("Intercept",) + self.terms

    @property
    def formula(self) -> str:
        lhs = self.response.name if self.family is Family.GAUSSIAN else f"log({self.response.name})"
        rhs = " + ".join(list(self.linear_predictor_terms) + [str(g) for g in self.grouping])
        return f"{lhs} ~ {rhs}"

    def with_priors(self, priors: PriorConfig) -> "ModelSpec":
        return replace(self, priors=priors)

    def with_prior(self, role: ParameterRole, spec: PriorSpec) -> "ModelSpec":
        return replace(self, priors=self.priors.with_override(role, spec))


class ModelRegistry:
    """Ordered, name-keyed collection of :class:`ModelSpec` entries."""

    def __init__(self, specs: Iterable[ModelSpec] = ()):
        self._specs: Dict[str, ModelSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ModelSpec, *, overwrite: bool = False) -> None:
        if spec.name in self._specs and not overwrite:
            raise KeyError(f"Model '{spec.name}' is already registered")
        self._specs[spec.name] = spec

    def get(self, name: str) -> ModelSpec:
        if name not in self._specs:
            raise KeyError(f"Unknown model '{name}'. Registered: {self.names()}")
        return self._specs[name]

    def names(self) -> List[str]:
        return list(self._specs)

    def with_priors(self, name: str, role: ParameterRole, spec: PriorSpec) -> ModelSpec:
        """A copy of one entry with one prior role overridden (the registry is unchanged)."""
        return self.get(name).with_prior(role, spec)

    def __iter__(self) -> Iterator[ModelSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs


def _hierarchical_grouping() -> Tuple[RandomTerm, ...]:
    return (
        RandomTerm(Grouping.CLOUD),
        RandomTerm(Grouping.PANEL),
        RandomTerm(Grouping.PANEL, "morning"),
        RandomTerm(Grouping.CLOUD_WITHIN_PANEL),
    )


def default_registry(*, intercept: str = "estimated") -> ModelRegistry:
    """The default catalog; ``intercept`` is ``"estimated"`` or ``"fixed"`` (at zero)."""

    priors = default_priors(intercept=intercept)
    return ModelRegistry(
        [
            ModelSpec(
                name="pooled_lognormal",
                response=Y_NORM,
                terms=(),
                grouping=(RandomTerm(Grouping.CLOUD),),
                family=Family.LOGNORMAL,
                priors=priors,
                scope="all_panels",
                description="yNorm = baseline x captured fraction; log captured fraction varies by cloud category",
            ),
            ModelSpec(
                name="pooled_lognormal_tod",
                response=Y_NORM,
                terms=(),
                grouping=(RandomTerm(Grouping.CLOUD), RandomTerm(Grouping.TIME_OF_DAY)),
                family=Family.LOGNORMAL,
                priors=priors,
                scope="all_panels",
                description="pooled_lognormal plus a time-of-day intercept",
            ),
            ModelSpec(
                name="panel_hierarchical",
                response=Y_CAP_MINUS_ONE,
                terms=("morning",),
                grouping=_hierarchical_grouping(),
                family=Family.GAUSSIAN,
                priors=priors,
                scope="single_panel",
                description="yCap - 1 for one panel with cloud, panel and cloud-within-panel effects",
            ),
            ModelSpec(
                name="multi_panel_hierarchical",
                response=Y_CAP_MINUS_ONE,
                terms=("morning",),
                grouping=_hierarchical_grouping(),
                family=Family.GAUSSIAN,
                priors=priors,
                scope="all_panels",
                description="panel_hierarchical fitted jointly over all panels",
            ),
        ]
    )
