"""Fit driver: specification + dataset + sampler settings -> fitted model.

Failures are never downgraded: ``InsufficientData`` is raised before the
engine is called, ``NonConvergence`` when the engine reports divergent
transitions or failed initialization. Refitting with adjusted priors or
sampler settings is an explicit call to :func:`refit`.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import joblib
import numpy as np
import pandas as pd
import xarray as xr

from pvhier.data.filtering import ModelDataset
from pvhier.errors import NonConvergence, PVHierError
from pvhier.models.design import MIN_ROWS, ModelStructure, build_structure, frame_for_structure
from pvhier.models.priors import PriorConfig
from pvhier.models.registry import Family, ModelSpec
from pvhier.models.sampler import GibbsSampler, SamplerConfig, SamplerEngine

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class FittedModel:
    spec: ModelSpec
    dataset: ModelDataset
    sampler_config: SamplerConfig
    structure: ModelStructure
    draws: xr.Dataset
    acceptance: Dict[str, float] = field(default_factory=dict)
    runtime_s: float = 0.0

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def dataset_fingerprint(self) -> str:
        return self.dataset.fingerprint

    @property
    def n_draws(self) -> int:
        return int(self.draws.sizes["chain"] * self.draws.sizes["draw"])

    def frame(self) -> pd.DataFrame:
        """The dataset rows that entered the fit."""
        return frame_for_structure(self.dataset, self.structure)

    def location_draws(self) -> np.ndarray:
        """Location vector draws, shape (chain * draw, p), in design order."""
        parts = [self.draws[f"b_{n}"].values.reshape(-1, 1) for n in self.structure.population_names]
        for b in self.structure.blocks:
            arr = self.draws[f"r_{b.name}"].values
            parts.append(arr.reshape(-1, arr.shape[-1]))
        if not parts:
            return np.zeros((self.n_draws, 0))
        return np.hstack(parts)

    def sd_draws(self) -> Dict[str, np.ndarray]:
        return {b.name: self.draws[f"sd_{b.name}"].values.reshape(-1) for b in self.structure.blocks}

    def sigma_draws(self) -> np.ndarray:
        return self.draws["sigma"].values.reshape(-1)

    def linear_predictor(self, W=None) -> np.ndarray:
        """Model-scale mean per row and draw, shape (n_rows, n_draws)."""
        W = self.structure.W if W is None else W
        return np.asarray(W @ self.location_draws().T) + self.structure.offset

    def summary(self, prob: float = 0.95) -> pd.DataFrame:
        """Posterior mean, sd and central interval for every parameter (and level)."""
        lo, hi = (1.0 - prob) / 2.0, 1.0 - (1.0 - prob) / 2.0
        rows: List[Dict[str, object]] = []
        for var in self.draws.data_vars:
            da = self.draws[var]
            extra = [d for d in da.dims if d not in ("chain", "draw")]
            if not extra:
                items = [(var, None, da.values.reshape(-1))]
            else:
                dim = extra[0]
                items = [
                    (var, str(lvl), da.sel({dim: lvl}).values.reshape(-1)) for lvl in da[dim].values
                ]
            for name, level, v in items:
                rows.append(
                    {
                        "parameter": name,
                        "level": level,
                        "mean": float(np.mean(v)),
                        "sd": float(np.std(v, ddof=1)),
                        f"q{lo:.3f}": float(np.quantile(v, lo)),
                        f"q{hi:.3f}": float(np.quantile(v, hi)),
                    }
                )
        out = pd.DataFrame(rows)
        out.insert(0, "model", self.name)
        return out

    def derived_quantities(self, prob: float = 0.95) -> pd.DataFrame:
        """Baseline, captured fraction and loss fraction per cloud category.

        Only defined for the lognormal (captured-fraction) family. Per draw
        the baseline is the median yNorm of the highest-capture category,
        ``exp(intercept + max(r_cloud))``, and each category captures
        ``exp(r_cloud - max(r_cloud))`` of it, so captured fractions lie in
        (0, 1] and loss fractions in [0, 1). ``median_yNorm`` is
        ``baseline * captured``; ``expected_yNorm`` adds the lognormal
        ``sigma**2 / 2`` term. Other random effects are held at zero.
        """
        if self.spec.family is not Family.LOGNORMAL:
            raise ValueError(f"Derived captured-fraction quantities need a lognormal model, got {self.spec.family.value}")
        lo, hi = (1.0 - prob) / 2.0, 1.0 - (1.0 - prob) / 2.0
        n = self.n_draws
        if "b_Intercept" in self.draws:
            log_base = self.draws["b_Intercept"].values.reshape(-1)
        else:
            log_base = np.full(n, self.structure.offset)

        def _row(quantity: str, level, v: np.ndarray) -> Dict[str, object]:
            return {
                "quantity": quantity,
                "level": level,
                "mean": float(np.mean(v)),
                f"q{lo:.3f}": float(np.quantile(v, lo)),
                f"q{hi:.3f}": float(np.quantile(v, hi)),
            }

        if "r_cloud" in self.draws:
            r = self.draws["r_cloud"].transpose("chain", "draw", "cloud_level")
            levels = [str(lvl) for lvl in r["cloud_level"].values]
            u = r.values.reshape(n, len(levels))
        else:
            levels, u = [], np.zeros((n, 0))
        anchor = u.max(axis=1) if levels else np.zeros(n)
        half_var = 0.5 * self.draws["sigma"].values.reshape(-1) ** 2

        rows = [_row("baseline", None, np.exp(log_base + anchor))]
        for j, lvl in enumerate(levels):
            captured = np.exp(u[:, j] - anchor)
            rows.append(_row("captured_fraction", lvl, captured))
            rows.append(_row("loss_fraction", lvl, 1.0 - captured))
            rows.append(_row("median_yNorm", lvl, np.exp(log_base + u[:, j])))
            rows.append(_row("expected_yNorm", lvl, np.exp(log_base + u[:, j] + half_var)))
        out = pd.DataFrame(rows)
        out.insert(0, "model", self.name)
        return out

    def save(self, path: Union[str, os.PathLike]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(self, path)
        return path


@dataclass(frozen=True)
class FitFailure:
    model_name: str
    reason: str
    error: Optional[BaseException] = None
    dataset_name: Optional[str] = None
    dataset_fingerprint: Optional[str] = None

    @property
    def name(self) -> str:
        return self.model_name


def load_fitted(path: Union[str, os.PathLike]) -> FittedModel:
    obj = joblib.load(Path(path))
    if not isinstance(obj, FittedModel):
        raise TypeError(f"{path} does not contain a FittedModel (got {type(obj).__name__})")
    return obj


def fit(
    spec: ModelSpec,
    dataset: ModelDataset,
    sampler_config: Optional[SamplerConfig] = None,
    *,
    engine: Optional[SamplerEngine] = None,
    min_rows: int = MIN_ROWS,
) -> FittedModel:
    """Fit ``spec`` on ``dataset``.

    Raises
    ------
    InsufficientData
        Before sampling, if the data cannot identify the structure.
    NonConvergence
        If the engine reports divergent transitions or failed initialization.
    """

    sampler_config = sampler_config or SamplerConfig()
    engine = engine or GibbsSampler()

    structure = build_structure(spec, dataset, min_rows=min_rows)
    logger.info(
        "[%s] fitting %s on '%s' (%d rows, %d location parameters, %d chains x %d iterations)",
        spec.name,
        spec.formula,
        dataset.name,
        structure.n_obs,
        structure.n_location,
        sampler_config.chains,
        sampler_config.total_iterations,
    )

    t0 = time.perf_counter()
    result = engine.sample(structure, spec.priors, sampler_config)
    runtime = time.perf_counter() - t0

    if result.failed or result.draws is None:
        raise NonConvergence(
            f"sampler failed: {result.message or 'no draws returned'}",
            model_name=spec.name,
            divergences=result.divergences,
        )
    if result.total_divergences > 0:
        raise NonConvergence(
            "sampler reported divergent transitions; tighten the priors or raise target_acceptance_rate",
            model_name=spec.name,
            divergences=result.divergences,
        )

    logger.info("[%s] sampling finished in %.1fs", spec.name, runtime)
    return FittedModel(
        spec=spec,
        dataset=dataset,
        sampler_config=sampler_config,
        structure=structure,
        draws=result.draws,
        acceptance=dict(result.acceptance),
        runtime_s=float(runtime),
    )


def fit_or_failure(
    spec: ModelSpec,
    dataset: ModelDataset,
    sampler_config: Optional[SamplerConfig] = None,
    *,
    engine: Optional[SamplerEngine] = None,
    min_rows: int = MIN_ROWS,
) -> Union[FittedModel, FitFailure]:
    """Like :func:`fit`, but pipeline errors become a :class:`FitFailure` record."""
    try:
        return fit(spec, dataset, sampler_config, engine=engine, min_rows=min_rows)
    except PVHierError as exc:
        logger.warning("[%s] fit failed: %s", spec.name, exc)
        return FitFailure(
            model_name=spec.name,
            reason=f"{type(exc).__name__}: {exc}",
            error=exc,
            dataset_name=dataset.name,
            dataset_fingerprint=dataset.fingerprint,
        )


def refit(
    fitted: Union[FittedModel, FitFailure],
    *,
    spec: Optional[ModelSpec] = None,
    dataset: Optional[ModelDataset] = None,
    sampler_config: Optional[SamplerConfig] = None,
    priors: Optional[PriorConfig] = None,
    engine: Optional[SamplerEngine] = None,
) -> FittedModel:
    """Re-invoke :func:`fit` with explicitly adjusted priors or sampler settings.

    For a ``FitFailure`` the specification and dataset must be passed in.
    """
    if isinstance(fitted, FittedModel):
        spec = fitted.spec if spec is None else spec
        dataset = fitted.dataset if dataset is None else dataset
        sampler_config = fitted.sampler_config if sampler_config is None else sampler_config
    if spec is None or dataset is None:
        raise ValueError("refit of a FitFailure needs spec= and dataset=")
    if priors is not None:
        spec = spec.with_priors(priors)
    return fit(spec, dataset, sampler_config, engine=engine)
