"""Inference engine for Gaussian hierarchical linear models.

Any object with a ``sample(structure, priors, config) -> SampleResult``
method can serve as the engine; :class:`GibbsSampler` is the one shipped
here.

Sampler design
--------------
* The location vector (population coefficients and all random effects) is
  drawn jointly from its Gaussian full conditional. Sufficient statistics
  ``W'W``, ``W'y`` and ``y'y`` are computed once, so an iteration costs
  O(p^3) regardless of the number of rows.
* The residual SD and every group SD are updated by random-walk Metropolis
  on the log scale. Group SDs get two moves per iteration: a centered one
  (given the group effects) and a non-centered one (given the standardized
  effects), which keeps mixing acceptable both for well-identified and for
  weakly-identified groupings.
* Step sizes are adapted during warmup so the mean acceptance probability
  approaches ``target_acceptance_rate``.
* A proposal with a non-finite log density, or a singular location
  precision, after warmup is counted as a divergent transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

import numpy as np
import statsmodels.api as sm
import xarray as xr
from scipy.linalg import cho_solve, solve_triangular

from pvhier.models.design import ModelStructure
from pvhier.models.priors import PriorConfig, PriorSpec

logger = logging.getLogger(__name__)

SAMPLER_SEED = 1234


@dataclass(frozen=True)
class SamplerConfig:
    """Sampler settings. ``total_iterations`` includes the warmup iterations."""

    warmup_iterations: int = 1000
    total_iterations: int = 2000
    target_acceptance_rate: float = 0.8
    chains: int = 4
    seed: Optional[int] = SAMPLER_SEED       # None: fresh OS entropy per run

    def __post_init__(self):
        if int(self.warmup_iterations) < 1:
            raise ValueError("warmup_iterations must be >= 1")
        if int(self.total_iterations) <= int(self.warmup_iterations):
            raise ValueError(
                f"total_iterations ({self.total_iterations}) must exceed warmup_iterations ({self.warmup_iterations})"
            )
        if not 0.0 < float(self.target_acceptance_rate) < 1.0:
            raise ValueError(f"target_acceptance_rate must be in (0, 1), got {self.target_acceptance_rate}")
        if int(self.chains) < 1:
            raise ValueError("chains must be >= 1")

    @property
    def draws_per_chain(self) -> int:
        return int(self.total_iterations) - int(self.warmup_iterations)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SamplerConfig":
        known = {"warmup_iterations", "total_iterations", "target_acceptance_rate", "chains", "seed"}
        unknown = set(d) - known
        if unknown:
            raise KeyError(f"Unknown sampler option(s): {sorted(unknown)}")
        return cls(**dict(d))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "warmup_iterations": int(self.warmup_iterations),
            "total_iterations": int(self.total_iterations),
            "target_acceptance_rate": float(self.target_acceptance_rate),
            "chains": int(self.chains),
            "seed": self.seed,
        }


@dataclass
class SampleResult:
    draws: Optional[xr.Dataset]
    divergences: Dict[str, int] = field(default_factory=dict)
    failed: bool = False
    message: str = ""
    acceptance: Dict[str, float] = field(default_factory=dict)

    @property
    def total_divergences(self) -> int:
        return int(sum(self.divergences.values()))


class SamplerEngine(Protocol):
    def sample(self, structure: ModelStructure, priors: PriorConfig, config: SamplerConfig) -> SampleResult:
        ...


# ============================================================
# Helpers
# ============================================================


class _ChainFailure(Exception):
    pass


@dataclass
class _Stats:
    C: np.ndarray
    cy: np.ndarray
    yy: float
    n: int

    @classmethod
    def from_structure(cls, structure: ModelStructure) -> "_Stats":
        W = structure.W
        yc = structure.y_centered
        return cls(
            C=np.asarray((W.T @ W).toarray(), dtype=float),
            cy=np.asarray(W.T @ yc, dtype=float).ravel(),
            yy=float(yc @ yc),
            n=structure.n_obs,
        )

    def rss(self, theta: np.ndarray) -> float:
        return max(self.yy - 2.0 * float(theta @ self.cy) + float(theta @ self.C @ theta), 0.0)


class _StepSize:
    """Robbins-Monro adaptation of a log-scale random-walk step."""

    def __init__(self, target: float, initial: float = 0.5):
        self.target = float(target)
        self.log_h = float(np.log(initial))
        self.accept_sum = 0.0
        self.n = 0

    @property
    def h(self) -> float:
        return float(np.exp(self.log_h))

    def update(self, accept_prob: float, iteration: int, warmup: bool) -> None:
        if warmup:
            self.log_h += (accept_prob - self.target) * (iteration + 1) ** -0.6
            self.log_h = float(np.clip(self.log_h, -12.0, 3.0))
        else:
            self.accept_sum += accept_prob
            self.n += 1

    @property
    def mean_acceptance(self) -> float:
        return self.accept_sum / self.n if self.n else float("nan")


def _population_prior(structure: ModelStructure, priors: PriorConfig) -> Tuple[np.ndarray, np.ndarray]:
    mean = np.zeros(structure.n_population)
    prec = np.zeros(structure.n_population)
    for j, name in enumerate(structure.population_names):
        spec = priors.intercept if name == "Intercept" else priors.coefficient
        mu, s = spec.params
        mean[j] = mu
        prec[j] = 1.0 / s**2
    return mean, prec


def _rw_step(
    rng: np.random.Generator,
    x: float,
    logp_x: float,
    logp,
    step: _StepSize,
    iteration: int,
    warmup: bool,
) -> Tuple[float, float, bool]:
    """One random-walk Metropolis step on the log scale. Returns (x, logp, diverged)."""
    prop = x + step.h * rng.standard_normal()
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        logp_prop = logp(prop)
    if not np.isfinite(logp_prop):
        step.update(0.0, iteration, warmup)
        return x, logp_x, bool(not warmup and not (np.isneginf(logp_prop)))
    log_ratio = logp_prop - logp_x
    accept_prob = float(np.exp(min(0.0, log_ratio)))
    step.update(accept_prob, iteration, warmup)
    if rng.uniform() < accept_prob:
        return prop, logp_prop, False
    return x, logp_x, False


# ============================================================
# Engine
# ============================================================


class GibbsSampler:
    """Blocked Gibbs / Metropolis-within-Gibbs sampler (see module docstring)."""

    name = "gibbs"

    def sample(self, structure: ModelStructure, priors: PriorConfig, config: SamplerConfig) -> SampleResult:
        stats = _Stats.from_structure(structure)
        pop_mean, pop_prec = _population_prior(structure, priors)
        sd_priors = [priors.group_sd_for(b.name) for b in structure.blocks]

        seeds = np.random.SeedSequence(config.seed).spawn(int(config.chains))

        thetas, sigmas, taus = [], [], []
        divergences: Dict[str, int] = {}
        acceptance: Dict[str, List[float]] = {}
        for c, seed in enumerate(seeds):
            try:
                out = self._run_chain(
                    structure, stats, pop_mean, pop_prec, sd_priors, priors.residual_sd, config,
                    np.random.default_rng(seed),
                )
            except _ChainFailure as exc:
                msg = f"chain {c}: {exc}"
                logger.warning("[%s] sampler initialization failed: %s", structure.model_name, msg)
                return SampleResult(draws=None, divergences=divergences, failed=True, message=msg)

            theta, sigma, tau, div, acc = out
            thetas.append(theta)
            sigmas.append(sigma)
            taus.append(tau)
            for k, v in div.items():
                divergences[k] = divergences.get(k, 0) + v
            for k, v in acc.items():
                acceptance.setdefault(k, []).append(v)

        draws = _to_dataset(structure, np.stack(thetas), np.stack(sigmas), np.stack(taus), config)
        mean_acc = {k: float(np.nanmean(v)) for k, v in acceptance.items()}
        message = ""
        if any(divergences.values()):
            message = f"{sum(divergences.values())} divergent transition(s) after warmup"
        return SampleResult(draws=draws, divergences=divergences, message=message, acceptance=mean_acc)

    def _initial_values(self, structure: ModelStructure, rng: np.random.Generator):
        yc = structure.y_centered
        k = structure.n_population
        if k:
            ols = sm.OLS(yc, structure.X).fit()
            beta0 = np.asarray(ols.params, dtype=float)
            bse = np.nan_to_num(np.asarray(ols.bse, dtype=float), nan=0.1)
            resid_sd = float(np.sqrt(max(ols.scale, 1e-8)))
            beta = beta0 + rng.normal(scale=np.maximum(2.0 * bse, 1e-3))
        else:
            beta = np.zeros(0)
            resid_sd = float(np.sqrt(max(np.mean(yc**2), 1e-8)))
        theta = np.zeros(structure.n_location)
        theta[:k] = beta
        sigma = resid_sd * float(np.exp(rng.uniform(-0.5, 0.5)))
        tau = np.array([max(resid_sd, 0.05) * float(np.exp(rng.uniform(-1.0, 1.0))) for _ in structure.blocks])
        return theta, sigma, tau

    def _run_chain(
        self,
        structure: ModelStructure,
        stats: _Stats,
        pop_mean: np.ndarray,
        pop_prec: np.ndarray,
        sd_priors: List[PriorSpec],
        sigma_prior: PriorSpec,
        config: SamplerConfig,
        rng: np.random.Generator,
    ):
        k = structure.n_population
        p = structure.n_location
        slices = list(structure.block_slices().values())
        sizes = [b.size for b in structure.blocks]
        names = [b.name for b in structure.blocks]
        target = float(config.target_acceptance_rate)
        warmup = int(config.warmup_iterations)
        total = int(config.total_iterations)
        n_keep = total - warmup

        theta, sigma, tau = self._initial_values(structure, rng)

        def log_sigma_target(s: float, rss: float) -> float:
            return -stats.n * s - rss / (2.0 * np.exp(2.0 * s)) + sigma_prior.logpdf(np.exp(s)) + s
        lp0 = log_sigma_target(np.log(sigma), stats.rss(theta))
        lp0 += sum(sd_priors[b].logpdf(tau[b]) for b in range(len(tau)))
        if not np.isfinite(lp0):
            raise _ChainFailure("non-finite log posterior at the initial values")

        step_sigma = _StepSize(target)
        step_c = [_StepSize(target) for _ in structure.blocks]
        step_nc = [_StepSize(target) for _ in structure.blocks]

        div: Dict[str, int] = {"location": 0, "sigma": 0}
        div.update({f"sd_{n}": 0 for n in names})

        out_theta = np.empty((n_keep, p))
        out_sigma = np.empty(n_keep)
        out_tau = np.empty((n_keep, len(slices)))

        prior_shift = np.zeros(p)
        prior_shift[:k] = pop_prec * pop_mean

        for it in range(total):
            in_warmup = it < warmup

            # -- location block ------------------------------------------------
            d = np.empty(p)
            d[:k] = pop_prec
            for sl, t in zip(slices, tau):
                d[sl] = 1.0 / t**2
            P = stats.C / sigma**2 + np.diag(d)
            rhs = stats.cy / sigma**2 + prior_shift
            try:
                L = np.linalg.cholesky(P)
                mean = cho_solve((L, True), rhs)
                proposal = mean + solve_triangular(L, rng.standard_normal(p), lower=True, trans="T")
                if not np.all(np.isfinite(proposal)):
                    raise np.linalg.LinAlgError("non-finite location draw")
                theta = proposal
            except np.linalg.LinAlgError:
                if not in_warmup:
                    div["location"] += 1

            # -- residual SD ---------------------------------------------------
            rss = stats.rss(theta)
            s = float(np.log(sigma))
            s, _, diverged = _rw_step(
                rng, s, log_sigma_target(s, rss), lambda v: log_sigma_target(v, rss), step_sigma, it, in_warmup
            )
            sigma = float(np.exp(s))
            div["sigma"] += int(diverged)

            # -- group SDs -----------------------------------------------------
            for b, sl in enumerate(slices):
                prior = sd_priors[b]
                J = sizes[b]

                # centered: p(tau | u)
                ss = float(theta[sl] @ theta[sl])
                def f_c(v: float) -> float:
                    return -J * v - ss / (2.0 * np.exp(2.0 * v)) + prior.logpdf(np.exp(v)) + v

                t = float(np.log(tau[b]))
                t, _, diverged = _rw_step(rng, t, f_c(t), f_c, step_c[b], it, in_warmup)
                div[f"sd_{names[b]}"] += int(diverged)

                # non-centered: p(tau | eta), u = tau * eta
                eta = theta[sl] / np.exp(t)
                rest = theta.copy()
                rest[sl] = 0.0
                a = float(eta @ stats.C[sl, sl] @ eta)
                g = float(eta @ (stats.cy[sl] - stats.C[sl, :] @ rest))
                def f_nc(v: float) -> float:
                    dr = -2.0 * np.exp(v) * g + np.exp(2.0 * v) * a
                    return -dr / (2.0 * sigma**2) + prior.logpdf(np.exp(v)) + v

                t, _, diverged = _rw_step(rng, t, f_nc(t), f_nc, step_nc[b], it, in_warmup)
                div[f"sd_{names[b]}"] += int(diverged)

                tau[b] = float(np.exp(t))
                theta[sl] = tau[b] * eta

            if not in_warmup:
                j = it - warmup
                out_theta[j] = theta
                out_sigma[j] = sigma
                out_tau[j] = tau

        acc = {"sigma": step_sigma.mean_acceptance}
        for b, n in enumerate(names):
            acc[f"sd_{n}"] = 0.5 * (step_c[b].mean_acceptance + step_nc[b].mean_acceptance)
        return out_theta, out_sigma, out_tau, div, acc


def _to_dataset(
    structure: ModelStructure,
    theta: np.ndarray,
    sigma: np.ndarray,
    tau: np.ndarray,
    config: SamplerConfig,
) -> xr.Dataset:
    """Pack chain arrays (chain, draw, ...) into a named posterior dataset."""

    n_chains, n_draws = sigma.shape
    coords: Dict[str, Any] = {"chain": np.arange(n_chains), "draw": np.arange(n_draws)}
    data_vars: Dict[str, Any] = {}

    for j, name in enumerate(structure.population_names):
        data_vars[f"b_{name}"] = (("chain", "draw"), theta[:, :, j])

    for b, (block, sl) in enumerate(zip(structure.blocks, structure.block_slices().values())):
        dim = f"{block.name}_level"
        coords[dim] = list(block.levels)
        data_vars[f"sd_{block.name}"] = (("chain", "draw"), tau[:, :, b])
        data_vars[f"r_{block.name}"] = (("chain", "draw", dim), theta[:, :, sl])

    data_vars["sigma"] = (("chain", "draw"), sigma)

    return xr.Dataset(
        data_vars=data_vars,
        coords=coords,
        attrs={
            "model_name": structure.model_name,
            "family": structure.family.value,
            "offset": float(structure.offset),
            "engine": GibbsSampler.name,
            "warmup_iterations": int(config.warmup_iterations),
            "total_iterations": int(config.total_iterations),
        },
    )
