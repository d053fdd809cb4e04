"""Approximate leave-one-out predictive scores and model ranking.

``loo`` computes the expected log pointwise predictive density with Pareto
smoothed importance sampling (PSIS). Log-likelihoods are evaluated on the
original response scale, so a lognormal model includes the ``-log y``
Jacobian and is comparable with a Gaussian model of the same response.
Observations are processed in chunks to bound memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.special import logsumexp
from scipy.stats import norm

from pvhier.models.fitting import FitFailure, FittedModel
from pvhier.models.registry import Family

logger = logging.getLogger(__name__)

PARETO_K_WARN = 0.7
CHUNK_SIZE = 512


# ============================================================
# Pareto smoothing
# ============================================================


def _gpdfit(tail: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Generalized Pareto fit (Zhang & Stephens) per column of sorted exceedances.

    ``tail`` has shape (m, c), sorted ascending along axis 0 and strictly
    positive in its last row. Returns (k, sigma), each of shape (c,), with k
    shrunk towards 0.5 by a weak prior.
    """

    prior_bs, prior_k = 3.0, 10.0
    n = tail.shape[0]
    m_est = 30 + int(np.sqrt(n))

    b = 1.0 - np.sqrt(m_est / (np.arange(1, m_est + 1) - 0.5))
    b = b[:, None] / (prior_bs * tail[int(n / 4 + 0.5) - 1][None, :]) + 1.0 / tail[-1][None, :]

    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        k_b = np.log1p(-b[:, None, :] * tail[None, :, :]).mean(axis=1)
        len_scale = n * (np.log(-(b / k_b)) - k_b - 1.0)
        weights = 1.0 / np.exp(len_scale[None, :, :] - len_scale[:, None, :]).sum(axis=1)
    weights = np.where(weights >= 10 * np.finfo(float).eps, weights, 0.0)
    weights /= weights.sum(axis=0, keepdims=True)

    b_post = (b * weights).sum(axis=0)
    k = np.log1p(-b_post[None, :] * tail).mean(axis=0)
    sigma = -k / b_post
    k = (n * k + prior_k * 0.5) / (n + prior_k)
    return k, sigma


def _gpinv(probs: np.ndarray, k: np.ndarray, sigma: np.ndarray) -> np.ndarray:
    """Generalized Pareto quantiles, shape (len(probs), len(k))."""
    p = probs[:, None]
    near_zero = np.abs(k) < np.finfo(float).eps
    k_safe = np.where(near_zero, 1.0, k)
    x = np.where(
        near_zero[None, :],
        -np.log1p(-p),
        np.expm1(-k_safe[None, :] * np.log1p(-p)) / k_safe[None, :],
    )
    return x * sigma[None, :]


def psis_smooth(log_ratios: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Pareto-smooth importance log ratios column-wise.

    ``log_ratios`` has shape (draws, observations). Returns normalized log
    weights of the same shape (each column's weights sum to one) and the
    Pareto shape estimate k per column.
    """

    lw = np.array(log_ratios, dtype=float, copy=True)
    s, c = lw.shape
    lw -= lw.max(axis=0, keepdims=True)

    m = int(np.ceil(min(0.2 * s, 3.0 * np.sqrt(s))))
    k = np.full(c, np.inf)
    if m > 4 and s > m:
        order = np.argsort(lw, axis=0)
        cols = np.arange(c)
        tail_idx = order[-m:]
        cutoff = np.maximum(lw[order[-m - 1], cols], np.log(np.finfo(float).tiny))
        tail = np.exp(lw[tail_idx, cols[None, :]]) - np.exp(cutoff)[None, :]
        tail = np.maximum(tail, 0.0)

        fit_ok = tail[-1] > 0
        k = np.where(fit_ok, 0.0, k)
        if fit_ok.any():
            kk, sig = _gpdfit(tail[:, fit_ok])
            k[fit_ok] = kk
            smooth = np.isfinite(kk) & (sig > 0)
            sel = np.flatnonzero(fit_ok)[smooth]
            if sel.size:
                probs = np.arange(0.5, m) / m
                q = _gpinv(probs, kk[smooth], sig[smooth]) + np.exp(cutoff[sel])[None, :]
                lw[tail_idx[:, sel], sel[None, :]] = np.log(q)
                lw[:, sel] = np.minimum(lw[:, sel], 0.0)

    lw -= logsumexp(lw, axis=0, keepdims=True)
    return lw, k


# ============================================================
# LOO
# ============================================================


@dataclass(frozen=True, eq=False)
class LooResult:
    model_name: str
    response: str
    dataset_fingerprint: str
    elpd_loo: float
    se: float
    p_loo: float
    pointwise: np.ndarray
    pareto_k: np.ndarray
    row_index: np.ndarray

    @property
    def n_obs(self) -> int:
        return int(self.pointwise.size)

    @property
    def n_high_k(self) -> int:
        return int(np.sum(self.pareto_k > PARETO_K_WARN))

    def pointwise_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"row": self.row_index, "elpd_loo": self.pointwise, "pareto_k": self.pareto_k}
        )


def _log_lik_chunk(fitted: FittedModel, W, rows: np.ndarray, loc: np.ndarray, sigma: np.ndarray) -> np.ndarray:
    """Log-likelihood on the original response scale, shape (draws, len(rows))."""
    structure = fitted.structure
    mu = np.asarray(W[rows] @ loc.T).T + structure.offset
    y = structure.y[rows]
    ll = norm.logpdf(y[None, :], loc=mu, scale=sigma[:, None])
    if fitted.spec.family is Family.LOGNORMAL:
        ll -= y[None, :]
    return ll


def loo(fitted: FittedModel, *, chunk_size: int = CHUNK_SIZE) -> LooResult:
    """PSIS-LOO expected log predictive density of one fitted model."""

    loc = fitted.location_draws()
    sigma = fitted.sigma_draws()
    n_draws = loc.shape[0]
    n = fitted.structure.n_obs
    W = fitted.structure.W

    elpd_i = np.empty(n)
    lppd_i = np.empty(n)
    k = np.empty(n)
    for start in range(0, n, int(chunk_size)):
        rows = np.arange(start, min(start + int(chunk_size), n))
        ll = _log_lik_chunk(fitted, W, rows, loc, sigma)
        lw, kk = psis_smooth(-ll)
        elpd_i[rows] = logsumexp(lw + ll, axis=0)
        lppd_i[rows] = logsumexp(ll, axis=0) - np.log(n_draws)
        k[rows] = kk

    elpd = float(elpd_i.sum())
    se = float(np.sqrt(n * np.var(elpd_i)))
    p_loo = float(lppd_i.sum() - elpd)

    result = LooResult(
        model_name=fitted.name,
        response=fitted.spec.response.name,
        dataset_fingerprint=fitted.dataset_fingerprint,
        elpd_loo=elpd,
        se=se,
        p_loo=p_loo,
        pointwise=elpd_i,
        pareto_k=k,
        row_index=np.asarray(fitted.structure.row_index),
    )
    if result.n_high_k:
        logger.warning(
            "[%s] %d of %d observation(s) have Pareto k > %.1f; the LOO estimate may be unreliable",
            fitted.name,
            result.n_high_k,
            n,
            PARETO_K_WARN,
        )
    return result


# ============================================================
# Comparison
# ============================================================


def _check_compatible(results: Sequence[LooResult]) -> None:
    first = results[0]
    for r in results[1:]:
        if r.dataset_fingerprint != first.dataset_fingerprint:
            raise ValueError(
                f"Models '{first.model_name}' and '{r.model_name}' were fitted on different datasets; "
                "LOO scores are only comparable on the same data"
            )
        if r.response != first.response:
            raise ValueError(
                f"Models '{first.model_name}' ({first.response}) and '{r.model_name}' ({r.response}) "
                "model different responses"
            )
        if r.n_obs != first.n_obs or not np.array_equal(r.row_index, first.row_index):
            raise ValueError(
                f"Models '{first.model_name}' and '{r.model_name}' were scored on different rows"
            )


def compare_models(
    results: Iterable[Union[LooResult, FittedModel, FitFailure]],
) -> pd.DataFrame:
    """Rank models by ``elpd_loo`` (higher is better).

    ``elpd_diff`` is each model's elpd minus the best model's (0 for the
    best) and ``se_diff`` the standard error of that paired difference.
    Fit failures are listed after the ranked models with ``rank`` unset and
    their failure reason.
    """

    scored: List[LooResult] = []
    failed: List[FitFailure] = []
    for r in results:
        if isinstance(r, FitFailure):
            failed.append(r)
        elif isinstance(r, FittedModel):
            scored.append(loo(r))
        elif isinstance(r, LooResult):
            scored.append(r)
        else:
            raise TypeError(f"Cannot compare object of type {type(r).__name__}")

    if scored:
        _check_compatible(scored)

    scored.sort(key=lambda r: (-r.elpd_loo, r.model_name))
    rows = []
    best = scored[0] if scored else None
    for rank, r in enumerate(scored, start=1):
        diff = r.pointwise - best.pointwise
        se_diff = float(np.sqrt(r.n_obs * np.var(diff))) if r is not best else 0.0
        elpd_diff = float(r.elpd_loo - best.elpd_loo)
        rows.append(
            {
                "model": r.model_name,
                "rank": rank,
                "elpd_loo": r.elpd_loo,
                "se": r.se,
                "p_loo": r.p_loo,
                "elpd_diff": elpd_diff,
                "se_diff": se_diff,
                "distinguishable": bool(r is not best and abs(elpd_diff) > 2.0 * se_diff),
                "n_high_k": r.n_high_k,
                "status": "ok",
                "reason": None,
            }
        )
    for f in failed:
        rows.append(
            {
                "model": f.model_name,
                "rank": None,
                "elpd_loo": np.nan,
                "se": np.nan,
                "p_loo": np.nan,
                "elpd_diff": np.nan,
                "se_diff": np.nan,
                "distinguishable": False,
                "n_high_k": None,
                "status": "failed",
                "reason": f.reason,
            }
        )

    columns = [
        "model", "rank", "elpd_loo", "se", "p_loo", "elpd_diff", "se_diff",
        "distinguishable", "n_high_k", "status", "reason",
    ]
    out = pd.DataFrame(rows, columns=columns)
    out["rank"] = out["rank"].astype("Int64")
    out["n_high_k"] = out["n_high_k"].astype("Int64")
    return out
