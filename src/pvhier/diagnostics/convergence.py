"""Convergence diagnostics: rank-normalized split R-hat and bulk ESS ratio.

Both statistics work on a (chain, draw) array. Chains are split in half so
within-chain drift shows up as between-chain disagreement, and draws are
rank-normalized so heavy tails do not distort the variance comparison.
"""

from __future__ import annotations

from typing import List, Union

import numpy as np
import pandas as pd
import xarray as xr
from scipy.stats import norm, rankdata
from statsmodels.tsa.stattools import acovf

from pvhier.models.fitting import FittedModel

RHAT_MAX = 1.05
ESS_RATIO_MIN = 0.1

ArrayLike = Union[np.ndarray, xr.DataArray]


def _as_chains(draws: ArrayLike) -> np.ndarray:
    arr = np.asarray(draws.values if isinstance(draws, xr.DataArray) else draws, dtype=float)
    if arr.ndim == 1:
        arr = arr[None, :]
    if arr.ndim != 2:
        raise ValueError(f"Expected a (chain, draw) array, got shape {arr.shape}")
    if arr.shape[1] < 4:
        raise ValueError(f"Need at least 4 draws per chain, got {arr.shape[1]}")
    return arr


def _split_chains(arr: np.ndarray) -> np.ndarray:
    half = arr.shape[1] // 2
    return np.vstack([arr[:, :half], arr[:, -half:]])


def _z_scale(arr: np.ndarray) -> np.ndarray:
    ranks = rankdata(arr, method="average").reshape(arr.shape)
    return norm.ppf((ranks - 0.375) / (arr.size + 0.25))


def _rhat(arr: np.ndarray) -> float:
    n = arr.shape[1]
    chain_means = arr.mean(axis=1)
    within = float(np.mean(arr.var(axis=1, ddof=1)))
    between = n * float(np.var(chain_means, ddof=1))
    if within <= 0:
        return float("nan")
    var_hat = (n - 1) / n * within + between / n
    return float(np.sqrt(var_hat / within))


def split_rhat(draws: ArrayLike) -> float:
    """Rank-normalized split R-hat (max of bulk and folded-tail versions).

    NaN when the draws are constant (e.g. a fixed parameter).
    """

    arr = _as_chains(draws)
    if not np.all(np.isfinite(arr)):
        return float("nan")
    if np.ptp(arr) == 0:
        return float("nan")
    split = _split_chains(arr)
    bulk = _rhat(_z_scale(split))
    folded = np.abs(split - np.median(split))
    tail = _rhat(_z_scale(folded))
    return float(np.nanmax([bulk, tail]))


def _ess(arr: np.ndarray) -> float:
    """ESS with Geyer's initial monotone sequence estimator."""

    m, n = arr.shape
    acov = np.vstack([acovf(chain, demean=True, fft=True) for chain in arr])
    chain_mean = arr.mean(axis=1)
    mean_var = float(np.mean(acov[:, 0])) * n / (n - 1.0)
    var_plus = mean_var * (n - 1.0) / n
    if m > 1:
        var_plus += float(np.var(chain_mean, ddof=1))
    if var_plus <= 0:
        return float("nan")

    def rho(t: int) -> float:
        return 1.0 - (mean_var - float(np.mean(acov[:, t]))) / var_plus

    rho_hat = np.zeros(n)
    rho_even = 1.0
    rho_odd = rho(1)
    rho_hat[0] = rho_even
    rho_hat[1] = rho_odd

    t = 1
    while t < n - 3 and (rho_even + rho_odd) > 0.0:
        rho_even = rho(t + 1)
        rho_odd = rho(t + 2)
        if rho_even + rho_odd >= 0.0:
            rho_hat[t + 1] = rho_even
            rho_hat[t + 2] = rho_odd
        t += 2

    max_t = t - 2
    if rho_even > 0:
        rho_hat[max_t + 1] = rho_even

    # monotone pairs
    t = 1
    while t <= max_t - 2:
        if rho_hat[t + 1] + rho_hat[t + 2] > rho_hat[t - 1] + rho_hat[t]:
            rho_hat[t + 1] = (rho_hat[t - 1] + rho_hat[t]) / 2.0
            rho_hat[t + 2] = rho_hat[t + 1]
        t += 2

    total = m * n
    tau = -1.0 + 2.0 * float(np.sum(rho_hat[: max_t + 1])) + float(rho_hat[max_t + 1])
    tau = max(tau, 1.0 / np.log10(total))
    return total / tau


def ess_bulk(draws: ArrayLike) -> float:
    arr = _as_chains(draws)
    if not np.all(np.isfinite(arr)) or np.ptp(arr) == 0:
        return float("nan")
    return _ess(_z_scale(_split_chains(arr)))


def ess_ratio(draws: ArrayLike) -> float:
    """Bulk effective sample size as a fraction of the nominal number of draws."""
    arr = _as_chains(draws)
    return ess_bulk(arr) / arr.size


def convergence_table(fitted: FittedModel) -> pd.DataFrame:
    """R-hat and ESS per parameter (and per random-effect level) of one fit."""

    rows: List[dict] = []
    for var in fitted.draws.data_vars:
        da = fitted.draws[var]
        extra = [d for d in da.dims if d not in ("chain", "draw")]
        if extra:
            items = [(str(lvl), da.sel({extra[0]: lvl}).transpose("chain", "draw")) for lvl in da[extra[0]].values]
        else:
            items = [(None, da.transpose("chain", "draw"))]
        for level, sub in items:
            arr = _as_chains(sub)
            ess = ess_bulk(arr)
            rows.append(
                {
                    "model": fitted.name,
                    "parameter": var,
                    "level": level,
                    "mean": float(arr.mean()),
                    "rhat": split_rhat(arr),
                    "ess_bulk": ess,
                    "ess_ratio": ess / arr.size,
                }
            )
    out = pd.DataFrame(rows)
    out["converged"] = (out["rhat"] <= RHAT_MAX) & (out["ess_ratio"] >= ESS_RATIO_MIN)
    return out
