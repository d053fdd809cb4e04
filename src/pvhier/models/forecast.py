"""One-day-ahead production forecasts from a fitted model.

Forecasts are posterior predictive simulations: for every draw the linear
predictor is evaluated on the future rows, residual noise is added on the
model scale and the result is mapped back to production units through the
model's response (``yNorm * capacity * nIrr`` or ``yCap * capacity``).

Rows below the irradiance threshold never entered a fit; their production is
set to zero. Group levels that were not seen during fitting (e.g. a panel
added after the fit) get an effect drawn from the group SD of the same draw.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score

from pvhier.data.filtering import MIN_IRRADIANCE
from pvhier.models.design import _numeric
from pvhier.models.fitting import FittedModel
from pvhier.models.registry import Family

logger = logging.getLogger(__name__)


def _quantile_label(q: float) -> str:
    return f"p{int(round(100 * q)):02d}"


def _modelled_rows(fitted: FittedModel, df: pd.DataFrame, min_irradiance: float) -> np.ndarray:
    spec = fitted.spec
    ok = pd.to_numeric(df["nIrr"], errors="coerce").to_numpy(dtype=float) > float(min_irradiance)
    for cov in set(spec.terms) | {t.covariate for t in spec.grouping if t.covariate}:
        ok &= np.isfinite(_numeric(df, cov))
    for term in spec.grouping:
        ok &= term.grouping.labels(df).notna().to_numpy()
    return ok


def simulate_production(
    fitted: FittedModel,
    future: pd.DataFrame,
    *,
    seed: Optional[int] = None,
    min_irradiance: float = MIN_IRRADIANCE,
) -> np.ndarray:
    """Posterior predictive production draws, shape (n_rows, n_draws).

    Rows below ``min_irradiance`` are zero; rows with a missing covariate or
    group label are NaN.
    """

    rng = np.random.default_rng(seed)
    df = future.reset_index(drop=True)
    structure = fitted.structure
    n_draws = fitted.n_draws

    out = np.full((len(df), n_draws), np.nan)
    nirr = pd.to_numeric(df["nIrr"], errors="coerce").to_numpy(dtype=float)
    out[nirr <= float(min_irradiance)] = 0.0

    ok = _modelled_rows(fitted, df, min_irradiance)
    if not ok.any():
        return out
    sub = df.loc[ok].reset_index(drop=True)

    W, unseen = structure.transform(sub)
    eta = fitted.linear_predictor(W)

    sds = fitted.sd_draws()
    for block in structure.blocks:
        mask = unseen[block.name]
        if not mask.any():
            continue
        labels = block.term.grouping.labels(sub).to_numpy()
        new_levels, inverse = np.unique(labels[mask].astype(str), return_inverse=True)
        logger.info(
            "[%s] %d unseen level(s) of '%s' drawn from the group SD: %s",
            fitted.name,
            len(new_levels),
            block.name,
            list(new_levels),
        )
        effects = rng.standard_normal((len(new_levels), n_draws)) * sds[block.name][None, :]
        scale = np.ones(int(mask.sum()))
        if block.term.covariate is not None:
            scale = _numeric(sub, block.term.covariate)[mask]
        eta[mask] += effects[inverse] * scale[:, None]

    y_rep = eta + fitted.sigma_draws()[None, :] * rng.standard_normal(eta.shape)
    if fitted.spec.family is Family.LOGNORMAL:
        y_rep = np.exp(y_rep)
    production = fitted.spec.response.to_production(y_rep, sub)
    out[ok] = np.maximum(production, 0.0)
    return out


def forecast_production(
    fitted: FittedModel,
    future: pd.DataFrame,
    *,
    quantiles: Sequence[float] = (0.1, 0.5, 0.9),
    seed: Optional[int] = None,
    min_irradiance: float = MIN_IRRADIANCE,
) -> pd.DataFrame:
    """Forecast production for ``future`` (rows with derived features).

    Returns one row per input row with ``panel_id``, ``timestamp``, the
    posterior predictive ``mean`` and one ``pNN`` column per quantile.
    """

    for q in quantiles:
        if not 0.0 < float(q) < 1.0:
            raise ValueError(f"Quantiles must lie in (0, 1), got {q}")
    missing = [c for c in ("panel_id", "timestamp", "capacity", "nIrr") if c not in future.columns]
    if missing:
        raise KeyError(f"Missing required columns for forecasting: {missing}")

    sims = simulate_production(fitted, future, seed=seed, min_irradiance=min_irradiance)
    df = future.reset_index(drop=True)

    out = df[["panel_id", "timestamp"]].copy()
    out["model"] = fitted.name
    valid = np.isfinite(sims).all(axis=1)
    filled = np.where(valid[:, None], sims, 0.0)
    out["mean"] = np.where(valid, filled.mean(axis=1), np.nan)
    for q in quantiles:
        out[_quantile_label(q)] = np.where(valid, np.quantile(filled, float(q), axis=1), np.nan)
    return out


def next_day_rows(
    df: pd.DataFrame,
    *,
    day: Union[str, date, pd.Timestamp],
    tz: Optional[str] = None,
) -> pd.DataFrame:
    """Rows whose (local) calendar date equals ``day``."""

    ts = pd.to_datetime(df["timestamp"], utc=True)
    if tz is not None:
        ts = ts.dt.tz_convert(tz)
    target = pd.Timestamp(day).date()
    out = df.loc[(ts.dt.date == target).to_numpy()].copy()
    if out.empty:
        logger.warning("No rows found for day %s", target)
    return out.sort_values(["panel_id", "timestamp"]).reset_index(drop=True)


def score_forecast(
    forecast: pd.DataFrame,
    actual: pd.DataFrame,
    *,
    point: str = "mean",
    actual_col: str = "y",
) -> Dict[str, float]:
    """RMSE, MAE and R^2 of the point forecast against observed production."""

    if point not in forecast.columns:
        raise KeyError(f"Point forecast column '{point}' not in forecast")
    merged = forecast[["panel_id", "timestamp", point]].merge(
        actual[["panel_id", "timestamp", actual_col]],
        on=["panel_id", "timestamp"],
        how="inner",
    )
    merged = merged.dropna(subset=[point, actual_col])
    if merged.empty:
        raise ValueError("No overlapping rows with both a forecast and an observation")

    y_true = merged[actual_col].astype(float).values
    y_pred = merged[point].astype(float).values
    rmse = float(np.sqrt(mean_squared_error(y_true, y_pred)))
    mae = float(mean_absolute_error(y_true, y_pred))
    r2 = float(r2_score(y_true, y_pred)) if len(merged) > 1 else float("nan")
    return {"rmse": rmse, "mae": mae, "r2": r2, "n": int(len(merged))}
