"""Tidy tables for the reporting sink (plots and dashboards live elsewhere)."""

from __future__ import annotations

from typing import Iterable, List, Sequence, Union

import numpy as np
import pandas as pd

from pvhier.diagnostics.convergence import convergence_table
from pvhier.diagnostics.loo import LooResult, compare_models
from pvhier.diagnostics.ppc import PPCResult
from pvhier.models.fitting import FitFailure, FittedModel

SLOTS_PER_DAY = 96


def panel_daily_summary(
    df: pd.DataFrame,
    *,
    tz: str = "UTC",
    column: str = "y",
    min_slots_per_day: int = 72,
) -> pd.DataFrame:
    """Per panel and local day: summed production, mean ``yCap`` and slot count.

    Days with fewer than ``min_slots_per_day`` observed 15-minute values get
    a NaN production sum instead of an undercount.
    """

    if column not in df.columns:
        raise KeyError(f"Column '{column}' not found")

    parts = []
    for panel_id, g in df.groupby("panel_id", sort=True, observed=True):
        idx = pd.DatetimeIndex(pd.to_datetime(g["timestamp"], utc=True)).tz_convert(tz)
        series = pd.Series(pd.to_numeric(g[column], errors="coerce").to_numpy(dtype=float), index=idx)
        daily = series.resample("D")
        out = pd.DataFrame(
            {
                "production": daily.sum(min_count=int(min_slots_per_day)),
                "n_slots": daily.count(),
            }
        )
        if "yCap" in g.columns:
            ycap = pd.Series(pd.to_numeric(g["yCap"], errors="coerce").to_numpy(dtype=float), index=idx)
            out["mean_yCap"] = ycap.resample("D").mean()
        out.index.name = "day"
        out = out.reset_index()
        out.insert(0, "panel_id", panel_id)
        parts.append(out)

    if not parts:
        return pd.DataFrame(columns=["panel_id", "day", "production", "n_slots"])
    out = pd.concat(parts, ignore_index=True)
    out["coverage"] = out["n_slots"] / SLOTS_PER_DAY
    return out


def panel_monthly_summary(
    daily: pd.DataFrame,
    *,
    min_days_per_month: int = 20,
) -> pd.DataFrame:
    """Monthly production per panel from :func:`panel_daily_summary` output.

    A month is only summed when at least ``min_days_per_month`` days have a
    valid daily total.
    """

    parts = []
    for panel_id, g in daily.groupby("panel_id", sort=True, observed=True):
        series = pd.Series(g["production"].to_numpy(dtype=float), index=pd.DatetimeIndex(g["day"]))
        monthly = (
            series.resample("MS")
            .sum(min_count=int(min_days_per_month))
            .to_frame("production")
        )
        monthly["valid_days"] = series.resample("MS").count()
        monthly.index.name = "month_start"
        monthly = monthly.reset_index()
        monthly["year"] = monthly["month_start"].dt.year
        monthly["month"] = monthly["month_start"].dt.month
        monthly.insert(0, "panel_id", panel_id)
        parts.append(monthly[["panel_id", "year", "month", "production", "valid_days"]])

    if not parts:
        return pd.DataFrame(columns=["panel_id", "year", "month", "production", "valid_days"])
    return pd.concat(parts, ignore_index=True)


def diagnostics_table(
    fits: Iterable[Union[FittedModel, FitFailure]],
    *,
    detail: bool = False,
) -> pd.DataFrame:
    """Convergence overview, one row per model (``detail=True``: per parameter)."""

    details: List[pd.DataFrame] = []
    rows = []
    for f in fits:
        if isinstance(f, FitFailure):
            rows.append({"model": f.model_name, "status": "failed", "reason": f.reason})
            continue
        table = convergence_table(f)
        details.append(table)
        rows.append(
            {
                "model": f.name,
                "status": "ok",
                "reason": None,
                "n_obs": f.structure.n_obs,
                "n_parameters": len(table),
                "max_rhat": float(table["rhat"].max()),
                "min_ess_ratio": float(table["ess_ratio"].min()),
                "n_not_converged": int((~table["converged"]).sum()),
                "runtime_s": f.runtime_s,
            }
        )
    if detail:
        return pd.concat(details, ignore_index=True) if details else pd.DataFrame()
    return pd.DataFrame(rows)


def ppc_table(ppcs: Sequence[PPCResult]) -> pd.DataFrame:
    return pd.DataFrame([p.summary() for p in ppcs])


def comparison_table(
    results: Iterable[Union[LooResult, FittedModel, FitFailure]],
    *,
    ppcs: Sequence[PPCResult] = (),
) -> pd.DataFrame:
    """Ranked LOO comparison, with PPC tail probabilities per statistic if given."""

    table = compare_models(results)
    if ppcs:
        tails = (
            ppc_table(ppcs)
            .pivot_table(index="model", columns="statistic", values="tail_probability", aggfunc="first")
            .add_prefix("ppc_p_")
            .reset_index()
        )
        tails.columns.name = None
        table = table.merge(tails, on="model", how="left")
    table["elpd_loo"] = table["elpd_loo"].astype(float).round(2)
    table["se"] = table["se"].astype(float).round(2)
    table["elpd_diff"] = np.round(table["elpd_diff"].astype(float), 2)
    table["se_diff"] = np.round(table["se_diff"].astype(float), 2)
    return table
