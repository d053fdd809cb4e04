"""Exploratory summaries of the normalized production signal."""

from __future__ import annotations

from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats


QUANTILES = (0.05, 0.25, 0.5, 0.75, 0.95)


def _describe(values: np.ndarray, quantiles: Sequence[float]) -> dict:
    values = values[np.isfinite(values)]
    row = {"count": int(values.size)}
    if values.size == 0:
        row.update({"mean": np.nan, "sd": np.nan, "skew": np.nan, "kurtosis": np.nan})
        row.update({f"q{int(round(100 * q)):02d}": np.nan for q in quantiles})
        row["frac_above_1"] = np.nan
        return row
    row["mean"] = float(values.mean())
    row["sd"] = float(values.std(ddof=1)) if values.size > 1 else np.nan
    row["skew"] = float(stats.skew(values)) if values.size > 2 else np.nan
    row["kurtosis"] = float(stats.kurtosis(values)) if values.size > 3 else np.nan
    for q, v in zip(quantiles, np.quantile(values, quantiles)):
        row[f"q{int(round(100 * q)):02d}"] = float(v)
    row["frac_above_1"] = float((values > 1.0).mean())
    return row


def distribution_summary(
    df: pd.DataFrame,
    column: str = "yNorm",
    *,
    by: Optional[Union[str, List[str]]] = None,
    quantiles: Sequence[float] = QUANTILES,
    log: bool = False,
) -> pd.DataFrame:
    """Moments and quantiles of ``column``, optionally per group.

    With ``log=True`` the summary is computed on ``log(column)`` over the
    strictly positive values, which is the scale the pooled model works on.
    """

    if column not in df.columns:
        raise KeyError(f"Column '{column}' not found")

    def _values(frame: pd.DataFrame) -> np.ndarray:
        v = pd.to_numeric(frame[column], errors="coerce").to_numpy(dtype=float)
        if log:
            v = np.log(v[v > 0])
        return v

    if by is None:
        return pd.DataFrame([_describe(_values(df), quantiles)])

    keys = [by] if isinstance(by, str) else list(by)
    rows = []
    for key, g in df.groupby(keys, observed=True, sort=True):
        key = key if isinstance(key, tuple) else (key,)
        row = dict(zip(keys, key))
        row.update(_describe(_values(g), quantiles))
        rows.append(row)
    return pd.DataFrame(rows)


def gap_summary(grid: pd.DataFrame, *, tz: str = "UTC") -> pd.DataFrame:
    """Per panel and local day: expected slots, observed slots, missing fraction.

    ``grid`` is the output of :func:`pvhier.data.features.reindex_to_grid`.
    A slot counts as missing when it was not observed or its production is NaN.
    """

    if "is_observed" not in grid.columns:
        raise KeyError("grid must come from reindex_to_grid (missing 'is_observed')")

    ts = pd.to_datetime(grid["timestamp"], utc=True).dt.tz_convert(tz)
    present = grid["is_observed"].astype(bool) & grid["y"].notna()
    tmp = pd.DataFrame(
        {
            "panel_id": grid["panel_id"].to_numpy(),
            "day": ts.dt.floor("D").to_numpy(),
            "present": present.to_numpy(),
        }
    )
    out = (
        tmp.groupby(["panel_id", "day"], sort=True)
        .agg(slots=("present", "size"), observed=("present", "sum"))
        .reset_index()
    )
    out["observed"] = out["observed"].astype(int)
    out["missing_fraction"] = 1.0 - out["observed"] / out["slots"]
    return out
