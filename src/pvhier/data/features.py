"""Derived covariates for per-panel production series.

All functions here are pure: they return new frames and never modify their
input. The derived columns are

* ``yCap``  – production divided by nameplate capacity
* ``yNorm`` – production divided by capacity times the clear-sky fraction
  ``nIrr``; undefined (NaN, ``yNorm_defined == False``) where ``nIrr == 0``
* ``hour`` / ``morning`` – local hour of day and the morning dummy
* ``cloud_category_collapsed`` – the 10 forecast buckets collapsed to
  ``full`` / ``mid`` / ``none``
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from pvhier.errors import InvalidCapacity, PVHierError, UnrecognizedCloudCategory

logger = logging.getLogger(__name__)


RAW_CLOUD_LEVELS = tuple(f"r{i}" for i in range(1, 11))
COLLAPSED_CLOUD_LEVELS = ("full", "mid", "none")

CLOUD_COLLAPSE_MAP: Dict[str, str] = {
    level: ("full" if level == "r1" else "none" if level in ("r9", "r10") else "mid")
    for level in RAW_CLOUD_LEVELS
}

MORNING_HOUR = 13
GRID_FREQ = "15min"

OBSERVATION_COLUMNS = [
    "panel_id",
    "timestamp",
    "y",
    "capacity",
    "nIrr",
    "cloud_category_raw",
]


def _cloud_label(v):
    if v is None or (isinstance(v, float) and np.isnan(v)) or v is pd.NA:
        return np.nan
    s = str(v).strip().lower()
    if s in ("", "nan", "none"):
        return np.nan
    if not s.startswith("r"):
        try:
            s = f"r{int(float(s))}"
        except ValueError:
            return s
    return s


def normalize_cloud_category(raw: pd.Series) -> pd.Series:
    """Coerce raw cloud labels to ``r1``..``r10`` strings, keeping NaN.

    Integers 1..10 (or their string forms) are accepted. Anything else raises.
    """

    out = raw.map(_cloud_label)
    bad = sorted(set(out.dropna()) - set(RAW_CLOUD_LEVELS))
    if bad:
        raise ValueError(f"Unrecognized cloud category label(s): {bad}")
    return out.astype(object)


def collapse_cloud_category(raw: pd.Series) -> pd.Series:
    """Map ``r1`` -> full, ``r9``/``r10`` -> none, everything else -> mid.

    Missing raw categories stay missing; there is no "unknown" bucket.
    """

    norm = normalize_cloud_category(raw)
    collapsed = norm.map(CLOUD_COLLAPSE_MAP)
    return pd.Series(
        pd.Categorical(collapsed, categories=list(COLLAPSED_CLOUD_LEVELS), ordered=True),
        index=raw.index,
        name="cloud_category_collapsed",
    )


def _to_local(ts: pd.Series, tz: str) -> pd.Series:
    ts = pd.to_datetime(ts, errors="coerce")
    if ts.dt.tz is None:
        ts = ts.dt.tz_localize("UTC")
    return ts.dt.tz_convert(tz)


def invalid_capacity_panels(obs: pd.DataFrame) -> list:
    """Panels with at least one missing or non-positive capacity value."""
    cap = pd.to_numeric(obs["capacity"], errors="coerce")
    bad = cap.isna() | (cap <= 0)
    return sorted(obs.loc[bad, "panel_id"].unique().tolist(), key=str)


def unrecognized_cloud_rows(obs: pd.DataFrame) -> pd.Series:
    """Boolean mask of rows whose cloud label is present but not ``r1``..``r10``."""
    labels = obs["cloud_category_raw"].map(_cloud_label)
    return labels.notna() & ~labels.isin(RAW_CLOUD_LEVELS)


def unrecognized_cloud_error(obs: pd.DataFrame) -> Optional[UnrecognizedCloudCategory]:
    bad = unrecognized_cloud_rows(obs)
    if not bad.any():
        return None
    panels = sorted(obs.loc[bad, "panel_id"].unique().tolist(), key=str)
    labels = obs.loc[bad, "cloud_category_raw"].map(_cloud_label).unique()
    return UnrecognizedCloudCategory(panels, int(bad.sum()), labels)


def derive_features(
    obs: pd.DataFrame,
    *,
    tz: str = "UTC",
    morning_hour: int = MORNING_HOUR,
) -> pd.DataFrame:
    """Return an enriched copy of ``obs`` with all derived columns populated.

    Raises
    ------
    InvalidCapacity
        If any panel has a missing or non-positive capacity. The exception
        lists every offending panel.
    UnrecognizedCloudCategory
        If any cloud label is outside ``r1``..``r10``; names the panels,
        the labels and the number of affected rows.

    Unparseable timestamps become NaT with a missing ``hour``; the
    inclusion rules drop such rows before modelling.
    """

    missing = set(OBSERVATION_COLUMNS) - set(obs.columns)
    if missing:
        raise KeyError(f"Missing observation columns: {sorted(missing)}")

    bad_panels = invalid_capacity_panels(obs)
    if bad_panels:
        raise InvalidCapacity(bad_panels)
    bad_labels = unrecognized_cloud_error(obs)
    if bad_labels is not None:
        raise bad_labels

    out = obs.copy()
    out["timestamp"] = pd.to_datetime(out["timestamp"], errors="coerce", utc=True)
    no_time = out["timestamp"].isna()
    if no_time.any():
        logger.warning(
            "%d row(s) with unparseable timestamps (panels: %s); they are excluded from modelling",
            int(no_time.sum()),
            sorted(out.loc[no_time, "panel_id"].unique().tolist(), key=str),
        )

    y = pd.to_numeric(out["y"], errors="coerce").astype(float)
    cap = pd.to_numeric(out["capacity"], errors="coerce").astype(float)
    nirr = pd.to_numeric(out["nIrr"], errors="coerce").astype(float)

    out["yCap"] = y / cap

    defined = nirr.notna() & (nirr > 0)
    out["yNorm_defined"] = defined
    y_norm = pd.Series(np.nan, index=out.index, dtype=float)
    y_norm[defined] = y[defined] / (cap[defined] * nirr[defined])
    out["yNorm"] = y_norm

    local = _to_local(out["timestamp"], tz)
    out["hour"] = local.dt.hour
    out["morning"] = out["hour"] < int(morning_hour)

    out["cloud_category_raw"] = normalize_cloud_category(out["cloud_category_raw"])
    out["cloud_category_collapsed"] = collapse_cloud_category(out["cloud_category_raw"])

    n_undefined = int((~defined).sum())
    if n_undefined:
        logger.debug("yNorm undefined on %d row(s) with zero or missing nIrr", n_undefined)

    return out


def derive_features_by_panel(
    obs: pd.DataFrame,
    *,
    tz: str = "UTC",
    morning_hour: int = MORNING_HOUR,
) -> Tuple[pd.DataFrame, Dict[object, PVHierError]]:
    """Derive features panel by panel, isolating per-panel failures.

    Panels with invalid capacity or unrecognized cloud labels are left out
    of the enriched frame and reported in the returned ``{panel_id: error}``
    mapping (``InvalidCapacity`` or ``UnrecognizedCloudCategory``); the
    remaining panels are processed normally.
    """

    failures: Dict[object, PVHierError] = {}
    for panel_id in invalid_capacity_panels(obs):
        failures[panel_id] = InvalidCapacity([panel_id])
        logger.warning("Skipping panel %s: non-positive or missing capacity", panel_id)

    bad_label = unrecognized_cloud_rows(obs)
    for panel_id, rows in obs.loc[bad_label].groupby("panel_id", sort=False):
        if panel_id in failures:
            continue
        failures[panel_id] = unrecognized_cloud_error(rows)
        logger.warning("Skipping panel %s: %s", panel_id, failures[panel_id])

    keep = ~obs["panel_id"].isin(list(failures))
    enriched = derive_features(obs.loc[keep], tz=tz, morning_hour=morning_hour)
    return enriched, failures


def reindex_to_grid(
    obs: pd.DataFrame,
    *,
    start,
    end,
    freq: str = GRID_FREQ,
    static_cols: Tuple[str, ...] = ("capacity",),
) -> pd.DataFrame:
    """Reindex every panel onto the full regular grid ``[start, end)``.

    Unobserved slots are kept as rows with NaN measurements and
    ``is_observed == False``. Static per-panel columns (capacity) are filled
    from the panel's observations so the grid stays usable downstream.
    """

    start = pd.Timestamp(start)
    end = pd.Timestamp(end)
    if start.tzinfo is None:
        start = start.tz_localize("UTC")
    if end.tzinfo is None:
        end = end.tz_localize("UTC")
    if end <= start:
        raise ValueError(f"Grid end {end} must be after start {start}")

    grid = pd.date_range(start=start, end=end, freq=freq, inclusive="left", name="timestamp")

    ts = pd.to_datetime(obs["timestamp"], errors="coerce", utc=True)
    frames = []
    for panel_id, g in obs.assign(timestamp=ts).groupby("panel_id", sort=True, observed=True):
        g = g.drop_duplicates(subset="timestamp", keep="last").set_index("timestamp").sort_index()
        observed = g.index.intersection(grid)
        r = g.reindex(grid)
        r["is_observed"] = r.index.isin(observed)
        r["panel_id"] = panel_id
        for col in static_cols:
            if col in r.columns:
                r[col] = r[col].ffill().bfill()
        frames.append(r.reset_index())

    if not frames:
        return pd.DataFrame(columns=list(obs.columns) + ["is_observed"])

    out = pd.concat(frames, ignore_index=True)
    cols = ["panel_id", "timestamp"] + [c for c in out.columns if c not in ("panel_id", "timestamp")]
    return out[cols]
