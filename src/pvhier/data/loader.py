"""Loading and sanity checks for raw per-panel observation tables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from pvhier.data.features import OBSERVATION_COLUMNS, normalize_cloud_category


def load_observations(
    data_path: str | os.PathLike,
    *,
    column_map: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    """Load one observation CSV or concatenate all CSVs from a directory.

    ``column_map`` renames source columns to the canonical names
    (panel_id, timestamp, y, capacity, nIrr, cloud_category_raw).
    Timestamps are parsed as UTC.
    """

    p = Path(data_path)

    if p.is_dir():
        files = sorted(p.glob("*.csv"))
        if not files:
            raise ValueError(f"No CSV files in {p}")
    elif p.is_file() and p.suffix.lower() == ".csv":
        files = [p]
    else:
        raise ValueError(f"Invalid data_path: {data_path}")

    dfs: List[pd.DataFrame] = []
    for f in files:
        df = pd.read_csv(f)
        df.columns = df.columns.str.strip().str.replace("\u00A0", " ", regex=False)
        if column_map:
            df = df.rename(columns=column_map)
        dfs.append(df)
    df = pd.concat(dfs, ignore_index=True)

    missing = [c for c in OBSERVATION_COLUMNS if c not in df.columns]
    if missing:
        raise KeyError(f"Missing observation columns: {missing}. Available columns: {list(df.columns)}")

    df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
    for col in ("y", "capacity", "nIrr"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["cloud_category_raw"] = normalize_cloud_category(df["cloud_category_raw"])

    return df.sort_values(["panel_id", "timestamp"]).reset_index(drop=True)


def validate_observations(
    df: pd.DataFrame,
    *,
    expected_step: str = "15min",
    verbose: bool = True,
) -> Dict[str, Any]:
    """Sanity checks for a raw observation table.

    Structural problems (missing columns, NaT timestamps, negative production)
    raise ``ValueError``. Capacity problems are only reported here; they are
    enforced per panel when features are derived.
    """

    if verbose:
        print("=" * 80)
        print("OBSERVATION VALIDATION")
        print("=" * 80)

    missing = set(OBSERVATION_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {missing}")
    if verbose:
        print("✓ All required columns present")

    ts = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
    if ts.isna().any():
        raise ValueError("NaT found in timestamp column")

    dupes = int(df.assign(timestamp=ts).duplicated(subset=["panel_id", "timestamp"]).sum())
    if dupes:
        raise ValueError(f"{dupes} duplicated (panel_id, timestamp) keys found")

    y = pd.to_numeric(df["y"], errors="coerce")
    if (y < 0).any():
        raise ValueError("Negative production values found")

    nirr = pd.to_numeric(df["nIrr"], errors="coerce")
    out_of_range = int(((nirr < 0) | (nirr > 1)).sum())
    if out_of_range:
        raise ValueError(f"{out_of_range} nIrr value(s) outside [0, 1]")

    cap = pd.to_numeric(df["capacity"], errors="coerce")
    bad_cap_panels = sorted(df.loc[cap.isna() | (cap <= 0), "panel_id"].unique().tolist(), key=str)

    step = (
        df.assign(timestamp=ts)
        .sort_values(["panel_id", "timestamp"])
        .groupby("panel_id")["timestamp"]
        .diff()
        .dropna()
        .median()
    )

    if verbose:
        print(f"✓ Panels: {df['panel_id'].nunique()}")
        print(f"✓ Median timestep: {step}")
        if pd.notna(step) and step != pd.Timedelta(expected_step):
            print(f"⚠️ WARNING: Dataset does not appear to be on a {expected_step} grid")
        print(f"✓ Time span: {ts.min()} → {ts.max()}")
        if bad_cap_panels:
            print(f"⚠️ WARNING: Invalid capacity for panels {bad_cap_panels}")

    missing_fracs = {
        "y": float(y.isna().mean()),
        "nIrr": float(nirr.isna().mean()),
        "cloud_category_raw": float(df["cloud_category_raw"].isna().mean()),
    }
    if verbose:
        print("✓ Missing fractions:")
        for k, v in missing_fracs.items():
            print(f"  {k}: {100 * v:.2f}%")
        y_cap = y / cap.where(cap > 0)
        if np.nanmax(y_cap.to_numpy(dtype=float), initial=0.0) > 1.2:
            print("⚠️ WARNING: Production exceeds capacity by >20% on some rows")
        print("=" * 80)
        print("VALIDATION COMPLETED")
        print("=" * 80)

    return {
        "rows": int(len(df)),
        "panels": int(df["panel_id"].nunique()),
        "time_start": ts.min(),
        "time_end": ts.max(),
        "median_step": step,
        "invalid_capacity_panels": bad_cap_panels,
        "missing_fractions": missing_fracs,
    }
