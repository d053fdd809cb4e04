"""Inclusion rules, reproducible subsampling and the immutable modelling view."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from pvhier.errors import InsufficientData, UndefinedNormalization

logger = logging.getLogger(__name__)


MIN_IRRADIANCE = 0.1
SUBSAMPLE_SEED = 4534


@dataclass(frozen=True)
class InclusionRules:
    """Row predicates that must all hold for a row to enter the modelling dataset."""

    min_irradiance: float = MIN_IRRADIANCE
    require_cloud_category: bool = True

    def mask(self, df: pd.DataFrame) -> pd.Series:
        nirr = pd.to_numeric(df["nIrr"], errors="coerce")
        keep = nirr > float(self.min_irradiance)
        # rows without a time carry no hour or morning information
        keep &= pd.to_datetime(df["timestamp"], errors="coerce", utc=True).notna()
        if self.require_cloud_category:
            keep &= df["cloud_category_raw"].notna()
        return keep.fillna(False).astype(bool)


def filter_modeling_rows(df: pd.DataFrame, rules: Optional[InclusionRules] = None) -> pd.DataFrame:
    """Return the rows satisfying every inclusion rule (as a new frame)."""
    rules = rules or InclusionRules()
    keep = rules.mask(df)
    out = df.loc[keep].copy()
    logger.info(
        "Inclusion filter kept %d of %d rows (nIrr > %.2f, cloud category present=%s)",
        len(out),
        len(df),
        rules.min_irradiance,
        rules.require_cloud_category,
    )
    return out


def subsample_panel(
    df: pd.DataFrame,
    panel_id,
    *,
    n: int,
    seed: int = SUBSAMPLE_SEED,
) -> pd.DataFrame:
    """Draw ``n`` rows of one panel without replacement.

    The draw depends only on ``seed`` and the input row order, so repeated
    calls return identical row sets. Selected rows keep their input order.
    """

    panel = df.loc[df["panel_id"] == panel_id]
    if len(panel) < int(n):
        raise InsufficientData(
            f"Panel {panel_id!r} has {len(panel)} row(s); cannot draw a subsample of {n}"
        )

    rng = np.random.default_rng(seed)
    idx = np.sort(rng.choice(len(panel), size=int(n), replace=False))
    return panel.iloc[idx].copy()


def require_defined_normalization(df: pd.DataFrame, *, min_irradiance: float = MIN_IRRADIANCE) -> None:
    """Raise ``UndefinedNormalization`` if any row would read an undefined yNorm."""

    nirr = pd.to_numeric(df["nIrr"], errors="coerce")
    bad = nirr.isna() | (nirr <= float(min_irradiance))
    if "yNorm_defined" in df.columns:
        bad |= ~df["yNorm_defined"].astype(bool)
    if bad.any():
        raise UndefinedNormalization(
            int(bad.sum()),
            panel_ids=sorted(df.loc[bad, "panel_id"].unique().tolist(), key=str),
        )


def _fingerprint(df: pd.DataFrame) -> str:
    hashed = pd.util.hash_pandas_object(df, index=True).to_numpy()
    return f"{len(df)}-{int(hashed.sum(dtype=np.uint64)):016x}"


@dataclass(frozen=True, eq=False)
class ModelDataset:
    """Read-only view over a filtered, feature-enriched frame.

    Each fit reads its own copy through :meth:`to_frame`; two datasets with
    the same content share a fingerprint, which is what the model comparison
    uses to decide whether scores are comparable.
    """

    name: str
    _frame: pd.DataFrame = field(repr=False)
    fingerprint: str = ""

    @classmethod
    def from_frame(cls, df: pd.DataFrame, *, name: str) -> "ModelDataset":
        frame = df.reset_index(drop=True).copy()
        return cls(name=name, _frame=frame, fingerprint=_fingerprint(frame))

    def to_frame(self) -> pd.DataFrame:
        return self._frame.copy()

    @property
    def n_rows(self) -> int:
        return int(len(self._frame))

    @property
    def panels(self) -> list:
        return sorted(self._frame["panel_id"].unique().tolist(), key=str)

    def __len__(self) -> int:
        return self.n_rows
