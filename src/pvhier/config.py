"""Configuration for the batch model-comparison job."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from pvhier.data.filtering import MIN_IRRADIANCE, SUBSAMPLE_SEED, InclusionRules
from pvhier.diagnostics.ppc import STATISTICS
from pvhier.models.priors import PriorConfig
from pvhier.models.sampler import SamplerConfig


@dataclass(frozen=True)
class PipelineConfig:
    # ── Data ─────────────────────────────────────────────────
    data_path: Optional[str] = None
    tz: str = "UTC"
    morning_hour: int = 13
    column_map: Dict[str, str] = field(default_factory=dict)

    # ── Inclusion rules ──────────────────────────────────────
    rules: InclusionRules = field(default_factory=InclusionRules)

    # ── Single-panel subsample ───────────────────────────────
    subsample_panel: Optional[str] = None   # None: first panel in sort order
    subsample_size: Optional[int] = 2000    # None: the whole panel
    subsample_seed: int = SUBSAMPLE_SEED

    # ── Models ───────────────────────────────────────────────
    models: Tuple[str, ...] = ()            # empty: every registry entry
    intercept: str = "estimated"            # "estimated" | "fixed"
    priors: Optional[PriorConfig] = None    # replaces the registry priors when set
    sampler: SamplerConfig = field(default_factory=SamplerConfig)

    # ── Diagnostics ──────────────────────────────────────────
    ppc_statistics: Tuple[str, ...] = ("mean", "sd")
    ppc_replicates: int = 200
    ppc_seed: int = 20240101

    # ── Execution / output ───────────────────────────────────
    output_dir: Optional[str] = None
    save_fits: bool = False
    n_jobs: int = 1

    def __post_init__(self):
        object.__setattr__(self, "models", tuple(self.models))
        object.__setattr__(self, "ppc_statistics", tuple(self.ppc_statistics))
        self.validate()

    def validate(self) -> None:
        """Raise ValueError for obvious misconfiguration."""
        if self.intercept not in ("estimated", "fixed"):
            raise ValueError(f"intercept must be 'estimated' or 'fixed', got '{self.intercept}'")
        unknown = [s for s in self.ppc_statistics if s not in STATISTICS]
        if unknown:
            raise ValueError(f"Unknown PPC statistic(s) {unknown}; expected from {sorted(STATISTICS)}")
        if self.subsample_size is not None and int(self.subsample_size) < 1:
            raise ValueError("subsample_size must be >= 1 (or null for the whole panel)")
        if int(self.ppc_replicates) < 1:
            raise ValueError("ppc_replicates must be >= 1")
        if int(self.n_jobs) == 0:
            raise ValueError("n_jobs must be non-zero (use -1 for all cores)")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PipelineConfig":
        """Construct from a parsed JSON dict with sections data/filter/subsample/models/sampler/ppc/output."""
        known = {"data", "filter", "subsample", "models", "sampler", "ppc", "output"}
        unknown = set(d) - known
        if unknown:
            raise KeyError(f"Unknown config section(s): {sorted(unknown)}")

        data = d.get("data", {})
        filt = d.get("filter", {})
        sub = d.get("subsample", {})
        models = d.get("models", {})
        ppc = d.get("ppc", {})
        out = d.get("output", {})

        priors = models.get("priors")
        panel = sub.get("panel")
        return cls(
            data_path=data.get("path"),
            tz=data.get("tz", "UTC"),
            morning_hour=int(data.get("morning_hour", 13)),
            column_map=dict(data.get("column_map", {})),
            rules=InclusionRules(
                min_irradiance=float(filt.get("min_irradiance", MIN_IRRADIANCE)),
                require_cloud_category=bool(filt.get("require_cloud_category", True)),
            ),
            subsample_panel=None if panel is None else str(panel),
            subsample_size=sub.get("size", 2000),
            subsample_seed=int(sub.get("seed", SUBSAMPLE_SEED)),
            models=tuple(models.get("names", ())),
            intercept=models.get("intercept", "estimated"),
            priors=None if priors is None else PriorConfig.from_dict(priors),
            sampler=SamplerConfig.from_dict(d.get("sampler", {})),
            ppc_statistics=tuple(ppc.get("statistics", ("mean", "sd"))),
            ppc_replicates=int(ppc.get("replicates", 200)),
            ppc_seed=int(ppc.get("seed", 20240101)),
            output_dir=out.get("dir"),
            save_fits=bool(out.get("save_fits", False)),
            n_jobs=int(out.get("n_jobs", 1)),
        )

    @classmethod
    def from_json(cls, path: Union[str, os.PathLike]) -> "PipelineConfig":
        with open(Path(path), "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
