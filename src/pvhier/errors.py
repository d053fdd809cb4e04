"""Exception types raised by the data preparation and model fitting stages."""

from __future__ import annotations

import functools
from typing import Dict, Iterable, List, Optional


class PVHierError(Exception):
    """Base class for all pipeline errors."""


class InvalidCapacity(PVHierError, ValueError):
    """Non-positive or missing nameplate capacity for one or more panels."""

    def __init__(self, panel_ids: Iterable[object], message: Optional[str] = None):
        self.panel_ids: List[object] = list(panel_ids)
        if message is None:
            message = f"Non-positive or missing capacity for panel(s): {self.panel_ids}"
        super().__init__(message)

    def __reduce__(self):
        return (self.__class__, (self.panel_ids, str(self)))


class UnrecognizedCloudCategory(PVHierError, ValueError):
    """Cloud category labels outside ``r1``..``r10`` for one or more panels."""

    def __init__(
        self,
        panel_ids: Iterable[object],
        n_rows: int,
        labels: Iterable[str] = (),
        message: Optional[str] = None,
    ):
        self.panel_ids: List[object] = list(panel_ids)
        self.n_rows = int(n_rows)
        self.labels: List[str] = sorted(str(v) for v in labels)
        if message is None:
            message = (
                f"Unrecognized cloud category label(s) {self.labels} on {self.n_rows} row(s) "
                f"for panel(s): {self.panel_ids}"
            )
        super().__init__(message)

    def __reduce__(self):
        return (self.__class__, (self.panel_ids, self.n_rows, self.labels, str(self)))


class UndefinedNormalization(PVHierError, ValueError):
    """yNorm was requested on rows where it is not defined (nIrr <= threshold)."""

    def __init__(self, n_rows: int, panel_ids: Iterable[object] = (), message: Optional[str] = None):
        self.n_rows = int(n_rows)
        self.panel_ids: List[object] = list(panel_ids)
        if message is None:
            message = (
                f"yNorm is undefined on {self.n_rows} row(s) (panels: {self.panel_ids}). "
                "Filter low-irradiance rows before using the normalized response."
            )
        super().__init__(message)

    def __reduce__(self):
        return (self.__class__, (self.n_rows, self.panel_ids, str(self)))


class InsufficientData(PVHierError, ValueError):
    """Dataset is empty or too small to identify the requested structure."""


class NonConvergence(PVHierError, RuntimeError):
    """The inference engine reported divergent transitions or failed to initialize."""

    def __init__(
        self,
        message: str,
        *,
        model_name: Optional[str] = None,
        divergences: Optional[Dict[str, int]] = None,
    ):
        self.model_name = model_name
        self.raw_message = message
        self.divergences: Dict[str, int] = dict(divergences or {})
        if self.divergences:
            total = sum(self.divergences.values())
            detail = ", ".join(f"{k}={v}" for k, v in sorted(self.divergences.items()) if v)
            message = f"{message} ({total} divergent transition(s): {detail})"
        if model_name:
            message = f"[{model_name}] {message}"
        super().__init__(message)

    def __reduce__(self):
        rebuild = functools.partial(self.__class__, model_name=self.model_name, divergences=self.divergences)
        return (rebuild, (self.raw_message,))

    @property
    def total_divergences(self) -> int:
        return int(sum(self.divergences.values()))
