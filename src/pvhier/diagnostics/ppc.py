"""Posterior predictive check on the observed response scale."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional

import numpy as np
import pandas as pd

from pvhier.models.fitting import FittedModel
from pvhier.models.registry import Family

STATISTICS: Dict[str, Callable[[np.ndarray], float]] = {
    "mean": lambda v: float(np.mean(v)),
    "sd": lambda v: float(np.std(v, ddof=1)),
    "median": lambda v: float(np.median(v)),
    "q05": lambda v: float(np.quantile(v, 0.05)),
    "q95": lambda v: float(np.quantile(v, 0.95)),
}


@dataclass(frozen=True, eq=False)
class PPCResult:
    model_name: str
    statistic: str
    observed: float
    replicated: np.ndarray
    seed: Optional[int] = None

    @property
    def tail_probability(self) -> float:
        """P(T(y_rep) >= T(y)) over the replicates."""
        return float(np.mean(self.replicated >= self.observed))

    def summary(self) -> Dict[str, object]:
        return {
            "model": self.model_name,
            "statistic": self.statistic,
            "observed": self.observed,
            "replicated_mean": float(np.mean(self.replicated)),
            "replicated_q0.025": float(np.quantile(self.replicated, 0.025)),
            "replicated_q0.975": float(np.quantile(self.replicated, 0.975)),
            "tail_probability": self.tail_probability,
            "n_replicates": int(self.replicated.size),
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per replicate (for histogram-style rendering)."""
        return pd.DataFrame(
            {
                "model": self.model_name,
                "statistic": self.statistic,
                "replicate": np.arange(self.replicated.size),
                "value": self.replicated,
                "observed": self.observed,
            }
        )


def posterior_predictive_check(
    fitted: FittedModel,
    *,
    statistic: str = "mean",
    n_replicates: int = 200,
    seed: Optional[int] = None,
) -> PPCResult:
    """Simulate replicated datasets and compare ``statistic`` with the observed data.

    Replicates use randomly chosen posterior draws (without replacement when
    there are enough of them). Nothing is gated on the result.
    """

    if statistic not in STATISTICS:
        raise ValueError(f"Unknown statistic {statistic!r}; expected one of {sorted(STATISTICS)}")
    if int(n_replicates) < 1:
        raise ValueError("n_replicates must be >= 1")

    stat = STATISTICS[statistic]
    rng = np.random.default_rng(seed)
    structure = fitted.structure

    loc = fitted.location_draws()
    sigma = fitted.sigma_draws()
    n_total = loc.shape[0]
    idx = rng.choice(n_total, size=int(n_replicates), replace=int(n_replicates) > n_total)

    W = structure.W
    lognormal = fitted.spec.family is Family.LOGNORMAL
    replicated = np.empty(idx.size)
    for i, d in enumerate(idx):
        mu = np.asarray(W @ loc[d]).ravel() + structure.offset
        y_rep = mu + sigma[d] * rng.standard_normal(mu.size)
        if lognormal:
            y_rep = np.exp(y_rep)
        replicated[i] = stat(y_rep)

    return PPCResult(
        model_name=fitted.name,
        statistic=statistic,
        observed=stat(structure.observed_response()),
        replicated=replicated,
        seed=seed,
    )
