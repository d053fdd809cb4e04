"""Hierarchical regression models of photovoltaic panel production.

The package is organised by pipeline stage:

* :mod:`pvhier.data` – loading, derived features, inclusion rules, datasets
* :mod:`pvhier.models` – priors, model catalog, sampler, fitting, forecasts
* :mod:`pvhier.diagnostics` – convergence, posterior predictive checks, LOO
* :mod:`pvhier.reporting` – tidy tables for plots and reports
* :mod:`pvhier.pipeline` – the batch model-comparison job
"""

from .config import PipelineConfig
from .errors import (
    InsufficientData,
    InvalidCapacity,
    NonConvergence,
    PVHierError,
    UndefinedNormalization,
    UnrecognizedCloudCategory,
)
from .pipeline import PipelineResult, run_pipeline

__version__ = "0.1.0"

__all__ = [
    "PipelineConfig",
    "PipelineResult",
    "run_pipeline",
    "PVHierError",
    "InvalidCapacity",
    "UndefinedNormalization",
    "UnrecognizedCloudCategory",
    "InsufficientData",
    "NonConvergence",
]
