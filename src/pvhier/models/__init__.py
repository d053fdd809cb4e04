"""Model subpackage.

* :mod:`pvhier.models.priors` – prior families and per-role prior configuration
* :mod:`pvhier.models.registry` – model specifications and the default catalog
* :mod:`pvhier.models.design` – design matrices for a specification + dataset
* :mod:`pvhier.models.sampler` – sampler settings, engine protocol, Gibbs engine
* :mod:`pvhier.models.fitting` – fit driver, fitted models and fit failures
* :mod:`pvhier.models.forecast` – posterior predictive production forecasts
"""

from .fitting import FitFailure, FittedModel, fit, fit_or_failure, load_fitted, refit
from .forecast import forecast_production, next_day_rows, score_forecast
from .priors import ParameterRole, PriorConfig, PriorFamily, PriorSpec, default_priors
from .registry import Family, Grouping, ModelRegistry, ModelSpec, RandomTerm, ResponseSpec, default_registry
from .sampler import GibbsSampler, SampleResult, SamplerConfig, SamplerEngine

__all__ = [
    "FitFailure",
    "FittedModel",
    "fit",
    "fit_or_failure",
    "load_fitted",
    "refit",
    "forecast_production",
    "next_day_rows",
    "score_forecast",
    "ParameterRole",
    "PriorConfig",
    "PriorFamily",
    "PriorSpec",
    "default_priors",
    "Family",
    "Grouping",
    "ModelRegistry",
    "ModelSpec",
    "RandomTerm",
    "ResponseSpec",
    "default_registry",
    "GibbsSampler",
    "SampleResult",
    "SamplerConfig",
    "SamplerEngine",
]
