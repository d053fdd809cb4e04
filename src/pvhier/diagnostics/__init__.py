"""Diagnostics subpackage.

* :mod:`pvhier.diagnostics.convergence` – split R-hat, ESS ratio, per-parameter tables
* :mod:`pvhier.diagnostics.ppc` – posterior predictive checks
* :mod:`pvhier.diagnostics.loo` – PSIS-LOO scores and model ranking
"""

from .convergence import convergence_table, ess_bulk, ess_ratio, split_rhat
from .loo import LooResult, compare_models, loo, psis_smooth
from .ppc import PPCResult, posterior_predictive_check

__all__ = [
    "convergence_table",
    "ess_bulk",
    "ess_ratio",
    "split_rhat",
    "LooResult",
    "compare_models",
    "loo",
    "psis_smooth",
    "PPCResult",
    "posterior_predictive_check",
]
