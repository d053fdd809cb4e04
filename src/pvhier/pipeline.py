"""Batch job: derive -> filter -> prepare datasets -> fit every model -> diagnose -> rank.

Fits are independent; with ``n_jobs != 1`` they are mapped in parallel with
``joblib``. A fit that fails (insufficient data, non-convergence) becomes a
``FitFailure`` and shows up unranked, with its reason, in the comparison
table. Errors outside the fit stage propagate.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd
from joblib import Parallel, delayed

from pvhier.config import PipelineConfig
from pvhier.data.features import derive_features_by_panel
from pvhier.data.filtering import ModelDataset, filter_modeling_rows, subsample_panel
from pvhier.diagnostics.loo import LooResult, loo
from pvhier.diagnostics.ppc import PPCResult, posterior_predictive_check
from pvhier.errors import InsufficientData, PVHierError
from pvhier.models.fitting import FitFailure, FittedModel, fit_or_failure
from pvhier.models.registry import Family, ModelRegistry, ModelSpec, default_registry
from pvhier.models.sampler import SamplerEngine
from pvhier.reporting import comparison_table, diagnostics_table, ppc_table

logger = logging.getLogger(__name__)

FitOutcome = Union[FittedModel, FitFailure]


@dataclass(eq=False)
class PipelineResult:
    config: PipelineConfig
    features: pd.DataFrame
    panel_errors: Dict[object, PVHierError]
    datasets: Dict[str, ModelDataset]
    fits: Dict[str, FitOutcome]
    loo: Dict[str, LooResult] = field(default_factory=dict)
    ppcs: List[PPCResult] = field(default_factory=list)
    comparisons: Dict[Tuple[str, str], pd.DataFrame] = field(default_factory=dict)

    @property
    def failures(self) -> List[FitFailure]:
        return [f for f in self.fits.values() if isinstance(f, FitFailure)]

    def comparison_table(self) -> pd.DataFrame:
        """All comparison groups stacked, with dataset and response columns."""
        parts = []
        for (dataset, response), table in self.comparisons.items():
            t = table.copy()
            t.insert(0, "response", response)
            t.insert(0, "dataset", dataset)
            parts.append(t)
        return pd.concat(parts, ignore_index=True) if parts else pd.DataFrame()

    def diagnostics_table(self) -> pd.DataFrame:
        return diagnostics_table(self.fits.values())

    def summary_table(self) -> pd.DataFrame:
        parts = [f.summary() for f in self.fits.values() if isinstance(f, FittedModel)]
        return pd.concat(parts, ignore_index=True) if parts else pd.DataFrame()

    def derived_table(self) -> pd.DataFrame:
        parts = [
            f.derived_quantities()
            for f in self.fits.values()
            if isinstance(f, FittedModel) and f.spec.family is Family.LOGNORMAL
        ]
        return pd.concat(parts, ignore_index=True) if parts else pd.DataFrame()

    def save(self, output_dir: Union[str, Path], *, save_fits: bool = False) -> Path:
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        self.comparison_table().to_csv(out / "comparison.csv", index=False)
        self.diagnostics_table().to_csv(out / "diagnostics.csv", index=False)
        self.summary_table().to_csv(out / "parameter_summary.csv", index=False)
        self.derived_table().to_csv(out / "derived_quantities.csv", index=False)
        if self.ppcs:
            ppc_table(self.ppcs).to_csv(out / "ppc.csv", index=False)
        with open(out / "panel_errors.json", "w", encoding="utf-8") as f:
            json.dump({str(k): str(v) for k, v in self.panel_errors.items()}, f, indent=2)
        if save_fits:
            for name, fitted in self.fits.items():
                if isinstance(fitted, FittedModel):
                    fitted.save(out / "fits" / f"{name}.joblib")
        logger.info("Saved pipeline outputs to %s", out)
        return out


def _single_panel_frame(modeling: pd.DataFrame, config: PipelineConfig) -> pd.DataFrame:
    panels = sorted(modeling["panel_id"].unique().tolist(), key=str)
    if not panels:
        raise InsufficientData("No panels left after filtering")
    if config.subsample_panel is None:
        panel = panels[0]
    else:
        matches = [p for p in panels if str(p) == config.subsample_panel]
        if not matches:
            raise InsufficientData(f"Panel {config.subsample_panel!r} has no rows after filtering")
        panel = matches[0]
    if config.subsample_size is None:
        return modeling.loc[modeling["panel_id"] == panel].copy()
    return subsample_panel(modeling, panel, n=int(config.subsample_size), seed=config.subsample_seed)


def prepare_datasets(modeling: pd.DataFrame, config: PipelineConfig) -> Tuple[Dict[str, ModelDataset], Dict[str, str]]:
    """Datasets per scope; scopes that cannot be prepared map to a failure reason."""
    datasets: Dict[str, ModelDataset] = {
        "all_panels": ModelDataset.from_frame(modeling, name="all_panels"),
    }
    problems: Dict[str, str] = {}
    try:
        datasets["single_panel"] = ModelDataset.from_frame(_single_panel_frame(modeling, config), name="single_panel")
    except InsufficientData as exc:
        logger.warning("Single-panel dataset unavailable: %s", exc)
        problems["single_panel"] = f"{type(exc).__name__}: {exc}"
    for name, ds in datasets.items():
        logger.info("Dataset '%s': %d rows, %d panel(s)", name, ds.n_rows, len(ds.panels))
    return datasets, problems


def select_specs(config: PipelineConfig, registry: Optional[ModelRegistry] = None) -> List[ModelSpec]:
    registry = registry or default_registry(intercept=config.intercept)
    names = list(config.models) or registry.names()
    specs = [registry.get(n) for n in names]
    if config.priors is not None:
        specs = [s.with_priors(config.priors) for s in specs]
    return specs


def run_pipeline(
    obs: pd.DataFrame,
    config: Optional[PipelineConfig] = None,
    *,
    registry: Optional[ModelRegistry] = None,
    engine: Optional[SamplerEngine] = None,
) -> PipelineResult:
    """Run the full model-comparison job on raw observations."""

    config = config or PipelineConfig()

    features, panel_errors = derive_features_by_panel(obs, tz=config.tz, morning_hour=config.morning_hour)
    modeling = filter_modeling_rows(features, config.rules)
    datasets, problems = prepare_datasets(modeling, config)
    specs = select_specs(config, registry)

    fits: Dict[str, FitOutcome] = {}
    tasks = []
    for spec in specs:
        if spec.scope in problems:
            fits[spec.name] = FitFailure(model_name=spec.name, reason=problems[spec.scope], dataset_name=spec.scope)
        else:
            tasks.append((spec, datasets[spec.scope]))

    logger.info("Fitting %d model(s) with n_jobs=%d", len(tasks), config.n_jobs)
    if config.n_jobs == 1 or len(tasks) <= 1:
        outcomes = [fit_or_failure(spec, ds, config.sampler, engine=engine) for spec, ds in tasks]
    else:
        outcomes = Parallel(n_jobs=config.n_jobs)(
            delayed(fit_or_failure)(spec, ds, config.sampler, engine=engine) for spec, ds in tasks
        )
    for (spec, _), outcome in zip(tasks, outcomes):
        fits[spec.name] = outcome

    result = PipelineResult(
        config=config,
        features=features,
        panel_errors=panel_errors,
        datasets=datasets,
        fits={spec.name: fits[spec.name] for spec in specs},
    )

    groups: Dict[Tuple[str, str], List[Union[LooResult, FitFailure]]] = {}
    for spec in specs:
        outcome = result.fits[spec.name]
        key = (spec.scope, spec.response.name)
        if isinstance(outcome, FittedModel):
            result.loo[spec.name] = loo(outcome)
            for stat in config.ppc_statistics:
                result.ppcs.append(
                    posterior_predictive_check(
                        outcome, statistic=stat, n_replicates=config.ppc_replicates, seed=config.ppc_seed
                    )
                )
            groups.setdefault(key, []).append(result.loo[spec.name])
        else:
            groups.setdefault(key, []).append(outcome)

    for key, members in groups.items():
        names = {m.model_name for m in members}
        ppcs = [p for p in result.ppcs if p.model_name in names]
        result.comparisons[key] = comparison_table(members, ppcs=ppcs)
        logger.info("Comparison on %s / %s:\n%s", key[0], key[1], result.comparisons[key].to_string(index=False))

    if config.output_dir:
        result.save(config.output_dir, save_fits=config.save_fits)
    return result
