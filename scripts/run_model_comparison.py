#!/usr/bin/env python
"""Fit the model catalog on panel observations and rank the models.

Example:
  python scripts/run_model_comparison.py \
    --config config/pipeline.example.json \
    --data-path Data/panels \
    --out-dir  artifacts/comparison
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from pathlib import Path

from pvhier.config import PipelineConfig
from pvhier.data.loader import load_observations
from pvhier.pipeline import run_pipeline


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("--config", type=Path, default=None, help="Pipeline JSON config.")
    p.add_argument(
        "--data-path",
        type=str,
        default=None,
        help="Observation CSV or directory (overrides data.path in the config).",
    )
    p.add_argument("--out-dir", type=str, default=None, help="Output directory (overrides output.dir).")
    p.add_argument("--models", nargs="*", default=None, help="Registry entries to fit (default: all).")
    p.add_argument("--n-jobs", type=int, default=None)
    p.add_argument("--seed", type=int, default=None, help="Sampler seed.")
    p.add_argument("--save-fits", action="store_true")
    p.add_argument("--log-level", default="INFO")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = PipelineConfig.from_json(args.config) if args.config else PipelineConfig()
    overrides = {}
    if args.data_path is not None:
        overrides["data_path"] = args.data_path
    if args.out_dir is not None:
        overrides["output_dir"] = args.out_dir
    if args.models:
        overrides["models"] = tuple(args.models)
    if args.n_jobs is not None:
        overrides["n_jobs"] = args.n_jobs
    if args.seed is not None:
        overrides["sampler"] = replace(config.sampler, seed=args.seed)
    if args.save_fits:
        overrides["save_fits"] = True
    config = replace(config, **overrides)

    if not config.data_path:
        raise SystemExit("No data path given (use --data-path or data.path in the config)")

    obs = load_observations(config.data_path, column_map=config.column_map or None)
    result = run_pipeline(obs, config)

    table = result.comparison_table()
    print("\nModel comparison:")
    print(table.to_string(index=False))
    if result.failures:
        print("\nFailed fits:")
        for f in result.failures:
            print(" -", f.model_name, ":", f.reason)
    if config.output_dir:
        print("\nOutputs written to", Path(config.output_dir))


if __name__ == "__main__":
    main()
