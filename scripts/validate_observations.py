#!/usr/bin/env python
"""CLI wrapper for observation table validation."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from pvhier.data.loader import load_observations, validate_observations


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("data_path", type=Path, help="Observation CSV, or a directory of CSVs.")
    p.add_argument("--column-map", type=Path, default=None, help="JSON file mapping source to canonical column names.")
    p.add_argument("--expected-step", default="15min")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    column_map = None
    if args.column_map is not None:
        with open(args.column_map, "r", encoding="utf-8") as f:
            column_map = json.load(f)
    df = load_observations(args.data_path, column_map=column_map)
    report = validate_observations(df, expected_step=args.expected_step)
    print(report)


if __name__ == "__main__":
    main()
