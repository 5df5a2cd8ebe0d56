#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from commission_engine.config import load_settings
from commission_engine.consolidation import consolidate
from commission_engine.loader import load_snapshot
from commission_engine.logging_utils import configure_logging
from commission_engine.pipeline import run_calculation


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Consolidate a certificate snapshot into commission entities.")
    p.add_argument("--data-dir", type=Path, default=None)
    p.add_argument("--config", type=Path, default=None, help="Optional YAML settings file")
    p.add_argument("--calculate", action="store_true", help="Also run the calculation pipeline")
    p.add_argument("--output", type=Path, default=None, help="Optional path to write JSON output")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings(args.config)
    configure_logging(settings.log_level, settings.log_path)
    data_dir = args.data_dir or settings.data_dir

    snapshot = load_snapshot(data_dir, settings.active_statuses)
    result = consolidate(snapshot.rows, snapshot.schedules, snapshot.brokers, settings)
    output: dict = {"stats": result.stats, "gaps": {}}
    for gap in result.gaps:
        output["gaps"][gap.kind] = output["gaps"].get(gap.kind, 0) + 1
    if args.calculate:
        calc = run_calculation(
            result, snapshot.premiums, snapshot.policies, snapshot.groups, snapshot.rates, settings
        )
        output["calculation"] = calc.summary()

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(output, indent=2), encoding="utf-8")
    else:
        print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
