#!/usr/bin/env python3
"""
Scenario sweep for trap-inactivity bias in SCR density estimates.

For every (onset occasion, percent inactive traps) grid point, simulates
camera-trap surveys in which some traps stop working partway through, fits
the SCR model with the correct and with the all-active operation matrix, and
reports the relative bias of density, abundance, p0 and sigma.

Features:
1. Resume from a per-scenario checkpoint directory
2. Optional parallel trials (--workers)
3. Results bundle (pickle) plus long-form CSV for plotting

Run from project root:
  python scripts/run_scenario_sweep.py --n-trials 100 --workers 4
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from scrbias.config import TRUTH_MODES, StudyConfig, load_config
from scrbias.errors import ConfigError
from scrbias.sweep import bias_grid, run_sweep, save_bundle, scenario_grid

logger = logging.getLogger(__name__)


def parse_number_list(value: str, cast=float) -> tuple:
    parts = [p.strip() for p in value.split(",") if p.strip()]
    if not parts:
        raise argparse.ArgumentTypeError(f"Empty list: {value!r}")
    return tuple(cast(p) for p in parts)


def build_study_config(args: argparse.Namespace) -> StudyConfig:
    """Defaults, then the JSON config file, then command-line flags."""
    study = load_config(args.config) if args.config else StudyConfig()

    if args.onsets:
        study.onsets = parse_number_list(args.onsets, int)
    if args.percents:
        study.percents = parse_number_list(args.percents, float)
    if args.n_trials is not None:
        study.n_trials = args.n_trials
    if args.seed is not None:
        study.seed = args.seed
    if args.truth is not None:
        study.truth = args.truth

    overrides = {
        "n_mean": args.n_mean,
        "p0": args.p0,
        "sigma": args.sigma,
        "n_occasions": args.n_occasions,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        study.simulation = replace(study.simulation, **overrides)

    return study.validate()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Relative bias of SCR estimates when trap inactivity is ignored."
    )
    parser.add_argument("--config", type=str, default="", help="JSON study configuration.")
    parser.add_argument("--onsets", type=str, default="", help="Comma-separated onset occasions.")
    parser.add_argument("--percents", type=str, default="", help="Comma-separated inactive percentages.")
    parser.add_argument("--n-trials", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--truth", type=str, choices=TRUTH_MODES, default=None)

    parser.add_argument("--n-mean", type=float, default=None)
    parser.add_argument("--p0", type=float, default=None)
    parser.add_argument("--sigma", type=float, default=None)
    parser.add_argument("--n-occasions", type=int, default=None)

    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--output", type=str, default="results/sweep/bias_results.pkl")
    parser.add_argument("--table-csv", type=str, default="", help="Also write the long table as CSV.")
    parser.add_argument("--checkpoint-dir", type=str, default="results/sweep/checkpoint")
    parser.add_argument("--no-checkpoint", action="store_true")
    parser.add_argument("--force-rerun", action="store_true")
    parser.add_argument("--blas-threads", type=int, default=1)
    parser.add_argument("--log-level", type=str, default="INFO")
    parser.add_argument("--quiet", action="store_true", help="Disable progress bars.")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if args.workers < 1:
        raise ValueError("--workers must be >= 1")
    if args.blas_threads <= 0:
        raise ValueError("--blas-threads must be >= 1")
    for env_var in ("OMP_NUM_THREADS", "MKL_NUM_THREADS", "OPENBLAS_NUM_THREADS"):
        os.environ[env_var] = str(args.blas_threads)

    try:
        study = build_study_config(args)
    except ConfigError as exc:
        logger.error(f"Invalid configuration: {exc}")
        return 2

    scenarios = scenario_grid(study.onsets, study.percents)
    logger.info(
        f"Running {len(scenarios)} scenarios x {study.n_trials} trials "
        f"(truth={study.truth}, workers={args.workers})"
    )

    sweep = run_sweep(
        study.simulation,
        scenarios,
        study.n_trials,
        seed=study.seed,
        fit_settings=study.fit,
        workers=args.workers,
        truth_mode=study.truth,
        checkpoint_dir=None if args.no_checkpoint else Path(args.checkpoint_dir),
        force_rerun=args.force_rerun,
        verbose=not args.quiet,
    )

    save_bundle(args.output, sweep)
    table = sweep.table()
    if args.table_csv:
        csv_path = Path(args.table_csv)
        csv_path.parent.mkdir(parents=True, exist_ok=True)
        table.to_csv(csv_path, index=False)
        logger.info(f"Saved long table to {csv_path}")

    if not table.empty:
        for parameter in ("density", "abundance"):
            print(f"\nRelative bias (%) of {parameter}, incorrect assumption:")
            print(bias_grid(table, parameter).round(2).to_string())

    if sweep.failed:
        for key, reason in sweep.failed.items():
            logger.warning(f"Failed scenario {key}: {reason}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
