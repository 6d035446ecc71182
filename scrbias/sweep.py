"""
Scenario sweep over inactivity onset and percentage of inactive traps.

Runs the bias aggregation for every grid point, collects results into a
long-form table, and persists a results bundle. Completed scenarios are
checkpointed so an interrupted sweep resumes where it stopped.
"""

from __future__ import annotations

import itertools
import json
import logging
import pickle
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

import pandas as pd

from .analysis import ASSUMPTIONS, ScenarioResult, run_scenario, scenario_key
from .config import (
    DEFAULT_ONSETS,
    DEFAULT_PERCENTS,
    PARAMETER_NAMES,
    FitSettings,
    SimulationConfig,
)

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 2


@dataclass(frozen=True)
class Scenario:
    """One grid point of the sweep."""

    onset: int
    percent_inactive: float

    @property
    def key(self) -> str:
        return scenario_key(self.onset, self.percent_inactive)


@dataclass
class SweepResult:
    """Results of a full sweep."""

    results: list[ScenarioResult] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0
    parameters: dict[str, Any] = field(default_factory=dict)

    def table(self) -> pd.DataFrame:
        return results_table(self.results)


def scenario_grid(
    onsets: Sequence[int] = DEFAULT_ONSETS,
    percents: Sequence[float] = DEFAULT_PERCENTS,
) -> list[Scenario]:
    """Cartesian product of onset occasions and inactive percentages."""
    return [
        Scenario(int(onset), float(percent))
        for onset, percent in itertools.product(onsets, percents)
    ]


# =============================================================================
# Checkpointing
# =============================================================================

def _manifest_path(checkpoint_dir: Path) -> Path:
    return checkpoint_dir / "manifest.json"


def _scenario_path(checkpoint_dir: Path, key: str) -> Path:
    return checkpoint_dir / "scenarios" / f"{key}.pkl"


def sweep_signature(
    *,
    base_config: SimulationConfig,
    fit_settings: FitSettings,
    n_trials: int,
    seed: int,
    truth_mode: str,
) -> dict:
    """Parameters that must match for a checkpoint to be reused."""
    sim = asdict(base_config)
    sim.pop("onset", None)
    sim.pop("percent_inactive", None)
    return {
        "simulation": sim,
        "fit": asdict(fit_settings),
        "n_trials": int(n_trials),
        "seed": int(seed),
        "truth_mode": str(truth_mode),
    }


def load_checkpoint(checkpoint_dir: Path, signature: dict) -> dict[str, ScenarioResult]:
    """
    Load completed scenarios from a checkpoint directory.

    Returns an empty dict when there is no manifest or the manifest was
    written by a different version or for different parameters.
    """
    manifest_path = _manifest_path(checkpoint_dir)
    if not manifest_path.exists():
        return {}

    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning(f"Failed to read checkpoint manifest ({manifest_path}): {exc}")
        return {}

    if int(manifest.get("version", -1)) != CHECKPOINT_VERSION:
        logger.warning("Checkpoint version mismatch; ignoring previous checkpoint.")
        return {}
    if manifest.get("signature") != signature:
        logger.warning("Checkpoint signature mismatch; ignoring previous checkpoint.")
        return {}

    completed = {}
    for key in manifest.get("completed", []):
        path = _scenario_path(checkpoint_dir, key)
        if not path.exists():
            continue
        with path.open("rb") as f:
            completed[key] = pickle.load(f)
    return completed


def save_checkpoint(
    checkpoint_dir: Path,
    signature: dict,
    result: ScenarioResult,
    completed_keys: list[str],
) -> None:
    """Write one finished scenario and update the manifest."""
    scenario_path = _scenario_path(checkpoint_dir, result.key)
    scenario_path.parent.mkdir(parents=True, exist_ok=True)
    with scenario_path.open("wb") as f:
        pickle.dump(result, f, protocol=pickle.HIGHEST_PROTOCOL)

    manifest = {
        "version": CHECKPOINT_VERSION,
        "signature": signature,
        "updated_at": int(time.time()),
        "completed": sorted(set(completed_keys)),
    }
    manifest_path = _manifest_path(checkpoint_dir)
    tmp_manifest = manifest_path.with_suffix(".tmp")
    tmp_manifest.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    tmp_manifest.replace(manifest_path)


# =============================================================================
# Sweep
# =============================================================================

def run_sweep(
    base_config: SimulationConfig,
    scenarios: Sequence[Scenario],
    n_trials: int,
    seed: int = 42,
    fit_settings: FitSettings | None = None,
    workers: int = 1,
    truth_mode: str = "nominal",
    checkpoint_dir: Optional[Path] = None,
    force_rerun: bool = False,
    verbose: bool = False,
) -> SweepResult:
    """
    Run the bias aggregation for every scenario.

    A scenario that raises is logged and recorded in `failed`; the sweep
    moves on to the next one. The reported duration includes the time
    spent on scenarios loaded from the checkpoint.

    Args:
        base_config: Nuisance parameters shared by all scenarios
        scenarios: Grid points to run
        n_trials: Trials per scenario
        seed: Base seed
        fit_settings: State-space and optimizer settings
        workers: Worker processes per scenario
        truth_mode: "nominal" or "last_trial"
        checkpoint_dir: Directory for resumable per-scenario results
        force_rerun: Ignore completed scenarios in the checkpoint
        verbose: Show progress bars

    Returns:
        SweepResult with results in grid order
    """
    fit_settings = fit_settings or FitSettings()
    signature = sweep_signature(
        base_config=base_config,
        fit_settings=fit_settings,
        n_trials=n_trials,
        seed=seed,
        truth_mode=truth_mode,
    )

    completed: dict[str, ScenarioResult] = {}
    if checkpoint_dir is not None:
        checkpoint_dir = Path(checkpoint_dir)
        if not force_rerun:
            completed = load_checkpoint(checkpoint_dir, signature)
            if completed:
                logger.info(f"Resuming: {len(completed)} scenarios already complete")

    sweep = SweepResult(parameters=signature)
    start = time.time()
    resumed_seconds = 0.0

    for i, scenario in enumerate(scenarios, start=1):
        key = scenario.key
        if key in completed:
            logger.info(f"[{i}/{len(scenarios)}] {key}: loaded from checkpoint")
            sweep.results.append(completed[key])
            resumed_seconds += completed[key].elapsed_seconds
            continue

        logger.info(f"[{i}/{len(scenarios)}] {key}: running {n_trials} trials")
        scenario_start = time.time()
        try:
            config = base_config.with_scenario(scenario.onset, scenario.percent_inactive)
            result = run_scenario(
                config,
                n_trials,
                seed=seed,
                fit_settings=fit_settings,
                workers=workers,
                truth_mode=truth_mode,
                verbose=verbose,
            )
        except Exception as exc:
            logger.error(f"Scenario {key} failed: {exc}")
            sweep.failed[key] = f"{type(exc).__name__}: {exc}"
            continue

        result.elapsed_seconds = time.time() - scenario_start
        sweep.results.append(result)
        completed[key] = result
        if checkpoint_dir is not None:
            save_checkpoint(checkpoint_dir, signature, result, list(completed))

    sweep.duration_seconds = time.time() - start + resumed_seconds
    logger.info(
        f"Sweep finished: {len(sweep.results)} scenarios, {len(sweep.failed)} failed, "
        f"{sweep.duration_seconds:.1f}s"
    )
    return sweep


# =============================================================================
# Result tables
# =============================================================================

def results_table(results: Sequence[ScenarioResult]) -> pd.DataFrame:
    """
    Long-form bias table: one row per scenario x assumption x parameter.
    """
    rows = []
    for result in results:
        for assumption in ASSUMPTIONS:
            for name, truth, bias in zip(
                PARAMETER_NAMES, result.truth, result.bias[assumption]
            ):
                rows.append({
                    "onset": result.onset,
                    "percent_inactive": result.percent_inactive,
                    "assumption": assumption,
                    "parameter": name,
                    "truth": float(truth),
                    "relative_bias": float(bias),
                    "n_used": result.n_used(assumption),
                    "n_excluded": result.n_excluded(assumption),
                })
    columns = [
        "onset", "percent_inactive", "assumption", "parameter",
        "truth", "relative_bias", "n_used", "n_excluded",
    ]
    return pd.DataFrame(rows, columns=columns)


def bias_grid(
    table: pd.DataFrame,
    parameter: str,
    assumption: str = "incorrect",
) -> pd.DataFrame:
    """Onset x percent-inactive matrix of relative bias for one parameter."""
    subset = table[(table["parameter"] == parameter) & (table["assumption"] == assumption)]
    return subset.pivot(index="onset", columns="percent_inactive", values="relative_bias")


# =============================================================================
# Persistence
# =============================================================================

def save_bundle(path: Path | str, sweep: SweepResult) -> Path:
    """Pickle per-scenario results, the long table and the sweep duration."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    bundle = {
        "results": sweep.results,
        "table": sweep.table(),
        "failed": sweep.failed,
        "duration_seconds": sweep.duration_seconds,
        "parameters": sweep.parameters,
    }
    tmp_path = path.with_suffix(".tmp")
    with tmp_path.open("wb") as f:
        pickle.dump(bundle, f, protocol=pickle.HIGHEST_PROTOCOL)
    tmp_path.replace(path)
    logger.info(f"Saved results bundle to {path}")
    return path


def load_bundle(path: Path | str) -> SweepResult:
    with Path(path).open("rb") as f:
        bundle = pickle.load(f)
    return SweepResult(
        results=bundle["results"],
        failed=bundle.get("failed", {}),
        duration_seconds=float(bundle.get("duration_seconds", 0.0)),
        parameters=bundle.get("parameters", {}),
    )
