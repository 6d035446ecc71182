"""
Bias aggregation over repeated simulate-and-fit trials.

One trial simulates a survey, fits the SCR model twice (correct and
incorrect trap operation) and records both sets of estimates. A scenario
repeats this `n_trials` times and expresses the mean estimates as relative
bias against the generating parameters:

    bias = (mean estimate - truth) / truth * 100

Trials that detect nobody, fail to fit, do not converge or hit a parameter
boundary are excluded from the mean and counted.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import Optional

import numpy as np
from tqdm import tqdm

from .activity import build_model_inputs
from .config import PARAMETER_NAMES, FitSettings, SimulationConfig
from .errors import ConfigError, NoCapturesError, TrialError
from .fitting import BaseFitter, FitResult, SCR0Fitter, make_state_space
from .simulation import make_trap_grid, simulate_trial

logger = logging.getLogger(__name__)

# "correct" fits use the true operation matrix, "incorrect" the all-active one
ASSUMPTIONS = ("correct", "incorrect")

STATUS_OK = "ok"
STATUS_NO_CAPTURES = "no_captures"
STATUS_FIT_ERROR = "fit_error"
STATUS_NOT_CONVERGED = "not_converged"
STATUS_DEGENERATE = "degenerate"


def stable_u64(text: str) -> int:
    """
    Stable 64-bit hash for deterministic per-trial seeds across processes/runs.
    """
    digest = hashlib.blake2b(text.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, byteorder="little", signed=False)


def trial_seed(seed: int, onset: int, percent: float, trial_idx: int) -> int:
    return stable_u64(f"{seed}:{onset}:{float(percent)}:{trial_idx}")


# =============================================================================
# Relative bias
# =============================================================================

def relative_bias(estimates: np.ndarray, truth: np.ndarray) -> np.ndarray:
    """
    Relative bias (%) of the mean estimate for each parameter.

    Rows containing NaN (excluded trials) are dropped before averaging.

    Args:
        estimates: (n_trials, n_params) or (n_params,) estimates
        truth: (n_params,) generating values

    Returns:
        (n_params,) relative bias in percent; NaN if no trial is usable
    """
    estimates = np.atleast_2d(np.asarray(estimates, dtype=float))
    truth = np.asarray(truth, dtype=float)

    valid = ~np.isnan(estimates).any(axis=1)
    if not valid.any():
        return np.full(truth.shape, np.nan)

    mean = estimates[valid].mean(axis=0)
    return (mean - truth) / truth * 100


def modelled_area(config: SimulationConfig, fit_settings: FitSettings | None = None) -> float:
    """Area of the state space the fitter integrates over for this survey."""
    fit_settings = fit_settings or FitSettings()
    traps = make_trap_grid(
        config.xlim, config.ylim, config.trap_inset, config.trap_spacing
    )
    state_space = make_state_space(
        traps, fit_settings.buffer, fit_settings.resolution, fit_settings.trim
    )
    return state_space.area


def ground_truth(
    config: SimulationConfig,
    last_trial: Optional["TrialOutcome"] = None,
    mode: str = "nominal",
    area: float | None = None,
) -> np.ndarray:
    """
    Reference values for density, abundance, p0 and sigma.

    "nominal" uses the configured parameters. "last_trial" uses the density
    and realized population size of the last simulated trial, which mixes
    sampling variation in N into the bias.

    Abundance refers to `area` (the modelled state space, default the
    simulated rectangle), so it is comparable with the fitted abundance.

    Raises:
        ConfigError: on an unknown mode, or "last_trial" without a simulated trial
    """
    scale = 1.0 if area is None else area / config.area
    if mode == "nominal":
        return np.array([
            config.nominal_density, config.n_mean * scale, config.p0, config.sigma,
        ])
    if mode == "last_trial":
        if last_trial is None or last_trial.n_realized is None:
            raise ConfigError("last_trial truth needs a trial with a simulated population")
        return np.array([
            last_trial.density, float(last_trial.n_realized) * scale, config.p0, config.sigma,
        ])
    raise ConfigError(f"Unknown truth mode: {mode}")


# =============================================================================
# Single trial
# =============================================================================

@dataclass
class TrialOutcome:
    """Estimates and status of one trial under both assumptions."""

    index: int
    seed: int
    n_realized: Optional[int] = None
    n_captured: int = 0
    density: float = float("nan")
    fits: dict[str, Optional[FitResult]] = field(default_factory=dict)
    status: dict[str, str] = field(default_factory=dict)

    def estimates(self, assumption: str) -> np.ndarray:
        """Estimates for one assumption, NaN if the fit is excluded."""
        fit = self.fits.get(assumption)
        if fit is None or self.status.get(assumption) != STATUS_OK:
            return np.full(len(PARAMETER_NAMES), np.nan)
        return fit.estimates


def _fit_status(fit: FitResult) -> str:
    if not fit.converged:
        return STATUS_NOT_CONVERGED
    if fit.degenerate:
        return STATUS_DEGENERATE
    return STATUS_OK


def run_trial(
    config: SimulationConfig,
    seed: int,
    index: int = 0,
    fitter: BaseFitter | None = None,
    fit_settings: FitSettings | None = None,
) -> TrialOutcome:
    """
    Simulate one survey and fit it under both operation assumptions.

    Trial-level failures (any TrialError, from simulation or the fitter) are
    recorded in the outcome's status, not raised.
    """
    fit_settings = fit_settings or FitSettings()
    fitter = fitter or SCR0Fitter(fit_settings)
    rng = np.random.default_rng(seed)
    outcome = TrialOutcome(index=index, seed=seed)

    try:
        trial = simulate_trial(config, rng)
    except NoCapturesError as exc:
        logger.debug(f"Trial {index}: {exc}")
        outcome.status = {a: STATUS_NO_CAPTURES for a in ASSUMPTIONS}
        outcome.fits = {a: None for a in ASSUMPTIONS}
        return outcome

    outcome.n_realized = trial.n_realized
    outcome.n_captured = trial.n_captured
    outcome.density = trial.density

    state_space = make_state_space(
        trial.traps, fit_settings.buffer, fit_settings.resolution, fit_settings.trim
    )
    inputs = dict(zip(ASSUMPTIONS, build_model_inputs(trial)))

    for assumption, model_input in inputs.items():
        try:
            fit = fitter.fit(model_input, state_space)
        except TrialError as exc:
            logger.debug(f"Trial {index} ({assumption}): {exc}")
            outcome.fits[assumption] = None
            outcome.status[assumption] = STATUS_FIT_ERROR
            continue
        outcome.fits[assumption] = fit
        outcome.status[assumption] = _fit_status(fit)

    return outcome


def _run_trial_task(args) -> TrialOutcome:
    config, fit_settings, seed, index = args
    return run_trial(config, seed, index=index, fit_settings=fit_settings)


# =============================================================================
# Scenario aggregation
# =============================================================================

@dataclass
class ScenarioResult:
    """Per-trial estimates and relative bias for one scenario."""

    onset: int
    percent_inactive: float
    n_trials: int
    truth: np.ndarray
    estimates: dict[str, np.ndarray]
    bias: dict[str, np.ndarray]
    exclusions: dict[str, dict[str, int]]
    n_realized: list[Optional[int]] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def key(self) -> str:
        return scenario_key(self.onset, self.percent_inactive)

    def n_used(self, assumption: str) -> int:
        return int((~np.isnan(self.estimates[assumption]).any(axis=1)).sum())

    def n_excluded(self, assumption: str) -> int:
        return self.n_trials - self.n_used(assumption)

    def bias_dict(self, assumption: str) -> dict[str, float]:
        return dict(zip(PARAMETER_NAMES, (float(b) for b in self.bias[assumption])))


def scenario_key(onset: int, percent_inactive: float) -> str:
    return f"onset{int(onset)}_pct{float(percent_inactive):g}"


def aggregate_outcomes(
    config: SimulationConfig,
    outcomes: list[TrialOutcome],
    truth_mode: str = "nominal",
    fit_settings: FitSettings | None = None,
) -> ScenarioResult:
    """
    Combine trial outcomes into estimate matrices and relative bias.

    Outcomes must be ordered by trial index. Abundance truth is taken over
    the state space described by `fit_settings`.
    """
    estimates = {
        a: np.vstack([o.estimates(a) for o in outcomes]) for a in ASSUMPTIONS
    }

    last_simulated = next(
        (o for o in reversed(outcomes) if o.n_realized is not None), None
    )
    if truth_mode == "last_trial" and last_simulated is None:
        truth = np.full(len(PARAMETER_NAMES), np.nan)
    else:
        truth = ground_truth(
            config, last_simulated, truth_mode, area=modelled_area(config, fit_settings)
        )

    exclusions = {}
    for a in ASSUMPTIONS:
        counts = Counter(o.status.get(a) for o in outcomes)
        counts.pop(STATUS_OK, None)
        exclusions[a] = dict(counts)

    return ScenarioResult(
        onset=config.onset,
        percent_inactive=config.percent_inactive,
        n_trials=len(outcomes),
        truth=truth,
        estimates=estimates,
        bias={a: relative_bias(estimates[a], truth) for a in ASSUMPTIONS},
        exclusions=exclusions,
        n_realized=[o.n_realized for o in outcomes],
    )


def run_scenario(
    config: SimulationConfig,
    n_trials: int,
    seed: int = 42,
    fit_settings: FitSettings | None = None,
    workers: int = 1,
    truth_mode: str = "nominal",
    verbose: bool = False,
) -> ScenarioResult:
    """
    Run `n_trials` independent trials for one scenario and aggregate them.

    Args:
        config: Generating parameters, including onset and percent inactive
        n_trials: Number of simulate-and-fit trials
        seed: Base seed; per-trial seeds are derived from it and the scenario
        fit_settings: State-space and optimizer settings
        workers: Worker processes (1 runs sequentially)
        truth_mode: "nominal" or "last_trial" reference values
        verbose: Show a progress bar

    Returns:
        ScenarioResult

    Raises:
        ScenarioError: if the configuration is invalid
    """
    config.validate()
    fit_settings = (fit_settings or FitSettings()).validate()
    if n_trials < 1:
        raise ConfigError(f"n_trials must be >= 1 (got {n_trials})")

    tasks = [
        (config, fit_settings, trial_seed(seed, config.onset, config.percent_inactive, i), i)
        for i in range(n_trials)
    ]
    outcomes: list[Optional[TrialOutcome]] = [None] * n_trials
    desc = f"Trials {scenario_key(config.onset, config.percent_inactive)}"

    if workers > 1:
        with Pool(processes=workers) as pool:
            for outcome in tqdm(
                pool.imap_unordered(_run_trial_task, tasks),
                total=n_trials,
                disable=not verbose,
                desc=desc,
            ):
                outcomes[outcome.index] = outcome
    else:
        for task in tqdm(tasks, disable=not verbose, desc=desc):
            outcome = _run_trial_task(task)
            outcomes[outcome.index] = outcome

    result = aggregate_outcomes(config, outcomes, truth_mode, fit_settings)

    for a in ASSUMPTIONS:
        if result.exclusions[a]:
            logger.warning(
                f"{result.key} ({a}): excluded {result.n_excluded(a)}/{n_trials} trials "
                f"{result.exclusions[a]}"
            )
    logger.info(
        f"{result.key}: bias correct="
        f"{np.round(result.bias['correct'], 2).tolist()} incorrect="
        f"{np.round(result.bias['incorrect'], 2).tolist()}"
    )
    return result
