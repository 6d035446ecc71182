"""
Study configuration.

Default parameter values for the simulated population, the camera-trap
survey, the scenario grid and the likelihood fit. Values can be overridden
from a JSON file (see `load_config`) and from the command line.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULTS
# =============================================================================

# Scenario grid: onset occasion of inactivity x percentage of inactive traps
DEFAULT_ONSETS = (5, 6, 7, 8)
DEFAULT_PERCENTS = (30, 40, 50, 60, 70, 80)

DEFAULT_N_TRIALS = 100
DEFAULT_SEED = 42

PARAMETER_NAMES = ("density", "abundance", "p0", "sigma")

TRUTH_MODES = ("nominal", "last_trial")


@dataclass(frozen=True)
class SimulationConfig:
    """Generating parameters for one scenario."""

    n_mean: float = 40.0          # Poisson mean of population size
    p0: float = 0.2               # baseline detection probability
    sigma: float = 0.6            # half-normal spatial scale
    n_occasions: int = 10
    onset: int = 5                # first inactive occasion (1-based)
    percent_inactive: float = 50.0
    xlim: float = 13.0
    ylim: float = 13.0
    trap_inset: float = 3.0
    trap_spacing: float = 1.0

    @property
    def area(self) -> float:
        return self.xlim * self.ylim

    @property
    def nominal_density(self) -> float:
        return self.n_mean / self.area

    def validate(self) -> "SimulationConfig":
        """Raise ConfigError if the parameters cannot describe a survey."""
        problems = []
        if self.n_mean <= 0:
            problems.append(f"n_mean must be > 0 (got {self.n_mean})")
        if not 0 < self.p0 < 1:
            problems.append(f"p0 must be in (0, 1) (got {self.p0})")
        if self.sigma <= 0:
            problems.append(f"sigma must be > 0 (got {self.sigma})")
        if self.n_occasions < 1:
            problems.append(f"n_occasions must be >= 1 (got {self.n_occasions})")
        if not 1 <= self.onset <= self.n_occasions:
            problems.append(
                f"onset must be in [1, {self.n_occasions}] (got {self.onset})"
            )
        if not 0 <= self.percent_inactive <= 100:
            problems.append(
                f"percent_inactive must be in [0, 100] (got {self.percent_inactive})"
            )
        if self.trap_spacing <= 0:
            problems.append(f"trap_spacing must be > 0 (got {self.trap_spacing})")
        if self.xlim <= 2 * self.trap_inset or self.ylim <= 2 * self.trap_inset:
            problems.append(
                f"state space {self.xlim}x{self.ylim} leaves no room for traps "
                f"inset by {self.trap_inset}"
            )
        if problems:
            raise ConfigError("; ".join(problems))
        return self

    def with_scenario(self, onset: int, percent_inactive: float) -> "SimulationConfig":
        return replace(self, onset=int(onset), percent_inactive=float(percent_inactive))


@dataclass(frozen=True)
class FitSettings:
    """State-space discretization and optimizer settings for the SCR fit."""

    buffer: float = 3.0
    resolution: float = 0.5
    trim: bool = False
    method: str = "Nelder-Mead"
    max_iterations: int = 500

    def validate(self) -> "FitSettings":
        if self.buffer <= 0 or self.resolution <= 0:
            raise ConfigError(
                f"buffer and resolution must be > 0 (got {self.buffer}, {self.resolution})"
            )
        if self.max_iterations < 1:
            raise ConfigError("max_iterations must be >= 1")
        return self


@dataclass
class StudyConfig:
    """Everything a sweep needs: generating parameters, fit settings, grid."""

    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    fit: FitSettings = field(default_factory=FitSettings)
    onsets: tuple[int, ...] = DEFAULT_ONSETS
    percents: tuple[float, ...] = DEFAULT_PERCENTS
    n_trials: int = DEFAULT_N_TRIALS
    seed: int = DEFAULT_SEED
    truth: str = "nominal"

    def validate(self) -> "StudyConfig":
        self.simulation.validate()
        self.fit.validate()
        if self.n_trials < 1:
            raise ConfigError(f"n_trials must be >= 1 (got {self.n_trials})")
        if self.truth not in TRUTH_MODES:
            raise ConfigError(f"truth must be one of {TRUTH_MODES} (got {self.truth!r})")
        if not self.onsets or not self.percents:
            raise ConfigError("Scenario grid is empty")
        return self

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["onsets"] = list(self.onsets)
        payload["percents"] = list(self.percents)
        return payload


def _build(cls, values: dict[str, Any], section: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {', '.join(unknown)}")
    return cls(**values)


def config_from_dict(payload: dict[str, Any]) -> StudyConfig:
    """Build a StudyConfig from a (possibly partial) nested dict."""
    if not isinstance(payload, dict):
        raise ConfigError("Configuration must be a JSON object")

    payload = dict(payload)
    simulation = _build(SimulationConfig, payload.pop("simulation", {}) or {}, "simulation")
    fit = _build(FitSettings, payload.pop("fit", {}) or {}, "fit")

    for key in ("onsets", "percents"):
        if key in payload:
            payload[key] = tuple(payload[key])

    study = _build(StudyConfig, payload, "study")
    study.simulation = simulation
    study.fit = fit
    return study.validate()


def load_config(path: Path | str) -> StudyConfig:
    """
    Load a study configuration from a JSON file.

    Missing keys fall back to defaults. Example:

        {
          "simulation": {"n_mean": 40, "p0": 0.2, "sigma": 0.6},
          "fit": {"buffer": 3.0, "resolution": 0.5},
          "onsets": [5, 6, 7, 8],
          "percents": [30, 40, 50],
          "n_trials": 50
        }
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc

    logger.info(f"Loaded configuration from {path}")
    return config_from_dict(payload)
