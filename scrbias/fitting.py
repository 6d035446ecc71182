"""
Maximum-likelihood spatial capture-recapture fitting.

Implements the basic SCR model (constant density, constant baseline
detection, constant spatial scale) with Bernoulli encounters per active
trap-occasion and a half-normal detection kernel. Activity centers are
integrated out over a discretized state space, and population size is
integrated out under a Poisson point process:

    log L = sum_i log sum_s d0 Pr(y_i | s) - d0 sum_s (1 - Pr(0 | s)) - log n!

Based on:
- Borchers & Efford (2008) "Spatially explicit maximum likelihood methods
  for capture-recapture studies" - Biometrics
- Royle, Chandler, Sollmann & Gardner (2014) "Spatial Capture-Recapture",
  chapter 6 (likelihood analysis on a discrete state space)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
from scipy.optimize import minimize
from scipy.special import expit, gammaln, logit, logsumexp

from .activity import ModelInput
from .config import PARAMETER_NAMES, FitSettings
from .errors import FitError
from .simulation import pairwise_distances

logger = logging.getLogger(__name__)

# p0 this close to 0 or 1 is treated as a boundary estimate
P0_BOUNDARY_TOL = 1e-6

# Detection probabilities are capped just below 1 so log(1 - p) stays finite
LOG_P_MAX = np.log1p(-1e-12)
LOG_P_MIN = -1e10


# =============================================================================
# State space
# =============================================================================

@dataclass
class StateSpace:
    """Pixel centers of the discretized state space."""

    points: np.ndarray
    resolution: float
    buffer: float

    @property
    def n_cells(self) -> int:
        return self.points.shape[0]

    @property
    def cell_area(self) -> float:
        return self.resolution**2

    @property
    def area(self) -> float:
        return self.n_cells * self.cell_area

    @property
    def diagonal(self) -> float:
        extent = self.points.max(axis=0) - self.points.min(axis=0) + self.resolution
        return float(np.hypot(*extent))


def make_state_space(
    traps: np.ndarray,
    buffer: float = 3.0,
    resolution: float = 0.5,
    trim: bool = False,
) -> StateSpace:
    """
    Discretize the region around the traps into square pixels.

    The grid covers the trap bounding box extended by `buffer` on every
    side. With `trim`, pixels farther than `buffer` from the nearest trap are
    dropped, leaving the usable cells. Untrimmed, a buffer equal to the trap
    inset reproduces the simulated rectangle exactly.

    Args:
        traps: (J, 2) trap coordinates
        buffer: Distance the state space extends beyond the traps
        resolution: Pixel side length
        trim: Drop pixels farther than `buffer` from every trap

    Returns:
        StateSpace
    """
    traps = np.asarray(traps, dtype=float)
    lo = traps.min(axis=0) - buffer
    hi = traps.max(axis=0) + buffer

    xs = np.arange(lo[0] + resolution / 2, hi[0], resolution)
    ys = np.arange(lo[1] + resolution / 2, hi[1], resolution)
    gx, gy = np.meshgrid(xs, ys)
    points = np.column_stack([gx.ravel(), gy.ravel()])

    if trim:
        nearest = pairwise_distances(points, traps).min(axis=1)
        points = points[nearest <= buffer]

    return StateSpace(points=points, resolution=resolution, buffer=buffer)


# =============================================================================
# Fit results
# =============================================================================

@dataclass
class FitResult:
    """Point estimates and diagnostics from one model fit."""

    density: float
    abundance: float
    p0: float
    sigma: float
    converged: bool
    degenerate: bool = False
    neg_log_likelihood: float = float("nan")
    aic: float = float("nan")
    n_iterations: int = 0
    message: str = ""

    @property
    def usable(self) -> bool:
        """Whether the estimates may enter a bias average."""
        return self.converged and not self.degenerate

    @property
    def estimates(self) -> np.ndarray:
        """Estimates ordered as PARAMETER_NAMES."""
        return np.array([getattr(self, name) for name in PARAMETER_NAMES], dtype=float)


class BaseFitter(ABC):
    """Abstract base class for SCR model fitters."""

    @abstractmethod
    def fit(self, data: ModelInput, state_space: StateSpace) -> FitResult:
        """
        Fit the model to one dataset.

        Args:
            data: Encounter histories with trap coordinates and operation
            state_space: Discretized state space

        Returns:
            FitResult with density, abundance, p0 and sigma

        Raises:
            TrialError: if this dataset cannot be fitted; the trial is
                recorded as excluded and the scenario continues
        """
        pass


# =============================================================================
# SCR0: intercept-only model
# =============================================================================

def scr_neg_log_likelihood(
    theta: np.ndarray,
    counts: np.ndarray,
    active: np.ndarray,
    distances: np.ndarray,
) -> float:
    """
    Negative log-likelihood of the intercept-only SCR model.

    Args:
        theta: (logit p0, log sigma, log d0), d0 = expected individuals per pixel
        counts: (n, J) detections per individual on active occasions
        active: (J,) active occasions per trap
        distances: (G, J) pixel-to-trap distances

    Returns:
        Negative log-likelihood
    """
    alpha0, log_sigma, log_d0 = theta
    sigma = np.exp(log_sigma)

    # log p0 as -log(1 + exp(-alpha0)) stays finite for large |alpha0|
    log_p = -np.logaddexp(0.0, -alpha0) - distances**2 / (2 * sigma**2)
    log_p = np.clip(log_p, LOG_P_MIN, LOG_P_MAX)
    log_q = np.log1p(-np.exp(log_p))

    # log Pr(y_i | s), shape (n, G), and log Pr(0 | s), shape (G,)
    log_lik_ind = counts @ log_p.T + (active[None, :] - counts) @ log_q.T
    log_lik_zero = log_q @ active

    n = counts.shape[0]
    d0 = np.exp(log_d0)
    expected_detected = d0 * np.sum(-np.expm1(log_lik_zero))

    log_lik = (
        np.sum(logsumexp(log_d0 + log_lik_ind, axis=1))
        - expected_detected
        - gammaln(n + 1)
    )
    if not np.isfinite(log_lik):
        return np.inf
    return -log_lik


class SCR0Fitter(BaseFitter):
    """
    Intercept-only SCR model fitted by maximum likelihood.

    Density is constant over the state space; baseline detection and spatial
    scale are constant across traps, occasions and individuals. Inactive
    trap-occasions contribute nothing to the likelihood.
    """

    n_params = 3

    def __init__(self, settings: FitSettings | None = None):
        self.settings = settings or FitSettings()

    def start_values(self, data: ModelInput, state_space: StateSpace) -> np.ndarray:
        """Starting values on the link scale."""
        trap_d = pairwise_distances(data.traps, data.traps)
        nonzero = trap_d[trap_d > 0]
        sigma0 = float(nonzero.min()) if nonzero.size else 1.0
        d0 = 2.0 * max(data.n_individuals, 1) / state_space.n_cells
        return np.array([logit(0.1), np.log(sigma0), np.log(d0)])

    def fit(self, data: ModelInput, state_space: StateSpace) -> FitResult:
        if data.n_individuals == 0:
            raise FitError("Cannot fit a model to zero detected individuals")

        counts = data.capture_counts.astype(float)
        active = data.active_occasions.astype(float)
        distances = pairwise_distances(state_space.points, data.traps)
        x0 = self.start_values(data, state_space)

        objective_args = (counts, active, distances)
        start_nll = scr_neg_log_likelihood(x0, *objective_args)
        if not np.isfinite(start_nll):
            raise FitError(f"Likelihood not finite at start values {x0}")

        try:
            with np.errstate(over="ignore", under="ignore", divide="ignore", invalid="ignore"):
                result = minimize(
                    scr_neg_log_likelihood,
                    x0,
                    args=objective_args,
                    method=self.settings.method,
                    options={"maxiter": self.settings.max_iterations},
                )
        except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
            raise FitError(f"Optimizer failed: {exc}") from exc

        alpha0, log_sigma, log_d0 = result.x
        p0 = float(expit(alpha0))
        sigma = float(np.exp(log_sigma))
        d0 = float(np.exp(log_d0))
        nll = float(result.fun)

        degenerate = (
            not np.all(np.isfinite(result.x))
            or not np.isfinite(nll)
            or p0 < P0_BOUNDARY_TOL
            or p0 > 1 - P0_BOUNDARY_TOL
            or sigma > state_space.diagonal
        )

        fit = FitResult(
            density=d0 / state_space.cell_area,
            abundance=d0 * state_space.n_cells,
            p0=p0,
            sigma=sigma,
            converged=bool(result.success),
            degenerate=bool(degenerate),
            neg_log_likelihood=nll,
            aic=2 * nll + 2 * self.n_params,
            n_iterations=int(getattr(result, "nit", 0)),
            message=str(result.message),
        )
        logger.debug(
            f"SCR0 fit: D={fit.density:.4f} N={fit.abundance:.2f} "
            f"p0={fit.p0:.4f} sigma={fit.sigma:.4f} converged={fit.converged} "
            f"({fit.n_iterations} iterations)"
        )
        return fit
