"""
Population and encounter simulation for camera-trap SCR surveys.

Simulates a Poisson number of activity centers uniformly on a rectangular
state space, a grid of camera traps inset from its edges, and Bernoulli
detections under a half-normal detection kernel. Traps only detect on
occasions they are actually operating.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

from .activity import TrapOperation, build_operation_matrices
from .config import SimulationConfig
from .errors import NoCapturesError


@dataclass
class SimulatedTrial:
    """Output of one simulated survey."""

    records: pd.DataFrame
    captures: np.ndarray
    traps: np.ndarray
    operation: TrapOperation
    n_realized: int
    density: float

    @property
    def n_captured(self) -> int:
        return self.captures.shape[0]

    @property
    def n_traps(self) -> int:
        return self.traps.shape[0]

    @property
    def n_occasions(self) -> int:
        return self.captures.shape[2]


def make_trap_grid(
    xlim: float,
    ylim: float,
    inset: float = 3.0,
    spacing: float = 1.0,
) -> np.ndarray:
    """
    Regular trap grid inset from the state-space boundary.

    Args:
        xlim, ylim: Upper bounds of the state space (lower bounds are 0)
        inset: Distance from each boundary to the outermost traps
        spacing: Distance between neighbouring traps

    Returns:
        (J, 2) array of trap coordinates, x varying fastest
    """
    xs = np.arange(inset, xlim - inset + spacing / 2, spacing)
    ys = np.arange(inset, ylim - inset + spacing / 2, spacing)
    gx, gy = np.meshgrid(xs, ys)
    return np.column_stack([gx.ravel(), gy.ravel()])


def pairwise_distances(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Euclidean distance between every row of `a` and every row of `b`."""
    return np.linalg.norm(a[:, None, :] - b[None, :, :], axis=2)


def half_normal_detection(
    distances: np.ndarray,
    p0: float,
    sigma: float,
) -> np.ndarray:
    """Per-occasion detection probability p0 * exp(-d^2 / (2 sigma^2))."""
    return p0 * np.exp(-distances**2 / (2 * sigma**2))


def simulate_population(
    n_mean: float,
    xlim: float,
    ylim: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw N ~ Poisson(n_mean) activity centers uniform on [0, xlim] x [0, ylim]."""
    n = rng.poisson(n_mean)
    return np.column_stack([
        rng.uniform(0, xlim, n),
        rng.uniform(0, ylim, n),
    ])


def simulate_encounters(
    centers: np.ndarray,
    traps: np.ndarray,
    operation: np.ndarray,
    p0: float,
    sigma: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Simulate detections and drop individuals never detected.

    Args:
        centers: (N, 2) activity centers
        traps: (J, 2) trap coordinates
        operation: (J, K) actual trap operation (0/1)
        p0: Baseline detection probability
        sigma: Spatial scale
        rng: Random number generator

    Returns:
        Boolean (n, J, K) capture array, n <= N, every row with >= 1 detection
    """
    n_occasions = operation.shape[1]
    if len(centers) == 0:
        return np.zeros((0, len(traps), n_occasions), dtype=bool)

    p = half_normal_detection(pairwise_distances(centers, traps), p0, sigma)
    probs = p[:, :, None] * operation[None, :, :]
    captures = rng.random(probs.shape) < probs

    was_captured = captures.any(axis=(1, 2))
    return captures[was_captured]


def encounter_records(captures: np.ndarray, session: int = 1) -> pd.DataFrame:
    """
    Convert a capture array to a sparse encounter-record table.

    One row per detection with 1-based `ind_id`, `trap_id` and `occasion`.
    """
    ind, trap, occ = np.nonzero(captures)
    return pd.DataFrame({
        "session": np.full(len(ind), session, dtype=int),
        "ind_id": ind + 1,
        "trap_id": trap + 1,
        "occasion": occ + 1,
    })


def simulate_trial(
    config: SimulationConfig,
    rng: np.random.Generator,
) -> SimulatedTrial:
    """
    Simulate one survey under the configured inactivity scenario.

    Detections are drawn with the true operation matrix; the false matrix is
    carried along for the misspecified fit.

    Raises:
        NoCapturesError: if no individual was detected
    """
    traps = make_trap_grid(
        config.xlim, config.ylim, config.trap_inset, config.trap_spacing
    )
    operation = build_operation_matrices(
        len(traps), config.n_occasions, config.onset, config.percent_inactive, rng
    )

    centers = simulate_population(config.n_mean, config.xlim, config.ylim, rng)
    captures = simulate_encounters(
        centers, traps, operation.true, config.p0, config.sigma, rng
    )

    if captures.shape[0] == 0:
        raise NoCapturesError(
            f"No individuals detected (N={len(centers)}, {len(traps)} traps)"
        )

    return SimulatedTrial(
        records=encounter_records(captures),
        captures=captures.astype(np.int8),
        traps=traps,
        operation=operation,
        n_realized=len(centers),
        density=config.nominal_density,
    )
