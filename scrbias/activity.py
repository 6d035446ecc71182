"""
Trap operation matrices and model-input formatting.

Builds the two trap-operation matrices compared in the study:
- "true": a random subset of traps stops working from the onset occasion on
- "false": every trap active on every occasion (the erroneous assumption)

and packages encounter records with either matrix into the input the SCR
likelihood consumes.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

from .errors import ScenarioError


@dataclass
class TrapOperation:
    """Paired operation matrices (traps x occasions) for one trial."""

    true: np.ndarray
    false: np.ndarray
    inactive: np.ndarray

    @property
    def n_traps(self) -> int:
        return self.true.shape[0]

    @property
    def n_occasions(self) -> int:
        return self.true.shape[1]


def n_inactive_traps(n_traps: int, percent: float) -> int:
    """
    Number of traps to deactivate.

    Rounds half to even, so 64 traps at 50% gives 32 and 5 traps at 50% gives 2.
    """
    return int(round(n_traps * percent / 100))


def select_inactive_traps(
    n_traps: int,
    percent: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Simple random sample (without replacement) of trap indices to deactivate."""
    k = n_inactive_traps(n_traps, percent)
    if k == 0:
        return np.array([], dtype=int)
    return np.sort(rng.choice(n_traps, size=k, replace=False))


def build_operation_matrices(
    n_traps: int,
    n_occasions: int,
    onset: int,
    percent: float,
    rng: np.random.Generator,
) -> TrapOperation:
    """
    Build the true and false operation matrices.

    Args:
        n_traps: Number of traps (J)
        n_occasions: Number of sampling occasions (K)
        onset: First occasion (1-based) on which selected traps are inactive
        percent: Percentage of traps that go inactive
        rng: Random number generator

    Returns:
        TrapOperation with `true`, `false` (J x K int8) and the inactive indices
    """
    if n_traps < 1:
        raise ScenarioError(f"Need at least one trap (got {n_traps})")
    if not 1 <= onset <= n_occasions:
        raise ScenarioError(f"onset must be in [1, {n_occasions}] (got {onset})")
    if not 0 <= percent <= 100:
        raise ScenarioError(f"percent must be in [0, 100] (got {percent})")

    inactive = select_inactive_traps(n_traps, percent, rng)

    false_op = np.ones((n_traps, n_occasions), dtype=np.int8)
    true_op = false_op.copy()
    true_op[inactive, onset - 1:] = 0

    return TrapOperation(true=true_op, false=false_op, inactive=inactive)


@dataclass
class ModelInput:
    """
    Encounter data packaged for the SCR likelihood.

    `captures` is the individual x trap x occasion detection array,
    `traps` the trap coordinates and `operation` the declared trap status.
    """

    captures: np.ndarray
    traps: np.ndarray
    operation: np.ndarray

    @property
    def n_individuals(self) -> int:
        return self.captures.shape[0]

    @property
    def n_traps(self) -> int:
        return self.traps.shape[0]

    @property
    def n_occasions(self) -> int:
        return self.operation.shape[1]

    @property
    def capture_counts(self) -> np.ndarray:
        """Detections per individual and trap on occasions declared active."""
        return (self.captures * self.operation[None, :, :]).sum(axis=2)

    @property
    def active_occasions(self) -> np.ndarray:
        """Number of occasions each trap is declared active."""
        return self.operation.sum(axis=1)


def format_model_input(
    records: pd.DataFrame,
    traps: np.ndarray,
    operation: np.ndarray,
    n_occasions: int,
) -> ModelInput:
    """
    Rebuild the capture array from sparse encounter records.

    Individuals are indexed in order of first appearance of their `ind_id`.

    Args:
        records: Encounter records with `ind_id`, `trap_id`, `occasion` (1-based)
        traps: (J, 2) trap coordinates
        operation: (J, K) operation matrix declared to the model
        n_occasions: Number of occasions (K)

    Returns:
        ModelInput
    """
    traps = np.asarray(traps, dtype=float)
    operation = np.asarray(operation, dtype=np.int8)
    n_traps = traps.shape[0]

    if operation.shape != (n_traps, n_occasions):
        raise ScenarioError(
            f"Operation matrix shape {operation.shape} does not match "
            f"{n_traps} traps x {n_occasions} occasions"
        )

    ind_ids = pd.unique(records["ind_id"])
    ind_index = {ind: i for i, ind in enumerate(ind_ids)}

    captures = np.zeros((len(ind_ids), n_traps, n_occasions), dtype=np.int8)
    if len(records):
        rows = records["ind_id"].map(ind_index).to_numpy()
        trap_idx = records["trap_id"].to_numpy() - 1
        occ_idx = records["occasion"].to_numpy() - 1
        captures[rows, trap_idx, occ_idx] = 1

    return ModelInput(captures=captures, traps=traps, operation=operation)


def build_model_inputs(trial) -> tuple[ModelInput, ModelInput]:
    """
    Format one simulated trial twice: with the true and the false operation.

    The encounter data is the same object-for-object in both inputs; only the
    declared operation differs.
    """
    true_input = format_model_input(
        trial.records, trial.traps, trial.operation.true, trial.n_occasions
    )
    false_input = ModelInput(
        captures=true_input.captures,
        traps=true_input.traps,
        operation=np.asarray(trial.operation.false, dtype=np.int8),
    )
    return true_input, false_input
