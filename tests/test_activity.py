"""Tests for trap operation and model-input formatting module."""

import pytest
import numpy as np

from scrbias.activity import (
    ModelInput,
    TrapOperation,
    build_model_inputs,
    build_operation_matrices,
    format_model_input,
    n_inactive_traps,
    select_inactive_traps,
)
from scrbias.config import SimulationConfig
from scrbias.errors import ScenarioError
from scrbias.simulation import encounter_records, simulate_trial


class TestInactiveSelection:
    """Tests for choosing which traps go inactive."""

    @pytest.mark.parametrize(
        "n_traps, percent, expected",
        [(64, 30, 19), (64, 50, 32), (64, 80, 51), (64, 0, 0), (64, 100, 64), (5, 50, 2)],
    )
    def test_subset_size(self, n_traps, percent, expected):
        """Subset size is round(J * percent / 100)."""
        assert n_inactive_traps(n_traps, percent) == expected

    def test_sample_without_replacement(self):
        """Selected indices are unique and within range."""
        selected = select_inactive_traps(64, 70, np.random.default_rng(0))

        assert len(selected) == 45
        assert len(np.unique(selected)) == 45
        assert selected.min() >= 0 and selected.max() < 64

    def test_reproducible_with_seed(self):
        """Same seed selects the same traps."""
        a = select_inactive_traps(64, 40, np.random.default_rng(9))
        b = select_inactive_traps(64, 40, np.random.default_rng(9))

        assert np.array_equal(a, b)


class TestOperationMatrices:
    """Tests for the true and false operation matrices."""

    def test_false_matrix_all_active(self):
        """False matrix sums to J * K."""
        op = build_operation_matrices(64, 10, 5, 50, np.random.default_rng(1))

        assert op.false.sum() == 64 * 10

    def test_true_matrix_inactive_from_onset(self):
        """Selected traps are off from the onset occasion to the end."""
        op = build_operation_matrices(64, 10, 5, 50, np.random.default_rng(1))

        assert isinstance(op, TrapOperation)
        assert np.all(op.true[op.inactive, 4:] == 0)
        assert np.all(op.true[op.inactive, :4] == 1)
        active = np.setdiff1d(np.arange(64), op.inactive)
        assert np.all(op.true[active] == 1)

    def test_matrices_differ_only_in_inactive_cells(self):
        """Differences are exactly the inactive traps on occasions 5-10."""
        op = build_operation_matrices(64, 10, 5, 50, np.random.default_rng(2))

        diff = op.true != op.false
        rows, cols = np.nonzero(diff)
        assert set(rows) == set(op.inactive.tolist())
        assert set(cols) == set(range(4, 10))
        assert diff.sum() == 32 * 6

    def test_false_never_fewer_active(self):
        """False matrix dominates the true matrix cell by cell."""
        op = build_operation_matrices(64, 10, 6, 80, np.random.default_rng(3))

        assert np.all(op.false >= op.true)

    def test_zero_percent_identical(self):
        """With no inactive traps both matrices are identical."""
        op = build_operation_matrices(64, 10, 5, 0, np.random.default_rng(4))

        assert len(op.inactive) == 0
        assert np.array_equal(op.true, op.false)

    @pytest.mark.parametrize("onset, percent", [(0, 50), (11, 50), (5, -1), (5, 101)])
    def test_invalid_scenario(self, onset, percent):
        """Out-of-range onset or percent is a scenario error."""
        with pytest.raises(ScenarioError):
            build_operation_matrices(64, 10, onset, percent, np.random.default_rng(0))


class TestModelInput:
    """Tests for model-input formatting."""

    @pytest.fixture
    def trial(self):
        return simulate_trial(SimulationConfig(), np.random.default_rng(21))

    def test_records_rebuild_capture_array(self, trial):
        """Formatting the sparse records recovers the simulated captures."""
        model_input = format_model_input(
            trial.records, trial.traps, trial.operation.true, trial.n_occasions
        )

        assert np.array_equal(model_input.captures, trial.captures)

    def test_bundles_share_encounter_data(self, trial):
        """Both bundles hold the same captures and differ only in operation."""
        true_input, false_input = build_model_inputs(trial)

        assert np.array_equal(true_input.captures, false_input.captures)
        assert np.array_equal(true_input.traps, false_input.traps)
        assert np.array_equal(true_input.operation, trial.operation.true)
        assert np.array_equal(false_input.operation, trial.operation.false)

    def test_capture_counts_ignore_inactive_occasions(self):
        """Counts only include occasions declared active."""
        captures = np.zeros((1, 2, 3), dtype=np.int8)
        captures[0, 0, :] = 1
        operation = np.array([[1, 1, 0], [1, 1, 1]], dtype=np.int8)
        model_input = ModelInput(captures=captures, traps=np.zeros((2, 2)), operation=operation)

        assert model_input.capture_counts.tolist() == [[2, 0]]
        assert model_input.active_occasions.tolist() == [2, 3]

    def test_shape_mismatch_rejected(self):
        """Operation matrix must match traps x occasions."""
        captures = np.zeros((1, 2, 3), dtype=bool)
        captures[0, 1, 2] = True

        with pytest.raises(ScenarioError):
            format_model_input(
                encounter_records(captures), np.zeros((2, 2)), np.ones((3, 3)), 3
            )
