"""Tests for SCR likelihood fitting module."""

import pytest
import numpy as np
from scipy.special import logit

from scrbias.activity import ModelInput, build_model_inputs
from scrbias.config import FitSettings, SimulationConfig
from scrbias.errors import FitError
from scrbias.fitting import (
    FitResult,
    SCR0Fitter,
    StateSpace,
    make_state_space,
    scr_neg_log_likelihood,
)
from scrbias.simulation import make_trap_grid, pairwise_distances, simulate_trial


@pytest.fixture
def traps():
    return make_trap_grid(13, 13, inset=3)


class TestStateSpace:
    """Tests for state-space discretization."""

    def test_untrimmed_grid_covers_buffered_extent(self, traps):
        """Traps 3-10 with buffer 3 and resolution 0.5 give 26 x 26 pixels."""
        ss = make_state_space(traps, buffer=3.0, resolution=0.5, trim=False)

        assert isinstance(ss, StateSpace)
        assert ss.n_cells == 26 * 26
        assert ss.points.min() == pytest.approx(0.25)
        assert ss.points.max() == pytest.approx(12.75)
        assert ss.area == pytest.approx(169.0)

    def test_trim_drops_far_pixels(self, traps):
        """Trimming removes corner pixels beyond the buffer."""
        full = make_state_space(traps, buffer=3.0, resolution=0.5, trim=False)
        trimmed = make_state_space(traps, buffer=3.0, resolution=0.5, trim=True)

        assert trimmed.n_cells < full.n_cells
        nearest = pairwise_distances(trimmed.points, traps).min(axis=1)
        assert np.all(nearest <= 3.0)

    def test_resolution_sets_cell_area(self, traps):
        """Cell area is the squared resolution."""
        ss = make_state_space(traps, buffer=2.0, resolution=0.25)

        assert ss.cell_area == pytest.approx(0.0625)


class TestLikelihood:
    """Tests for the SCR0 negative log-likelihood."""

    @pytest.fixture
    def data(self):
        config = SimulationConfig(n_mean=80, percent_inactive=0)
        trial = simulate_trial(config, np.random.default_rng(8))
        true_input, _ = build_model_inputs(trial)
        ss = make_state_space(trial.traps, 3.0, 0.5)
        distances = pairwise_distances(ss.points, trial.traps)
        return true_input, ss, distances

    def test_finite_at_generating_values(self, data):
        """Likelihood is finite at the generating parameters."""
        model_input, ss, distances = data
        d0 = 80 / 169 * ss.cell_area
        theta = np.array([logit(0.2), np.log(0.6), np.log(d0)])

        nll = scr_neg_log_likelihood(
            theta, model_input.capture_counts, model_input.active_occasions, distances
        )

        assert np.isfinite(nll)

    def test_generating_values_beat_distant_values(self, data):
        """Generating parameters fit better than badly wrong ones."""
        model_input, ss, distances = data
        d0 = 80 / 169 * ss.cell_area
        args = (model_input.capture_counts, model_input.active_occasions, distances)

        good = scr_neg_log_likelihood(np.array([logit(0.2), np.log(0.6), np.log(d0)]), *args)
        bad_sigma = scr_neg_log_likelihood(np.array([logit(0.2), np.log(3.0), np.log(d0)]), *args)
        bad_density = scr_neg_log_likelihood(np.array([logit(0.2), np.log(0.6), np.log(d0 * 10)]), *args)

        assert good < bad_sigma
        assert good < bad_density

    def test_inactive_trap_contributes_nothing(self, traps):
        """Zero-operation traps do not change the likelihood of an undetected history."""
        ss = make_state_space(traps, 3.0, 0.5)
        distances = pairwise_distances(ss.points, traps)
        theta = np.array([logit(0.2), np.log(0.6), np.log(0.01)])

        counts = np.zeros((1, len(traps)))
        counts[0, 0] = 1
        active = np.full(len(traps), 10.0)
        active_off = active.copy()
        active_off[-1] = 0.0

        with_off = scr_neg_log_likelihood(theta, counts, active_off, distances[:, :])
        without_trap = scr_neg_log_likelihood(
            theta, counts[:, :-1], active[:-1], distances[:, :-1]
        )

        assert with_off == pytest.approx(without_trap)


class TestSCR0Fitter:
    """Tests for maximum-likelihood fitting."""

    def test_end_to_end_finite_estimates(self):
        """Both assumptions yield four finite estimates."""
        config = SimulationConfig(
            n_mean=40, p0=0.2, sigma=0.6, n_occasions=10, onset=5, percent_inactive=50
        )
        trial = simulate_trial(config, np.random.default_rng(17))
        settings = FitSettings()
        ss = make_state_space(trial.traps, settings.buffer, settings.resolution)
        fitter = SCR0Fitter(settings)

        for model_input in build_model_inputs(trial):
            fit = fitter.fit(model_input, ss)
            assert isinstance(fit, FitResult)
            assert fit.estimates.shape == (4,)
            assert np.all(np.isfinite(fit.estimates))
            assert fit.abundance == pytest.approx(fit.density * ss.area)

    def test_recovers_parameters(self):
        """A large, fully active survey recovers p0 and sigma closely."""
        config = SimulationConfig(n_mean=150, p0=0.2, sigma=0.6, percent_inactive=0)
        trial = simulate_trial(config, np.random.default_rng(5))
        ss = make_state_space(trial.traps, 3.0, 0.5)

        fit = SCR0Fitter().fit(build_model_inputs(trial)[0], ss)

        assert fit.converged
        assert fit.usable
        assert 0.45 < fit.sigma < 0.8
        assert 0.1 < fit.p0 < 0.35
        assert 0.5 * 150 / 169 < fit.density < 1.5 * 150 / 169

    def test_ignoring_inactivity_lowers_p0(self):
        """Declaring dead traps active pulls baseline detection down."""
        config = SimulationConfig(n_mean=150, onset=2, percent_inactive=80)
        trial = simulate_trial(config, np.random.default_rng(6))
        ss = make_state_space(trial.traps, 3.0, 0.5)
        true_input, false_input = build_model_inputs(trial)
        fitter = SCR0Fitter()

        correct = fitter.fit(true_input, ss)
        incorrect = fitter.fit(false_input, ss)

        assert incorrect.p0 < correct.p0

    def test_zero_individuals_raises(self, traps):
        """Fitting needs at least one detected individual."""
        empty = ModelInput(
            captures=np.zeros((0, len(traps), 10), dtype=np.int8),
            traps=traps,
            operation=np.ones((len(traps), 10), dtype=np.int8),
        )

        with pytest.raises(FitError):
            SCR0Fitter().fit(empty, make_state_space(traps))


class TestFitResult:
    """Tests for fit diagnostics."""

    def test_usable_requires_convergence(self):
        fit = FitResult(density=0.2, abundance=30, p0=0.2, sigma=0.6, converged=False)

        assert not fit.usable

    def test_degenerate_not_usable(self):
        fit = FitResult(
            density=0.2, abundance=30, p0=1.0, sigma=0.6, converged=True, degenerate=True
        )

        assert not fit.usable

    def test_estimate_order(self):
        """Estimates are density, abundance, p0, sigma."""
        fit = FitResult(density=0.2, abundance=30, p0=0.1, sigma=0.6, converged=True)

        assert fit.estimates.tolist() == [0.2, 30, 0.1, 0.6]
