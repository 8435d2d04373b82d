"""Tests for streamcast.diagnostics."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from streamcast.diagnostics import (
    ConvergenceDiagnostics,
    potential_scale_reduction,
)
from streamcast.dataset import TimeSeriesDataset
from streamcast.engine import InferenceEngine, SamplerConfig
from streamcast.specification import ConfigurationError, ModelSpecification


def _draws(tau_obs, tau_add):
    chains, draws = tau_obs.shape
    return {
        "x": np.zeros((chains, draws, 3)),
        "tau_obs": tau_obs,
        "tau_add": tau_add,
    }


@pytest.fixture
def mixed(rng, make_samples):
    """Four well-mixed chains of 300 iid draws."""
    return make_samples(_draws(rng.normal(size=(4, 300)), rng.normal(size=(4, 300))))


@pytest.fixture
def far_apart(rng, make_samples):
    """Two short chains started 10 sd either side of the target."""
    offsets = np.array([[10.0], [-10.0]])
    return make_samples(
        _draws(offsets + rng.normal(size=(2, 20)), offsets + rng.normal(size=(2, 20)))
    )


@pytest.fixture
def transient(rng, make_samples):
    """Four chains stuck ±10 sd apart for 200 draws, then mixed for 300."""
    offsets = np.array([[10.0], [-10.0], [10.0], [-10.0]])

    def trace():
        t = rng.normal(size=(4, 500))
        t[:, :200] += offsets
        return t

    return make_samples(_draws(trace(), trace()))


# ---------------------------------------------------------------------------
# potential_scale_reduction
# ---------------------------------------------------------------------------


class TestPotentialScaleReduction:
    def test_mixed_chains_near_one(self, rng):
        assert potential_scale_reduction(rng.normal(size=(3, 500))) == pytest.approx(1.0, abs=0.05)

    def test_separated_chains_large(self, rng):
        chains = rng.normal(size=(2, 100)) + np.array([[5.0], [-5.0]])
        assert potential_scale_reduction(chains) > 2.0

    def test_split_detects_drift_within_chains(self, rng):
        drift = np.linspace(-5, 5, 200)
        chains = rng.normal(size=(2, 200)) + drift
        assert potential_scale_reduction(chains, split=True) > potential_scale_reduction(chains)

    @pytest.mark.parametrize("shape", [(1, 100), (3, 1), (100,)])
    def test_undefined_is_nan(self, shape):
        assert np.isnan(potential_scale_reduction(np.zeros(shape)))


# ---------------------------------------------------------------------------
# ConvergenceDiagnostics
# ---------------------------------------------------------------------------


class TestAssess:
    def test_converged(self, mixed):
        report = ConvergenceDiagnostics(burn_in=100).assess(mixed)
        assert report.converged
        assert report.burn_in == 100
        assert report.num_chains == 4
        assert report.num_draws == 300
        assert set(report.r_hat) == {"tau_obs", "tau_add"}
        assert all(v < 1.1 for v in report.r_hat.values())
        assert all(v > 0 for v in report.ess.values())

    def test_far_apart_rejected(self, far_apart, caplog):
        with caplog.at_level(logging.WARNING, logger="streamcast.diagnostics"):
            report = ConvergenceDiagnostics(burn_in=0).assess(far_apart)
        assert not report.converged
        assert "R-hat above" in report.message
        assert "not converged" in caplog.text

    def test_single_chain_rejected(self, rng, make_samples):
        samples = make_samples(_draws(rng.normal(size=(1, 50)), rng.normal(size=(1, 50))))
        report = ConvergenceDiagnostics(burn_in=0).assess(samples)
        assert not report.converged
        assert "at least 2" in report.message

    def test_burn_in_too_long_rejected(self, mixed):
        report = ConvergenceDiagnostics(burn_in=299).assess(mixed)
        assert not report.converged
        assert "fewer than 2" in report.message

    def test_default_burn_in_on_short_run(self, mixed):
        report = ConvergenceDiagnostics().assess(mixed)
        assert report.burn_in == 1000
        assert not report.converged

    def test_unknown_monitor(self, mixed):
        with pytest.raises(ConfigurationError, match="beta_rain"):
            ConvergenceDiagnostics(["beta_rain"], burn_in=0).assess(mixed)

    def test_fixed_burn_in_threshold(self, transient):
        assert not ConvergenceDiagnostics(burn_in=0).assess(transient).converged
        assert ConvergenceDiagnostics(burn_in=200).assess(transient).converged

    def test_to_frame(self, mixed):
        frame = ConvergenceDiagnostics(burn_in=0).assess(mixed).to_frame()
        assert list(frame.columns) == ["r_hat", "ess"]
        assert frame.index.name == "parameter"

    @pytest.mark.parametrize("kwargs", [
        {"threshold": 1.0},
        {"burn_in": -1},
        {"burn_in": "auto"},
        {"bin_width": 0},
        {"min_window": 1},
    ])
    def test_bad_settings(self, kwargs):
        with pytest.raises(ConfigurationError):
            ConvergenceDiagnostics(**kwargs)

    def test_empty_monitor(self):
        with pytest.raises(ConfigurationError, match="monitor"):
            ConvergenceDiagnostics([])


class TestAdaptiveBurnIn:
    def test_finds_transient(self, transient):
        report = ConvergenceDiagnostics(burn_in="adaptive", min_window=100).assess(transient)
        assert report.converged
        assert 0 < report.burn_in <= 200
        assert report.burn_in % 10 == 0

    def test_zero_when_mixed_from_start(self, mixed):
        report = ConvergenceDiagnostics(burn_in="adaptive", min_window=100).assess(mixed)
        assert report.converged
        assert report.burn_in == 0

    def test_never_settles(self, make_samples, rng):
        offsets = np.array([[10.0], [-10.0]])
        t = offsets + rng.normal(size=(2, 200))
        samples = make_samples(_draws(t, t.copy()))
        report = ConvergenceDiagnostics(burn_in="adaptive").assess(samples)
        assert not report.converged
        assert "never settled" in report.message

    def test_window_longer_than_run(self, far_apart):
        diag = ConvergenceDiagnostics(burn_in="adaptive", min_window=50)
        assert diag.adaptive_burn_in({"tau_obs": far_apart.get("tau_obs")}) is None


class TestTraceRHat:
    def test_shape_and_index(self, transient):
        curve = ConvergenceDiagnostics(bin_width=50).trace_r_hat(transient, "tau_add")
        assert len(curve) == 10
        assert curve.index[0] == 50
        assert curve.name == "tau_add"

    def test_separated_start_is_large(self, transient):
        curve = ConvergenceDiagnostics(bin_width=50).trace_r_hat(transient, "tau_obs")
        assert curve.iloc[0] > 2.0


# ---------------------------------------------------------------------------
# Chains from the sampler
# ---------------------------------------------------------------------------


class TestSampledChains:
    """Full model on a stationary series, chains started 20 either side of it."""

    INITS = [{"x": 20.0, "mu0": 20.0}, {"x": -20.0, "mu0": -20.0}]

    @pytest.fixture(scope="class")
    def stationary(self):
        rng = np.random.default_rng(8)
        n = 60
        rain = np.log1p(rng.gamma(0.5, 2.0, n))
        y = 1.0 + rng.normal(0.0, 0.1, n)
        return TimeSeriesDataset.from_arrays(y, rain, start="2021-06-01")

    def _run(self, dataset, num_iterations):
        cfg = SamplerConfig(num_chains=2, num_iterations=num_iterations, seeds=(21, 22))
        engine = InferenceEngine(ModelSpecification.full(), cfg)
        return engine.run(dataset, init_values=self.INITS)

    def test_rejects_opening_draws(self, stationary):
        samples = self._run(stationary, 5)
        report = ConvergenceDiagnostics(burn_in=0).assess(samples)
        assert not report.converged
        assert report.r_hat["tau_add"] > 1.1

    def test_accepts_after_burn_in(self, stationary):
        samples = self._run(stationary, 300)
        assert potential_scale_reduction(samples.get("tau_add")[:, :5]) > 1.1
        report = ConvergenceDiagnostics(burn_in=200).assess(samples)
        assert report.converged
        assert report.r_hat["tau_add"] < 1.1
