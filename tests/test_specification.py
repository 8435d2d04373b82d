"""Tests for streamcast.specification."""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest
from pydantic import ValidationError

from streamcast.specification import (
    ConfigurationError,
    GammaPrior,
    ModelSpecification,
    PriorSpec,
)


@pytest.fixture
def params():
    return {
        "mu0": 2.0,
        "beta_decay": 0.5,
        "beta_rain": 0.3,
        "beta_season_sin": 0.1,
        "beta_season_cos": -0.2,
    }


# ---------------------------------------------------------------------------
# Priors
# ---------------------------------------------------------------------------


class TestPriors:
    def test_defaults(self):
        p = PriorSpec()
        assert p.tau_obs == GammaPrior(shape=1.0, rate=1.0)
        assert p.decay_bounds == (0.0, 1.0)

    @pytest.mark.parametrize("shape, rate", [(0.0, 1.0), (1.0, -1.0)])
    def test_gamma_must_be_positive(self, shape, rate):
        with pytest.raises(ValidationError, match="must be > 0"):
            GammaPrior(shape=shape, rate=rate)

    @pytest.mark.parametrize("field", ["beta_variance", "mu0_variance", "mu_rain_variance", "tau_ic"])
    def test_variances_must_be_positive(self, field):
        with pytest.raises(ValidationError, match=field):
            PriorSpec(**{field: 0.0})

    @pytest.mark.parametrize("bounds", [(-0.1, 0.9), (0.2, 1.5), (0.6, 0.4), (0.5, 0.5)])
    def test_decay_bounds_rejected(self, bounds):
        with pytest.raises(ValidationError, match="decay_bounds"):
            PriorSpec(decay_bounds=bounds)

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            PriorSpec(beta_variance=-1.0)

    def test_frozen(self):
        p = PriorSpec()
        with pytest.raises(ValidationError):
            p.tau_ic = 1.0


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


class TestVariants:
    def test_random_walk(self):
        spec = ModelSpecification.random_walk()
        assert spec.active_terms == ("random_walk",)
        assert spec.parameter_names == ("tau_obs", "tau_add")
        assert spec.coefficient_names == ()

    def test_random_walk_rain(self):
        spec = ModelSpecification.random_walk_rain()
        assert spec.variant == "random_walk+rain+impute_rain"
        assert spec.parameter_names == (
            "tau_obs", "tau_add", "beta_rain", "mu_rain", "tau_rain",
        )

    def test_random_walk_rain_without_imputation(self):
        spec = ModelSpecification.random_walk_rain(impute_rain=False)
        assert "mu_rain" not in spec.parameter_names

    def test_full(self):
        spec = ModelSpecification.full()
        assert spec.active_terms == ("decay", "rain", "seasonal", "impute_rain")
        assert spec.coefficient_names == (
            "mu0", "beta_rain", "beta_season_sin", "beta_season_cos",
        )
        assert "beta_decay" in spec.parameter_names

    def test_arbitrary_combination(self):
        spec = ModelSpecification(seasonal=True)
        assert spec.variant == "random_walk+seasonal"
        assert spec.coefficient_names == ("beta_season_sin", "beta_season_cos")

    def test_impute_requires_rain(self):
        with pytest.raises(ValidationError, match="requires rain"):
            ModelSpecification(impute_rain=True)

    def test_custom_priors_carried(self):
        priors = PriorSpec(beta_variance=4.0, mu0_variance=9.0)
        spec = ModelSpecification.full(priors)
        assert spec.coefficient_prior_variances() == (9.0, 4.0, 4.0, 4.0)

    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)

    def test_round_trip_dump(self):
        spec = ModelSpecification.full()
        again = ModelSpecification.model_validate(spec.model_dump())
        assert again == spec


# ---------------------------------------------------------------------------
# Mean function
# ---------------------------------------------------------------------------


class TestProcessMean:
    def test_random_walk_ignores_covariates(self, params):
        spec = ModelSpecification.random_walk()
        mu = spec.process_mean(params, jnp.array(1.5), jnp.array(9.0), jnp.array(1.0), jnp.array(1.0))
        assert float(mu) == pytest.approx(1.5)

    def test_full_formula(self, params):
        spec = ModelSpecification.full()
        x_prev, rain, s, c = 3.0, 0.7, 0.4, 0.9
        mu = spec.process_mean(params, jnp.array(x_prev), jnp.array(rain), jnp.array(s), jnp.array(c))
        expected = 2.0 + 0.5 * (3.0 - 2.0) + 0.3 * 0.7 + 0.1 * 0.4 - 0.2 * 0.9
        assert float(mu) == pytest.approx(expected, rel=1e-6)

    def test_rain_only(self, params):
        spec = ModelSpecification.random_walk_rain()
        mu = spec.process_mean(params, jnp.array(1.0), jnp.array(2.0), jnp.array(0.5), jnp.array(0.5))
        assert float(mu) == pytest.approx(1.0 + 0.3 * 2.0, rel=1e-6)

    def test_vectorised(self, params):
        spec = ModelSpecification(rain=True, seasonal=True)
        x_prev = jnp.array([0.0, 1.0, 2.0])
        rain = jnp.array([1.0, 0.0, 1.0])
        s = jnp.zeros(3)
        c = jnp.ones(3)
        mu = np.asarray(spec.process_mean(params, x_prev, rain, s, c))
        np.testing.assert_allclose(mu, x_prev + 0.3 * rain - 0.2, rtol=1e-6)

    def test_decay_off_means_unit_coefficient(self, params):
        assert ModelSpecification.random_walk().autoregressive_coefficient(params) == 1.0
        assert ModelSpecification.full().autoregressive_coefficient(params) == 0.5

    def test_initial_condition_per_variant(self, params):
        priors = PriorSpec(x_ic=1.0, tau_ic=0.5)
        assert ModelSpecification.random_walk(priors).initial_condition(params) == (1.0, 0.5)
        assert ModelSpecification.full(priors).initial_condition(params) == (2.0, 0.5)
