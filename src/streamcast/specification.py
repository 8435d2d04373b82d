"""ModelSpecification — the fixed family of latent state-space models.

Every variant shares one process equation::

    x[t] ~ Normal(mu[t], 1/tau_add)
    mu[t] = mu0 + beta_decay*(x[t-1] - mu0) + beta_rain*rain[t]
            + beta_season_sin*season_sin[t] + beta_season_cos*season_cos[t]

observed through ``y[t] ~ Normal(x[t], 1/tau_obs)``.  Flags switch terms
on and off; an inactive term has its coefficient pinned (``beta_decay = 1``
for the plain random walk, zero for everything else) and its prior
omitted.
"""

from __future__ import annotations

from typing import Any, Literal

import jax.numpy as jnp
from pydantic import BaseModel, Field, field_validator, model_validator

type Term = Literal["random_walk", "rain", "seasonal", "decay", "impute_rain"]


class ConfigurationError(ValueError):
    """Invalid model, sampler or dataset configuration (raised before sampling)."""


# ---------------------------------------------------------------------------
# Priors
# ---------------------------------------------------------------------------


class GammaPrior(BaseModel):
    """``Gamma(shape, rate)`` prior on a precision."""

    shape: float = 1.0
    rate: float = 1.0

    model_config = {"frozen": True}

    @field_validator("shape", "rate")
    @classmethod
    def _positive(cls, v: float) -> float:
        if not v > 0:
            raise ValueError("gamma shape and rate must be > 0")
        return v


class PriorSpec(BaseModel):
    """Prior hyperparameters shared by all model variants.

    Parameters
    ----------
    tau_obs, tau_add, tau_rain : GammaPrior
        Observation, process and rain-imputation precisions.
    beta_variance : float
        Variance of the ``Normal(0, .)`` prior on rain and seasonal
        coefficients.
    mu0_variance, mu_rain_variance : float
        Variances of the (vague) ``Normal(0, .)`` priors on the baseline
        level and the rain-imputation mean.
    decay_bounds : tuple of float
        Support of the ``Uniform`` prior on ``beta_decay``; must lie in
        ``[0, 1]``.
    x_ic, tau_ic : float
        Initial-condition prior ``x[1] ~ Normal(x_ic, 1/tau_ic)`` for the
        variants without decay.  The decay variant centres ``x[1]`` on
        ``mu0`` instead and only reuses ``tau_ic``.
    """

    tau_obs: GammaPrior = Field(default_factory=GammaPrior)
    tau_add: GammaPrior = Field(default_factory=GammaPrior)
    tau_rain: GammaPrior = Field(default_factory=GammaPrior)
    beta_variance: float = 100.0
    mu0_variance: float = 1000.0
    mu_rain_variance: float = 1000.0
    decay_bounds: tuple[float, float] = (0.0, 1.0)
    x_ic: float = 0.0
    tau_ic: float = 0.01

    model_config = {"frozen": True}

    @field_validator("beta_variance", "mu0_variance", "mu_rain_variance", "tau_ic")
    @classmethod
    def _positive(cls, v: float, info: Any) -> float:
        if not v > 0:
            raise ValueError(f"{info.field_name} must be > 0, got {v}")
        return v

    @field_validator("decay_bounds")
    @classmethod
    def _decay_bounds_in_unit_interval(cls, v: tuple[float, float]) -> tuple[float, float]:
        lo, hi = v
        if not (0.0 <= lo < hi <= 1.0):
            raise ValueError(
                f"decay_bounds must satisfy 0 <= lower < upper <= 1, got {v}"
            )
        return v


# ---------------------------------------------------------------------------
# ModelSpecification
# ---------------------------------------------------------------------------


class ModelSpecification(BaseModel):
    """Which terms of the process equation are active, plus their priors.

    Parameters
    ----------
    rain : bool
        Include ``beta_rain * rain[t]``.
    seasonal : bool
        Include the ``season_sin`` / ``season_cos`` terms.
    decay : bool
        Replace the unit-root random walk with decay towards ``mu0``.
    impute_rain : bool
        Treat missing rainfall as latent ``Normal(mu_rain, 1/tau_rain)``
        variables sampled jointly with everything else.  Requires
        ``rain=True``.
    priors : PriorSpec
        Prior hyperparameters.

    Examples
    --------
    ```python
    ModelSpecification.random_walk()
    ModelSpecification.random_walk_rain()
    ModelSpecification.full()
    ModelSpecification(rain=True, seasonal=True, impute_rain=True)
    ```
    """

    rain: bool = False
    seasonal: bool = False
    decay: bool = False
    impute_rain: bool = False
    priors: PriorSpec = Field(default_factory=PriorSpec)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _imputation_needs_rain(self) -> ModelSpecification:
        if self.impute_rain and not self.rain:
            raise ValueError("impute_rain=True requires rain=True")
        return self

    # -- named variants ----------------------------------------------------

    @classmethod
    def random_walk(cls, priors: PriorSpec | None = None) -> ModelSpecification:
        """Plain random walk observed with noise."""
        return cls(priors=priors or PriorSpec())

    @classmethod
    def random_walk_rain(
        cls, priors: PriorSpec | None = None, *, impute_rain: bool = True,
    ) -> ModelSpecification:
        """Random walk plus a rainfall effect."""
        return cls(rain=True, impute_rain=impute_rain, priors=priors or PriorSpec())

    @classmethod
    def full(cls, priors: PriorSpec | None = None) -> ModelSpecification:
        """Rain, seasonality, decay to ``mu0`` and rain imputation."""
        return cls(
            rain=True,
            seasonal=True,
            decay=True,
            impute_rain=True,
            priors=priors or PriorSpec(),
        )

    # -- structure ---------------------------------------------------------

    @property
    def active_terms(self) -> tuple[Term, ...]:
        terms: list[Term] = ["decay" if self.decay else "random_walk"]
        if self.rain:
            terms.append("rain")
        if self.seasonal:
            terms.append("seasonal")
        if self.impute_rain:
            terms.append("impute_rain")
        return tuple(terms)

    @property
    def variant(self) -> str:
        """Short name, e.g. ``"random_walk+rain+impute_rain"``."""
        return "+".join(self.active_terms)

    @property
    def coefficient_names(self) -> tuple[str, ...]:
        """Parameters of the linear (regression) block, in sampling order."""
        names: list[str] = []
        if self.decay:
            names.append("mu0")
        if self.rain:
            names.append("beta_rain")
        if self.seasonal:
            names.extend(["beta_season_sin", "beta_season_cos"])
        return tuple(names)

    @property
    def parameter_names(self) -> tuple[str, ...]:
        """Every scalar parameter sampled under this specification."""
        names = ["tau_obs", "tau_add", *self.coefficient_names]
        if self.decay:
            names.append("beta_decay")
        if self.impute_rain:
            names.extend(["mu_rain", "tau_rain"])
        return tuple(names)

    def coefficient_prior_variances(self) -> tuple[float, ...]:
        p = self.priors
        return tuple(
            p.mu0_variance if name == "mu0" else p.beta_variance
            for name in self.coefficient_names
        )

    # -- mean function -----------------------------------------------------

    def autoregressive_coefficient(self, params: dict[str, Any]) -> Any:
        """Coefficient on ``x[t-1]``: ``beta_decay`` or 1 for a random walk."""
        if self.decay:
            return params["beta_decay"]
        return 1.0

    def drift(
        self,
        params: dict[str, Any],
        rain: jnp.ndarray | None,
        season_sin: jnp.ndarray,
        season_cos: jnp.ndarray,
    ) -> jnp.ndarray:
        """Part of ``mu[t]`` that does not multiply ``x[t-1]``, shape ``(n,)``."""
        c = jnp.zeros_like(season_sin)
        if self.decay:
            c = c + (1.0 - params["beta_decay"]) * params["mu0"]
        if self.rain:
            c = c + params["beta_rain"] * rain
        if self.seasonal:
            c = (
                c
                + params["beta_season_sin"] * season_sin
                + params["beta_season_cos"] * season_cos
            )
        return c

    def process_mean(
        self,
        params: dict[str, Any],
        x_prev: jnp.ndarray,
        rain: jnp.ndarray | None,
        season_sin: jnp.ndarray,
        season_cos: jnp.ndarray,
    ) -> jnp.ndarray:
        """Evaluate ``mu[t]`` from ``x[t-1]`` and the covariates at ``t``.

        Inactive terms contribute nothing.  Arguments broadcast, so this
        works for a single step or for whole aligned vectors.
        """
        b = self.autoregressive_coefficient(params)
        return b * x_prev + self.drift(params, rain, season_sin, season_cos)

    def initial_condition(self, params: dict[str, Any]) -> tuple[Any, float]:
        """``(mean, precision)`` of the prior on ``x[1]``."""
        if self.decay:
            return params["mu0"], self.priors.tau_ic
        return self.priors.x_ic, self.priors.tau_ic

    def __repr__(self) -> str:
        return f"ModelSpecification({self.variant})"
