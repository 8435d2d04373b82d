"""Full-conditional updates for the state-space Gibbs sampler.

Every function takes the current sampler state (a flat dict of JAX
arrays: ``x``, ``rain`` when the rain term is active, and the scalar
parameters named by :attr:`ModelSpecification.parameter_names`) and
returns fresh draws.  All functions are pure and jit-able; the
specification is closed over as a static Python object so inactive terms
are pruned at trace time.
"""

from __future__ import annotations

from typing import Any, Literal, NamedTuple

import jax
import jax.numpy as jnp
import jax.random as jr
import numpy as np
import numpyro.distributions as dist

from streamcast.specification import ModelSpecification

type State = dict[str, jnp.ndarray]
type LatentUpdate = Literal["ffbs", "single_site"]


# ---------------------------------------------------------------------------
# SamplerData
# ---------------------------------------------------------------------------


class SamplerData(NamedTuple):
    """Device arrays for one model run.

    ``y`` holds zeros where ``observed`` is ``False`` so that masked
    arithmetic never touches ``NaN``.
    """

    y: jnp.ndarray
    observed: jnp.ndarray
    rain_missing: jnp.ndarray
    season_sin: jnp.ndarray
    season_cos: jnp.ndarray

    @classmethod
    def from_arrays(
        cls,
        y: np.ndarray,
        rain: np.ndarray,
        season_sin: np.ndarray,
        season_cos: np.ndarray,
    ) -> SamplerData:
        dtype = jnp.result_type(float)
        observed = ~np.isnan(y)
        return cls(
            y=jnp.asarray(np.where(observed, y, 0.0), dtype=dtype),
            observed=jnp.asarray(observed),
            rain_missing=jnp.asarray(np.isnan(rain)),
            season_sin=jnp.asarray(season_sin, dtype=dtype),
            season_cos=jnp.asarray(season_cos, dtype=dtype),
        )


def _drift(spec: ModelSpecification, state: State, data: SamplerData) -> jnp.ndarray:
    return spec.drift(state, state.get("rain"), data.season_sin, data.season_cos)


# ---------------------------------------------------------------------------
# Latent path
# ---------------------------------------------------------------------------


def sample_latent_ffbs(
    key: jax.Array, spec: ModelSpecification, state: State, data: SamplerData,
) -> jnp.ndarray:
    """Block draw of ``x[1..n]`` by forward filtering, backward sampling."""
    dtype = data.y.dtype
    b = spec.autoregressive_coefficient(state)
    c = _drift(spec, state, data)
    m0, tau_ic = spec.initial_condition(state)
    r = 1.0 / state["tau_obs"]
    q = 1.0 / state["tau_add"]
    c_next = jnp.concatenate([c[1:], jnp.zeros(1, dtype=dtype)])

    def forward(carry, inputs):
        m_pred, p_pred = carry
        y_t, obs_t, c_t1 = inputs
        gain = jnp.where(obs_t, p_pred / (p_pred + r), 0.0)
        m_filt = m_pred + gain * (y_t - m_pred)
        p_filt = jnp.where(obs_t, p_pred * r / (p_pred + r), p_pred)
        return (b * m_filt + c_t1, b * b * p_filt + q), (m_filt, p_filt)

    init = (jnp.asarray(m0, dtype=dtype), jnp.asarray(1.0 / tau_ic, dtype=dtype))
    _, (m_f, p_f) = jax.lax.scan(forward, init, (data.y, data.observed, c_next))

    z = jr.normal(key, m_f.shape, dtype=dtype)
    x_last = m_f[-1] + jnp.sqrt(p_f[-1]) * z[-1]

    def backward(x_next, inputs):
        m_t, p_t, c_t1, z_t = inputs
        denom = b * b * p_t + q
        mean = m_t + p_t * b / denom * (x_next - b * m_t - c_t1)
        var = p_t * q / denom
        x_t = mean + jnp.sqrt(var) * z_t
        return x_t, x_t

    _, xs = jax.lax.scan(
        backward, x_last, (m_f[:-1], p_f[:-1], c[1:], z[:-1]), reverse=True,
    )
    return jnp.concatenate([xs, x_last[None]])


def _site_conditionals(
    spec: ModelSpecification, state: State, data: SamplerData, x: jnp.ndarray,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Mean and precision of each ``x[t]`` given both neighbours and ``y[t]``."""
    n = x.shape[0]
    dtype = x.dtype
    idx = jnp.arange(n)
    b = spec.autoregressive_coefficient(state)
    c = _drift(spec, state, data)
    m0, tau_ic = spec.initial_condition(state)
    tau_add = state["tau_add"]

    pad = jnp.zeros(1, dtype=dtype)
    x_prev = jnp.concatenate([pad, x[:-1]])
    x_next = jnp.concatenate([x[1:], pad])
    c_next = jnp.concatenate([c[1:], pad])
    first = idx == 0
    has_next = idx < n - 1

    prior_prec = jnp.where(first, tau_ic, tau_add)
    prior_mean = jnp.where(first, m0, b * x_prev + c)
    next_prec = jnp.where(has_next, b * b * tau_add, 0.0)
    next_info = jnp.where(has_next, b * tau_add * (x_next - c_next), 0.0)
    obs_prec = jnp.where(data.observed, state["tau_obs"], 0.0)

    prec = prior_prec + next_prec + obs_prec
    mean = (prior_prec * prior_mean + next_info + obs_prec * data.y) / prec
    return mean, prec


def sample_latent_single_site(
    key: jax.Array, spec: ModelSpecification, state: State, data: SamplerData,
) -> jnp.ndarray:
    """One-at-a-time Gibbs sweep over ``x``.

    Sites of equal parity are conditionally independent given the others
    (the process is first-order Markov), so all even sites are drawn
    together, then all odd sites.
    """
    x = state["x"]
    parity = jnp.arange(x.shape[0]) % 2
    for p, k in zip((0, 1), jr.split(key)):
        mean, prec = _site_conditionals(spec, state, data, x)
        draw = mean + jr.normal(k, x.shape, dtype=x.dtype) / jnp.sqrt(prec)
        x = jnp.where(parity == p, draw, x)
    return x


# ---------------------------------------------------------------------------
# Missing covariates
# ---------------------------------------------------------------------------


def sample_missing_rain(
    key: jax.Array, spec: ModelSpecification, state: State, data: SamplerData,
) -> jnp.ndarray:
    """Redraw every missing ``rain[t]`` from its full conditional.

    ``rain[t]`` enters only ``mu[t]``, so its conditional combines the
    ``Normal(mu_rain, 1/tau_rain)`` prior with the process likelihood of
    ``x[t]``.  Day one has no process term and draws from the prior alone.
    Observed values are returned unchanged.
    """
    rain = state["rain"]
    x = state["x"]
    n = x.shape[0]
    b = spec.autoregressive_coefficient(state)
    beta = state["beta_rain"]
    tau_add = state["tau_add"]
    tau_rain = state["tau_rain"]

    other = _drift(spec, state, data) - beta * rain
    x_prev = jnp.concatenate([jnp.zeros(1, dtype=x.dtype), x[:-1]])
    has_process = jnp.arange(n) > 0
    resid = x - b * x_prev - other

    prec = tau_rain + jnp.where(has_process, beta * beta * tau_add, 0.0)
    info = tau_rain * state["mu_rain"] + jnp.where(
        has_process, beta * tau_add * resid, 0.0,
    )
    draw = dist.Normal(info / prec, 1.0 / jnp.sqrt(prec)).sample(key)
    return jnp.where(data.rain_missing, draw, rain)


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


def _design_column(
    name: str, b: Any, state: State, data: SamplerData, length: int,
) -> jnp.ndarray:
    if name == "mu0":
        return jnp.full((length,), 1.0 - b, dtype=data.y.dtype)
    if name == "beta_rain":
        return state["rain"][1:]
    if name == "beta_season_sin":
        return data.season_sin[1:]
    if name == "beta_season_cos":
        return data.season_cos[1:]
    raise KeyError(name)


def sample_coefficients(
    key: jax.Array, spec: ModelSpecification, state: State, data: SamplerData,
) -> State:
    """Joint conjugate draw of the regression block given the latent path.

    With ``beta_decay`` fixed, ``x[t] - beta_decay*x[t-1]`` is linear in
    ``(mu0, beta_rain, beta_season_sin, beta_season_cos)`` with Gaussian
    noise, so the block posterior is multivariate normal.  In the decay
    variant ``x[1] ~ Normal(mu0, 1/tau_ic)`` adds one more row for
    ``mu0``.
    """
    names = spec.coefficient_names
    if not names:
        return {}
    x = state["x"]
    b = spec.autoregressive_coefficient(state)
    tau_add = state["tau_add"]

    z = x[1:] - b * x[:-1]
    H = jnp.stack(
        [_design_column(name, b, state, data, z.shape[0]) for name in names],
        axis=-1,
    )
    prior_prec = jnp.diag(1.0 / jnp.asarray(spec.coefficient_prior_variances(), dtype=x.dtype))
    prec = prior_prec + tau_add * (H.T @ H)
    info = tau_add * (H.T @ z)
    if spec.decay:
        e0 = jnp.zeros(len(names), dtype=x.dtype).at[0].set(1.0)
        tau_ic = spec.priors.tau_ic
        prec = prec + tau_ic * jnp.outer(e0, e0)
        info = info + tau_ic * x[0] * e0

    mean = jnp.linalg.solve(prec, info)
    draw = dist.MultivariateNormal(mean, precision_matrix=prec).sample(key)
    return {name: draw[i] for i, name in enumerate(names)}


def sample_decay(
    key: jax.Array, spec: ModelSpecification, state: State, data: SamplerData,
) -> jnp.ndarray:
    """Draw ``beta_decay`` from its normal likelihood truncated to the prior bounds.

    A series of length one carries no information about decay, in which
    case the draw comes from the ``Uniform`` prior.
    """
    lo, hi = spec.priors.decay_bounds
    x = state["x"]
    mu0 = state["mu0"]
    b = state["beta_decay"]
    other = _drift(spec, state, data) - (1.0 - b) * mu0

    w = x[:-1] - mu0
    z = x[1:] - mu0 - other[1:]
    sww = jnp.sum(w * w)
    prec = state["tau_add"] * sww
    informative = prec > 1e-12
    mean = jnp.sum(w * z) / jnp.where(informative, sww, 1.0)
    sd = 1.0 / jnp.sqrt(jnp.where(informative, prec, 1.0))

    k1, k2 = jr.split(key)
    truncated = dist.TruncatedNormal(mean, sd, low=lo, high=hi).sample(k1)
    # far-tail draws can land just outside the support in single precision
    truncated = jnp.clip(truncated, lo, hi)
    uniform = dist.Uniform(lo, hi).sample(k2)
    return jnp.where(informative, truncated, uniform).astype(x.dtype)


def sample_precisions(
    key: jax.Array, spec: ModelSpecification, state: State, data: SamplerData,
) -> State:
    """Conjugate gamma draws for ``tau_obs`` and ``tau_add``."""
    pri = spec.priors
    x = state["x"]
    k_obs, k_add = jr.split(key)

    resid_obs = jnp.where(data.observed, data.y - x, 0.0)
    n_obs = jnp.sum(data.observed)
    tau_obs = dist.Gamma(
        pri.tau_obs.shape + 0.5 * n_obs,
        pri.tau_obs.rate + 0.5 * jnp.sum(resid_obs**2),
    ).sample(k_obs)

    b = spec.autoregressive_coefficient(state)
    c = _drift(spec, state, data)
    resid_add = x[1:] - (b * x[:-1] + c[1:])
    tau_add = dist.Gamma(
        pri.tau_add.shape + 0.5 * resid_add.shape[0],
        pri.tau_add.rate + 0.5 * jnp.sum(resid_add**2),
    ).sample(k_add)
    return {"tau_obs": tau_obs.astype(x.dtype), "tau_add": tau_add.astype(x.dtype)}


def sample_rain_hyperparameters(
    key: jax.Array, spec: ModelSpecification, state: State, data: SamplerData,
) -> State:
    """``mu_rain`` then ``tau_rain`` given all rain values, observed and imputed."""
    pri = spec.priors
    rain = state["rain"]
    n = rain.shape[0]
    k_mu, k_tau = jr.split(key)

    tau_rain = state["tau_rain"]
    prec = 1.0 / pri.mu_rain_variance + n * tau_rain
    mu_rain = dist.Normal(tau_rain * jnp.sum(rain) / prec, 1.0 / jnp.sqrt(prec)).sample(k_mu)

    tau_rain = dist.Gamma(
        pri.tau_rain.shape + 0.5 * n,
        pri.tau_rain.rate + 0.5 * jnp.sum((rain - mu_rain) ** 2),
    ).sample(k_tau)
    return {"mu_rain": mu_rain.astype(rain.dtype), "tau_rain": tau_rain.astype(rain.dtype)}


# ---------------------------------------------------------------------------
# One full sweep
# ---------------------------------------------------------------------------


def gibbs_step(
    key: jax.Array,
    spec: ModelSpecification,
    state: State,
    data: SamplerData,
    latent_update: LatentUpdate = "ffbs",
) -> State:
    """Update every unknown once, each conditioned on the freshest values.

    Order: latent path, missing rain, regression block, decay,
    precisions, rain hyperparameters.
    """
    k_x, k_rain, k_coef, k_decay, k_prec, k_hyper = jr.split(key, 6)
    state = dict(state)

    if latent_update == "ffbs":
        state["x"] = sample_latent_ffbs(k_x, spec, state, data)
    else:
        state["x"] = sample_latent_single_site(k_x, spec, state, data)
    if spec.impute_rain:
        state["rain"] = sample_missing_rain(k_rain, spec, state, data)
    state.update(sample_coefficients(k_coef, spec, state, data))
    if spec.decay:
        state["beta_decay"] = sample_decay(k_decay, spec, state, data)
    state.update(sample_precisions(k_prec, spec, state, data))
    if spec.impute_rain:
        state.update(sample_rain_hyperparameters(k_hyper, spec, state, data))
    return state
