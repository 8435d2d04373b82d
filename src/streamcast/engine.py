"""InferenceEngine — multi-chain Gibbs sampling of the joint posterior."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Literal

import jax
import jax.numpy as jnp
import jax.random as jr
import numpy as np
import pandas as pd
from pydantic import BaseModel, field_validator, model_validator

from streamcast.conditionals import LatentUpdate, SamplerData, State, gibbs_step
from streamcast.dataset import TimeSeriesDataset
from streamcast.specification import ConfigurationError, ModelSpecification

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class NumericalFailure(RuntimeError):
    """A chain produced a non-finite value and was aborted."""

    def __init__(self, chain: int, seed: int, iteration: int, variable: str) -> None:
        self.chain = chain
        self.seed = seed
        self.iteration = iteration
        self.variable = variable
        super().__init__(
            f"chain {chain} (seed={seed}): non-finite {variable!r} "
            f"at iteration {iteration}"
        )


class SamplingError(RuntimeError):
    """No chain survived sampling."""

    def __init__(self, failures: list[NumericalFailure]) -> None:
        self.failures = failures
        lines = "; ".join(str(f) for f in failures)
        super().__init__(f"every chain failed: {lines}")


# ---------------------------------------------------------------------------
# SamplerConfig
# ---------------------------------------------------------------------------


class SamplerConfig(BaseModel):
    """Settings for a multi-chain sampler run.

    Parameters
    ----------
    num_chains : int
        Independent chains (at least 2 so convergence can be judged).
    num_iterations : int
        Draws kept per chain.  Nothing is discarded by the engine; burn-in
        is chosen later by :class:`~streamcast.diagnostics.ConvergenceDiagnostics`.
    seeds : tuple of int or None
        One PRNG seed per chain.  Defaults to ``base_seed + i``.
    base_seed : int
        Used only when *seeds* is ``None``.
    chain_method : str
        ``"sequential"`` runs chains one after another; ``"vectorized"``
        runs them together under ``jax.vmap``.
    latent_update : str
        ``"ffbs"`` (block forward-filtering backward-sampling) or
        ``"single_site"`` (one-at-a-time Gibbs).
    """

    num_chains: int = 3
    num_iterations: int = 5000
    seeds: tuple[int, ...] | None = None
    base_seed: int = 0
    chain_method: Literal["sequential", "vectorized"] = "sequential"
    latent_update: LatentUpdate = "ffbs"

    model_config = {"frozen": True}

    @field_validator("num_chains")
    @classmethod
    def _at_least_two_chains(cls, v: int) -> int:
        if v < 2:
            raise ValueError("num_chains must be >= 2")
        return v

    @field_validator("num_iterations")
    @classmethod
    def _positive_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("num_iterations must be >= 1")
        return v

    @model_validator(mode="after")
    def _seeds_match_chains(self) -> SamplerConfig:
        if self.seeds is not None:
            if len(self.seeds) != self.num_chains:
                raise ValueError(
                    f"expected {self.num_chains} seeds, got {len(self.seeds)}"
                )
            if len(set(self.seeds)) != len(self.seeds):
                raise ValueError("seeds must be distinct")
        return self

    @property
    def chain_seeds(self) -> tuple[int, ...]:
        if self.seeds is not None:
            return self.seeds
        return tuple(self.base_seed + i for i in range(self.num_chains))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ChainResult:
    """Output of one chain.

    Attributes
    ----------
    draws
        ``{name: (num_draws, ...)}`` for every sampled quantity, or
        ``None`` when the chain failed.
    final_state
        Sampler state after the last iteration, used to extend the chain.
    segments
        Number of sampling runs concatenated into *draws*.
    """

    chain: int
    seed: int
    draws: dict[str, np.ndarray] | None
    final_state: State | None
    failure: NumericalFailure | None = None
    segments: int = 1

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class PosteriorSamples:
    """Draws from every chain of a run, burn-in included."""

    spec: ModelSpecification
    dates: pd.DatetimeIndex
    rain_missing: np.ndarray
    chains: list[ChainResult]
    config: SamplerConfig
    elapsed_seconds: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def successful_chains(self) -> list[ChainResult]:
        return [c for c in self.chains if c.ok]

    @property
    def failures(self) -> list[NumericalFailure]:
        return [c.failure for c in self.chains if c.failure is not None]

    @property
    def num_chains(self) -> int:
        """Number of chains that finished without a numerical failure."""
        return len(self.successful_chains)

    @property
    def num_draws(self) -> int:
        ok = self.successful_chains
        if not ok:
            return 0
        return len(ok[0].draws["x"])

    @property
    def names(self) -> tuple[str, ...]:
        ok = self.successful_chains
        return tuple(ok[0].draws) if ok else ()

    def get(
        self, name: str, *, burn_in: int = 0, group_by_chain: bool = True,
    ) -> np.ndarray:
        """Draws of *name* after dropping the first *burn_in* per chain.

        Returns shape ``(chains, draws, ...)`` or, with
        ``group_by_chain=False``, the pooled ``(chains * draws, ...)``.
        """
        ok = self.successful_chains
        if not ok:
            raise ValueError("no successful chains")
        if name not in ok[0].draws:
            raise KeyError(f"{name!r} was not sampled; available: {sorted(ok[0].draws)}")
        if not 0 <= burn_in < self.num_draws:
            raise ValueError(
                f"burn_in must be in [0, {self.num_draws}), got {burn_in}"
            )
        stacked = np.stack([c.draws[name][burn_in:] for c in ok])
        if group_by_chain:
            return stacked
        return stacked.reshape(-1, *stacked.shape[2:])

    def to_dict(
        self,
        names: Sequence[str] | None = None,
        *,
        burn_in: int = 0,
        group_by_chain: bool = True,
    ) -> dict[str, np.ndarray]:
        names = self.names if names is None else names
        return {
            n: self.get(n, burn_in=burn_in, group_by_chain=group_by_chain)
            for n in names
        }

    def __repr__(self) -> str:
        return (
            f"PosteriorSamples({self.spec.variant}, chains={self.num_chains}/"
            f"{len(self.chains)}, draws={self.num_draws})"
        )


# ---------------------------------------------------------------------------
# Initial states
# ---------------------------------------------------------------------------


def initial_state(
    spec: ModelSpecification,
    dataset: TimeSeriesDataset,
    seed: int,
    overrides: dict[str, Any] | None = None,
) -> State:
    """Overdispersed starting point for one chain.

    The latent path is interpolated from the observed response,
    precisions and ``beta_decay`` are drawn from their priors, and
    missing rain starts at the observed mean.  Those starting rain values
    are only the chain's first state; the sampler redraws them every
    iteration.

    *overrides* replaces any entry; a scalar ``x`` is broadcast.
    """
    rng = np.random.default_rng(seed)
    pri = spec.priors
    n = dataset.n
    idx = np.arange(n)
    obs = dataset.observed_mask
    y_obs = dataset.y[obs]

    state: dict[str, Any] = {
        "x": np.interp(idx, idx[obs], y_obs),
        "tau_obs": rng.gamma(pri.tau_obs.shape, 1.0 / pri.tau_obs.rate),
        "tau_add": rng.gamma(pri.tau_add.shape, 1.0 / pri.tau_add.rate),
    }
    if spec.decay:
        lo, hi = pri.decay_bounds
        state["mu0"] = float(np.mean(y_obs)) + rng.normal()
        state["beta_decay"] = rng.uniform(lo, hi)
    if spec.rain:
        rain_obs = dataset.rain[~dataset.rain_missing_mask]
        rain_mean = float(np.mean(rain_obs)) if rain_obs.size else 0.0
        state["rain"] = np.where(dataset.rain_missing_mask, rain_mean, dataset.rain)
        state["beta_rain"] = rng.normal(0.0, 0.1)
    if spec.seasonal:
        state["beta_season_sin"] = rng.normal(0.0, 0.1)
        state["beta_season_cos"] = rng.normal(0.0, 0.1)
    if spec.impute_rain:
        state["mu_rain"] = rain_mean
        rain_var = float(np.var(rain_obs)) if rain_obs.size > 1 else 0.0
        state["tau_rain"] = 1.0 / rain_var if rain_var > 0 else 1.0

    for name, value in (overrides or {}).items():
        if name not in state:
            raise ConfigurationError(
                f"cannot initialise {name!r}; sampled quantities are {sorted(state)}"
            )
        if name == "x":
            value = np.broadcast_to(np.asarray(value, dtype=np.float64), (n,))
        elif name == "rain":
            value = np.where(
                dataset.rain_missing_mask,
                np.broadcast_to(np.asarray(value, dtype=np.float64), (n,)),
                dataset.rain,
            )
        state[name] = value

    dtype = jnp.result_type(float)
    return {k: jnp.asarray(v, dtype=dtype) for k, v in state.items()}


# ---------------------------------------------------------------------------
# InferenceEngine
# ---------------------------------------------------------------------------


def _sample_chain(
    key: jax.Array,
    state: State,
    *,
    spec: ModelSpecification,
    data: SamplerData,
    num_iterations: int,
    latent_update: LatentUpdate,
) -> tuple[State, State]:
    def step(carry, k):
        new = gibbs_step(k, spec, carry, data, latent_update)
        return new, new

    keys = jr.split(key, num_iterations)
    return jax.lax.scan(step, state, keys)


def _update_order(spec: ModelSpecification) -> list[str]:
    names = ["x"]
    if spec.rain:
        names.append("rain")
    names.extend(spec.coefficient_names)
    if spec.decay:
        names.append("beta_decay")
    names.extend(["tau_obs", "tau_add"])
    if spec.impute_rain:
        names.extend(["mu_rain", "tau_rain"])
    return names


def _first_non_finite(
    draws: dict[str, np.ndarray], order: list[str],
) -> tuple[int, str] | None:
    """Earliest ``(iteration, variable)`` holding a non-finite value."""
    worst: tuple[int, int, str] | None = None
    for rank, name in enumerate(order):
        arr = draws[name]
        bad = ~np.isfinite(arr.reshape(arr.shape[0], -1)).all(axis=1)
        if bad.any():
            it = int(np.flatnonzero(bad)[0])
            if worst is None or (it, rank) < worst[:2]:
                worst = (it, rank, name)
    if worst is None:
        return None
    return worst[0], worst[2]


class InferenceEngine:
    """Sample latent states, parameters and missing rainfall jointly.

    Parameters
    ----------
    spec : ModelSpecification
        Model structure and priors.
    config : SamplerConfig
        Chains, iterations, seeds and update scheme.

    Examples
    --------
    ```python
    engine = InferenceEngine(ModelSpecification.full(), SamplerConfig(num_iterations=3000))
    samples = engine.run(dataset)
    samples.get("tau_add", burn_in=1000).shape  # (3, 2000)
    ```
    """

    def __init__(
        self,
        spec: ModelSpecification,
        config: SamplerConfig | None = None,
    ) -> None:
        self.spec = spec
        self.config = config or SamplerConfig()

    # -- public API --------------------------------------------------------

    def run(
        self,
        dataset: TimeSeriesDataset,
        *,
        init_values: Sequence[dict[str, Any]] | None = None,
    ) -> PosteriorSamples:
        """Run every chain for ``config.num_iterations`` iterations.

        Parameters
        ----------
        dataset
            Fitting data.  Withheld truth is never read.
        init_values
            Optional per-chain overrides passed to :func:`initial_state`.

        Raises
        ------
        ConfigurationError
            Before any sampling, when the data or settings are unusable.
        SamplingError
            When every chain hits a numerical failure.
        """
        self._validate(dataset)
        cfg = self.config
        seeds = cfg.chain_seeds
        if init_values is not None and len(init_values) != cfg.num_chains:
            raise ConfigurationError(
                f"expected {cfg.num_chains} init_values, got {len(init_values)}"
            )

        data = SamplerData.from_arrays(
            dataset.y, dataset.rain, dataset.season_sin, dataset.season_cos,
        )
        states = [
            initial_state(
                self.spec, dataset, seed,
                init_values[i] if init_values is not None else None,
            )
            for i, seed in enumerate(seeds)
        ]
        keys = [jr.PRNGKey(seed) for seed in seeds]

        logger.info(
            "Sampling %s: %d chains x %d iterations (n=%d, %s, %s)",
            self.spec.variant, cfg.num_chains, cfg.num_iterations,
            dataset.n, cfg.latent_update, cfg.chain_method,
        )
        t0 = time.time()
        chains = self._run_chains(data, keys, states, seeds, cfg.num_iterations, segment=1)
        elapsed = time.time() - t0
        logger.info("Sampling finished in %.2fs", elapsed)

        samples = PosteriorSamples(
            spec=self.spec,
            dates=dataset.dates,
            rain_missing=np.asarray(dataset.rain_missing_mask),
            chains=chains,
            config=cfg,
            elapsed_seconds=elapsed,
            metadata={"data": data},
        )
        self._check_survivors(samples)
        return samples

    def extend(self, samples: PosteriorSamples, num_iterations: int) -> PosteriorSamples:
        """Continue every surviving chain for *num_iterations* more draws.

        Each chain resumes from its final state with a key derived from its
        seed and segment number, so extensions are reproducible.  Chains
        that fail during the extension are aborted like in :meth:`run`.
        """
        if num_iterations < 1:
            raise ConfigurationError("num_iterations must be >= 1")
        data: SamplerData = samples.metadata["data"]
        previous = samples.successful_chains
        segment = previous[0].segments + 1
        keys = [jr.fold_in(jr.PRNGKey(c.seed), segment) for c in previous]

        logger.info(
            "Extending %d chains by %d iterations", len(previous), num_iterations,
        )
        t0 = time.time()
        fresh = self._run_chains(
            data, keys, [c.final_state for c in previous],
            [c.seed for c in previous], num_iterations,
            segment=segment, chain_ids=[c.chain for c in previous],
            iteration_offset=samples.num_draws,
        )
        elapsed = time.time() - t0

        chains: list[ChainResult] = [c for c in samples.chains if not c.ok]
        for old, new in zip(previous, fresh):
            if not new.ok:
                chains.append(new)
                continue
            merged = {k: np.concatenate([old.draws[k], new.draws[k]]) for k in old.draws}
            chains.append(
                ChainResult(old.chain, old.seed, merged, new.final_state, None, segment)
            )
        chains.sort(key=lambda c: c.chain)

        extended = PosteriorSamples(
            spec=samples.spec,
            dates=samples.dates,
            rain_missing=samples.rain_missing,
            chains=chains,
            config=samples.config,
            elapsed_seconds=samples.elapsed_seconds + elapsed,
            metadata=samples.metadata,
        )
        self._check_survivors(extended)
        return extended

    # -- internal ----------------------------------------------------------

    def _validate(self, dataset: TimeSeriesDataset) -> None:
        dataset.validate_for_fit()
        if self.spec.rain and not self.spec.impute_rain and dataset.rain_missing_mask.any():
            raise ConfigurationError(
                "rain term is active with missing rainfall but impute_rain=False; "
                "enable impute_rain so gaps are sampled with the rest of the model"
            )

    def _run_chains(
        self,
        data: SamplerData,
        keys: list[jax.Array],
        states: list[State],
        seeds: Sequence[int],
        num_iterations: int,
        *,
        segment: int,
        chain_ids: Sequence[int] | None = None,
        iteration_offset: int = 0,
    ) -> list[ChainResult]:
        # iteration_offset: draws already held by each chain, so failure
        # iterations count from the start of the chain.
        runner = partial(
            _sample_chain,
            spec=self.spec,
            data=data,
            num_iterations=num_iterations,
            latent_update=self.config.latent_update,
        )
        if self.config.chain_method == "vectorized":
            batched_keys = jnp.stack(keys)
            batched_states = jax.tree.map(lambda *xs: jnp.stack(xs), *states)
            finals, draws = jax.jit(jax.vmap(runner))(batched_keys, batched_states)
            outputs = [
                (
                    jax.tree.map(lambda a, i=i: a[i], finals),
                    jax.tree.map(lambda a, i=i: a[i], draws),
                )
                for i in range(len(keys))
            ]
        else:
            compiled = jax.jit(runner)
            outputs = [compiled(k, s) for k, s in zip(keys, states)]

        order = _update_order(self.spec)
        ids = range(len(seeds)) if chain_ids is None else chain_ids
        results: list[ChainResult] = []
        for chain, seed, (final, draws) in zip(ids, seeds, outputs):
            host = {k: np.asarray(v) for k, v in draws.items()}
            fault = _first_non_finite(host, order)
            if fault is not None:
                iteration, variable = fault
                failure = NumericalFailure(
                    chain, seed, iteration + iteration_offset, variable,
                )
                logger.warning("Aborting %s", failure)
                results.append(ChainResult(chain, seed, None, None, failure, segment))
                continue
            logger.debug("chain %d (seed=%d) finished cleanly", chain, seed)
            results.append(ChainResult(chain, seed, host, final, None, segment))
        return results

    @staticmethod
    def _check_survivors(samples: PosteriorSamples) -> None:
        if samples.num_chains == 0:
            raise SamplingError(samples.failures)
        if samples.failures:
            logger.warning(
                "%d of %d chains failed; continuing with %d",
                len(samples.failures), len(samples.chains), samples.num_chains,
            )
