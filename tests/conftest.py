"""Shared fixtures: small synthetic series and hand-built posterior draws."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from streamcast.dataset import TimeSeriesDataset
from streamcast.engine import ChainResult, PosteriorSamples, SamplerConfig
from streamcast.specification import ModelSpecification


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def walk_dataset(rng):
    """40 days of a noisy random walk with rainfall and a few gaps."""
    n = 40
    rain = np.log1p(rng.gamma(0.5, 2.0, n))
    x = np.cumsum(0.3 * rain + rng.normal(0, 0.1, n)) + 1.0
    y = x + rng.normal(0, 0.05, n)
    y[[5, 6, 20]] = np.nan
    rain[[0, 12, 13]] = np.nan
    return TimeSeriesDataset.from_arrays(y, rain, start="2021-01-01")


@pytest.fixture
def make_samples():
    """Build :class:`PosteriorSamples` from ``{name: (chains, draws, ...)}`` arrays."""

    def _make(
        draws: dict[str, np.ndarray],
        spec: ModelSpecification | None = None,
        dates: pd.DatetimeIndex | None = None,
        rain_missing: np.ndarray | None = None,
    ) -> PosteriorSamples:
        spec = spec or ModelSpecification.random_walk()
        n_chains = next(iter(draws.values())).shape[0]
        n = draws["x"].shape[2]
        if dates is None:
            dates = pd.date_range("2021-01-01", periods=n, freq="D")
        if rain_missing is None:
            rain_missing = np.zeros(n, dtype=bool)
        chains = [
            ChainResult(
                chain=i,
                seed=i,
                draws={k: np.asarray(v[i]) for k, v in draws.items()},
                final_state=None,
            )
            for i in range(n_chains)
        ]
        return PosteriorSamples(
            spec=spec,
            dates=dates,
            rain_missing=rain_missing,
            chains=chains,
            config=SamplerConfig(num_chains=max(n_chains, 2), num_iterations=1),
        )

    return _make
