"""Tests for streamcast.summarizer."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from streamcast.dataset import TimeSeriesDataset
from streamcast.engine import InferenceEngine, SamplerConfig
from streamcast.specification import ModelSpecification
from streamcast.summarizer import PosteriorSummarizer, to_log_scale, to_natural_scale


@pytest.fixture
def latent_samples(rng, make_samples):
    """Three chains, 200 draws, 6 days of log-scale latent draws."""
    x = rng.normal(loc=np.linspace(0.0, 1.0, 6), scale=0.3, size=(3, 200, 6))
    return make_samples({
        "x": x,
        "tau_obs": rng.gamma(5.0, 1.0, size=(3, 200)),
        "tau_add": rng.gamma(2.0, 1.0, size=(3, 200)),
    })


# ---------------------------------------------------------------------------
# Forecast table
# ---------------------------------------------------------------------------


class TestSummarize:
    def test_columns_and_index(self, latent_samples):
        table = PosteriorSummarizer().summarize(latent_samples, burn_in=50)
        assert list(table.columns) == [
            "lower", "median", "upper", "log_lower", "log_median", "log_upper",
        ]
        assert isinstance(table.index, pd.DatetimeIndex)
        assert table.index.name == "date"
        assert len(table) == 6

    def test_exponentiates_draws_before_quantiles(self, latent_samples):
        table = PosteriorSummarizer().summarize(latent_samples, burn_in=50)
        x = latent_samples.get("x", burn_in=50, group_by_chain=False)
        expected = np.quantile(np.exp(x), [0.025, 0.5, 0.975], axis=0)
        np.testing.assert_allclose(table[["lower", "median", "upper"]].to_numpy().T, expected)

    def test_ordered(self, latent_samples):
        table = PosteriorSummarizer().summarize(latent_samples)
        assert (table["lower"] <= table["median"]).all()
        assert (table["median"] <= table["upper"]).all()

    def test_idempotent(self, latent_samples):
        s = PosteriorSummarizer()
        pd.testing.assert_frame_equal(
            s.summarize(latent_samples, 20), s.summarize(latent_samples, 20),
        )

    def test_natural_only(self, latent_samples):
        table = PosteriorSummarizer().summarize(latent_samples, include_log=False)
        assert list(table.columns) == ["lower", "median", "upper"]

    def test_custom_quantiles(self, latent_samples):
        s = PosteriorSummarizer((0.1, 0.5, 0.9))
        assert s.interval_level == pytest.approx(0.8)
        narrow = s.summarize(latent_samples)
        wide = PosteriorSummarizer().summarize(latent_samples)
        assert ((narrow["upper"] - narrow["lower"]) < (wide["upper"] - wide["lower"])).all()

    @pytest.mark.parametrize("q", [(0.5, 0.5, 0.9), (0.1, 0.9), (0.0, 0.5, 1.0)])
    def test_bad_quantiles(self, q):
        with pytest.raises(ValueError, match="quantiles"):
            PosteriorSummarizer(q)

    def test_raw_draws(self):
        draws = np.log(np.array([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]))
        table = PosteriorSummarizer().summarize_draws(draws)
        assert table["median"].tolist() == pytest.approx([3.0, 4.0])
        assert table.index.name == "t"


class TestScaleRoundTrip:
    def test_log_natural_log(self, latent_samples):
        table = PosteriorSummarizer().summarize(latent_samples)
        log = table[["log_lower", "log_median", "log_upper"]]
        back = to_log_scale(to_natural_scale(log))
        np.testing.assert_allclose(back.to_numpy(), log.to_numpy(), rtol=1e-12)

    def test_median_commutes_with_exp(self, latent_samples):
        # odd draw count, so the median is a draw rather than an interpolation
        table = PosteriorSummarizer().summarize(latent_samples, burn_in=1)
        np.testing.assert_allclose(
            to_natural_scale(table)["median"], table["median"], rtol=1e-9,
        )


# ---------------------------------------------------------------------------
# Parameter and rain tables
# ---------------------------------------------------------------------------


class TestParameterTable:
    def test_rows(self, latent_samples):
        table = PosteriorSummarizer().summarize_parameters(latent_samples, burn_in=10)
        assert list(table.index) == ["tau_obs", "tau_add"]
        assert list(table.columns) == ["mean", "sd", "lower", "median", "upper", "n_eff", "r_hat"]
        assert table.loc["tau_obs", "mean"] == pytest.approx(5.0, rel=0.1)
        assert table.loc["tau_add", "r_hat"] == pytest.approx(1.0, abs=0.05)


class TestRainTable:
    def test_imputed_positions_only(self, rng, make_samples):
        rain_missing = np.array([True, False, False, True, False, False])
        rain = rng.normal(0.5, 0.1, size=(2, 100, 6))
        samples = make_samples(
            {
                "x": np.zeros((2, 100, 6)),
                "rain": rain,
                "tau_obs": np.ones((2, 100)),
                "tau_add": np.ones((2, 100)),
                "beta_rain": np.zeros((2, 100)),
                "mu_rain": np.zeros((2, 100)),
                "tau_rain": np.ones((2, 100)),
            },
            spec=ModelSpecification.random_walk_rain(),
            rain_missing=rain_missing,
        )
        table = PosteriorSummarizer().summarize_rain(samples)
        assert len(table) == 2
        assert list(table.index) == list(samples.dates[rain_missing])
        pooled = rain.reshape(-1, 6)[:, 0]
        assert table["median"].iloc[0] == pytest.approx(np.quantile(np.expm1(pooled), 0.5))
        assert table["log1p_median"].iloc[0] == pytest.approx(np.quantile(pooled, 0.5))

    def test_no_rain_term(self, latent_samples):
        table = PosteriorSummarizer().summarize_rain(latent_samples)
        assert table.empty
        assert "median" in table.columns


# ---------------------------------------------------------------------------
# Gap scenario
# ---------------------------------------------------------------------------


class TestGapScenario:
    """Alternating observed and missing days around a constant level."""

    @pytest.fixture(scope="class")
    def table(self):
        ds = TimeSeriesDataset.from_arrays(np.array([0.1, np.nan, 0.1, np.nan, 0.1]))
        cfg = SamplerConfig(num_chains=2, num_iterations=3000, seeds=(11, 12))
        samples = InferenceEngine(ModelSpecification.random_walk(), cfg).run(ds)
        return PosteriorSummarizer().summarize(samples, burn_in=500)

    def test_five_rows(self, table):
        assert len(table) == 5
        assert table.notna().all().all()

    def test_missing_days_no_narrower(self, table):
        width = table["log_upper"] - table["log_lower"]
        assert width.iloc[1] >= width.iloc[2]
        assert width.iloc[3] >= width.iloc[2]
        assert min(width.iloc[1], width.iloc[3]) >= min(width.iloc[0], width.iloc[2], width.iloc[4])

    def test_median_near_level(self, table):
        assert table["log_median"].iloc[2] == pytest.approx(0.1, abs=0.5)
