"""PosteriorSummarizer — credible envelopes and point forecasts from draws."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import pandas as pd
from numpyro.diagnostics import effective_sample_size

from streamcast.diagnostics import potential_scale_reduction
from streamcast.engine import PosteriorSamples

_NATURAL = ("lower", "median", "upper")
_LOG = ("log_lower", "log_median", "log_upper")


def to_natural_scale(frame: pd.DataFrame) -> pd.DataFrame:
    """Exponentiate the ``log_*`` columns into ``lower/median/upper``."""
    return pd.DataFrame(
        {nat: np.exp(frame[log]) for nat, log in zip(_NATURAL, _LOG)},
        index=frame.index,
    )


def to_log_scale(frame: pd.DataFrame) -> pd.DataFrame:
    """Take logs of ``lower/median/upper`` into the ``log_*`` columns."""
    return pd.DataFrame(
        {log: np.log(frame[nat]) for nat, log in zip(_NATURAL, _LOG)},
        index=frame.index,
    )


class PosteriorSummarizer:
    """Reduce post-burn-in draws to decision-ready tables.

    Parameters
    ----------
    quantiles : tuple of float
        ``(lower, median, upper)`` probabilities.  The default gives the
        median and a 95 % credible envelope.

    Examples
    --------
    ```python
    summarizer = PosteriorSummarizer()
    forecast = summarizer.summarize(samples, burn_in=report.burn_in)
    forecast[["lower", "median", "upper"]]
    ```
    """

    def __init__(self, quantiles: Sequence[float] = (0.025, 0.5, 0.975)) -> None:
        q = tuple(float(v) for v in quantiles)
        if len(q) != 3 or not (0.0 < q[0] < q[1] < q[2] < 1.0):
            raise ValueError(f"quantiles must be three increasing values in (0, 1), got {quantiles}")
        self.quantiles = q

    @property
    def interval_level(self) -> float:
        return self.quantiles[2] - self.quantiles[0]

    def summarize(
        self,
        samples: PosteriorSamples,
        burn_in: int = 0,
        *,
        include_log: bool = True,
    ) -> pd.DataFrame:
        """Per-day ``lower/median/upper`` of ``exp(x[t])``.

        Each draw is exponentiated first and quantiles are taken of the
        exponentiated values.  With *include_log* the log-scale quantiles
        of ``x[t]`` are appended as ``log_lower/log_median/log_upper``.
        """
        x = samples.get("x", burn_in=burn_in, group_by_chain=False)
        return self._table(x, samples.dates, include_log=include_log)

    def summarize_draws(
        self,
        draws: np.ndarray,
        dates: pd.DatetimeIndex | None = None,
        *,
        include_log: bool = True,
    ) -> pd.DataFrame:
        """Same as :meth:`summarize` for a raw ``(draws, n)`` log-scale array."""
        draws = np.asarray(draws, dtype=np.float64)
        if dates is None:
            dates = pd.RangeIndex(draws.shape[1], name="t")
        return self._table(draws, dates, include_log=include_log)

    def summarize_parameters(
        self, samples: PosteriorSamples, burn_in: int = 0,
    ) -> pd.DataFrame:
        """One row per scalar parameter: mean, sd, quantiles, n_eff, r_hat."""
        rows = []
        for name in samples.spec.parameter_names:
            by_chain = np.asarray(samples.get(name, burn_in=burn_in), dtype=np.float64)
            pooled = by_chain.reshape(-1)
            lo, med, hi = np.quantile(pooled, self.quantiles)
            n_eff = (
                float(effective_sample_size(by_chain)) if by_chain.shape[1] >= 2 else float("nan")
            )
            rows.append({
                "parameter": name,
                "mean": float(np.mean(pooled)),
                "sd": float(np.std(pooled)),
                "lower": float(lo),
                "median": float(med),
                "upper": float(hi),
                "n_eff": n_eff,
                "r_hat": potential_scale_reduction(by_chain),
            })
        return pd.DataFrame(rows).set_index("parameter")

    def summarize_rain(
        self, samples: PosteriorSamples, burn_in: int = 0,
    ) -> pd.DataFrame:
        """Imputed rainfall at the positions where it was missing.

        ``log1p_*`` columns are on the model scale; ``lower/median/upper``
        are back-transformed with ``expm1`` draw by draw.
        """
        columns = ["lower", "median", "upper", "log1p_lower", "log1p_median", "log1p_upper"]
        missing = np.asarray(samples.rain_missing)
        if "rain" not in samples.names or not missing.any() or not samples.spec.impute_rain:
            return pd.DataFrame(columns=columns, index=pd.DatetimeIndex([], name="date"))
        rain = samples.get("rain", burn_in=burn_in, group_by_chain=False)[:, missing]
        nat = np.quantile(np.expm1(rain), self.quantiles, axis=0)
        log = np.quantile(rain, self.quantiles, axis=0)
        frame = pd.DataFrame(
            np.vstack([nat, log]).T,
            index=samples.dates[missing],
            columns=columns,
        )
        frame.index.name = "date"
        return frame

    # -- internal ----------------------------------------------------------

    def _table(
        self, x: np.ndarray, index: pd.Index, *, include_log: bool,
    ) -> pd.DataFrame:
        x = np.asarray(x, dtype=np.float64)
        natural = np.quantile(np.exp(x), self.quantiles, axis=0)
        frame = pd.DataFrame(natural.T, index=index, columns=list(_NATURAL))
        if include_log:
            log = np.quantile(x, self.quantiles, axis=0)
            for col, values in zip(_LOG, log):
                frame[col] = values
        if isinstance(frame.index, pd.DatetimeIndex):
            frame.index.name = "date"
        return frame
