"""TimeSeriesDataset — aligned daily series with an explicit held-out mask."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal

import numpy as np
import pandas as pd

from streamcast.specification import ConfigurationError
from streamcast.utils import (
    DEFAULT_OFFSET,
    lag,
    log1p_transform,
    log_transform,
    seasonal_terms,
)

type Scale = Literal["log", "natural"]


def _frozen(arr: np.ndarray, dtype: type = np.float64) -> np.ndarray:
    out = np.array(arr, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class TimeSeriesDataset:
    """Aligned daily series, read-only once constructed.

    All response values live on the log scale.  ``NaN`` marks a missing
    value (never observed, or withheld for validation).  Withheld values
    are held in :attr:`truth` and are absent from :attr:`y`, which is all
    the fitting step ever reads.

    Attributes
    ----------
    dates
        Contiguous, ascending daily index of length ``n``.
    y
        Log streamflow used for fitting.
    rain
        ``log1p`` rainfall, already lagged.
    season_sin, season_cos
        Deterministic calendar covariates.
    holdout_mask
        ``True`` where the response was withheld.
    truth
        Log-scale ground truth at withheld positions, ``NaN`` elsewhere.
    """

    dates: pd.DatetimeIndex
    y: np.ndarray
    rain: np.ndarray
    season_sin: np.ndarray
    season_cos: np.ndarray
    holdout_mask: np.ndarray
    truth: np.ndarray

    def __post_init__(self) -> None:
        n = len(self.dates)
        for name in ("y", "rain", "season_sin", "season_cos", "holdout_mask", "truth"):
            arr = getattr(self, name)
            if arr.shape != (n,):
                raise ConfigurationError(
                    f"{name} has shape {arr.shape}, expected ({n},)"
                )
        if n > 1:
            steps = np.diff(self.dates.values).astype("timedelta64[D]").astype(int)
            if not np.all(steps == 1):
                raise ConfigurationError("dates must be contiguous, ascending days")
        for name in ("y", "rain", "truth"):
            arr = getattr(self, name)
            if np.isinf(arr).any():
                raise ConfigurationError(f"{name} contains infinite values")
        if not (np.isfinite(self.season_sin).all() and np.isfinite(self.season_cos).all()):
            raise ConfigurationError("seasonal covariates must be fully known")
        if (~np.isnan(self.y) & self.holdout_mask).any():
            raise ConfigurationError("withheld positions must be missing in y")

    # -- constructors ------------------------------------------------------

    @classmethod
    def from_arrays(
        cls,
        y: np.ndarray,
        rain: np.ndarray | None = None,
        dates: pd.DatetimeIndex | None = None,
        *,
        start: str = "2000-01-01",
        leap_aware: bool = False,
    ) -> TimeSeriesDataset:
        """Build a dataset from log-scale arrays.

        ``rain`` is taken as already transformed and lagged.  ``dates``
        defaults to a daily range beginning at *start*.

        Examples
        --------
        ```python
        ds = TimeSeriesDataset.from_arrays(np.array([0.1, np.nan, 0.1]))
        ```
        """
        y_arr = np.asarray(y, dtype=np.float64)
        n = len(y_arr)
        if dates is None:
            dates = pd.date_range(start, periods=n, freq="D")
        dates = pd.DatetimeIndex(dates)
        rain_arr = (
            np.full(n, np.nan) if rain is None else np.asarray(rain, dtype=np.float64)
        )
        s, c = seasonal_terms(dates, leap_aware=leap_aware)
        return cls(
            dates=dates,
            y=_frozen(y_arr),
            rain=_frozen(rain_arr),
            season_sin=_frozen(s),
            season_cos=_frozen(c),
            holdout_mask=_frozen(np.zeros(n, dtype=bool), dtype=bool),
            truth=_frozen(np.full(n, np.nan)),
        )

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        *,
        flow: str = "flow",
        rain: str | None = "rain",
        date: str | None = None,
        offset: float = DEFAULT_OFFSET,
        rain_lag: int = 1,
        leap_aware: bool = False,
    ) -> TimeSeriesDataset:
        """Build a dataset from an already-cleaned, NA-coded table.

        Parameters
        ----------
        frame
            One row per day.  Dates come from column *date* or, when
            ``None``, from the index.
        flow
            Streamflow column (natural units).  Every value is shifted
            by *offset* before ``log``.
        rain
            Rainfall column, or ``None`` for no rainfall.  Transformed with
            ``log1p`` and lagged by *rain_lag* days.
        offset
            Fixed additive shift applied to flow so zero flow has a finite log.
        rain_lag
            Days between rainfall and its effect on the response.
        leap_aware
            Forwarded to :func:`~streamcast.utils.seasonal_terms`.

        Irregular gaps are tolerated: the table is reindexed onto a
        contiguous daily calendar and inserted days are missing.
        """
        if frame.empty:
            raise ConfigurationError("input table is empty")
        if flow not in frame.columns:
            raise ConfigurationError(f"flow column {flow!r} not in table")
        if rain is not None and rain not in frame.columns:
            raise ConfigurationError(f"rain column {rain!r} not in table")

        dates = pd.DatetimeIndex(
            pd.to_datetime(frame[date] if date is not None else frame.index)
        ).normalize()
        if dates.has_duplicates:
            raise ConfigurationError("dates must be unique")
        if not dates.is_monotonic_increasing:
            raise ConfigurationError("dates must be sorted ascending")

        indexed = frame.set_axis(dates, axis=0)
        full_range = pd.date_range(dates[0], dates[-1], freq="D")
        indexed = indexed.reindex(full_range)

        try:
            y = log_transform(indexed[flow].to_numpy(dtype=np.float64), offset=offset)
            if rain is not None:
                r = log1p_transform(indexed[rain].to_numpy(dtype=np.float64))
                r = lag(r, rain_lag)
            else:
                r = None
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from None

        return cls.from_arrays(y, r, full_range, leap_aware=leap_aware)

    # -- held-out split ----------------------------------------------------

    def with_holdout(
        self,
        mask: np.ndarray | None = None,
        *,
        cutoff: str | pd.Timestamp | None = None,
    ) -> TimeSeriesDataset:
        """Withhold observations for validation.

        Exactly one of *mask* (boolean, aligned with :attr:`dates`) or
        *cutoff* (every date strictly after it is withheld) is required.
        Withheld values move from :attr:`y` to :attr:`truth`; positions
        already missing stay missing and carry no truth.
        """
        if (mask is None) == (cutoff is None):
            raise ConfigurationError("provide exactly one of mask or cutoff")
        if cutoff is not None:
            new_mask = np.asarray(self.dates > pd.Timestamp(cutoff))
        else:
            new_mask = np.asarray(mask, dtype=bool)
            if new_mask.shape != (self.n,):
                raise ConfigurationError(
                    f"mask has shape {new_mask.shape}, expected ({self.n},)"
                )

        combined = self.holdout_mask | new_mask
        truth = np.where(new_mask & ~np.isnan(self.y), self.y, self.truth)
        y = np.where(new_mask, np.nan, self.y)
        return replace(
            self,
            y=_frozen(y),
            truth=_frozen(truth),
            holdout_mask=_frozen(combined, dtype=bool),
        )

    def extend(self, days: int, *, leap_aware: bool = False) -> TimeSeriesDataset:
        """Append *days* future dates with missing response and rainfall."""
        if days < 0:
            raise ConfigurationError(f"days must be >= 0, got {days}")
        if days == 0:
            return self
        start = self.dates[-1] + pd.Timedelta(days=1)
        future = pd.date_range(start, periods=days, freq="D")
        dates = self.dates.append(future)
        s, c = seasonal_terms(dates, leap_aware=leap_aware)
        pad = np.full(days, np.nan)
        return TimeSeriesDataset(
            dates=dates,
            y=_frozen(np.concatenate([self.y, pad])),
            rain=_frozen(np.concatenate([self.rain, pad])),
            season_sin=_frozen(s),
            season_cos=_frozen(c),
            holdout_mask=_frozen(
                np.concatenate([self.holdout_mask, np.zeros(days, dtype=bool)]),
                dtype=bool,
            ),
            truth=_frozen(np.concatenate([self.truth, pad])),
        )

    # -- queries -----------------------------------------------------------

    @property
    def n(self) -> int:
        return len(self.dates)

    @property
    def observed_mask(self) -> np.ndarray:
        """``True`` where the fitting step sees a response value."""
        return ~np.isnan(self.y)

    @property
    def rain_missing_mask(self) -> np.ndarray:
        return np.isnan(self.rain)

    @property
    def has_holdout(self) -> bool:
        return bool((self.holdout_mask & ~np.isnan(self.truth)).any())

    def ground_truth(self, scale: Scale = "natural") -> pd.Series:
        """Withheld values at withheld positions, on *scale*."""
        keep = self.holdout_mask & ~np.isnan(self.truth)
        values = self.truth[keep]
        if scale == "natural":
            values = np.exp(values)
        elif scale != "log":
            raise ValueError(f"Unknown scale: {scale!r}")
        return pd.Series(values, index=self.dates[keep], name="observed")

    def validate_for_fit(self) -> None:
        """Fail fast on inputs no model can be fitted to."""
        if self.n == 0:
            raise ConfigurationError("series is empty")
        if not self.observed_mask.any():
            raise ConfigurationError("response is missing at every position")

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "y": self.y,
                "rain": self.rain,
                "season_sin": self.season_sin,
                "season_cos": self.season_cos,
                "holdout": self.holdout_mask,
                "truth": self.truth,
            },
            index=self.dates,
        )

    def __repr__(self) -> str:
        n_obs = int(self.observed_mask.sum())
        n_hold = int(self.holdout_mask.sum())
        return (
            f"TimeSeriesDataset(n={self.n}, observed={n_obs}, "
            f"withheld={n_hold}, rain_missing={int(self.rain_missing_mask.sum())})"
        )
