"""Calendar and log-scale transforms for streamcast."""

from __future__ import annotations

import numpy as np
import pandas as pd

DEFAULT_OFFSET = 0.01
"""Additive shift applied to streamflow before taking logs."""


def seasonal_terms(
    dates: pd.DatetimeIndex | pd.Series | np.ndarray,
    *,
    leap_aware: bool = False,
) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(sin, cos)`` annual-cycle covariates for *dates*.

    Parameters
    ----------
    dates
        Anything ``pd.DatetimeIndex`` accepts.
    leap_aware : bool
        ``False`` (default) scales day-of-year by a fixed 365 days, which
        drifts the phase slightly in leap years.  ``True`` divides by the
        actual length of each calendar year.

    Examples
    --------
    ```python
    s, c = seasonal_terms(pd.date_range("2024-01-01", periods=3))
    ```
    """
    idx = pd.DatetimeIndex(dates)
    doy = np.asarray(idx.dayofyear, dtype=np.float64)
    if leap_aware:
        year_length = np.where(idx.is_leap_year, 366.0, 365.0)
    else:
        year_length = 365.0
    phase = 2.0 * np.pi * doy / year_length
    return np.sin(phase), np.cos(phase)


def log_transform(values: np.ndarray, *, offset: float = DEFAULT_OFFSET) -> np.ndarray:
    """``log(values + offset)``.

    The shift is applied to every value so zero flow stays below any
    positive flow.  ``NaN`` stays ``NaN`` (missing).  Raises
    ``ValueError`` if a present value is still non-finite after the shift.

    Examples
    --------
    ```python
    log_transform(np.array([0.99, 0.0, np.nan]))  # [0.0, log(0.01), nan]
    ```
    """
    arr = np.asarray(values, dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore"):
        out = np.log(arr + offset)
    _check_finite(arr, out, "log")
    return out


def log1p_transform(values: np.ndarray) -> np.ndarray:
    """``log1p`` of *values*; zero rainfall maps to zero."""
    arr = np.asarray(values, dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore"):
        out = np.log1p(arr)
    _check_finite(arr, out, "log1p")
    return out


def lag(values: np.ndarray, periods: int) -> np.ndarray:
    """Shift *values* forward by *periods*, padding the head with ``NaN``."""
    if periods < 0:
        raise ValueError(f"periods must be >= 0, got {periods}")
    arr = np.asarray(values, dtype=np.float64)
    if periods == 0:
        return arr.copy()
    out = np.full_like(arr, np.nan)
    if periods < len(arr):
        out[periods:] = arr[: len(arr) - periods]
    return out


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _check_finite(raw: np.ndarray, transformed: np.ndarray, name: str) -> None:
    bad = ~np.isnan(raw) & ~np.isfinite(transformed)
    if bad.any():
        first = int(np.flatnonzero(bad)[0])
        raise ValueError(
            f"{name} transform produced a non-finite value at position "
            f"{first} (input {raw[first]!r})"
        )
