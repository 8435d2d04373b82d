"""ValidationEngine — forecast skill on withheld observations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import numpy as np
import pandas as pd

from streamcast.dataset import TimeSeriesDataset

type ScoringScale = Literal["log", "natural", "both"]


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def rmse(actual: np.ndarray, predicted: np.ndarray) -> float:
    """Root Mean Squared Error.  ``NaN`` for empty input."""
    actual = np.asarray(actual, dtype=np.float64)
    if actual.size == 0:
        return float("nan")
    return float(np.sqrt(np.mean((actual - np.asarray(predicted)) ** 2)))


def r_squared(actual: np.ndarray, predicted: np.ndarray) -> float:
    """Squared Pearson correlation between *actual* and *predicted*.

    Undefined (``NaN``) with fewer than two points or when either side
    has zero variance.
    """
    a = np.asarray(actual, dtype=np.float64)
    p = np.asarray(predicted, dtype=np.float64)
    if a.size < 2:
        return float("nan")
    r = _pearson(a, p)
    return r * r


def taylor_statistics(actual: np.ndarray, predicted: np.ndarray) -> dict[str, float]:
    """Statistics behind a Taylor diagram.

    Returns
    -------
    dict
        ``correlation`` (Pearson), ``sd_ratio`` (predicted sd / observed
        sd) and ``centered_rmsd`` (RMS difference after removing each
        series' mean).  Undefined entries are ``NaN``.
    """
    a = np.asarray(actual, dtype=np.float64)
    p = np.asarray(predicted, dtype=np.float64)
    if a.size < 2:
        nan = float("nan")
        return {"correlation": nan, "sd_ratio": nan, "centered_rmsd": nan}
    sd_a = float(np.std(a))
    sd_p = float(np.std(p))
    centered = (p - p.mean()) - (a - a.mean())
    return {
        "correlation": _pearson(a, p),
        "sd_ratio": sd_p / sd_a if sd_a > 0 else float("nan"),
        "centered_rmsd": float(np.sqrt(np.mean(centered**2))),
    }


def coverage(actual: np.ndarray, lower: np.ndarray, upper: np.ndarray) -> float:
    """Fraction of *actual* inside ``[lower, upper]``."""
    a = np.asarray(actual, dtype=np.float64)
    if a.size == 0:
        return float("nan")
    return float(np.mean((a >= lower) & (a <= upper)))


def _pearson(a: np.ndarray, p: np.ndarray) -> float:
    da = a - a.mean()
    dp = p - p.mean()
    denom = np.sqrt(np.sum(da**2) * np.sum(dp**2))
    if denom == 0:
        return float("nan")
    return float(np.sum(da * dp) / denom)


# ---------------------------------------------------------------------------
# ValidationReport
# ---------------------------------------------------------------------------


@dataclass
class ValidationReport:
    """Scored comparison of forecasts against withheld truth.

    Attributes
    ----------
    metrics
        Two columns, ``metric`` and ``value``.  Log-scale and
        natural-scale metrics carry distinct names.
    residuals
        Per-point observed, predicted and residual values on each scored
        scale, indexed by date.
    """

    metrics: pd.DataFrame
    residuals: pd.DataFrame

    def value(self, metric: str) -> float:
        match = self.metrics.loc[self.metrics["metric"] == metric, "value"]
        if match.empty:
            raise KeyError(metric)
        return float(match.iloc[0])

    def as_dict(self) -> dict[str, float]:
        return dict(zip(self.metrics["metric"], self.metrics["value"].astype(float)))


# ---------------------------------------------------------------------------
# ValidationEngine
# ---------------------------------------------------------------------------


class ValidationEngine:
    """Score a forecast table against withheld observations.

    Parameters
    ----------
    scale : str
        ``"log"``, ``"natural"`` or ``"both"`` (default).  Each scale is
        scored and reported separately.
    taylor : bool
        Include correlation / sd-ratio / centred-RMSD statistics.

    Examples
    --------
    ```python
    report = ValidationEngine().score(forecast, dataset.ground_truth("natural"))
    report.value("rmse_natural")
    ```
    """

    def __init__(self, scale: ScoringScale = "both", *, taylor: bool = True) -> None:
        if scale not in ("log", "natural", "both"):
            raise ValueError(f"Unknown scale: {scale!r}")
        self.scale = scale
        self.taylor = taylor

    @property
    def scales(self) -> tuple[str, ...]:
        return ("log", "natural") if self.scale == "both" else (self.scale,)

    def score(self, forecast: pd.DataFrame, truth: pd.Series) -> ValidationReport:
        """Compare *forecast* medians with *truth* (natural scale).

        Parameters
        ----------
        forecast
            Output of :meth:`PosteriorSummarizer.summarize`; needs
            ``lower/median/upper`` columns.
        truth
            Withheld values on the natural scale, indexed like *forecast*.
            Only points with both a finite truth and a finite prediction
            are scored.
        """
        joined = pd.DataFrame({"observed": truth}).join(
            forecast[["lower", "median", "upper"]], how="inner",
        )
        usable = joined["observed"].notna() & np.isfinite(joined["median"])
        joined = joined[usable & (joined["observed"] > 0)]

        rows: list[tuple[str, float]] = [("n_points", float(len(joined)))]
        residuals = pd.DataFrame(index=joined.index)

        for scale in self.scales:
            if scale == "log":
                obs = np.log(joined["observed"].to_numpy())
                pred = np.log(joined["median"].to_numpy())
                lo = np.log(joined["lower"].to_numpy())
                hi = np.log(joined["upper"].to_numpy())
            else:
                obs = joined["observed"].to_numpy()
                pred = joined["median"].to_numpy()
                lo = joined["lower"].to_numpy()
                hi = joined["upper"].to_numpy()

            residuals[f"observed_{scale}"] = obs
            residuals[f"predicted_{scale}"] = pred
            residuals[f"residual_{scale}"] = obs - pred

            rows.append((f"rmse_{scale}", rmse(obs, pred)))
            rows.append((f"r2_{scale}", r_squared(obs, pred)))
            rows.append((f"coverage_{scale}", coverage(obs, lo, hi)))
            if self.taylor:
                for key, val in taylor_statistics(obs, pred).items():
                    rows.append((f"taylor_{key}_{scale}", val))

        metrics = pd.DataFrame(rows, columns=["metric", "value"])
        return ValidationReport(metrics=metrics, residuals=residuals)

    def score_dataset(
        self, forecast: pd.DataFrame, dataset: TimeSeriesDataset,
    ) -> ValidationReport:
        """Score against the dataset's withheld values."""
        return self.score(forecast, dataset.ground_truth("natural"))
