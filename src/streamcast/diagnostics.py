"""ConvergenceDiagnostics — certify that chains have mixed before summarising."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import pandas as pd
from numpyro.diagnostics import effective_sample_size, gelman_rubin, split_gelman_rubin

from streamcast.engine import PosteriorSamples
from streamcast.specification import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 1.1
DEFAULT_BURN_IN = 1000


def potential_scale_reduction(chains: np.ndarray, *, split: bool = False) -> float:
    """Between/within-chain variance ratio for a ``(chains, draws)`` array.

    Returns ``NaN`` when fewer than two chains or two draws are given.
    """
    arr = np.asarray(chains, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[0] < 2 or arr.shape[1] < (4 if split else 2):
        return float("nan")
    fn = split_gelman_rubin if split else gelman_rubin
    return float(fn(arr))


@dataclass
class ConvergenceReport:
    """Verdict on a multi-chain run.

    Attributes
    ----------
    converged
        ``True`` when every monitored parameter has R-hat below the
        threshold after *burn_in*.
    burn_in
        Draws to drop from the head of every chain.
    r_hat, ess
        Per-parameter potential scale reduction and effective sample size
        over the post-burn-in draws.
    """

    converged: bool
    burn_in: int
    threshold: float
    r_hat: dict[str, float]
    ess: dict[str, float]
    num_chains: int
    num_draws: int
    message: str = ""
    failures: list[str] = field(default_factory=list)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"r_hat": self.r_hat, "ess": self.ess},
        ).rename_axis("parameter")


class ConvergenceDiagnostics:
    """Gelman-Rubin convergence check and burn-in selection.

    Parameters
    ----------
    monitor : sequence of str
        Scalar parameters to check.  At minimum ``tau_obs`` and
        ``tau_add``.
    threshold : float
        Chains are judged converged when R-hat is below this for every
        monitored parameter.
    burn_in : int or ``"adaptive"``
        Fixed number of leading draws to discard, or ``"adaptive"`` to
        pick the smallest prefix after which R-hat stays below threshold.
    split : bool
        Use split-chain R-hat.
    bin_width : int
        Spacing of the candidate burn-in grid in adaptive mode.
    min_window : int
        Fewest post-burn-in draws an adaptive candidate may leave.

    Examples
    --------
    ```python
    report = ConvergenceDiagnostics(burn_in="adaptive").assess(samples)
    if not report.converged:
        samples = engine.extend(samples, 2000)
    ```
    """

    def __init__(
        self,
        monitor: Sequence[str] = ("tau_obs", "tau_add"),
        *,
        threshold: float = DEFAULT_THRESHOLD,
        burn_in: int | Literal["adaptive"] = DEFAULT_BURN_IN,
        split: bool = False,
        bin_width: int = 10,
        min_window: int = 50,
    ) -> None:
        if not monitor:
            raise ConfigurationError("monitor at least one parameter")
        if threshold <= 1.0:
            raise ConfigurationError(f"threshold must be > 1, got {threshold}")
        if burn_in != "adaptive" and (not isinstance(burn_in, int) or burn_in < 0):
            raise ConfigurationError(f"burn_in must be >= 0 or 'adaptive', got {burn_in!r}")
        if bin_width < 1 or min_window < 2:
            raise ConfigurationError("bin_width must be >= 1 and min_window >= 2")
        self.monitor = tuple(monitor)
        self.threshold = threshold
        self.burn_in = burn_in
        self.split = split
        self.bin_width = bin_width
        self.min_window = min_window

    # -- public API --------------------------------------------------------

    def assess(self, samples: PosteriorSamples) -> ConvergenceReport:
        """Return the verdict and the burn-in to apply.

        Non-convergence is logged as a warning and reported, never raised.
        """
        failures = [str(f) for f in samples.failures]
        missing = [m for m in self.monitor if m not in samples.names]
        if samples.num_chains and missing:
            raise ConfigurationError(
                f"cannot monitor {missing}; sampled: {sorted(samples.names)}"
            )
        n_chains, n_draws = samples.num_chains, samples.num_draws

        if n_chains < 2:
            return self._reject(
                0, {}, {}, n_chains, n_draws, failures,
                f"need at least 2 surviving chains, have {n_chains}",
            )

        traces = {m: samples.get(m) for m in self.monitor}
        if self.burn_in == "adaptive":
            burn_in = self.adaptive_burn_in(traces)
            if burn_in is None:
                burn_in = n_draws // 2
                r_hat, ess = self._statistics(traces, burn_in)
                return self._reject(
                    burn_in, r_hat, ess, n_chains, n_draws, failures,
                    "R-hat never settled below threshold",
                )
        else:
            burn_in = self.burn_in
            if n_draws - burn_in < 2:
                return self._reject(
                    burn_in, {}, {}, n_chains, n_draws, failures,
                    f"burn_in={burn_in} leaves fewer than 2 of {n_draws} draws",
                )

        r_hat, ess = self._statistics(traces, burn_in)
        bad = {k: v for k, v in r_hat.items() if not v < self.threshold}
        if bad:
            return self._reject(
                burn_in, r_hat, ess, n_chains, n_draws, failures,
                f"R-hat above {self.threshold}: "
                + ", ".join(f"{k}={v:.3f}" for k, v in bad.items()),
            )

        logger.info(
            "Converged after burn-in %d: %s", burn_in,
            ", ".join(f"{k}={v:.3f}" for k, v in r_hat.items()),
        )
        return ConvergenceReport(
            converged=True,
            burn_in=burn_in,
            threshold=self.threshold,
            r_hat=r_hat,
            ess=ess,
            num_chains=n_chains,
            num_draws=n_draws,
            message="converged",
            failures=failures,
        )

    def adaptive_burn_in(self, traces: dict[str, np.ndarray]) -> int | None:
        """Smallest grid burn-in after which R-hat stays below threshold.

        Candidates are ``0, bin_width, 2*bin_width, ...`` leaving at least
        ``min_window`` draws.  Returns ``None`` if no candidate qualifies.
        """
        n_draws = next(iter(traces.values())).shape[1]
        candidates = list(range(0, n_draws - self.min_window + 1, self.bin_width))
        if not candidates:
            return None
        ok = [
            all(
                potential_scale_reduction(t[:, b:], split=self.split) < self.threshold
                for t in traces.values()
            )
            for b in candidates
        ]
        best = None
        for b, passed in zip(reversed(candidates), reversed(ok)):
            if not passed:
                break
            best = b
        return best

    def trace_r_hat(self, samples: PosteriorSamples, name: str) -> pd.Series:
        """R-hat over growing windows ``[0:end]``, indexed by *end*.

        This is the curve a Gelman plot draws.
        """
        trace = samples.get(name)
        ends = range(self.bin_width, trace.shape[1] + 1, self.bin_width)
        values = [potential_scale_reduction(trace[:, :e], split=self.split) for e in ends]
        return pd.Series(values, index=pd.Index(list(ends), name="iteration"), name=name)

    # -- internal ----------------------------------------------------------

    def _statistics(
        self, traces: dict[str, np.ndarray], burn_in: int,
    ) -> tuple[dict[str, float], dict[str, float]]:
        r_hat = {
            k: potential_scale_reduction(t[:, burn_in:], split=self.split)
            for k, t in traces.items()
        }
        ess = {
            k: float(effective_sample_size(np.asarray(t[:, burn_in:], dtype=np.float64)))
            for k, t in traces.items()
        }
        return r_hat, ess

    def _reject(
        self,
        burn_in: int,
        r_hat: dict[str, float],
        ess: dict[str, float],
        n_chains: int,
        n_draws: int,
        failures: list[str],
        message: str,
    ) -> ConvergenceReport:
        logger.warning("Chains not converged: %s", message)
        return ConvergenceReport(
            converged=False,
            burn_in=burn_in,
            threshold=self.threshold,
            r_hat=r_hat,
            ess=ess,
            num_chains=n_chains,
            num_draws=n_draws,
            message=message,
            failures=failures,
        )
