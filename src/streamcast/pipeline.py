"""StreamflowForecaster — fit, certify, summarise and score in one call."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from streamcast.dataset import TimeSeriesDataset
from streamcast.diagnostics import ConvergenceDiagnostics, ConvergenceReport
from streamcast.engine import InferenceEngine, PosteriorSamples, SamplerConfig
from streamcast.specification import ConfigurationError, ModelSpecification
from streamcast.summarizer import PosteriorSummarizer
from streamcast.validation import ValidationEngine, ValidationReport

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ForecastRun
# ---------------------------------------------------------------------------


@dataclass
class ForecastRun:
    """Everything one pipeline run produces.

    Attributes
    ----------
    forecast
        Per-day credible envelope, indexed by date.  ``None`` when the
        chains were not certified as converged.
    parameters
        Scalar-parameter table (mean, sd, quantiles, n_eff, r_hat).
    rain
        Imputed rainfall at missing positions.
    convergence
        Verdict from :class:`ConvergenceDiagnostics`.
    validation
        Scores on the withheld values, or ``None`` without a holdout.
    samples
        The raw multi-chain draws.
    run_config
        JSON-serialisable record of the settings used.
    """

    forecast: pd.DataFrame | None
    parameters: pd.DataFrame | None
    rain: pd.DataFrame | None
    convergence: ConvergenceReport
    validation: ValidationReport | None
    samples: PosteriorSamples
    run_config: dict[str, Any] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.convergence.converged

    def __repr__(self) -> str:
        scored = "scored" if self.validation is not None else "unscored"
        return (
            f"ForecastRun({self.samples.spec.variant}, "
            f"converged={self.converged}, burn_in={self.convergence.burn_in}, {scored})"
        )


# ---------------------------------------------------------------------------
# StreamflowForecaster
# ---------------------------------------------------------------------------


class StreamflowForecaster:
    """Run the full fit → assess → summarise → validate sequence.

    Parameters
    ----------
    spec
        Model structure and priors.
    sampler
        Chain settings for :class:`InferenceEngine`.
    diagnostics
        Convergence checker.  Defaults to fixed burn-in of 1000 draws.
    summarizer
        Quantile settings for the forecast table.
    validator
        Scorer for withheld observations.

    Examples
    --------
    ```python
    forecaster = StreamflowForecaster(
        ModelSpecification.full(),
        SamplerConfig(num_iterations=3000),
        ConvergenceDiagnostics(burn_in="adaptive"),
    )
    result = forecaster.run(dataset.with_holdout(cutoff="2021-06-30"))
    print(result.validation.metrics)
    ```
    """

    def __init__(
        self,
        spec: ModelSpecification,
        sampler: SamplerConfig | None = None,
        diagnostics: ConvergenceDiagnostics | None = None,
        summarizer: PosteriorSummarizer | None = None,
        validator: ValidationEngine | None = None,
    ) -> None:
        self.spec = spec
        self.sampler = sampler or SamplerConfig()
        self.diagnostics = diagnostics or ConvergenceDiagnostics()
        self.summarizer = summarizer or PosteriorSummarizer()
        self.validator = validator or ValidationEngine()
        self.engine = InferenceEngine(spec, self.sampler)

    def run(
        self,
        dataset: TimeSeriesDataset,
        *,
        extend_until_converged: int = 0,
        extension_iterations: int | None = None,
        summarize_unconverged: bool = False,
        init_values: list[dict[str, Any]] | None = None,
        progress_callback: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> ForecastRun:
        """Fit *dataset* and return the summarised, scored result.

        Parameters
        ----------
        dataset
            Fitting data, optionally with withheld truth.
        extend_until_converged
            How many times to extend sampling when the verdict is a
            rejection.  ``0`` never extends.
        extension_iterations
            Draws added per extension.  Defaults to
            ``sampler.num_iterations``.
        summarize_unconverged
            Summarise and score even when the chains were not certified.
            Off by default so unconverged draws never reach the forecast
            table silently.
        init_values
            Per-chain initial-value overrides.
        progress_callback
            Called as ``callback(event, payload)`` after each stage.

        Returns
        -------
        ForecastRun
        """
        import streamcast

        if extend_until_converged < 0:
            raise ConfigurationError("extend_until_converged must be >= 0")
        t0 = time.time()

        samples = self.engine.run(dataset, init_values=init_values)
        self._notify(progress_callback, "sampled", {"draws": samples.num_draws})
        report = self.diagnostics.assess(samples)

        extensions = 0
        step = extension_iterations or self.sampler.num_iterations
        while not report.converged and extensions < extend_until_converged:
            extensions += 1
            logger.info(
                "Extension %d/%d: adding %d iterations",
                extensions, extend_until_converged, step,
            )
            samples = self.engine.extend(samples, step)
            report = self.diagnostics.assess(samples)
            self._notify(
                progress_callback, "extended",
                {"extension": extensions, "draws": samples.num_draws,
                 "converged": report.converged},
            )
        self._notify(progress_callback, "assessed", {"converged": report.converged})

        forecast = parameters = rain = None
        validation = None
        if report.converged or (summarize_unconverged and samples.num_draws > report.burn_in):
            forecast = self.summarizer.summarize(samples, report.burn_in)
            parameters = self.summarizer.summarize_parameters(samples, report.burn_in)
            rain = self.summarizer.summarize_rain(samples, report.burn_in)
            if dataset.has_holdout:
                validation = self.validator.score_dataset(forecast, dataset)
                self._notify(progress_callback, "validated", validation.as_dict())
        else:
            logger.warning("Skipping summaries: %s", report.message)

        elapsed = time.time() - t0
        run_config: dict[str, Any] = {
            "version": streamcast.__version__,
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "elapsed_seconds": round(elapsed, 1),
            "variant": self.spec.variant,
            "spec": self.spec.model_dump(mode="json"),
            "sampler": self.sampler.model_dump(mode="json"),
            "diagnostics": {
                "monitor": list(self.diagnostics.monitor),
                "threshold": self.diagnostics.threshold,
                "burn_in": self.diagnostics.burn_in,
                "split": self.diagnostics.split,
            },
            "quantiles": list(self.summarizer.quantiles),
            "run_kwargs": {
                "extend_until_converged": extend_until_converged,
                "extension_iterations": step,
                "summarize_unconverged": summarize_unconverged,
                "extensions_used": extensions,
            },
            "data_info": {
                "n": dataset.n,
                "start": str(dataset.dates[0].date()),
                "end": str(dataset.dates[-1].date()),
                "n_observed": int(dataset.observed_mask.sum()),
                "n_rain_missing": int(dataset.rain_missing_mask.sum()),
                "n_holdout": int(dataset.holdout_mask.sum()),
            },
            "failed_chains": [str(f) for f in samples.failures],
        }
        logger.info("Run finished in %.1fs (%s)", elapsed, report.message)

        return ForecastRun(
            forecast=forecast,
            parameters=parameters,
            rain=rain,
            convergence=report,
            validation=validation,
            samples=samples,
            run_config=run_config,
        )

    @staticmethod
    def _notify(
        callback: Callable[[str, dict[str, Any]], None] | None,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        if callback is not None:
            callback(event, payload)
