"""Streamcast — Bayesian state-space forecasting of daily streamflow."""

__version__ = "0.1.0"

from streamcast.utils import (
    DEFAULT_OFFSET,
    lag,
    log1p_transform,
    log_transform,
    seasonal_terms,
)
from streamcast.specification import (
    ConfigurationError,
    GammaPrior,
    PriorSpec,
    ModelSpecification,
)
from streamcast.dataset import TimeSeriesDataset
from streamcast.engine import (
    ChainResult,
    InferenceEngine,
    NumericalFailure,
    PosteriorSamples,
    SamplerConfig,
    SamplingError,
    initial_state,
)
from streamcast.diagnostics import (
    ConvergenceDiagnostics,
    ConvergenceReport,
    potential_scale_reduction,
)
from streamcast.summarizer import (
    PosteriorSummarizer,
    to_log_scale,
    to_natural_scale,
)
from streamcast.validation import (
    ValidationEngine,
    ValidationReport,
    coverage,
    r_squared,
    rmse,
    taylor_statistics,
)
from streamcast.pipeline import ForecastRun, StreamflowForecaster
