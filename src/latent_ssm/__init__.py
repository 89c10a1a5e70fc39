"""Bayesian latent-trajectory estimation for two time-series model families.

- RegimeSwitchingMixture: time-varying two-regime mixture of returns
- MultiSourceStateSpace: random-walk mean fused from noisy, missing sources

Both are sampled with a built-in NUTS sampler and reduced to posterior
summaries with convergence diagnostics.
"""

from latent_ssm.data import Measurement, ObservationSeries, ReturnSeries
from latent_ssm.diagnostics import PosteriorSummary, summarize
from latent_ssm.errors import (
    DiagnosticFlag,
    InvalidParameterError,
    LatentSSMError,
    NonFiniteDensityError,
    NonFiniteGradientError,
    ShapeMismatchError,
)
from latent_ssm.fit import FitResult, fit, fit_from_config
from latent_ssm.inference import InferenceResult, SamplerConfig, sample
from latent_ssm.models import (
    LogDensity,
    ModelSpec,
    MultiSourceStateSpace,
    PriorSpec,
    RegimeSwitchingMixture,
)

__version__ = "0.1.0"

__all__ = [
    "DiagnosticFlag",
    "FitResult",
    "InferenceResult",
    "InvalidParameterError",
    "LatentSSMError",
    "LogDensity",
    "Measurement",
    "ModelSpec",
    "MultiSourceStateSpace",
    "NonFiniteDensityError",
    "NonFiniteGradientError",
    "ObservationSeries",
    "PosteriorSummary",
    "PriorSpec",
    "RegimeSwitchingMixture",
    "ReturnSeries",
    "SamplerConfig",
    "ShapeMismatchError",
    "fit",
    "fit_from_config",
    "sample",
    "summarize",
]
