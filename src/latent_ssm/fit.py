"""End-to-end fit: ModelSpec + data -> draws -> PosteriorSummary."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from latent_ssm.data import ObservationSeries, ReturnSeries
from latent_ssm.diagnostics import PosteriorSummary, summarize
from latent_ssm.inference import InferenceResult, SamplerConfig, sample
from latent_ssm.models import LogDensity, ModelSpec
from latent_ssm.utils.config import FitConfig, SummaryConfig

logger = logging.getLogger(__name__)


@dataclass
class FitResult:
    """Raw chains plus their summary for one fit."""

    spec: ModelSpec
    inference: InferenceResult
    summary: PosteriorSummary

    @property
    def is_complete(self) -> bool:
        return self.inference.is_complete

    @property
    def trustworthy(self) -> bool:
        return self.summary.trustworthy


def fit(
    spec: ModelSpec,
    data: ObservationSeries | ReturnSeries,
    sampler_config: SamplerConfig | None = None,
    summary_config: SummaryConfig | None = None,
    stop_event: threading.Event | None = None,
) -> FitResult:
    """Sample the posterior of ``spec`` given ``data`` and summarize it.

    Args:
        spec: RegimeSwitchingMixture or MultiSourceStateSpace.
        data: ReturnSeries for the mixture, ObservationSeries for the
            state-space model.
        sampler_config: Chains, iterations and adaptation targets.
        summary_config: Interval coverages and diagnostic thresholds.
        stop_event: Set from another thread to cancel sampling early.

    Returns:
        FitResult; check ``summary.flags`` before trusting the estimates.

    Raises:
        ShapeMismatchError, InvalidParameterError: spec and data do not fit
            together.
    """
    sampler_config = sampler_config or SamplerConfig()
    summary_config = summary_config or SummaryConfig()

    log_density = LogDensity(spec, data)
    logger.info("Fitting %s on %d steps (%d unconstrained dims)", spec.family, log_density.n_steps, log_density.dim)

    inference = sample(log_density, sampler_config, stop_event=stop_event)
    summary = summarize(
        inference,
        coverages=summary_config.coverages,
        rhat_threshold=summary_config.rhat_threshold,
        bfmi_threshold=summary_config.bfmi_threshold,
        include_incomplete=summary_config.include_incomplete,
    )
    return FitResult(spec=spec, inference=inference, summary=summary)


def fit_from_config(
    data: ObservationSeries | ReturnSeries,
    config: FitConfig,
    stop_event: threading.Event | None = None,
) -> FitResult:
    """fit() with the model, sampler and summary settings of a FitConfig."""
    return fit(
        config.model.build(),
        data,
        sampler_config=config.sampler,
        summary_config=config.summary,
        stop_event=stop_event,
    )
