"""Posterior summaries and MCMC diagnostics."""

from latent_ssm.diagnostics.schemas import (
    BLOCKING_FLAGS,
    ChainDiagnostic,
    EnergyDiagnostics,
    FlagReport,
    Interval,
    ParameterSummary,
    PosteriorSummary,
    SamplerDiagnostics,
    TrajectoryBand,
    TrajectorySummary,
)
from latent_ssm.diagnostics.summarizer import bfmi, format_summary, summarize

__all__ = [
    "BLOCKING_FLAGS",
    "ChainDiagnostic",
    "EnergyDiagnostics",
    "FlagReport",
    "Interval",
    "ParameterSummary",
    "PosteriorSummary",
    "SamplerDiagnostics",
    "TrajectoryBand",
    "TrajectorySummary",
    "bfmi",
    "format_summary",
    "summarize",
]
