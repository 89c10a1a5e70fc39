"""Utility functions for latent-ssm."""

from latent_ssm.utils.config import (
    FitConfig,
    ModelConfig,
    SummaryConfig,
    get_config,
    load_config,
    parse_config,
)

__all__ = [
    "FitConfig",
    "ModelConfig",
    "SummaryConfig",
    "get_config",
    "load_config",
    "parse_config",
]
