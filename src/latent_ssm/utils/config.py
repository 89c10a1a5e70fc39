"""Configuration loader for latent_ssm fits."""

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from latent_ssm.errors import InvalidParameterError
from latent_ssm.inference.sampler import SamplerConfig
from latent_ssm.models.spec import (
    ModelSpec,
    MultiSourceStateSpace,
    RegimeSwitchingMixture,
    model_spec_from_dict,
)


@dataclass(frozen=True)
class ModelConfig:
    """Model family plus prior overrides and family options."""

    family: str = MultiSourceStateSpace.family
    priors: dict[str, dict[str, Any]] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)

    def build(self) -> ModelSpec:
        return model_spec_from_dict({"family": self.family, "priors": self.priors, **self.options})


@dataclass(frozen=True)
class SummaryConfig:
    """Posterior summary settings."""

    coverages: tuple[float, ...] = (0.9, 0.95)
    rhat_threshold: float = 1.1
    bfmi_threshold: float = 0.3
    include_incomplete: bool = False

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SummaryConfig":
        unknown = set(d) - set(cls.__dataclass_fields__)
        if unknown:
            raise InvalidParameterError(f"Unknown summary settings: {sorted(unknown)}")
        d = dict(d)
        if "coverages" in d:
            d["coverages"] = tuple(float(c) for c in d["coverages"])
        return cls(**d)


@dataclass(frozen=True)
class FitConfig:
    """Full fit configuration."""

    model: ModelConfig = field(default_factory=ModelConfig)
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)


def _find_config_path() -> Path | None:
    """Find config.yaml by walking up from this file to the project root."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        config_path = parent / "config.yaml"
        if config_path.exists():
            return config_path
    return None


def parse_config(raw: dict[str, Any] | None) -> FitConfig:
    """Build a FitConfig from a parsed YAML mapping; missing keys use defaults."""
    raw = raw or {}
    model_raw = dict(raw.get("model") or {})
    family = model_raw.pop("family", MultiSourceStateSpace.family)
    if family not in (RegimeSwitchingMixture.family, MultiSourceStateSpace.family):
        raise InvalidParameterError(f"Unknown model family {family!r}")
    priors = model_raw.pop("priors", None) or {}

    return FitConfig(
        model=ModelConfig(family=family, priors=priors, options=model_raw),
        sampler=SamplerConfig.from_dict(raw.get("sampler") or {}),
        summary=SummaryConfig.from_dict(raw.get("summary") or {}),
    )


@lru_cache(maxsize=1)
def load_config(path: str | Path | None = None) -> FitConfig:
    """Load and parse the fit configuration.

    Without ``path`` the nearest config.yaml above this package is used;
    when there is none, every setting takes its default. Returns cached
    config on subsequent calls.
    """
    config_path = Path(path) if path is not None else _find_config_path()
    if config_path is None:
        return FitConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    return parse_config(raw)


def get_config() -> FitConfig:
    """Get the fit configuration."""
    return load_config()
