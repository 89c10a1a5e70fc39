"""Model specifications for the two supported model families.

A ModelSpec is an immutable description of a model's latent transition law,
observation / mixture law and the priors of every static parameter. It is
built once per fit and shared read-only by every chain.

Families:
- RegimeSwitchingMixture: a two-regime mixture for a return series whose
  regime-1 probability is the logistic transform of a latent AR(1) logit.
- MultiSourceStateSpace: a random-walk latent mean observed through many
  sources, with per-(step, source) shrunken estimates pooled around the
  latent mean (8-schools partial pooling nested in a time series).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Literal

import jax.numpy as jnp
import numpyro.distributions as dist

from latent_ssm.errors import InvalidParameterError

Constraint = Literal["real", "positive"]
PriorFamily = Literal["normal", "half_normal", "half_cauchy"]

_PRIOR_FAMILIES = ("normal", "half_normal", "half_cauchy")


@dataclass(frozen=True)
class PriorSpec:
    """A prior distribution with fixed hyperparameters.

    Half families are supported on the positive half-line and take no
    ``loc`` (it must stay 0). Their log-density is -inf below zero.
    """

    family: PriorFamily
    loc: float = 0.0
    scale: float = 1.0

    def __post_init__(self):
        if self.family not in _PRIOR_FAMILIES:
            raise InvalidParameterError(
                f"Unknown prior family {self.family!r}; use one of {_PRIOR_FAMILIES}"
            )
        if not (math.isfinite(self.scale) and self.scale > 0):
            raise InvalidParameterError(f"Prior scale must be positive and finite, got {self.scale}")
        if not math.isfinite(self.loc):
            raise InvalidParameterError(f"Prior loc must be finite, got {self.loc}")
        if self.family != "normal" and self.loc != 0.0:
            raise InvalidParameterError(
                f"{self.family} prior is centered at 0; got loc={self.loc}"
            )

    @classmethod
    def normal(cls, loc: float, scale: float) -> PriorSpec:
        return cls("normal", loc, scale)

    @classmethod
    def half_normal(cls, scale: float) -> PriorSpec:
        return cls("half_normal", 0.0, scale)

    @classmethod
    def half_cauchy(cls, scale: float) -> PriorSpec:
        return cls("half_cauchy", 0.0, scale)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PriorSpec:
        return cls(
            family=raw["family"],
            loc=float(raw.get("loc", 0.0)),
            scale=float(raw.get("scale", 1.0)),
        )

    def to_distribution(self) -> dist.Distribution:
        if self.family == "normal":
            return dist.Normal(self.loc, self.scale)
        if self.family == "half_normal":
            return dist.HalfNormal(self.scale)
        return dist.HalfCauchy(self.scale)

    def log_prob(self, x: jnp.ndarray) -> jnp.ndarray:
        lp = self.to_distribution().log_prob(x)
        if self.family == "normal":
            return lp
        return jnp.where(x >= 0, lp, -jnp.inf)


@dataclass(frozen=True)
class RegimeSwitchingMixture:
    """Time-varying two-regime mixture for a return series.

    Observation law for t >= 2 (1-based):
        regime 1: r_t ~ N(mu1, sigma1)
        regime 2: r_t ~ N(mu2 + rho * (r_{t-1} - mu2), sigma2)
        p(r_t) = sigmoid(xi_t) * regime1 + (1 - sigmoid(xi_t)) * regime2

    Latent logit:
        xi_1 ~ initial_logit
        xi_t ~ N(alpha_xi + phi_xi * xi_{t-1} + gamma * x_t, sigma_xi)

    where x_t is the external-information covariate.
    """

    family: ClassVar[str] = "regime_switching_mixture"
    trajectory_names: ClassVar[tuple[str, ...]] = ("xi", "regime_prob")

    mu1: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 0.05))
    sigma1: PriorSpec = field(default_factory=lambda: PriorSpec.half_cauchy(0.05))
    mu2: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 0.05))
    sigma2: PriorSpec = field(default_factory=lambda: PriorSpec.half_cauchy(0.05))
    rho: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 1.0))
    alpha_xi: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 1.0))
    phi_xi: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 1.0))
    sigma_xi: PriorSpec = field(default_factory=lambda: PriorSpec.half_cauchy(0.5))
    gamma: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 1.0))
    initial_logit: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 2.0))

    def __post_init__(self):
        for f in fields(self):
            if not isinstance(getattr(self, f.name), PriorSpec):
                raise InvalidParameterError(f"{f.name} must be a PriorSpec")

    @staticmethod
    def parameters() -> tuple[tuple[str, Constraint], ...]:
        """Static parameters in layout order with their constraints."""
        return (
            ("mu1", "real"),
            ("sigma1", "positive"),
            ("mu2", "real"),
            ("sigma2", "positive"),
            ("rho", "real"),
            ("alpha_xi", "real"),
            ("phi_xi", "real"),
            ("sigma_xi", "positive"),
            ("gamma", "real"),
        )

    def log_prior(self, params: dict[str, jnp.ndarray], latent: dict[str, jnp.ndarray]) -> jnp.ndarray:
        """Total log-prior of the static parameters and the initial logit."""
        total = jnp.asarray(0.0)
        for name, _ in self.parameters():
            total = total + getattr(self, name).log_prob(params[name])
        return total + self.initial_logit.log_prob(latent["xi"][0])


@dataclass(frozen=True)
class MultiSourceStateSpace:
    """Random-walk latent mean fused from many noisy, irregular sources.

    Latent mean:
        mu_1 ~ initial_state
        mu_t ~ N(mu_{t-1}, innovation_scale)

    For each (t, s) with a present observation y_ts (known scale se_ts):
        theta_ts ~ N(mu_t, tau)
        y_ts ~ N(theta_ts, se_ts)

    For a missing (t, s) slot, theta_ts ~ missing_prior and no observation
    term is added.

    ``innovation_scale`` is a fixed constant; estimating it alongside tau
    makes the two weakly identified against each other.
    """

    family: ClassVar[str] = "multi_source_state_space"
    trajectory_names: ClassVar[tuple[str, ...]] = ("mu",)

    innovation_scale: float = 0.25
    tau: PriorSpec = field(default_factory=lambda: PriorSpec.half_cauchy(5.0))
    initial_state: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 100.0))
    missing_prior: PriorSpec = field(default_factory=lambda: PriorSpec.normal(0.0, 1.0))
    end_anchor: PriorSpec | None = None
    parameterization: Literal["noncentered", "centered"] = "noncentered"
    sources: tuple[str, ...] | None = None

    def __post_init__(self):
        if not (math.isfinite(self.innovation_scale) and self.innovation_scale > 0):
            raise InvalidParameterError(
                f"innovation_scale must be positive and finite, got {self.innovation_scale}"
            )
        if self.parameterization not in ("noncentered", "centered"):
            raise InvalidParameterError(
                f"Unknown parameterization {self.parameterization!r}; "
                "use 'noncentered' or 'centered'"
            )
        if self.end_anchor is not None and self.end_anchor.family != "normal":
            raise InvalidParameterError("end_anchor must be a normal prior")
        if self.initial_state.family != "normal":
            raise InvalidParameterError("initial_state must be a normal prior")
        if self.sources is not None:
            object.__setattr__(self, "sources", tuple(self.sources))

    @staticmethod
    def parameters() -> tuple[tuple[str, Constraint], ...]:
        return (("tau", "positive"),)

    def log_prior(self, params: dict[str, jnp.ndarray], latent: dict[str, jnp.ndarray]) -> jnp.ndarray:
        """Log-prior of tau, the initial latent mean and the optional end anchor."""
        mu = latent["mu"]
        total = self.tau.log_prob(params["tau"]) + self.initial_state.log_prob(mu[0])
        if self.end_anchor is not None:
            total = total + self.end_anchor.log_prob(mu[-1])
        return total


ModelSpec = RegimeSwitchingMixture | MultiSourceStateSpace

_FAMILIES: dict[str, type[RegimeSwitchingMixture] | type[MultiSourceStateSpace]] = {
    RegimeSwitchingMixture.family: RegimeSwitchingMixture,
    MultiSourceStateSpace.family: MultiSourceStateSpace,
}


def model_spec_from_dict(raw: dict[str, Any]) -> ModelSpec:
    """Build a ModelSpec from a config mapping.

    Example:
        {"family": "multi_source_state_space",
         "innovation_scale": 0.25,
         "priors": {"tau": {"family": "half_cauchy", "scale": 5.0}}}
    """
    raw = dict(raw)
    family = raw.pop("family")
    if family not in _FAMILIES:
        raise InvalidParameterError(f"Unknown model family {family!r}; use one of {sorted(_FAMILIES)}")
    cls = _FAMILIES[family]

    kwargs: dict[str, Any] = {
        name: PriorSpec.from_dict(prior) for name, prior in raw.pop("priors", {}).items()
    }
    if "sources" in raw and raw["sources"] is not None:
        raw["sources"] = tuple(raw["sources"])
    if isinstance(raw.get("end_anchor"), dict):
        raw["end_anchor"] = PriorSpec.from_dict(raw["end_anchor"])
    kwargs.update(raw)

    known = {f.name for f in fields(cls)}
    unknown = set(kwargs) - known
    if unknown:
        raise InvalidParameterError(f"Unknown fields for {family}: {sorted(unknown)}")
    return cls(**kwargs)
