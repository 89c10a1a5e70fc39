"""Model specifications, log-density evaluation and simulators.

Two closed model families share one evaluator:
- RegimeSwitchingMixture: two-regime return mixture driven by a latent AR(1)
  logit with an external-information term
- MultiSourceStateSpace: random-walk latent mean observed through partially
  pooled, possibly missing per-source estimates
"""

from latent_ssm.models.log_density import LogDensity
from latent_ssm.models.simulate import (
    DEFAULT_MIXTURE_TRUTH,
    SimulatedMixture,
    SimulatedStateSpace,
    simulate_multi_source,
    simulate_regime_switching,
)
from latent_ssm.models.spec import (
    ModelSpec,
    MultiSourceStateSpace,
    PriorSpec,
    RegimeSwitchingMixture,
    model_spec_from_dict,
)
from latent_ssm.models.transforms import (
    ParameterLayout,
    bijector,
    log_mix,
    log_mix_logit,
    regime_probability,
    to_constrained,
    to_unconstrained,
)

__all__ = [
    # Specs
    "ModelSpec",
    "MultiSourceStateSpace",
    "PriorSpec",
    "RegimeSwitchingMixture",
    "model_spec_from_dict",
    # Evaluation
    "LogDensity",
    "ParameterLayout",
    "bijector",
    "log_mix",
    "log_mix_logit",
    "regime_probability",
    "to_constrained",
    "to_unconstrained",
    # Simulation
    "DEFAULT_MIXTURE_TRUTH",
    "SimulatedMixture",
    "SimulatedStateSpace",
    "simulate_multi_source",
    "simulate_regime_switching",
]
