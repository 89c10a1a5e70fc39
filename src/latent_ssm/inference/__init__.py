"""Gradient-based MCMC for the latent_ssm model families.

A self-contained multinomial NUTS sampler (Hoffman & Gelman 2014) with
Stan-style warmup: dual-averaging step size and windowed diagonal or dense
mass-matrix estimation. Chains run independently in worker threads and can
be cancelled; partial chains are returned, never dropped.
"""

from latent_ssm.inference.adaptation import (
    DualAveraging,
    WelfordEstimator,
    find_reasonable_step_size,
    make_warmup_windows,
)
from latent_ssm.inference.chains import Chain, ChainPhase, ChainStatus, Draw, run_chain
from latent_ssm.inference.nuts import Hamiltonian, Metric, NUTSKernel, Transition
from latent_ssm.inference.sampler import InferenceResult, SamplerConfig, sample

__all__ = [
    # Adaptation
    "DualAveraging",
    "WelfordEstimator",
    "find_reasonable_step_size",
    "make_warmup_windows",
    # Kernel
    "Hamiltonian",
    "Metric",
    "NUTSKernel",
    "Transition",
    # Chains
    "Chain",
    "ChainPhase",
    "ChainStatus",
    "Draw",
    "run_chain",
    # Sampler
    "InferenceResult",
    "SamplerConfig",
    "sample",
]
