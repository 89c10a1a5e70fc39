"""Error taxonomy for model construction and log-density evaluation.

Construction errors are raised as soon as a model spec or data series is
structurally invalid. Evaluation errors are raised by the checked evaluator
entry points; the sampler treats them as rejected proposals except at
initialization. Sampling diagnostics are never exceptions, see
``DiagnosticFlag``.
"""

from enum import StrEnum


class LatentSSMError(Exception):
    """Base class for all latent_ssm errors."""


class InvalidParameterError(LatentSSMError, ValueError):
    """A scale is non-positive or non-finite, or transforms to zero / non-finite."""


class ShapeMismatchError(LatentSSMError, ValueError):
    """Observation, latent or parameter dimensions disagree with the model spec."""


class NonFiniteDensityError(LatentSSMError, FloatingPointError):
    """The log-density is NaN or infinite at the requested point."""


class NonFiniteGradientError(LatentSSMError, FloatingPointError):
    """The log-density gradient has NaN or infinite entries at the requested point."""


class DiagnosticFlag(StrEnum):
    """Recoverable sampling diagnostics surfaced on draws and summaries."""

    DIVERGENCE = "divergence"
    MAX_TREE_DEPTH_EXCEEDED = "max_tree_depth_exceeded"
    HIGH_POTENTIAL_SCALE_REDUCTION = "high_potential_scale_reduction"
    INSUFFICIENT_CHAINS = "insufficient_chains"
    INCOMPLETE_CHAINS = "incomplete_chains"
    FAILED_CHAINS = "failed_chains"
    LOW_BFMI = "low_bfmi"
