"""Parameter transforms, stable mixing, and flat parameter layouts.

The sampler works on a flat unconstrained vector. Each block carries the
numpyro bijection for its support (exp for positive parameters, identity
for real ones), so unpacking applies the transform and its log-Jacobian
uniformly.
"""

from __future__ import annotations

import math
from typing import NamedTuple

import jax
import jax.numpy as jnp
import numpy as np
import numpyro.distributions as dist
from numpyro.distributions import constraints

from latent_ssm.errors import ShapeMismatchError
from latent_ssm.models.spec import Constraint

# Smallest gap kept between a regime probability and 0 or 1.
_PROB_EPS = float(np.finfo(np.float32).eps)

_SUPPORTS = {"real": constraints.real, "positive": constraints.positive}


def bijector(constraint: Constraint) -> dist.transforms.Transform:
    """Bijection from the real line onto the support named by ``constraint``."""
    return dist.transforms.biject_to(_SUPPORTS[constraint])


_POSITIVE = bijector("positive")


def to_unconstrained(x):
    """Map a positive value to the real line."""
    return _POSITIVE.inv(x)


def to_constrained(u):
    """Inverse of to_unconstrained."""
    return _POSITIVE(u)


def regime_probability(logit):
    """Logistic transform clipped to the open interval (0, 1)."""
    return jnp.clip(jax.nn.sigmoid(logit), _PROB_EPS, 1.0 - _PROB_EPS)


def log_mix(p, log_a, log_b):
    """log(p * exp(log_a) + (1 - p) * exp(log_b)) without leaving log space."""
    return jnp.logaddexp(jnp.log(p) + log_a, jnp.log1p(-p) + log_b)


def log_mix_logit(logit, log_a, log_b):
    """log_mix with the weight given as a logit, p = sigmoid(logit).

    Uses log_sigmoid(x) and log_sigmoid(-x) = log(1 - sigmoid(x)) so the
    mixing weight never under- or overflows in linear space.
    """
    return jnp.logaddexp(jax.nn.log_sigmoid(logit) + log_a, jax.nn.log_sigmoid(-logit) + log_b)


class Block(NamedTuple):
    """One named block of the flat parameter vector."""

    name: str
    shape: tuple[int, ...]
    constraint: Constraint
    offset: int
    transform: dist.transforms.Transform

    @property
    def size(self) -> int:
        return math.prod(self.shape)


class ParameterLayout:
    """Ordered mapping between named blocks and a flat unconstrained vector."""

    def __init__(self, blocks: list[tuple[str, tuple[int, ...], Constraint]]):
        self.blocks: list[Block] = []
        offset = 0
        for name, shape, constraint in blocks:
            block = Block(name, tuple(shape), constraint, offset, bijector(constraint))
            self.blocks.append(block)
            offset += block.size
        self.size = offset
        self._by_name = {b.name: b for b in self.blocks}

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __getitem__(self, name: str) -> Block:
        return self._by_name[name]

    @property
    def names(self) -> list[str]:
        return [b.name for b in self.blocks]

    def check(self, theta) -> None:
        shape = tuple(np.shape(theta))
        if shape != (self.size,):
            raise ShapeMismatchError(
                f"parameter vector has shape {shape}, layout expects ({self.size},)"
            )

    def unpack(self, theta: jnp.ndarray) -> tuple[dict[str, jnp.ndarray], jnp.ndarray]:
        """Split a flat unconstrained vector into constrained named values.

        Returns:
            (values, log_jacobian): constrained values per block and the
            summed log-Jacobian of the block transforms.
        """
        values = {}
        log_jac = jnp.asarray(0.0)
        for b in self.blocks:
            raw = theta[b.offset : b.offset + b.size].reshape(b.shape)
            value = b.transform(raw)
            values[b.name] = value
            log_jac = log_jac + jnp.sum(b.transform.log_abs_det_jacobian(raw, value))
        return values, log_jac

    def pack(self, values: dict[str, np.ndarray]) -> jnp.ndarray:
        """Inverse of unpack: constrained named values -> flat vector."""
        parts = []
        for b in self.blocks:
            if b.name not in values:
                raise ShapeMismatchError(f"missing value for block {b.name!r}")
            v = jnp.asarray(np.asarray(values[b.name], dtype=float))
            if v.shape != b.shape:
                raise ShapeMismatchError(
                    f"block {b.name!r} has shape {v.shape}, expected {b.shape}"
                )
            parts.append(b.transform.inv(v).reshape(-1))
        return jnp.concatenate(parts) if parts else jnp.zeros(0)
