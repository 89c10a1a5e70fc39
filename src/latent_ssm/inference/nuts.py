"""No-U-Turn sampler kernel with a Euclidean metric.

Target density pi(q) ~ exp(log_density(q)) on the unconstrained space.
Potential U(q) = -log_density(q); Hamiltonian H(q, p) = U(q) + K(p) with
K(p) = 0.5 p^T M^{-1} p, where M^{-1} is the (diagonal or dense) inverse
mass matrix estimated during warmup.

One transition draws p ~ N(0, M), then doubles a leapfrog trajectory
forward or backward in time until it makes a U-turn, diverges, or reaches
the maximum tree depth. The next state is drawn from the trajectory with
multinomial weights exp(-(H - H0)): uniformly-weighted within each subtree,
biased toward the newer subtree when merging at the top level (Betancourt
2017, Stan).

Divergence: a leapfrog step whose energy error H - H0 exceeds
``divergence_threshold``, or whose energy / gradient is non-finite. The
subtree containing it is discarded, the trajectory stops there and the
transition is flagged.

The leapfrog step itself is a jitted JAX function; the tree recursion is
plain Python, like the integrator in ``hmc_step``.

References:
    Hoffman & Gelman (2014). The No-U-Turn Sampler. JMLR 15.
    Betancourt (2017). A Conceptual Introduction to Hamiltonian Monte Carlo.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, NamedTuple

import jax
import jax.numpy as jnp
import numpy as np


class Transition(NamedTuple):
    """Outcome of one NUTS transition."""

    position: jnp.ndarray
    log_density: float
    grad: jnp.ndarray
    energy: float
    accept_stat: float
    tree_depth: int
    n_leapfrog: int
    divergent: bool
    max_tree_depth_exceeded: bool
    accepted: bool


class Metric:
    """Euclidean metric defined by the inverse mass matrix.

    ``inverse_mass`` is a (D,) vector for a diagonal metric or a (D, D)
    positive-definite matrix for a dense one.
    """

    def __init__(self, inverse_mass: np.ndarray):
        inverse_mass = np.asarray(inverse_mass, dtype=float)
        self.dense = inverse_mass.ndim == 2
        self.inverse_mass = inverse_mass
        self.inverse_mass_jnp = jnp.asarray(inverse_mass)
        if self.dense:
            chol = np.linalg.cholesky(inverse_mass)
            # p = L^{-T} z has covariance (L L^T)^{-1} = M.
            self._momentum_map = np.linalg.inv(chol).T
        else:
            self._momentum_scale = 1.0 / np.sqrt(inverse_mass)

    @classmethod
    def identity(cls, dim: int, dense: bool = False) -> Metric:
        return cls(np.eye(dim) if dense else np.ones(dim))

    @property
    def dim(self) -> int:
        return self.inverse_mass.shape[0]

    def sample_momentum(self, rng: np.random.Generator) -> jnp.ndarray:
        z = rng.standard_normal(self.dim)
        if self.dense:
            return jnp.asarray(self._momentum_map @ z)
        return jnp.asarray(self._momentum_scale * z)


def _velocity(p, inverse_mass):
    if inverse_mass.ndim == 2:
        return inverse_mass @ p
    return inverse_mass * p


def _kinetic(p, inverse_mass):
    return 0.5 * jnp.dot(p, _velocity(p, inverse_mass))


class Hamiltonian:
    """Jitted potential, leapfrog and U-turn check for one log-density."""

    def __init__(self, value_and_grad: Callable):
        def potential_and_grad(q):
            value, grad = value_and_grad(q)
            return -value, -grad

        def leapfrog(q, p, grad_u, step_size, inverse_mass):
            p_half = p - 0.5 * step_size * grad_u
            q_new = q + step_size * _velocity(p_half, inverse_mass)
            u_new, g_new = potential_and_grad(q_new)
            p_new = p_half - 0.5 * step_size * g_new
            return q_new, p_new, u_new, g_new, _kinetic(p_new, inverse_mass)

        def is_turning(q_minus, q_plus, p_minus, p_plus, inverse_mass):
            dq = q_plus - q_minus
            return (jnp.dot(dq, _velocity(p_minus, inverse_mass)) < 0) | (
                jnp.dot(dq, _velocity(p_plus, inverse_mass)) < 0
            )

        self.potential_and_grad = jax.jit(potential_and_grad)
        self._leapfrog = jax.jit(leapfrog)
        self._kinetic = jax.jit(_kinetic)
        self._is_turning = jax.jit(is_turning)

    def leapfrog(self, q, p, grad_u, step_size: float, metric: Metric):
        return self._leapfrog(q, p, grad_u, step_size, metric.inverse_mass_jnp)

    def kinetic(self, p, metric: Metric) -> float:
        return float(self._kinetic(p, metric.inverse_mass_jnp))

    def is_turning(self, q_minus, q_plus, p_minus, p_plus, metric: Metric) -> bool:
        return bool(self._is_turning(q_minus, q_plus, p_minus, p_plus, metric.inverse_mass_jnp))


@dataclass
class _Tree:
    q_minus: jnp.ndarray
    p_minus: jnp.ndarray
    g_minus: jnp.ndarray
    q_plus: jnp.ndarray
    p_plus: jnp.ndarray
    g_plus: jnp.ndarray
    q_prop: jnp.ndarray
    u_prop: float
    g_prop: jnp.ndarray
    energy_prop: float
    log_weight: float
    turning: bool
    diverging: bool
    sum_accept: float
    n_leapfrog: int


def _logaddexp(a: float, b: float) -> float:
    if a == -math.inf:
        return b
    if b == -math.inf:
        return a
    hi = max(a, b)
    return hi + math.log1p(math.exp(-abs(a - b)))


class NUTSKernel:
    """Multinomial NUTS transitions for one Hamiltonian.

    Args:
        hamiltonian: Jitted dynamics for the target.
        max_tree_depth: Maximum number of trajectory doublings.
        divergence_threshold: Energy error above which a step diverges.
    """

    def __init__(
        self,
        hamiltonian: Hamiltonian,
        max_tree_depth: int = 10,
        divergence_threshold: float = 1000.0,
    ):
        self.hamiltonian = hamiltonian
        self.max_tree_depth = max_tree_depth
        self.divergence_threshold = divergence_threshold

    def _leaf(self, q, p, g, direction, step_size, metric, H0) -> _Tree:
        q1, p1, u1, g1, k1 = self.hamiltonian.leapfrog(q, p, g, direction * step_size, metric)
        u1, k1 = float(u1), float(k1)
        H1 = u1 + k1
        finite = math.isfinite(H1) and bool(jnp.all(jnp.isfinite(g1)))
        if not finite:
            return _Tree(
                q1, p1, g1, q1, p1, g1, q1, u1, g1, H1,
                log_weight=-math.inf, turning=False, diverging=True, sum_accept=0.0, n_leapfrog=1,
            )
        delta = H1 - H0
        return _Tree(
            q1, p1, g1, q1, p1, g1, q1, u1, g1, H1,
            log_weight=-delta,
            turning=False,
            diverging=delta > self.divergence_threshold,
            sum_accept=min(1.0, math.exp(-delta)) if delta > -700 else 1.0,
            n_leapfrog=1,
        )

    def _build_tree(self, q, p, g, direction, depth, step_size, metric, H0, rng) -> _Tree:
        if depth == 0:
            return self._leaf(q, p, g, direction, step_size, metric, H0)

        first = self._build_tree(q, p, g, direction, depth - 1, step_size, metric, H0, rng)
        if first.turning or first.diverging:
            return first

        if direction > 0:
            second = self._build_tree(
                first.q_plus, first.p_plus, first.g_plus, direction, depth - 1, step_size, metric, H0, rng
            )
            q_minus, p_minus, g_minus = first.q_minus, first.p_minus, first.g_minus
            q_plus, p_plus, g_plus = second.q_plus, second.p_plus, second.g_plus
        else:
            second = self._build_tree(
                first.q_minus, first.p_minus, first.g_minus, direction, depth - 1, step_size, metric, H0, rng
            )
            q_minus, p_minus, g_minus = second.q_minus, second.p_minus, second.g_minus
            q_plus, p_plus, g_plus = first.q_plus, first.p_plus, first.g_plus

        tree = _Tree(
            q_minus, p_minus, g_minus, q_plus, p_plus, g_plus,
            first.q_prop, first.u_prop, first.g_prop, first.energy_prop,
            log_weight=_logaddexp(first.log_weight, second.log_weight),
            turning=second.turning,
            diverging=second.diverging,
            sum_accept=first.sum_accept + second.sum_accept,
            n_leapfrog=first.n_leapfrog + second.n_leapfrog,
        )
        if second.turning or second.diverging:
            return tree

        # Uniform multinomial choice between the two halves.
        if tree.log_weight > -math.inf and math.log(rng.uniform()) < second.log_weight - tree.log_weight:
            tree.q_prop, tree.u_prop, tree.g_prop, tree.energy_prop = (
                second.q_prop, second.u_prop, second.g_prop, second.energy_prop
            )
        tree.turning = self.hamiltonian.is_turning(q_minus, q_plus, p_minus, p_plus, metric)
        return tree

    def transition(
        self,
        q0: jnp.ndarray,
        u0: float,
        g0: jnp.ndarray,
        step_size: float,
        metric: Metric,
        rng: np.random.Generator,
    ) -> Transition:
        """Run one NUTS transition from (q0, U(q0), grad U(q0))."""
        p0 = metric.sample_momentum(rng)
        H0 = u0 + self.hamiltonian.kinetic(p0, metric)

        q_minus = q_plus = q0
        p_minus = p_plus = p0
        g_minus = g_plus = g0
        q_prop, u_prop, g_prop, energy_prop = q0, u0, g0, H0
        log_weight = 0.0
        sum_accept, n_leapfrog = 0.0, 0
        divergent = False
        turning = False
        depth = 0

        while depth < self.max_tree_depth:
            direction = 1 if rng.uniform() < 0.5 else -1
            if direction > 0:
                tree = self._build_tree(q_plus, p_plus, g_plus, 1, depth, step_size, metric, H0, rng)
                q_plus, p_plus, g_plus = tree.q_plus, tree.p_plus, tree.g_plus
            else:
                tree = self._build_tree(q_minus, p_minus, g_minus, -1, depth, step_size, metric, H0, rng)
                q_minus, p_minus, g_minus = tree.q_minus, tree.p_minus, tree.g_minus
            depth += 1
            sum_accept += tree.sum_accept
            n_leapfrog += tree.n_leapfrog

            if tree.diverging:
                divergent = True
                break
            if tree.turning:
                turning = True
                break

            # Biased progressive sampling toward the new subtree.
            if math.log(rng.uniform()) < tree.log_weight - log_weight:
                q_prop, u_prop, g_prop, energy_prop = tree.q_prop, tree.u_prop, tree.g_prop, tree.energy_prop
            log_weight = _logaddexp(log_weight, tree.log_weight)

            if self.hamiltonian.is_turning(q_minus, q_plus, p_minus, p_plus, metric):
                turning = True
                break

        return Transition(
            position=q_prop,
            log_density=-float(u_prop),
            grad=-g_prop,
            energy=float(energy_prop),
            accept_stat=sum_accept / max(n_leapfrog, 1),
            tree_depth=depth,
            n_leapfrog=n_leapfrog,
            divergent=divergent,
            max_tree_depth_exceeded=(depth >= self.max_tree_depth and not (turning or divergent)),
            accepted=q_prop is not q0,
        )
