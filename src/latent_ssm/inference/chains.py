"""Single-chain driver: initialization, warmup adaptation, sampling.

Each chain is strictly sequential and owns its RNG, adaptation state and
draw buffer. The only things shared between chains are the read-only
LogDensity (spec + data) and its jitted dynamics.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

import jax.numpy as jnp
import numpy as np

from latent_ssm.errors import LatentSSMError
from latent_ssm.inference.adaptation import (
    DualAveraging,
    WelfordEstimator,
    find_reasonable_step_size,
    make_warmup_windows,
)
from latent_ssm.inference.nuts import Hamiltonian, Metric, NUTSKernel

if TYPE_CHECKING:
    from latent_ssm.inference.sampler import SamplerConfig
    from latent_ssm.models.log_density import LogDensity

logger = logging.getLogger(__name__)


class ChainPhase(StrEnum):
    """Lifecycle of one chain."""

    WARMUP = "warmup"  # initial buffer, step size only
    ADAPTING = "adapting"  # mass-matrix windows and terminal buffer
    SAMPLING = "sampling"
    TERMINAL = "terminal"


class ChainStatus(StrEnum):
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


def _frozen_array(x) -> np.ndarray:
    arr = np.array(x, dtype=float, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class Draw:
    """One post-warmup draw with its sampler diagnostics."""

    params: Mapping[str, float]
    latent: Mapping[str, np.ndarray]
    log_density: float
    grad_norm: float
    accepted: bool
    divergent: bool
    max_tree_depth_exceeded: bool
    tree_depth: int
    n_leapfrog: int
    step_size: float
    energy: float
    accept_stat: float


@dataclass
class Chain:
    """Append-only record of one chain's post-warmup draws."""

    chain_id: int
    num_warmup_requested: int
    num_samples_requested: int
    draws: list[Draw] = field(default_factory=list)
    status: ChainStatus = ChainStatus.INCOMPLETE
    phase: ChainPhase = ChainPhase.WARMUP
    num_warmup_completed: int = 0
    step_size: float | None = None
    inverse_mass: np.ndarray | None = None
    error: str | None = None
    stop_reason: str | None = None
    elapsed: float = 0.0

    def __len__(self) -> int:
        return len(self.draws)

    @property
    def num_samples(self) -> int:
        return len(self.draws)

    @property
    def missing_iterations(self) -> int:
        """Requested post-warmup draws this chain did not produce."""
        return self.num_samples_requested - len(self.draws)

    @property
    def num_divergent(self) -> int:
        return sum(d.divergent for d in self.draws)

    @property
    def num_max_tree_depth(self) -> int:
        return sum(d.max_tree_depth_exceeded for d in self.draws)

    def stack(self, name: str) -> np.ndarray:
        """(n_draws, *shape) array of a static parameter or latent trajectory."""
        if not self.draws:
            raise KeyError(f"chain {self.chain_id} has no draws")
        first = self.draws[0]
        if name in first.params:
            return np.array([d.params[name] for d in self.draws])
        if name in first.latent:
            return np.stack([d.latent[name] for d in self.draws])
        raise KeyError(f"unknown quantity {name!r}")

    def energies(self) -> np.ndarray:
        return np.array([d.energy for d in self.draws])


def _stop_reason(stop_event: threading.Event | None, deadline: float | None) -> str | None:
    if stop_event is not None and stop_event.is_set():
        return "stop requested"
    if deadline is not None and time.monotonic() >= deadline:
        return "wall-clock budget exhausted"
    return None


def run_chain(
    log_density: LogDensity,
    config: SamplerConfig,
    chain_id: int = 0,
    seed: int | np.random.SeedSequence | None = None,
    stop_event: threading.Event | None = None,
    deadline: float | None = None,
    hamiltonian: Hamiltonian | None = None,
) -> Chain:
    """Run one chain to completion, cancellation or failure.

    Never raises for sampling problems: an initialization failure marks the
    chain FAILED, a stop signal or expired ``deadline`` (time.monotonic())
    returns the draws so far as INCOMPLETE.

    Args:
        log_density: Target density.
        config: Sampler settings.
        chain_id: Index reported on the chain and in logs.
        seed: Seed or SeedSequence for this chain's RNG.
        stop_event: Set from another thread to stop the chain.
        deadline: Monotonic time after which the chain stops.
        hamiltonian: Jitted dynamics shared between chains; built from
            ``log_density`` when omitted.
    """
    start = time.monotonic()
    rng = np.random.default_rng(seed)
    chain = Chain(
        chain_id=chain_id,
        num_warmup_requested=config.num_warmup,
        num_samples_requested=config.num_samples,
    )
    hamiltonian = hamiltonian or Hamiltonian(log_density.value_and_grad)
    kernel = NUTSKernel(
        hamiltonian,
        max_tree_depth=config.max_tree_depth,
        divergence_threshold=config.divergence_threshold,
    )

    try:
        q = jnp.asarray(log_density.initial_point(rng, config.init_radius))
        value, grad = log_density.evaluate(q)
    except LatentSSMError as exc:
        chain.status = ChainStatus.FAILED
        chain.phase = ChainPhase.TERMINAL
        chain.error = f"initialization failed: {exc}"
        chain.elapsed = time.monotonic() - start
        logger.warning("Chain %d: %s", chain_id, chain.error)
        return chain

    u, g = -value, -jnp.asarray(grad)
    metric = Metric.identity(log_density.dim, dense=config.dense_mass)

    def reasonable_step(init: float) -> float:
        return find_reasonable_step_size(
            hamiltonian.potential_and_grad,
            q,
            kinetic=lambda p: hamiltonian.kinetic(p, metric),
            leapfrog=lambda q_, p, g_, eps: hamiltonian.leapfrog(q_, p, g_, eps, metric)[:4],
            sample_momentum=lambda: metric.sample_momentum(rng),
            init=init,
        )

    step_size = reasonable_step(1.0)
    dual = DualAveraging(step_size, target=config.target_accept_prob)
    welford = WelfordEstimator(log_density.dim, dense=config.dense_mass)
    init_buffer, _, windows = make_warmup_windows(config.num_warmup)
    window_ends = {end for _, end in windows}
    logger.debug(
        "Chain %d: initial step size %.3g, warmup windows %s", chain_id, step_size, windows
    )

    try:
        for i in range(config.num_warmup):
            reason = _stop_reason(stop_event, deadline)
            if reason:
                return _stop(chain, reason, start)
            chain.phase = ChainPhase.WARMUP if i < init_buffer else ChainPhase.ADAPTING

            t = kernel.transition(q, u, g, step_size, metric, rng)
            q, u, g = t.position, -t.log_density, -t.grad
            step_size = dual.update(t.accept_stat)

            if any(s <= i < e for s, e in windows):
                welford.update(np.asarray(q, dtype=float))
            if i + 1 in window_ends:
                metric = Metric(welford.inverse_mass())
                welford.reset()
                step_size = reasonable_step(step_size)
                dual.restart(step_size)
                logger.debug("Chain %d: metric updated at iteration %d", chain_id, i + 1)
            chain.num_warmup_completed = i + 1

        step_size = dual.final() if config.num_warmup else step_size
        chain.step_size = step_size
        chain.inverse_mass = metric.inverse_mass
        chain.phase = ChainPhase.SAMPLING
        logger.info("Chain %d: warmup done, step size %.3g", chain_id, step_size)

        for _ in range(config.num_samples):
            reason = _stop_reason(stop_event, deadline)
            if reason:
                return _stop(chain, reason, start)

            t = kernel.transition(q, u, g, step_size, metric, rng)
            q, u, g = t.position, -t.log_density, -t.grad
            params, latent = log_density.constrain(q)
            chain.draws.append(
                Draw(
                    params=MappingProxyType(params),
                    latent=MappingProxyType({k: _frozen_array(v) for k, v in latent.items()}),
                    log_density=t.log_density,
                    grad_norm=float(jnp.linalg.norm(t.grad)),
                    accepted=t.accepted,
                    divergent=t.divergent,
                    max_tree_depth_exceeded=t.max_tree_depth_exceeded,
                    tree_depth=t.tree_depth,
                    n_leapfrog=t.n_leapfrog,
                    step_size=step_size,
                    energy=t.energy,
                    accept_stat=t.accept_stat,
                )
            )
    except (LatentSSMError, FloatingPointError, np.linalg.LinAlgError) as exc:
        chain.status = ChainStatus.FAILED
        chain.phase = ChainPhase.TERMINAL
        chain.error = f"{type(exc).__name__}: {exc}"
        chain.elapsed = time.monotonic() - start
        logger.warning(
            "Chain %d failed after %d draws: %s", chain_id, len(chain.draws), chain.error
        )
        return chain

    chain.status = ChainStatus.COMPLETED
    chain.phase = ChainPhase.TERMINAL
    chain.elapsed = time.monotonic() - start
    logger.info(
        "Chain %d: %d draws in %.1fs, %d divergent",
        chain_id,
        len(chain.draws),
        chain.elapsed,
        chain.num_divergent,
    )
    return chain


def _stop(chain: Chain, reason: str, start: float) -> Chain:
    chain.status = ChainStatus.INCOMPLETE
    chain.stop_reason = reason
    chain.phase = ChainPhase.TERMINAL
    chain.elapsed = time.monotonic() - start
    logger.warning(
        "Chain %d stopped (%s) with %d/%d draws",
        chain.chain_id,
        reason,
        len(chain.draws),
        chain.num_samples_requested,
    )
    return chain
