"""Multi-chain NUTS sampling over a LogDensity.

Chains are independent workers in a ThreadPoolExecutor; the jitted
log-density releases the GIL inside XLA, so threads run the gradient work
concurrently. A failing chain is recorded and never aborts its siblings.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import numpy as np

from latent_ssm.errors import InvalidParameterError
from latent_ssm.inference.chains import Chain, ChainPhase, ChainStatus, run_chain
from latent_ssm.inference.nuts import Hamiltonian
from latent_ssm.models.log_density import LogDensity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SamplerConfig:
    """NUTS sampler settings.

    ``max_wall_time`` is a per-fit budget in seconds; chains still running
    when it expires return their draws so far as incomplete.
    """

    num_warmup: int = 1000
    num_samples: int = 1000
    num_chains: int = 4
    seed: int = 0
    target_accept_prob: float = 0.8
    max_tree_depth: int = 10
    divergence_threshold: float = 1000.0
    dense_mass: bool = False
    parallel: bool = True
    max_wall_time: float | None = None
    init_radius: float = 2.0

    def __post_init__(self):
        if self.num_warmup < 0 or self.num_samples < 0:
            raise InvalidParameterError("num_warmup and num_samples must be non-negative")
        if self.num_chains < 1:
            raise InvalidParameterError(f"num_chains must be at least 1, got {self.num_chains}")
        if not 0.0 < self.target_accept_prob < 1.0:
            raise InvalidParameterError(
                f"target_accept_prob must be in (0, 1), got {self.target_accept_prob}"
            )
        if self.max_tree_depth < 1:
            raise InvalidParameterError("max_tree_depth must be at least 1")
        if self.divergence_threshold <= 0:
            raise InvalidParameterError("divergence_threshold must be positive")
        if self.max_wall_time is not None and self.max_wall_time <= 0:
            raise InvalidParameterError("max_wall_time must be positive")
        if self.init_radius < 0:
            raise InvalidParameterError("init_radius must be non-negative")

    @classmethod
    def from_dict(cls, d: dict) -> SamplerConfig:
        unknown = set(d) - set(cls.__dataclass_fields__)
        if unknown:
            raise InvalidParameterError(f"Unknown sampler settings: {sorted(unknown)}")
        return cls(**d)


@dataclass
class InferenceResult:
    """All chains of one sampling run, complete or not."""

    chains: list[Chain]
    config: SamplerConfig
    family: str
    static_names: list[str]
    trajectory_names: list[str]
    elapsed: float = 0.0
    diagnostics: dict = field(default_factory=dict)

    @property
    def completed_chains(self) -> list[Chain]:
        return [c for c in self.chains if c.status == ChainStatus.COMPLETED]

    @property
    def is_complete(self) -> bool:
        return all(c.status == ChainStatus.COMPLETED for c in self.chains)

    def missing(self) -> dict[int, str]:
        """chain_id -> description of what that chain is missing."""
        out = {}
        for c in self.chains:
            if c.status == ChainStatus.FAILED:
                out[c.chain_id] = f"failed ({c.error}); {c.missing_iterations} draws missing"
            elif c.status == ChainStatus.INCOMPLETE:
                out[c.chain_id] = (
                    f"incomplete ({c.stop_reason}); {c.missing_iterations} of "
                    f"{c.num_samples_requested} draws missing"
                )
        return out

    def usable_chains(self, include_incomplete: bool = False) -> list[Chain]:
        if include_incomplete:
            return [c for c in self.chains if c.status != ChainStatus.FAILED and len(c)]
        return [c for c in self.completed_chains if len(c)]

    def get_samples(
        self, group_by_chain: bool = False, include_incomplete: bool = False
    ) -> dict[str, np.ndarray]:
        """Stack draws per quantity.

        Returns:
            name -> (n_draws, *shape), or (n_chains, n_draws, *shape) with
            ``group_by_chain``. Grouping truncates chains to the shortest one.
        """
        chains = self.usable_chains(include_incomplete)
        if not chains:
            return {}
        names = self.static_names + list(chains[0].draws[0].latent)
        if group_by_chain:
            n = min(len(c) for c in chains)
            return {name: np.stack([c.stack(name)[:n] for c in chains]) for name in names}
        return {name: np.concatenate([c.stack(name) for c in chains]) for name in names}

    def print_summary(self) -> None:
        """Print per-parameter statistics and chain status."""
        print(f"\nModel: {self.family}  ({len(self.completed_chains)}/{len(self.chains)} chains completed)")
        for chain_id, note in self.missing().items():
            print(f"  chain {chain_id}: {note}")
        samples = self.get_samples()
        print(f"{'Parameter':<20} {'Mean':>10} {'Std':>10} {'5%':>10} {'95%':>10}")
        print("-" * 62)
        for name in self.static_names:
            if name not in samples:
                continue
            values = samples[name]
            q5, q95 = np.percentile(values, [5, 95])
            print(
                f"{name:<20} {np.mean(values):>10.4f} {np.std(values):>10.4f} "
                f"{q5:>10.4f} {q95:>10.4f}"
            )
        n_div = sum(c.num_divergent for c in self.chains)
        print(f"\nDivergences: {n_div}")


def _chain_seeds(seed: int, num_chains: int) -> list[np.random.SeedSequence]:
    return np.random.SeedSequence(seed).spawn(num_chains)


def sample(
    log_density: LogDensity,
    config: SamplerConfig | None = None,
    stop_event: threading.Event | None = None,
) -> InferenceResult:
    """Run ``config.num_chains`` independent NUTS chains.

    Args:
        log_density: Target density (spec + data).
        config: Sampler settings; defaults to SamplerConfig().
        stop_event: Set from another thread to cancel every chain; each one
            returns the draws produced so far.

    Returns:
        InferenceResult with one Chain per requested chain, in chain order.
    """
    config = config or SamplerConfig()
    start = time.monotonic()
    deadline = start + config.max_wall_time if config.max_wall_time is not None else None
    hamiltonian = Hamiltonian(log_density.value_and_grad)
    seeds = _chain_seeds(config.seed, config.num_chains)

    logger.info(
        "Sampling %s: %d chains x (%d warmup + %d draws), dim=%d",
        log_density.spec.family,
        config.num_chains,
        config.num_warmup,
        config.num_samples,
        log_density.dim,
    )

    def worker(chain_id: int) -> Chain:
        return run_chain(
            log_density,
            config,
            chain_id=chain_id,
            seed=seeds[chain_id],
            stop_event=stop_event,
            deadline=deadline,
            hamiltonian=hamiltonian,
        )

    chains: dict[int, Chain] = {}
    if config.parallel and config.num_chains > 1:
        with ThreadPoolExecutor(max_workers=config.num_chains) as pool:
            futures = {pool.submit(worker, i): i for i in range(config.num_chains)}
            for future in as_completed(futures):
                chain_id = futures[future]
                try:
                    chains[chain_id] = future.result()
                except Exception as exc:
                    logger.exception("Chain %d raised", chain_id)
                    chains[chain_id] = _failed_chain(chain_id, config, exc)
    else:
        for i in range(config.num_chains):
            try:
                chains[i] = worker(i)
            except Exception as exc:
                logger.exception("Chain %d raised", i)
                chains[i] = _failed_chain(i, config, exc)

    result = InferenceResult(
        chains=[chains[i] for i in range(config.num_chains)],
        config=config,
        family=log_density.spec.family,
        static_names=list(log_density.static_names),
        trajectory_names=list(log_density.spec.trajectory_names),
        elapsed=time.monotonic() - start,
    )
    result.diagnostics = {
        "num_divergent": sum(c.num_divergent for c in result.chains),
        "num_max_tree_depth": sum(c.num_max_tree_depth for c in result.chains),
        "chain_status": {c.chain_id: str(c.status) for c in result.chains},
    }
    if result.is_complete:
        logger.info("Sampling finished in %.1fs", result.elapsed)
    else:
        logger.warning("Sampling finished with missing draws: %s", result.missing())
    return result


def _failed_chain(chain_id: int, config: SamplerConfig, exc: BaseException) -> Chain:
    chain = Chain(
        chain_id=chain_id,
        num_warmup_requested=config.num_warmup,
        num_samples_requested=config.num_samples,
    )
    chain.status = ChainStatus.FAILED
    chain.phase = ChainPhase.TERMINAL
    chain.error = f"{type(exc).__name__}: {exc}"
    return chain
