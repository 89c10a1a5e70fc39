"""Shared test helpers (non-fixtures).

These are utilities that can be imported directly into test modules.
For fixtures, see conftest.py.
"""

from types import MappingProxyType

import numpy as np

from latent_ssm.inference.chains import Chain, ChainStatus, Draw


def assert_recovery_ci(
    samples: np.ndarray,
    true_value: float,
    param_name: str,
    transform=None,
    q_low: float = 5.0,
    q_high: float = 95.0,
):
    """Assert that true_value falls within the [q_low, q_high] percentile CI.

    Args:
        samples: 1D array of posterior samples.
        true_value: Ground truth value.
        param_name: Name for error message.
        transform: Optional transform to apply to samples.
        q_low: Lower percentile (default 5 for 90% CI).
        q_high: Upper percentile (default 95 for 90% CI).
    """
    if transform is not None:
        samples = transform(samples)
    lo = float(np.percentile(samples, q_low))
    hi = float(np.percentile(samples, q_high))
    assert lo <= true_value <= hi, (
        f"{param_name} {true_value:.3f} outside {q_high - q_low:.0f}% CI [{lo:.3f}, {hi:.3f}]"
    )


def make_draw(
    params: dict[str, float],
    latent: dict[str, np.ndarray] | None = None,
    energy: float = 0.0,
    divergent: bool = False,
    max_tree_depth_exceeded: bool = False,
    accept_stat: float = 0.8,
) -> Draw:
    """A Draw with plausible sampler fields for summarizer tests."""
    latent = latent or {}
    frozen = {}
    for k, v in latent.items():
        arr = np.array(v, dtype=float)
        arr.setflags(write=False)
        frozen[k] = arr
    return Draw(
        params=MappingProxyType(dict(params)),
        latent=MappingProxyType(frozen),
        log_density=-1.0,
        grad_norm=1.0,
        accepted=True,
        divergent=divergent,
        max_tree_depth_exceeded=max_tree_depth_exceeded,
        tree_depth=3,
        n_leapfrog=7,
        step_size=0.5,
        energy=energy,
        accept_stat=accept_stat,
    )


def make_chain(
    chain_id: int,
    param_draws: dict[str, np.ndarray],
    latent_draws: dict[str, np.ndarray] | None = None,
    status: ChainStatus = ChainStatus.COMPLETED,
    num_samples_requested: int | None = None,
    energies: np.ndarray | None = None,
    divergent_at: tuple[int, ...] = (),
) -> Chain:
    """Build a Chain from arrays: param -> (n,), latent -> (n, T)."""
    latent_draws = latent_draws or {}
    n = len(next(iter(param_draws.values())))
    if energies is None:
        energies = np.random.default_rng(chain_id).normal(size=n)
    chain = Chain(
        chain_id=chain_id,
        num_warmup_requested=10,
        num_samples_requested=num_samples_requested if num_samples_requested is not None else n,
        status=status,
        num_warmup_completed=10,
    )
    for i in range(n):
        chain.draws.append(
            make_draw(
                {k: float(v[i]) for k, v in param_draws.items()},
                {k: v[i] for k, v in latent_draws.items()},
                energy=float(energies[i]),
                divergent=i in divergent_at,
            )
        )
    if status == ChainStatus.INCOMPLETE:
        chain.stop_reason = "stop requested"
    return chain


def naive_mixture_log_prob(p: float, log_a: float, log_b: float) -> float:
    """log(p * exp(log_a) + (1 - p) * exp(log_b)) computed in linear space."""
    return float(np.log(p * np.exp(log_a) + (1.0 - p) * np.exp(log_b)))
