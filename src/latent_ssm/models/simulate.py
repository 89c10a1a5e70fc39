"""Synthetic data generators for both model families.

Used by the recovery scenarios in tests/ and tools/recovery.py: data are
drawn from the exact generative process the LogDensity evaluator scores.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import NamedTuple

import numpy as np

from latent_ssm.data import Measurement, ObservationSeries, ReturnSeries
from latent_ssm.errors import InvalidParameterError

# Generating values for the mixture recovery scenario.
DEFAULT_MIXTURE_TRUTH: dict[str, float] = {
    "mu1": -0.01,
    "sigma1": 0.02,
    "mu2": 0.015,
    "sigma2": 0.01,
    "rho": 0.8,
    "alpha_xi": 0.0,
    "phi_xi": 0.95,
    "sigma_xi": 0.3,
    "gamma": 0.5,
}


class SimulatedMixture(NamedTuple):
    data: ReturnSeries
    xi: np.ndarray  # (T,) latent logits
    regimes: np.ndarray  # (T,) 1 or 2
    params: dict[str, float]


class SimulatedStateSpace(NamedTuple):
    data: ObservationSeries
    mu: np.ndarray  # (T,) latent mean
    theta: np.ndarray  # (T, S) shrunken source-level values
    tau: float


def simulate_regime_switching(
    T: int,
    params: dict[str, float] | None = None,
    rng: np.random.Generator | int | None = None,
    external: Sequence[float] | None = None,
) -> SimulatedMixture:
    """Draw a return series from the time-varying two-regime mixture.

    Args:
        T: Number of steps (>= 2).
        params: Static parameter values; defaults to DEFAULT_MIXTURE_TRUTH.
        rng: numpy Generator or seed.
        external: Optional (T,) external-information covariate. When omitted
            the lagged return drives the logit, matching ReturnSeries.

    Returns:
        SimulatedMixture with the data and the true latent path.
    """
    if T < 2:
        raise InvalidParameterError(f"T must be at least 2, got {T}")
    p = {**DEFAULT_MIXTURE_TRUTH, **(params or {})}
    for name in ("sigma1", "sigma2", "sigma_xi"):
        if p[name] <= 0:
            raise InvalidParameterError(f"{name} must be positive, got {p[name]}")
    rng = np.random.default_rng(rng)
    ext = None if external is None else np.asarray(external, dtype=float)

    r = np.zeros(T)
    xi = np.zeros(T)
    regimes = np.zeros(T, dtype=int)

    if abs(p["phi_xi"]) < 1:
        xi[0] = p["alpha_xi"] / (1 - p["phi_xi"])
    regimes[0] = 1
    r[0] = rng.normal(p["mu1"], p["sigma1"])

    for t in range(1, T):
        x_t = ext[t] if ext is not None else r[t - 1]
        xi[t] = rng.normal(p["alpha_xi"] + p["phi_xi"] * xi[t - 1] + p["gamma"] * x_t, p["sigma_xi"])
        prob1 = 1.0 / (1.0 + np.exp(-xi[t]))
        if rng.uniform() < prob1:
            regimes[t] = 1
            r[t] = rng.normal(p["mu1"], p["sigma1"])
        else:
            regimes[t] = 2
            r[t] = rng.normal(p["mu2"] + p["rho"] * (r[t - 1] - p["mu2"]), p["sigma2"])

    return SimulatedMixture(
        data=ReturnSeries(values=r, external=ext),
        xi=xi,
        regimes=regimes,
        params=p,
    )


def simulate_multi_source(
    T: int,
    scales: Sequence[float],
    tau: float = 1.0,
    innovation_scale: float = 0.25,
    initial: float = 40.0,
    sources: Sequence[str] | None = None,
    missing: Iterable[tuple[int, str]] = (),
    rng: np.random.Generator | int | None = None,
) -> SimulatedStateSpace:
    """Draw a multi-source series from the random-walk shrinkage model.

    Args:
        T: Number of steps.
        scales: Known measurement scale of each source.
        tau: Source-level excess dispersion.
        innovation_scale: Random-walk step scale of the latent mean.
        initial: Latent mean at the first step.
        sources: Source names; defaults to "source_0", "source_1", ...
        missing: (step, source) slots to leave unobserved.
        rng: numpy Generator or seed.
    """
    if tau <= 0 or innovation_scale <= 0:
        raise InvalidParameterError("tau and innovation_scale must be positive")
    rng = np.random.default_rng(rng)
    sources = tuple(sources) if sources is not None else tuple(f"source_{j}" for j in range(len(scales)))
    if len(sources) != len(scales):
        raise InvalidParameterError(f"{len(sources)} sources for {len(scales)} scales")

    mu = initial + np.concatenate([[0.0], np.cumsum(rng.normal(0.0, innovation_scale, T - 1))])
    theta = rng.normal(mu[:, None], tau, size=(T, len(sources)))
    y = rng.normal(theta, np.asarray(scales)[None, :])

    skip = set(missing)
    steps = [
        {
            name: None if (t, name) in skip else Measurement(float(y[t, j]), float(scales[j]))
            for j, name in enumerate(sources)
        }
        for t in range(T)
    ]
    return SimulatedStateSpace(
        data=ObservationSeries.from_steps(steps, sources=sources),
        mu=mu,
        theta=theta,
        tau=tau,
    )
