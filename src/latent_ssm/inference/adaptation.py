"""Warmup adaptation: dual-averaging step size and windowed mass matrix.

Follows the Stan scheme (Hoffman & Gelman 2014, Stan Reference Manual):

- an initial fast buffer where only the step size adapts,
- a series of doubling slow windows; at the end of each the inverse mass
  matrix is re-estimated from the window's draws and dual averaging restarts,
- a terminal fast buffer where the step size settles for the final metric.
"""

from __future__ import annotations

import math
from typing import Callable

import numpy as np


class DualAveraging:
    """Nesterov dual averaging on log step size toward a target accept stat."""

    def __init__(
        self,
        step_size: float,
        target: float = 0.8,
        gamma: float = 0.05,
        t0: float = 10.0,
        kappa: float = 0.75,
    ):
        self.target = target
        self.gamma = gamma
        self.t0 = t0
        self.kappa = kappa
        self.restart(step_size)

    def restart(self, step_size: float) -> None:
        self.mu = math.log(10.0 * step_size)
        self.log_eps = math.log(step_size)
        self.log_eps_bar = 0.0
        self.h_bar = 0.0
        self.t = 0

    def update(self, accept_stat: float) -> float:
        """Feed one iteration's accept stat; return the next step size."""
        accept_stat = min(max(accept_stat, 0.0), 1.0) if math.isfinite(accept_stat) else 0.0
        self.t += 1
        eta = 1.0 / (self.t + self.t0)
        self.h_bar = (1.0 - eta) * self.h_bar + eta * (self.target - accept_stat)
        self.log_eps = self.mu - (math.sqrt(self.t) / self.gamma) * self.h_bar
        w = self.t ** (-self.kappa)
        self.log_eps_bar = w * self.log_eps + (1.0 - w) * self.log_eps_bar
        return math.exp(self.log_eps)

    def final(self) -> float:
        """Averaged step size to use once adaptation stops."""
        if self.t == 0:
            return math.exp(self.log_eps)
        return math.exp(self.log_eps_bar)


class WelfordEstimator:
    """Streaming mean and (co)variance of draws for mass-matrix estimation.

    The returned estimate is shrunk toward a small multiple of the identity,
    ``n / (n + 5) * cov + 1e-3 * 5 / (n + 5) * I``, as Stan does, which keeps
    it positive definite when the window is shorter than the dimension.
    """

    def __init__(self, dim: int, dense: bool = False):
        self.dim = dim
        self.dense = dense
        self.reset()

    def reset(self) -> None:
        self.n = 0
        self.mean = np.zeros(self.dim)
        self.m2 = np.zeros((self.dim, self.dim)) if self.dense else np.zeros(self.dim)

    def update(self, x: np.ndarray) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean = self.mean + delta / self.n
        delta2 = x - self.mean
        if self.dense:
            self.m2 = self.m2 + np.outer(delta, delta2)
        else:
            self.m2 = self.m2 + delta * delta2

    def inverse_mass(self) -> np.ndarray:
        if self.n < 2:
            return np.eye(self.dim) if self.dense else np.ones(self.dim)
        cov = self.m2 / (self.n - 1)
        shrink = self.n / (self.n + 5.0)
        reg = 1e-3 * 5.0 / (self.n + 5.0)
        if self.dense:
            cov = 0.5 * (cov + cov.T)
            return shrink * cov + reg * np.eye(self.dim)
        return shrink * cov + reg


def make_warmup_windows(
    num_warmup: int,
    init_buffer: int = 75,
    term_buffer: int = 50,
    base_window: int = 25,
) -> tuple[int, int, list[tuple[int, int]]]:
    """Split warmup into (init_buffer, term_buffer, slow windows).

    Windows are half-open [start, end) iteration ranges. When warmup is too
    short for the default buffers they shrink to 15% / 10% / 75% of it, and
    below 20 iterations there is no mass adaptation at all.

    Returns:
        (init_buffer, term_buffer, windows)
    """
    if num_warmup < 20:
        return num_warmup, 0, []

    if init_buffer + term_buffer + base_window > num_warmup:
        init_buffer = max(1, int(0.15 * num_warmup))
        term_buffer = max(1, int(0.10 * num_warmup))
        base_window = num_warmup - init_buffer - term_buffer

    start = init_buffer
    end_slow = num_warmup - term_buffer
    windows: list[tuple[int, int]] = []
    win = base_window
    while start < end_slow:
        end = start + win
        # Absorb a final window shorter than twice the next one.
        if end + 2 * win > end_slow:
            end = end_slow
        windows.append((start, end))
        start = end
        win *= 2
    return init_buffer, term_buffer, windows


def find_reasonable_step_size(
    potential_and_grad: Callable,
    q: np.ndarray,
    kinetic: Callable[[np.ndarray], float],
    leapfrog: Callable,
    sample_momentum: Callable[[], np.ndarray],
    init: float = 1.0,
    min_step: float = 1e-8,
    max_step: float = 1e3,
) -> float:
    """Heuristic initial step size (Hoffman & Gelman 2014, Algorithm 4).

    Doubles or halves the step until the one-step acceptance probability
    crosses 0.5.
    """
    U0, g0 = potential_and_grad(q)
    p0 = sample_momentum()
    H0 = float(U0) + kinetic(p0)

    def log_accept(eps: float) -> float:
        _, p1, U1, _ = leapfrog(q, p0, g0, eps)
        H1 = float(U1) + kinetic(p1)
        delta = H0 - H1
        return delta if math.isfinite(delta) else -math.inf

    eps = init
    direction = 1.0 if log_accept(eps) > math.log(0.5) else -1.0
    while min_step < eps < max_step:
        eps *= 2.0**direction
        la = log_accept(eps)
        if direction > 0 and not la > math.log(0.5):
            break
        if direction < 0 and la > math.log(0.5):
            break
    return float(min(max(eps, min_step), max_step))
