"""Tests for the NUTS kernel on analytic Gaussian targets."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from latent_ssm.inference.nuts import Hamiltonian, Metric, NUTSKernel


def gaussian_hamiltonian(cov):
    """Hamiltonian for a zero-mean Gaussian with covariance ``cov``."""
    precision = jnp.asarray(np.linalg.inv(np.asarray(cov, dtype=float)))

    def log_density(q):
        return -0.5 * q @ precision @ q

    return Hamiltonian(jax.jit(jax.value_and_grad(log_density)))


def run_kernel(kernel, metric, step_size, n, dim, seed=0):
    rng = np.random.default_rng(seed)
    q = jnp.zeros(dim)
    u, g = kernel.hamiltonian.potential_and_grad(q)
    u = float(u)
    draws, transitions = [], []
    for _ in range(n):
        t = kernel.transition(q, u, g, step_size, metric, rng)
        q, u, g = t.position, -t.log_density, -t.grad
        draws.append(np.asarray(q))
        transitions.append(t)
    return np.array(draws), transitions


# ══════════════════════════════════════════════════════════════════════════════
# METRIC AND DYNAMICS
# ══════════════════════════════════════════════════════════════════════════════


class TestMetric:
    def test_diagonal_momentum_covariance(self):
        metric = Metric(np.array([4.0, 0.25]))
        rng = np.random.default_rng(0)
        p = np.array([np.asarray(metric.sample_momentum(rng)) for _ in range(20000)])
        # p ~ N(0, M) with M = diag(1 / inverse_mass)
        np.testing.assert_allclose(p.var(axis=0), [0.25, 4.0], rtol=0.05)

    def test_dense_momentum_covariance(self):
        inv_mass = np.array([[1.0, 0.9], [0.9, 1.0]])
        metric = Metric(inv_mass)
        assert metric.dense and metric.dim == 2
        rng = np.random.default_rng(1)
        p = np.array([np.asarray(metric.sample_momentum(rng)) for _ in range(20000)])
        np.testing.assert_allclose(np.cov(p.T), np.linalg.inv(inv_mass), rtol=0.05)

    def test_identity(self):
        assert Metric.identity(3).inverse_mass.tolist() == [1.0, 1.0, 1.0]
        np.testing.assert_array_equal(Metric.identity(2, dense=True).inverse_mass, np.eye(2))


class TestLeapfrog:
    def test_energy_nearly_conserved(self):
        ham = gaussian_hamiltonian(np.eye(3))
        metric = Metric.identity(3)
        q = jnp.array([1.0, -0.5, 0.3])
        p = jnp.array([0.2, 0.4, -1.0])
        u0, g = ham.potential_and_grad(q)
        h0 = float(u0) + ham.kinetic(p, metric)
        for _ in range(50):
            q, p, u, g, k = ham.leapfrog(q, p, g, 0.05, metric)
        assert float(u) + float(k) == pytest.approx(h0, abs=5e-3)

    def test_time_reversible(self):
        ham = gaussian_hamiltonian(np.eye(2))
        metric = Metric.identity(2)
        q0 = jnp.array([0.7, -1.2])
        p0 = jnp.array([0.3, 0.8])
        _, g0 = ham.potential_and_grad(q0)
        q1, p1, _, g1, _ = ham.leapfrog(q0, p0, g0, 0.1, metric)
        q2, _, _, _, _ = ham.leapfrog(q1, -p1, g1, 0.1, metric)
        np.testing.assert_allclose(np.asarray(q2), np.asarray(q0), atol=1e-5)


# ══════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ══════════════════════════════════════════════════════════════════════════════


class TestNUTSKernel:
    def test_standard_normal_moments(self):
        kernel = NUTSKernel(gaussian_hamiltonian(np.eye(3)))
        draws, transitions = run_kernel(kernel, Metric.identity(3), 0.5, 1500, 3)
        np.testing.assert_allclose(draws.mean(axis=0), 0.0, atol=0.15)
        np.testing.assert_allclose(draws.var(axis=0), 1.0, rtol=0.2)
        assert not any(t.divergent for t in transitions)
        assert np.mean([t.accept_stat for t in transitions]) > 0.6

    def test_dense_metric_on_correlated_target(self):
        cov = np.array([[1.0, 0.95], [0.95, 1.0]])
        kernel = NUTSKernel(gaussian_hamiltonian(cov))
        draws, transitions = run_kernel(kernel, Metric(cov), 0.8, 1500, 2, seed=2)
        np.testing.assert_allclose(np.cov(draws.T), cov, atol=0.2)
        # A whitening metric makes the target isotropic: short trees.
        assert np.mean([t.tree_depth for t in transitions]) < 4

    def test_huge_step_diverges_and_stays(self):
        kernel = NUTSKernel(gaussian_hamiltonian(np.eye(3)))
        rng = np.random.default_rng(0)
        q0 = jnp.zeros(3)
        u0, g0 = kernel.hamiltonian.potential_and_grad(q0)
        t = kernel.transition(q0, float(u0), g0, 50.0, Metric.identity(3), rng)
        assert t.divergent
        assert not t.accepted
        assert not t.max_tree_depth_exceeded
        np.testing.assert_array_equal(np.asarray(t.position), np.zeros(3))

    def test_non_finite_density_counts_as_divergence(self):
        def log_density(q):
            return jnp.where(q[0] > 0.05, -jnp.inf, -0.5 * jnp.sum(q**2))

        kernel = NUTSKernel(Hamiltonian(jax.jit(jax.value_and_grad(log_density))))
        rng = np.random.default_rng(3)
        q0 = jnp.zeros(2)
        u0, g0 = kernel.hamiltonian.potential_and_grad(q0)
        divergent = [
            kernel.transition(q0, float(u0), g0, 1.0, Metric.identity(2), rng).divergent
            for _ in range(20)
        ]
        assert any(divergent)

    def test_tiny_step_hits_max_tree_depth(self):
        kernel = NUTSKernel(gaussian_hamiltonian(np.eye(2)), max_tree_depth=3)
        rng = np.random.default_rng(0)
        q0 = jnp.array([0.5, 0.5])
        u0, g0 = kernel.hamiltonian.potential_and_grad(q0)
        t = kernel.transition(q0, float(u0), g0, 1e-3, Metric.identity(2), rng)
        assert t.max_tree_depth_exceeded
        assert t.tree_depth == 3
        assert t.n_leapfrog == 1 + 2 + 4
        assert not t.divergent
