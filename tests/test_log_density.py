"""Tests for the LogDensity evaluator on both model families."""

import math

import jax.numpy as jnp
import numpy as np
import pytest

from latent_ssm.data import ObservationSeries, ReturnSeries
from latent_ssm.errors import (
    InvalidParameterError,
    NonFiniteDensityError,
    ShapeMismatchError,
)
from latent_ssm.models import (
    DEFAULT_MIXTURE_TRUTH,
    LogDensity,
    MultiSourceStateSpace,
    RegimeSwitchingMixture,
    simulate_regime_switching,
)


def _norm(v, m, s):
    return -0.5 * np.log(2 * np.pi) - np.log(s) - 0.5 * ((v - m) / s) ** 2


def _half_cauchy(v, s):
    return np.log(2.0 / (np.pi * s * (1.0 + (v / s) ** 2)))


def naive_mixture_joint(p: dict, xi: np.ndarray, r: np.ndarray, x: np.ndarray) -> float:
    """Mixture joint with the mixing done in linear space, default priors."""
    lp = (
        _norm(p["mu1"], 0, 0.05)
        + _half_cauchy(p["sigma1"], 0.05)
        + _norm(p["mu2"], 0, 0.05)
        + _half_cauchy(p["sigma2"], 0.05)
        + _norm(p["rho"], 0, 1)
        + _norm(p["alpha_xi"], 0, 1)
        + _norm(p["phi_xi"], 0, 1)
        + _half_cauchy(p["sigma_xi"], 0.5)
        + _norm(p["gamma"], 0, 1)
        + _norm(xi[0], 0, 2)
    )
    lp += np.sum(_norm(xi[1:], p["alpha_xi"] + p["phi_xi"] * xi[:-1] + p["gamma"] * x[1:], p["sigma_xi"]))
    prob = 1.0 / (1.0 + np.exp(-xi[1:]))
    d1 = np.exp(_norm(r[1:], p["mu1"], p["sigma1"]))
    d2 = np.exp(_norm(r[1:], p["mu2"] + p["rho"] * (r[:-1] - p["mu2"]), p["sigma2"]))
    return float(lp + np.sum(np.log(prob * d1 + (1 - prob) * d2)))


def _random_mixture_point(rng, T):
    params = {}
    for name, constraint in RegimeSwitchingMixture.parameters():
        params[name] = float(np.exp(rng.normal(-2, 0.5))) if constraint == "positive" else float(rng.normal(0, 0.05))
    return params, {"xi": rng.normal(0, 1, T)}


# ══════════════════════════════════════════════════════════════════════════════
# CONSTRUCTION
# ══════════════════════════════════════════════════════════════════════════════


class TestConstruction:
    def test_mixture_layout(self, returns_data):
        ld = LogDensity(RegimeSwitchingMixture(), returns_data)
        assert ld.dim == 9 + returns_data.n_steps
        assert ld.layout.names[-1] == "xi"

    def test_state_space_layout(self, three_source_series):
        ld = LogDensity(MultiSourceStateSpace(), three_source_series)
        assert ld.layout.names == ["tau", "mu", "theta_std"]
        assert ld.dim == 1 + 4 + 12
        centered = LogDensity(MultiSourceStateSpace(parameterization="centered"), three_source_series)
        assert centered.layout.names == ["tau", "mu", "theta"]

    def test_mixture_accepts_single_source_series(self):
        obs = ObservationSeries.single_source([0.01, -0.02, 0.015, 0.0], scale=1.0)
        assert LogDensity(RegimeSwitchingMixture(), obs).n_steps == 4

    def test_family_data_mismatch(self, returns_data, three_source_series):
        with pytest.raises(ShapeMismatchError):
            LogDensity(RegimeSwitchingMixture(), three_source_series)
        with pytest.raises(ShapeMismatchError):
            LogDensity(MultiSourceStateSpace(), returns_data)

    def test_declared_sources_must_match(self, three_source_series):
        with pytest.raises(ShapeMismatchError):
            LogDensity(MultiSourceStateSpace(sources=("poll_a", "poll_b")), three_source_series)


# ══════════════════════════════════════════════════════════════════════════════
# MIXTURE FAMILY
# ══════════════════════════════════════════════════════════════════════════════


class TestMixtureDensity:
    def test_matches_naive_linear_space_mixture(self):
        sim = simulate_regime_switching(40, rng=3)
        ld = LogDensity(RegimeSwitchingMixture(), sim.data)
        stable = ld.log_density_constrained(sim.params, {"xi": sim.xi})
        naive = naive_mixture_joint(sim.params, sim.xi, np.asarray(sim.data.values), np.asarray(sim.data.external))
        assert stable == pytest.approx(naive, rel=1e-4, abs=1e-3)

    def test_unconstrained_adds_log_jacobian(self, returns_data):
        ld = LogDensity(RegimeSwitchingMixture(), returns_data)
        xi = np.zeros(returns_data.n_steps)
        theta = ld.unconstrain(DEFAULT_MIXTURE_TRUTH, {"xi": xi})
        jac = sum(math.log(DEFAULT_MIXTURE_TRUTH[k]) for k in ("sigma1", "sigma2", "sigma_xi"))
        expected = ld.log_density_constrained(DEFAULT_MIXTURE_TRUTH, {"xi": xi}) + jac
        assert float(ld.log_density(jnp.asarray(theta))) == pytest.approx(expected, rel=1e-4)

    def test_finite_inside_domain(self, returns_data):
        ld = LogDensity(RegimeSwitchingMixture(), returns_data)
        rng = np.random.default_rng(0)
        for _ in range(10):
            params, latent = _random_mixture_point(rng, returns_data.n_steps)
            assert np.isfinite(ld.log_density_constrained(params, latent))

    @pytest.mark.parametrize("name", ["sigma1", "sigma2", "sigma_xi"])
    @pytest.mark.parametrize("value", [0.0, -0.01, float("nan")])
    def test_non_finite_outside_domain(self, returns_data, name, value):
        ld = LogDensity(RegimeSwitchingMixture(), returns_data)
        params = dict(DEFAULT_MIXTURE_TRUTH, **{name: value})
        with pytest.raises(NonFiniteDensityError):
            ld.log_density_constrained(params, {"xi": np.zeros(returns_data.n_steps)})

    def test_extreme_logits_stay_finite(self, returns_data):
        ld = LogDensity(RegimeSwitchingMixture(), returns_data)
        xi = np.where(np.arange(returns_data.n_steps) % 2 == 0, 60.0, -60.0)
        assert np.isfinite(ld.log_density_constrained(DEFAULT_MIXTURE_TRUTH, {"xi": xi}))

    def test_constrain_derives_regime_probability(self, returns_data):
        ld = LogDensity(RegimeSwitchingMixture(), returns_data)
        theta = ld.unconstrain(DEFAULT_MIXTURE_TRUTH, {"xi": np.linspace(-3, 3, returns_data.n_steps)})
        params, latent = ld.constrain(theta)
        assert params["sigma1"] == pytest.approx(DEFAULT_MIXTURE_TRUTH["sigma1"], rel=1e-5)
        assert latent["regime_prob"].shape == (returns_data.n_steps,)
        assert np.all((latent["regime_prob"] > 0) & (latent["regime_prob"] < 1))
        np.testing.assert_allclose(latent["regime_prob"], 1 / (1 + np.exp(-latent["xi"])), rtol=1e-5)


# ══════════════════════════════════════════════════════════════════════════════
# STATE-SPACE FAMILY
# ══════════════════════════════════════════════════════════════════════════════


def _state_space_point(series: ObservationSeries, tau: float = 0.8):
    mu = np.linspace(40.0, 41.0, series.n_steps)
    theta = np.where(series.observed, series.values, 0.3)
    return {"tau": tau}, {"mu": mu, "theta": theta}


class TestStateSpaceDensity:
    def test_finite_inside_domain(self, three_source_series):
        ld = LogDensity(MultiSourceStateSpace(), three_source_series)
        rng = np.random.default_rng(1)
        for _ in range(10):
            params, latent = _state_space_point(three_source_series, tau=float(np.exp(rng.normal())))
            latent["mu"] = latent["mu"] + rng.normal(0, 0.5, three_source_series.n_steps)
            assert np.isfinite(ld.log_density_constrained(params, latent))

    @pytest.mark.parametrize("tau", [0.0, -1.0, float("inf")])
    def test_non_finite_outside_domain(self, three_source_series, tau):
        ld = LogDensity(MultiSourceStateSpace(), three_source_series)
        params, latent = _state_space_point(three_source_series)
        with pytest.raises(NonFiniteDensityError):
            ld.log_density_constrained({"tau": tau}, latent)

    def test_parameterizations_share_joint_density(self, three_source_series):
        params, latent = _state_space_point(three_source_series)
        nc = LogDensity(MultiSourceStateSpace(), three_source_series)
        c = LogDensity(MultiSourceStateSpace(parameterization="centered"), three_source_series)
        assert nc.log_density_constrained(params, latent) == pytest.approx(
            c.log_density_constrained(params, latent), rel=1e-6
        )

    def test_noncentered_change_of_variables(self, three_source_series):
        """Unconstrained density = joint + log|J| for both parameterizations."""
        params, latent = _state_space_point(three_source_series, tau=0.8)
        for parameterization in ("noncentered", "centered"):
            ld = LogDensity(MultiSourceStateSpace(parameterization=parameterization), three_source_series)
            theta = ld.unconstrain(params, latent)
            jac = math.log(0.8)
            if parameterization == "noncentered":
                jac += three_source_series.n_observed * math.log(0.8)
            expected = ld.log_density_constrained(params, latent) + jac
            assert float(ld.log_density(jnp.asarray(theta))) == pytest.approx(expected, rel=1e-4)

    def test_constrain_round_trip(self, three_source_series):
        params, latent = _state_space_point(three_source_series)
        ld = LogDensity(MultiSourceStateSpace(), three_source_series)
        p2, l2 = ld.constrain(ld.unconstrain(params, latent))
        assert p2["tau"] == pytest.approx(0.8, rel=1e-6)
        np.testing.assert_allclose(l2["mu"], latent["mu"], rtol=1e-6)
        np.testing.assert_allclose(l2["theta"], latent["theta"], rtol=1e-5, atol=1e-5)

    def test_missing_slot_uses_diffuse_prior_only(self, three_source_series):
        """A missing slot contributes missing_prior(theta) and no observation term."""
        ld = LogDensity(MultiSourceStateSpace(), three_source_series)
        params, latent = _state_space_point(three_source_series)
        base = ld.log_density_constrained(params, latent)
        moved = {**latent, "theta": latent["theta"].copy()}
        moved["theta"][1, 1] = 1.3  # poll_b missing at step 1
        delta = ld.log_density_constrained(params, moved) - base
        expected = _norm(1.3, 0.0, 1.0) - _norm(0.3, 0.0, 1.0)
        assert delta == pytest.approx(expected, abs=1e-3)

    def test_missingness_changes_density(self, three_source_series):
        params, latent = _state_space_point(three_source_series)
        full = LogDensity(MultiSourceStateSpace(), three_source_series)
        gappy = LogDensity(MultiSourceStateSpace(), three_source_series.with_missing(0, "poll_a"))
        assert full.log_density_constrained(params, latent) != pytest.approx(
            gappy.log_density_constrained(params, latent)
        )

    def test_remarking_missing_is_noop(self, three_source_series):
        again = three_source_series.with_missing(1, "poll_b")
        a = LogDensity(MultiSourceStateSpace(), three_source_series)
        b = LogDensity(MultiSourceStateSpace(), again)
        theta = np.random.default_rng(5).normal(0, 0.5, a.dim)
        assert float(a.log_density(jnp.asarray(theta))) == float(b.log_density(jnp.asarray(theta)))

    def test_innovation_scale_is_fixed(self, three_source_series):
        ld = LogDensity(MultiSourceStateSpace(innovation_scale=0.1), three_source_series)
        assert "innovation_scale" not in ld.layout
        assert ld.static_names == ["tau"]


# ══════════════════════════════════════════════════════════════════════════════
# CHECKED EVALUATION
# ══════════════════════════════════════════════════════════════════════════════


class TestEvaluate:
    def test_value_and_gradient(self, three_source_series):
        ld = LogDensity(MultiSourceStateSpace(), three_source_series)
        theta = ld.initial_point(np.random.default_rng(0))
        value, grad = ld.evaluate(theta)
        assert np.isfinite(value)
        assert grad.shape == (ld.dim,)
        assert np.all(np.isfinite(grad))

    def test_gradient_matches_finite_difference(self, returns_data):
        ld = LogDensity(RegimeSwitchingMixture(), returns_data)
        theta = np.asarray(ld.initial_point(np.random.default_rng(2)), dtype=np.float32)
        _, grad = ld.evaluate(theta)
        eps = 1e-3
        for i in (1, 4, 7, 12):
            step = np.zeros_like(theta)
            step[i] = eps
            hi = float(ld.log_density(jnp.asarray(theta + step)))
            lo = float(ld.log_density(jnp.asarray(theta - step)))
            fd = (hi - lo) / (2 * eps)
            assert grad[i] == pytest.approx(fd, rel=0.05, abs=0.5)

    def test_wrong_length(self, returns_data):
        ld = LogDensity(RegimeSwitchingMixture(), returns_data)
        with pytest.raises(ShapeMismatchError):
            ld.evaluate(np.zeros(ld.dim + 1))

    def test_scale_underflow_is_invalid_parameter(self, three_source_series):
        ld = LogDensity(MultiSourceStateSpace(), three_source_series)
        theta = np.zeros(ld.dim)
        theta[ld.layout["tau"].offset] = -1e4  # exp underflows to 0
        with pytest.raises(InvalidParameterError):
            ld.evaluate(theta)

    def test_nan_is_non_finite_density(self, three_source_series):
        ld = LogDensity(MultiSourceStateSpace(), three_source_series)
        theta = np.zeros(ld.dim)
        theta[ld.layout["mu"].offset] = np.nan
        with pytest.raises(NonFiniteDensityError):
            ld.evaluate(theta)

    def test_initial_points_differ_between_draws(self, returns_data):
        ld = LogDensity(RegimeSwitchingMixture(), returns_data)
        rng = np.random.default_rng(0)
        a, b = ld.initial_point(rng), ld.initial_point(rng)
        assert not np.allclose(a, b)
        for theta in (a, b):
            value, _ = ld.evaluate(theta)
            assert np.isfinite(value)

    def test_return_series_external_enters_density(self):
        r = np.array([0.01, -0.01, 0.02, 0.0, 0.015])
        ld_default = LogDensity(RegimeSwitchingMixture(), ReturnSeries(r))
        ld_custom = LogDensity(RegimeSwitchingMixture(), ReturnSeries(r, external=np.ones(5)))
        theta = np.random.default_rng(0).normal(0, 0.3, ld_default.dim)
        assert float(ld_default.log_density(jnp.asarray(theta))) != pytest.approx(
            float(ld_custom.log_density(jnp.asarray(theta)))
        )
