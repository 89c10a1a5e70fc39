"""Log-posterior evaluator shared by both model families.

Given a ModelSpec and observed data, LogDensity computes
log p(latent trajectory, static parameters | observations) up to an additive
constant, and its gradient with respect to the flat unconstrained parameter
vector. Positive parameters are sampled on the log scale and the log-Jacobian
of that transform is included.

Two kinds of entry points:

- ``log_density`` / ``value_and_grad``: jitted pure functions used inside the
  sampler's leapfrog loop. They never raise; a bad point shows up as a
  non-finite value or gradient.
- ``evaluate`` / ``log_density_constrained``: checked entry points that
  raise the error taxonomy from ``latent_ssm.errors``.
"""

from __future__ import annotations

import logging

import jax
import jax.numpy as jnp
import numpy as np
import numpyro.distributions as dist

from latent_ssm.data import ObservationSeries, ReturnSeries
from latent_ssm.errors import (
    InvalidParameterError,
    NonFiniteDensityError,
    NonFiniteGradientError,
    ShapeMismatchError,
)
from latent_ssm.models.spec import ModelSpec, MultiSourceStateSpace, RegimeSwitchingMixture
from latent_ssm.models.transforms import ParameterLayout, log_mix_logit, regime_probability

logger = logging.getLogger(__name__)


def random_walk_log_prob(x: jnp.ndarray, mean: jnp.ndarray, scale) -> jnp.ndarray:
    """Sum of N(x_t | mean_t, scale) over t = 2..T.

    ``mean`` holds the conditional means for steps 2..T, i.e. it has one
    element fewer than ``x``.
    """
    return jnp.sum(dist.Normal(mean, scale).log_prob(x[1:]))


class LogDensity:
    """Log-posterior of one model family bound to one data series.

    Args:
        spec: RegimeSwitchingMixture or MultiSourceStateSpace.
        data: ReturnSeries for the mixture (a one-source, fully observed
            ObservationSeries is converted), ObservationSeries for the
            state-space model.

    Raises:
        ShapeMismatchError: data shape or type does not fit the spec.
    """

    def __init__(self, spec: ModelSpec, data: ObservationSeries | ReturnSeries):
        self.spec = spec

        if isinstance(spec, RegimeSwitchingMixture):
            if isinstance(data, ObservationSeries):
                data = ReturnSeries.from_observations(data)
            if not isinstance(data, ReturnSeries):
                raise ShapeMismatchError(
                    f"{spec.family} needs a ReturnSeries, got {type(data).__name__}"
                )
            self.data = data
            self.n_steps = data.n_steps
            self._r = jnp.asarray(data.values)
            self._x = jnp.asarray(data.external)
            blocks = [(name, (), constraint) for name, constraint in spec.parameters()]
            blocks.append(("xi", (self.n_steps,), "real"))

        elif isinstance(spec, MultiSourceStateSpace):
            if not isinstance(data, ObservationSeries):
                raise ShapeMismatchError(
                    f"{spec.family} needs an ObservationSeries, got {type(data).__name__}"
                )
            if spec.sources is not None and spec.sources != data.sources:
                raise ShapeMismatchError(
                    f"model declares sources {spec.sources}, data has {data.sources}"
                )
            self.data = data
            self.n_steps = data.n_steps
            self._y = jnp.asarray(data.values)
            self._se = jnp.asarray(data.scales)
            self._observed = jnp.asarray(data.observed)
            self._n_observed = data.n_observed
            self._theta_block = "theta" if spec.parameterization == "centered" else "theta_std"
            blocks = [
                ("tau", (), "positive"),
                ("mu", (self.n_steps,), "real"),
                (self._theta_block, (self.n_steps, data.n_sources), "real"),
            ]

        else:
            raise TypeError(f"Unsupported model spec: {type(spec).__name__}")

        self.layout = ParameterLayout(blocks)
        self.log_density = jax.jit(self._log_density)
        self.value_and_grad = jax.jit(jax.value_and_grad(self._log_density))
        self._constrain = jax.jit(self._constrain_values)
        logger.debug(
            "LogDensity(%s): T=%d, dim=%d", spec.family, self.n_steps, self.layout.size
        )

    @property
    def dim(self) -> int:
        return self.layout.size

    @property
    def static_names(self) -> list[str]:
        return [name for name, _ in self.spec.parameters()]

    # ------------------------------------------------------------------
    # Family densities on constrained values
    # ------------------------------------------------------------------

    def _mixture_joint(self, params: dict, xi: jnp.ndarray) -> jnp.ndarray:
        spec = self.spec
        r, x = self._r, self._x

        lp = spec.log_prior(params, {"xi": xi})

        logit_mean = params["alpha_xi"] + params["phi_xi"] * xi[:-1] + params["gamma"] * x[1:]
        lp = lp + random_walk_log_prob(xi, logit_mean, params["sigma_xi"])

        regime1 = dist.Normal(params["mu1"], params["sigma1"]).log_prob(r[1:])
        regime2_mean = params["mu2"] + params["rho"] * (r[:-1] - params["mu2"])
        regime2 = dist.Normal(regime2_mean, params["sigma2"]).log_prob(r[1:])
        return lp + jnp.sum(log_mix_logit(xi[1:], regime1, regime2))

    def _state_space_joint(self, params: dict, mu: jnp.ndarray, theta: jnp.ndarray) -> jnp.ndarray:
        spec = self.spec
        tau = params["tau"]
        observed = self._observed

        lp = spec.log_prior(params, {"mu": mu})
        lp = lp + random_walk_log_prob(mu, mu[:-1], spec.innovation_scale)

        pooled = dist.Normal(mu[:, None], tau).log_prob(theta)
        diffuse = spec.missing_prior.log_prob(theta)
        lp = lp + jnp.sum(jnp.where(observed, pooled, diffuse))

        obs = dist.Normal(theta, self._se).log_prob(self._y)
        return lp + jnp.sum(jnp.where(observed, obs, 0.0))

    def _shrunken_estimates(self, mu, tau, theta_std):
        return jnp.where(self._observed, mu[:, None] + tau * theta_std, theta_std)

    # ------------------------------------------------------------------
    # Unconstrained density (sampler target)
    # ------------------------------------------------------------------

    def _log_density(self, theta: jnp.ndarray) -> jnp.ndarray:
        values, log_jac = self.layout.unpack(theta)

        if isinstance(self.spec, RegimeSwitchingMixture):
            return self._mixture_joint(values, values["xi"]) + log_jac

        mu = values["mu"]
        if self.spec.parameterization == "centered":
            return self._state_space_joint(values, mu, values["theta"]) + log_jac

        tau = values["tau"]
        shrunk = self._shrunken_estimates(mu, tau, values["theta_std"])
        # theta = mu + tau * z on observed slots adds n_observed * log(tau).
        return self._state_space_joint(values, mu, shrunk) + self._n_observed * jnp.log(tau) + log_jac

    # ------------------------------------------------------------------
    # Checked entry points
    # ------------------------------------------------------------------

    def evaluate(self, theta) -> tuple[float, np.ndarray]:
        """Log-density and gradient at an unconstrained point, with checks.

        Raises:
            ShapeMismatchError: wrong vector length.
            InvalidParameterError: a positive parameter transforms to zero or
                a non-finite value.
            NonFiniteDensityError, NonFiniteGradientError
        """
        self.layout.check(theta)
        theta = jnp.asarray(theta)

        values, _ = self.layout.unpack(theta)
        for block in self.layout.blocks:
            if block.constraint != "positive":
                continue
            v = np.asarray(values[block.name])
            if not np.all(np.isfinite(v) & (v > 0)):
                raise InvalidParameterError(
                    f"{block.name} transforms to {v}, outside (0, inf)"
                )

        value, grad = self.value_and_grad(theta)
        value = float(value)
        grad = np.asarray(grad)
        if not np.isfinite(value):
            raise NonFiniteDensityError(f"log-density is {value}")
        if not np.all(np.isfinite(grad)):
            bad = [
                b.name
                for b in self.layout.blocks
                if not np.all(np.isfinite(grad[b.offset : b.offset + b.size]))
            ]
            raise NonFiniteGradientError(f"non-finite gradient in blocks {bad}")
        return value, grad

    def log_density_constrained(
        self, params: dict[str, float], latent: dict[str, np.ndarray]
    ) -> float:
        """Log joint density of a constrained assignment (no Jacobian term).

        For the state-space family ``latent["theta"]`` holds the shrunken
        estimates themselves, whatever the sampling parameterization.

        Raises:
            NonFiniteDensityError: a parameter is outside its domain or the
                density is otherwise undefined.
            ShapeMismatchError: latent arrays have the wrong shape.
        """
        for name, constraint in self.spec.parameters():
            v = float(params[name])
            if constraint == "positive" and not (np.isfinite(v) and v > 0):
                raise NonFiniteDensityError(f"{name}={v} is outside (0, inf)")

        p = {name: jnp.asarray(float(params[name])) for name, _ in self.spec.parameters()}
        if isinstance(self.spec, RegimeSwitchingMixture):
            xi = jnp.asarray(np.asarray(latent["xi"], dtype=float))
            if xi.shape != (self.n_steps,):
                raise ShapeMismatchError(f"xi has shape {xi.shape}, expected ({self.n_steps},)")
            value = float(self._mixture_joint(p, xi))
        else:
            mu = jnp.asarray(np.asarray(latent["mu"], dtype=float))
            theta = jnp.asarray(np.asarray(latent["theta"], dtype=float))
            if mu.shape != (self.n_steps,) or theta.shape != self._y.shape:
                raise ShapeMismatchError(
                    f"mu {mu.shape} / theta {theta.shape} do not match "
                    f"({self.n_steps},) / {self._y.shape}"
                )
            value = float(self._state_space_joint(p, mu, theta))

        if not np.isfinite(value):
            raise NonFiniteDensityError(f"log-density is {value}")
        return value

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def constrain(self, theta) -> tuple[dict[str, float], dict[str, np.ndarray]]:
        """Map an unconstrained point to (static params, latent trajectories).

        Latent trajectories include derived quantities: ``regime_prob`` for
        the mixture, the shrunken estimates ``theta`` for the state-space
        model.
        """
        self.layout.check(theta)
        params, latent = self._constrain(jnp.asarray(theta))
        return (
            {name: float(v) for name, v in params.items()},
            {name: np.asarray(v) for name, v in latent.items()},
        )

    def _constrain_values(self, theta: jnp.ndarray) -> tuple[dict, dict]:
        values, _ = self.layout.unpack(theta)
        params = {name: values[name] for name in self.static_names}

        if isinstance(self.spec, RegimeSwitchingMixture):
            xi = values["xi"]
            return params, {"xi": xi, "regime_prob": regime_probability(xi)}

        mu = values["mu"]
        if self.spec.parameterization == "centered":
            theta_vals = values["theta"]
        else:
            theta_vals = self._shrunken_estimates(mu, values["tau"], values["theta_std"])
        return params, {"mu": mu, "theta": theta_vals}

    def unconstrain(self, params: dict[str, float], latent: dict[str, np.ndarray]) -> np.ndarray:
        """Inverse of constrain for the sampled blocks."""
        values: dict[str, np.ndarray] = {k: np.asarray(v, dtype=float) for k, v in params.items()}
        if isinstance(self.spec, RegimeSwitchingMixture):
            values["xi"] = np.asarray(latent["xi"], dtype=float)
        else:
            mu = np.asarray(latent["mu"], dtype=float)
            theta = np.asarray(latent["theta"], dtype=float)
            values["mu"] = mu
            if self.spec.parameterization == "centered":
                values["theta"] = theta
            else:
                observed = np.asarray(self.data.observed)
                tau = float(params["tau"])
                values["theta_std"] = np.where(observed, (theta - mu[:, None]) / tau, theta)
        return np.asarray(self.layout.pack(values), dtype=float)

    def initial_point(self, rng: np.random.Generator, radius: float = 2.0) -> np.ndarray:
        """Data-informed starting point with uniform jitter.

        The jitter is drawn from U(-radius, radius) times a per-block scale,
        in unconstrained space, so different chains start apart.
        """
        if isinstance(self.spec, RegimeSwitchingMixture):
            r = np.asarray(self.data.values)
            loc, spread = float(np.mean(r)), float(np.std(r)) or 1.0
            params = {
                "mu1": loc,
                "sigma1": spread,
                "mu2": loc,
                "sigma2": spread,
                "rho": 0.0,
                "alpha_xi": 0.0,
                "phi_xi": 0.5,
                "sigma_xi": 1.0,
                "gamma": 0.0,
            }
            latent = {"xi": np.zeros(self.n_steps)}
            jitter = {"mu1": spread, "mu2": spread, "xi": 0.5}
        else:
            data = self.data
            mu = _interpolated_step_means(data, fallback=self.spec.initial_state.loc)
            resid = (data.values - mu[:, None])[data.observed]
            tau = float(np.std(resid)) if resid.size > 1 else 1.0
            tau = max(tau, 1e-2)
            theta = np.where(data.observed, data.values, 0.0)
            params = {"tau": tau}
            latent = {"mu": mu, "theta": theta}
            jitter = {"mu": self.spec.innovation_scale}

        base = self.unconstrain(params, latent)
        scale = np.ones(self.dim)
        for block in self.layout.blocks:
            if block.name in jitter:
                scale[block.offset : block.offset + block.size] = jitter[block.name]
        return base + rng.uniform(-radius, radius, size=self.dim) * scale * 0.5


def _interpolated_step_means(data: ObservationSeries, fallback: float) -> np.ndarray:
    """Per-step precision-weighted mean of present observations.

    Steps without any observation are linearly interpolated between their
    observed neighbours (held flat past the ends).
    """
    weights = np.where(data.observed, 1.0 / data.scales**2, 0.0)
    total = weights.sum(axis=1)
    has_obs = total > 0
    steps = np.arange(data.n_steps)
    if not has_obs.any():
        return np.full(data.n_steps, fallback, dtype=float)
    means = (weights * data.values).sum(axis=1)[has_obs] / total[has_obs]
    return np.interp(steps, steps[has_obs], means)
