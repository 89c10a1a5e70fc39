"""Shared fixtures for latent_ssm tests.

- Data fixtures for both model families (small, deterministic)
- Sampler configurations sized for unit tests

For non-fixture helpers (hand-built chains, CI assertions), see helpers.py.
"""

import numpy as np
import pytest

from latent_ssm.data import Measurement, ObservationSeries, ReturnSeries
from latent_ssm.inference import SamplerConfig
from latent_ssm.models import (
    MultiSourceStateSpace,
    RegimeSwitchingMixture,
    simulate_multi_source,
    simulate_regime_switching,
)

# ══════════════════════════════════════════════════════════════════════════════
# DATA FIXTURES
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def returns_data() -> ReturnSeries:
    """T=60 returns simulated from the default mixture truth."""
    return simulate_regime_switching(60, rng=0).data


@pytest.fixture
def mixture_sim():
    """T=500 mixture simulation with the recovery-scenario parameters."""
    return simulate_regime_switching(500, rng=1)


@pytest.fixture
def three_source_series() -> ObservationSeries:
    """4 steps, 3 sources; poll_b missing at step 1, nobody reports at step 2."""
    steps = [
        {"poll_a": Measurement(40.0, 1.0), "poll_b": Measurement(42.0, 1.5), "poll_c": Measurement(41.0, 2.0)},
        {"poll_a": Measurement(40.5, 1.0), "poll_b": None, "poll_c": Measurement(41.5, 2.0)},
        {},
        {"poll_a": Measurement(41.0, 1.0), "poll_b": Measurement(43.0, 1.5)},
    ]
    return ObservationSeries.from_steps(steps, sources=("poll_a", "poll_b", "poll_c"))


@pytest.fixture
def day5_sim():
    """10 days, 3 sources, the most precise source missing on day 5.

    Per-day information dominates the random-walk smoothing (small scales and
    tau), so losing a source shows up as a wider interval on that day.
    """
    return simulate_multi_source(
        10,
        scales=[0.05, 0.3, 0.3],
        tau=0.1,
        sources=("source_0", "source_1", "source_2"),
        missing=[(5, "source_0")],
        rng=7,
    )


@pytest.fixture
def convergence_sim():
    """Well-specified 30-step, 4-source state-space dataset."""
    return simulate_multi_source(
        30,
        scales=[0.5, 0.8, 1.0, 1.2],
        tau=0.7,
        rng=11,
        missing=[(3, "source_1"), (10, "source_0"), (10, "source_3"), (22, "source_2")],
    )


@pytest.fixture
def mixture_spec() -> RegimeSwitchingMixture:
    return RegimeSwitchingMixture()


@pytest.fixture
def state_space_spec() -> MultiSourceStateSpace:
    return MultiSourceStateSpace()


# ══════════════════════════════════════════════════════════════════════════════
# SAMPLER FIXTURES
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def quick_sampler_config() -> SamplerConfig:
    """Small run that exercises every warmup phase."""
    return SamplerConfig(
        num_warmup=150,
        num_samples=100,
        num_chains=2,
        seed=0,
        max_tree_depth=6,
    )


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)
