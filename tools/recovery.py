"""Parameter recovery for both model families.

Mixture: T=500 returns simulated from known regime parameters, fit with
NUTS, repeated over several seeds; reports per-parameter 95% CI coverage.
Multi-source: a 10-day, 3-source series with one source missing on day 5;
reports the latent-mean interval width per day.

Usage:
    uv run python tools/recovery.py                  # both scenarios
    uv run python tools/recovery.py --scenario mixture --reps 5
    uv run python tools/recovery.py --local          # small smoke-test settings
"""

from __future__ import annotations

import argparse
import logging
import time

import numpy as np

from latent_ssm.diagnostics import format_summary
from latent_ssm.fit import fit
from latent_ssm.inference import SamplerConfig
from latent_ssm.models import (
    DEFAULT_MIXTURE_TRUTH,
    MultiSourceStateSpace,
    RegimeSwitchingMixture,
    simulate_multi_source,
    simulate_regime_switching,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def header(title: str):
    w = 70
    print("=" * w)
    print(f" {title}")
    print("=" * w)


def print_recovery(name: str, true_val: float, summary, coverage: float = 0.95) -> bool:
    """Print one row of recovery stats. Returns True if the CI covers truth."""
    p = summary.parameter(name)
    iv = p.interval(coverage)
    covered = iv.contains(true_val)
    tag = "OK" if covered else "MISS"
    print(
        f"  {name:<10s}  true={true_val:+.3f}  median={p.median:+.3f}+-{p.sd:.3f}"
        f"  {coverage:.0%}CI=[{iv.lower:+.3f},{iv.upper:+.3f}]  {tag}"
        f"  r_hat={p.r_hat if p.r_hat is not None else float('nan'):.3f}"
    )
    return covered


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


def run_mixture(reps: int, T: int, config: SamplerConfig) -> float:
    """Repeated mixture recovery; returns the fraction of covered parameters."""
    hits, total = 0, 0
    for rep in range(reps):
        header(f"MIXTURE: replicate {rep + 1}/{reps} (T={T})")
        sim = simulate_regime_switching(T, rng=1000 + rep)
        t0 = time.perf_counter()
        result = fit(RegimeSwitchingMixture(), sim.data, sampler_config=config)
        print(f"Done in {time.perf_counter() - t0:.1f}s")
        for name, true_val in DEFAULT_MIXTURE_TRUTH.items():
            hits += print_recovery(name, true_val, result.summary)
            total += 1
        for f in result.summary.flags:
            print(f"  [{f.flag}] {f.detail}")
    rate = hits / total if total else float("nan")
    print(f"\nCoverage of 95% CIs: {hits}/{total} = {rate:.1%}")
    return rate


def run_multi_source(config: SamplerConfig) -> None:
    header("MULTI-SOURCE: 10 days, 3 sources, source_0 missing on day 5")
    sim = simulate_multi_source(
        10,
        scales=[0.05, 0.3, 0.3],
        tau=0.1,
        sources=("source_0", "source_1", "source_2"),
        missing=[(5, "source_0")],
        rng=7,
    )
    result = fit(MultiSourceStateSpace(), sim.data, sampler_config=config)
    print(format_summary(result.summary))
    widths = result.summary.trajectory("mu").width(0.9)
    print(f"\n{'Day':>4s}  {'True mu':>8s}  {'Median':>8s}  {'90% width':>10s}")
    median = result.summary.trajectory("mu").median
    for t, w in enumerate(widths):
        print(f"{t:>4d}  {sim.mu[t]:>8.2f}  {median[t]:>8.2f}  {w:>10.3f}")
    others = np.delete(widths, 5)
    print(f"\nDay 5 width {widths[5]:.3f} vs max of other days {others.max():.3f}")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main():
    parser = argparse.ArgumentParser(description="Run parameter recovery scenarios")
    parser.add_argument(
        "--scenario",
        choices=["mixture", "multi_source", "all"],
        default="all",
        help="Which scenario to run",
    )
    parser.add_argument("--reps", type=int, default=10, help="Mixture replicates")
    parser.add_argument("--steps", type=int, default=500, help="Mixture series length")
    parser.add_argument("--local", action="store_true", help="Use small local settings")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    if args.local:
        config = SamplerConfig(num_warmup=200, num_samples=200, num_chains=2)
        reps, steps = min(args.reps, 2), min(args.steps, 200)
    else:
        config = SamplerConfig(num_warmup=1000, num_samples=1000, num_chains=4)
        reps, steps = args.reps, args.steps

    if args.scenario in ("mixture", "all"):
        run_mixture(reps, steps, config)
    if args.scenario in ("multi_source", "all"):
        run_multi_source(config)


if __name__ == "__main__":
    main()
