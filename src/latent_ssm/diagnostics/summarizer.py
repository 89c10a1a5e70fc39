"""Reduce sampler chains into a PosteriorSummary.

Pure: reads draws, never mutates them. Convergence problems come back as
flags on the summary rather than exceptions, so a caller always gets the
numbers together with a verdict on whether to trust them.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin

from latent_ssm.diagnostics.schemas import (
    ChainDiagnostic,
    EnergyDiagnostics,
    EnergyHistogram,
    FlagReport,
    Interval,
    ParameterSummary,
    PosteriorSummary,
    SamplerDiagnostics,
    TrajectoryBand,
    TrajectorySummary,
)
from latent_ssm.errors import DiagnosticFlag, InvalidParameterError
from latent_ssm.inference.chains import Chain, ChainStatus
from latent_ssm.inference.sampler import InferenceResult

logger = logging.getLogger(__name__)

# split_gelman_rubin needs at least two draws per half-chain.
_MIN_DRAWS_FOR_RHAT = 4


def _quantile_bounds(coverage: float) -> tuple[float, float]:
    tail = (1.0 - coverage) / 2.0
    return tail, 1.0 - tail


def _grouped(chains: Sequence[Chain], name: str) -> np.ndarray:
    """(n_chains, n_draws, *shape), chains truncated to the shortest."""
    n = min(len(c) for c in chains)
    return np.stack([c.stack(name)[:n] for c in chains])


def _rhat(grouped: np.ndarray) -> np.ndarray | None:
    if grouped.shape[0] < 2 or grouped.shape[1] < _MIN_DRAWS_FOR_RHAT:
        return None
    return np.asarray(split_gelman_rubin(grouped))


def _ess(grouped: np.ndarray) -> np.ndarray | None:
    if grouped.shape[1] < _MIN_DRAWS_FOR_RHAT:
        return None
    return np.asarray(effective_sample_size(grouped))


def summarize_parameter(
    name: str, grouped: np.ndarray, coverages: Sequence[float], pooled: np.ndarray | None = None
) -> ParameterSummary:
    """Summary of one scalar parameter from (n_chains, n_draws) draws.

    ``pooled`` overrides the draws used for the point and interval estimates
    (all draws of every chain, untruncated).
    """
    flat = grouped.reshape(-1) if pooled is None else pooled
    intervals = []
    for c in coverages:
        lo, hi = np.quantile(flat, _quantile_bounds(c))
        intervals.append(Interval(coverage=c, lower=float(lo), upper=float(hi)))
    rhat = _rhat(grouped)
    ess = _ess(grouped)
    return ParameterSummary(
        name=name,
        mean=float(np.mean(flat)),
        sd=float(np.std(flat)),
        median=float(np.median(flat)),
        intervals=intervals,
        r_hat=None if rhat is None else float(rhat),
        ess_bulk=None if ess is None else float(ess),
    )


def summarize_trajectory(
    name: str, grouped: np.ndarray, coverages: Sequence[float], pooled: np.ndarray | None = None
) -> TrajectorySummary:
    """Per-step summary from (n_chains, n_draws, T) draws."""
    flat = grouped.reshape(-1, grouped.shape[-1]) if pooled is None else pooled
    bands = []
    for c in coverages:
        lo, hi = np.quantile(flat, _quantile_bounds(c), axis=0)
        bands.append(TrajectoryBand(coverage=c, lower=lo.tolist(), upper=hi.tolist()))
    rhat = _rhat(grouped)
    return TrajectorySummary(
        name=name,
        n_steps=int(flat.shape[-1]),
        mean=np.mean(flat, axis=0).tolist(),
        median=np.median(flat, axis=0).tolist(),
        sd=np.std(flat, axis=0).tolist(),
        bands=bands,
        r_hat=None if rhat is None else rhat.tolist(),
    )


def bfmi(energy: np.ndarray) -> float | None:
    """Bayesian fraction of missing information, Var(dE) / Var(E).

    Values below ~0.3 mean the momentum resampling explores the energy
    distribution poorly (Betancourt 2017).
    """
    energy = np.asarray(energy, dtype=float)
    if energy.size < 3:
        return None
    var_e = float(np.var(energy))
    return float(np.var(np.diff(energy)) / var_e) if var_e > 0 else 0.0


def build_energy_diagnostics(energies: Sequence[np.ndarray], n_bins: int = 40) -> EnergyDiagnostics:
    """Marginal and transition energy histograms plus per-chain BFMI."""
    e_flat = np.concatenate([np.asarray(e, dtype=float) for e in energies])
    de_flat = np.concatenate([np.diff(e) for e in energies])

    def _hist(vals: np.ndarray) -> EnergyHistogram:
        if vals.size == 0:
            return EnergyHistogram(bin_centers=[], density=[])
        lo, hi = float(np.min(vals)), float(np.max(vals))
        pad = (hi - lo) * 0.05 if hi > lo else 0.5
        density, edges = np.histogram(vals, bins=n_bins, range=(lo - pad, hi + pad), density=True)
        centers = (edges[:-1] + edges[1:]) / 2.0
        return EnergyHistogram(bin_centers=centers.tolist(), density=density.tolist())

    return EnergyDiagnostics(
        energy_hist=_hist(e_flat),
        energy_transition_hist=_hist(de_flat),
        bfmi=[b if b is not None else float("nan") for b in map(bfmi, energies)],
    )


def _chain_diagnostic(chain: Chain) -> ChainDiagnostic:
    draws = chain.draws
    return ChainDiagnostic(
        chain_id=chain.chain_id,
        status=str(chain.status),
        num_draws=len(draws),
        num_missing=chain.missing_iterations,
        num_warmup_completed=chain.num_warmup_completed,
        num_divergent=chain.num_divergent,
        num_max_tree_depth=chain.num_max_tree_depth,
        accept_stat_mean=float(np.mean([d.accept_stat for d in draws])) if draws else None,
        step_size=chain.step_size,
        bfmi=bfmi(chain.energies()) if draws else None,
        stop_reason=chain.stop_reason,
        error=chain.error,
    )


def _sampler_diagnostics(all_chains: Sequence[Chain], usable: Sequence[Chain]) -> SamplerDiagnostics:
    draws = [d for c in usable for d in c.draws]
    n = len(draws)
    depths = [d.tree_depth for d in draws]
    return SamplerDiagnostics(
        num_chains=len(all_chains),
        num_usable_chains=len(usable),
        num_draws=n,
        num_divergences=sum(d.divergent for d in draws),
        divergence_rate=float(np.mean([d.divergent for d in draws])) if n else 0.0,
        num_max_tree_depth=sum(d.max_tree_depth_exceeded for d in draws),
        tree_depth_mean=float(np.mean(depths)) if n else 0.0,
        tree_depth_max=int(max(depths)) if n else 0,
        accept_prob_mean=float(np.mean([d.accept_stat for d in draws])) if n else 0.0,
        chains=[_chain_diagnostic(c) for c in all_chains],
        energy=build_energy_diagnostics([c.energies() for c in usable]) if n else None,
    )


def _exceeds(value: float | None, threshold: float) -> bool:
    # NaN R-hat (e.g. a constant chain) counts as not converged.
    return value is not None and not value <= threshold


def summarize(
    result: InferenceResult | Sequence[Chain],
    coverages: Sequence[float] = (0.9, 0.95),
    rhat_threshold: float = 1.1,
    bfmi_threshold: float = 0.3,
    include_incomplete: bool = False,
    family: str | None = None,
) -> PosteriorSummary:
    """Reduce chains to per-parameter and per-step posterior statistics.

    Args:
        result: InferenceResult from ``sample`` or a list of chains.
        coverages: Central credible-interval coverages, each in (0, 1).
        rhat_threshold: Split R-hat above which HIGH_POTENTIAL_SCALE_REDUCTION
            is raised.
        bfmi_threshold: Per-chain BFMI below which LOW_BFMI is raised.
        include_incomplete: Also use the draws of cancelled chains.
        family: Model family label when ``result`` is a plain chain list.

    Returns:
        PosteriorSummary. Statistics come from COMPLETED chains (plus
        INCOMPLETE ones with ``include_incomplete``); every chain shows up
        in ``sampler.chains`` either way.
    """
    coverages = [float(c) for c in coverages]
    for c in coverages:
        if not 0.0 < c < 1.0:
            raise InvalidParameterError(f"coverage must be in (0, 1), got {c}")

    if isinstance(result, InferenceResult):
        all_chains = list(result.chains)
        family = family or result.family
        static_names: list[str] | None = list(result.static_names)
    else:
        all_chains = list(result)
        static_names = None

    allowed = {ChainStatus.COMPLETED}
    if include_incomplete:
        allowed.add(ChainStatus.INCOMPLETE)
    usable = [c for c in all_chains if c.status in allowed and len(c) > 0]

    flags: list[FlagReport] = []
    failed = [c for c in all_chains if c.status == ChainStatus.FAILED]
    if failed:
        flags.append(
            FlagReport(
                flag=DiagnosticFlag.FAILED_CHAINS,
                detail="; ".join(f"chain {c.chain_id}: {c.error}" for c in failed),
                chain_ids=[c.chain_id for c in failed],
            )
        )
    incomplete = [c for c in all_chains if c.status == ChainStatus.INCOMPLETE]
    if incomplete:
        flags.append(
            FlagReport(
                flag=DiagnosticFlag.INCOMPLETE_CHAINS,
                detail="; ".join(
                    f"chain {c.chain_id}: {c.missing_iterations}/{c.num_samples_requested} "
                    f"draws missing ({c.stop_reason})"
                    for c in incomplete
                ),
                chain_ids=[c.chain_id for c in incomplete],
            )
        )
    if len(usable) < 2:
        flags.append(
            FlagReport(
                flag=DiagnosticFlag.INSUFFICIENT_CHAINS,
                detail=f"{len(usable)} usable chain(s); R-hat needs at least 2",
                chain_ids=[c.chain_id for c in usable],
            )
        )

    parameters: list[ParameterSummary] = []
    trajectories: dict[str, TrajectorySummary] = {}
    if usable:
        first = usable[0].draws[0]
        names = static_names if static_names is not None else list(first.params)
        for name in names:
            pooled = np.concatenate([c.stack(name) for c in usable])
            parameters.append(summarize_parameter(name, _grouped(usable, name), coverages, pooled))
        for name, value in first.latent.items():
            if np.ndim(value) != 1:
                continue
            pooled = np.concatenate([c.stack(name) for c in usable])
            trajectories[name] = summarize_trajectory(
                name, _grouped(usable, name), coverages, pooled
            )

    high_rhat = [p.name for p in parameters if _exceeds(p.r_hat, rhat_threshold)]
    high_rhat += [t.name for t in trajectories.values() if _exceeds(t.max_r_hat, rhat_threshold)]
    if high_rhat:
        flags.append(
            FlagReport(
                flag=DiagnosticFlag.HIGH_POTENTIAL_SCALE_REDUCTION,
                detail=f"split R-hat above {rhat_threshold} for {', '.join(high_rhat)}",
                names=high_rhat,
            )
        )

    sampler = _sampler_diagnostics(all_chains, usable)
    if sampler.num_divergences:
        flags.append(
            FlagReport(
                flag=DiagnosticFlag.DIVERGENCE,
                detail=f"{sampler.num_divergences} divergent transitions after warmup",
                chain_ids=[c.chain_id for c in usable if c.num_divergent],
            )
        )
    if sampler.num_max_tree_depth:
        flags.append(
            FlagReport(
                flag=DiagnosticFlag.MAX_TREE_DEPTH_EXCEEDED,
                detail=f"{sampler.num_max_tree_depth} transitions hit the maximum tree depth",
                chain_ids=[c.chain_id for c in usable if c.num_max_tree_depth],
            )
        )
    low_bfmi = [
        c.chain_id
        for c in sampler.chains
        if c.chain_id in {u.chain_id for u in usable} and c.bfmi is not None and c.bfmi < bfmi_threshold
    ]
    if low_bfmi:
        flags.append(
            FlagReport(
                flag=DiagnosticFlag.LOW_BFMI,
                detail=f"E-BFMI below {bfmi_threshold}",
                chain_ids=low_bfmi,
            )
        )

    summary = PosteriorSummary(
        family=family or "unknown",
        coverages=coverages,
        rhat_threshold=rhat_threshold,
        include_incomplete=include_incomplete,
        parameters=parameters,
        trajectories=trajectories,
        sampler=sampler,
        flags=flags,
    )
    if summary.trustworthy:
        logger.info("Posterior summary: %d parameters, no blocking flags", len(parameters))
    else:
        logger.warning(
            "Posterior summary flagged: %s", ", ".join(str(f.flag) for f in summary.flags)
        )
    return summary


def format_summary(summary: PosteriorSummary) -> str:
    """Plain-text table of the static parameters and raised flags."""
    coverage = max(summary.coverages)
    lines = [
        f"{summary.family}: {summary.sampler.num_usable_chains}/{summary.sampler.num_chains} chains used",
        f"{'Parameter':<12} {'Median':>10} {'Mean':>10} {'SD':>10} "
        f"{'Lower':>10} {'Upper':>10} {'R-hat':>7} {'ESS':>8}",
    ]
    for p in summary.parameters:
        iv = p.interval(coverage)
        rhat = f"{p.r_hat:.3f}" if p.r_hat is not None else "-"
        ess = f"{p.ess_bulk:.0f}" if p.ess_bulk is not None else "-"
        lines.append(
            f"{p.name:<12} {p.median:>10.4f} {p.mean:>10.4f} {p.sd:>10.4f} "
            f"{iv.lower:>10.4f} {iv.upper:>10.4f} {rhat:>7} {ess:>8}"
        )
    for f in summary.flags:
        lines.append(f"[{f.flag}] {f.detail}")
    return "\n".join(lines)
