"""Pydantic models for posterior summaries and sampler diagnostics.

These are the payloads handed to a presentation layer: plain numbers and
lists only, JSON-serializable via ``model_dump_json``.
"""

from __future__ import annotations

import numpy as np
import polars as pl
from pydantic import BaseModel, Field, computed_field

from latent_ssm.errors import DiagnosticFlag

# Flags that make a fit untrustworthy. The others only signal inefficiency.
BLOCKING_FLAGS = frozenset(
    {
        DiagnosticFlag.DIVERGENCE,
        DiagnosticFlag.HIGH_POTENTIAL_SCALE_REDUCTION,
        DiagnosticFlag.INSUFFICIENT_CHAINS,
        DiagnosticFlag.INCOMPLETE_CHAINS,
        DiagnosticFlag.FAILED_CHAINS,
    }
)


def coverage_label(coverage: float) -> str:
    """0.9 -> "90", 0.975 -> "97.5"."""
    return f"{coverage * 100:g}"


# ---------------------------------------------------------------------------
# Posterior estimates
# ---------------------------------------------------------------------------


class Interval(BaseModel):
    """Central credible interval at one coverage level."""

    coverage: float = Field(gt=0.0, lt=1.0)
    lower: float
    upper: float

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def contains(self, value: float) -> bool:
        return self.lower <= value <= self.upper


class ParameterSummary(BaseModel):
    """Posterior summary of one static parameter."""

    name: str
    mean: float
    sd: float
    median: float
    intervals: list[Interval]
    r_hat: float | None = None
    ess_bulk: float | None = None

    def interval(self, coverage: float) -> Interval:
        for iv in self.intervals:
            if np.isclose(iv.coverage, coverage):
                return iv
        raise KeyError(f"no {coverage} interval for {self.name}")


class TrajectoryBand(BaseModel):
    """Per-step central interval of a latent trajectory."""

    coverage: float = Field(gt=0.0, lt=1.0)
    lower: list[float]
    upper: list[float]


class TrajectorySummary(BaseModel):
    """Per-step posterior summary of one latent trajectory."""

    name: str
    n_steps: int
    mean: list[float]
    median: list[float]
    sd: list[float]
    bands: list[TrajectoryBand]
    r_hat: list[float] | None = None

    @computed_field
    @property
    def max_r_hat(self) -> float | None:
        if self.r_hat is None:
            return None
        return float(np.nanmax(self.r_hat)) if self.r_hat else None

    def band(self, coverage: float) -> TrajectoryBand:
        for b in self.bands:
            if np.isclose(b.coverage, coverage):
                return b
        raise KeyError(f"no {coverage} band for {self.name}")

    def width(self, coverage: float) -> np.ndarray:
        """(T,) interval widths at ``coverage``."""
        b = self.band(coverage)
        return np.asarray(b.upper) - np.asarray(b.lower)


# ---------------------------------------------------------------------------
# Sampler diagnostics
# ---------------------------------------------------------------------------


class EnergyHistogram(BaseModel):
    """Histogram of energy values (bin centers + density)."""

    bin_centers: list[float]
    density: list[float]


class EnergyDiagnostics(BaseModel):
    """NUTS energy diagnostics (Betancourt 2017)."""

    energy_hist: EnergyHistogram
    energy_transition_hist: EnergyHistogram
    bfmi: list[float]


class ChainDiagnostic(BaseModel):
    """Status and sampler statistics of one chain."""

    chain_id: int
    status: str
    num_draws: int
    num_missing: int
    num_warmup_completed: int
    num_divergent: int = 0
    num_max_tree_depth: int = 0
    accept_stat_mean: float | None = None
    step_size: float | None = None
    bfmi: float | None = None
    stop_reason: str | None = None
    error: str | None = None


class SamplerDiagnostics(BaseModel):
    """Sampler-level diagnostics over the chains used for the summary."""

    num_chains: int
    num_usable_chains: int
    num_draws: int = 0
    num_divergences: int = 0
    divergence_rate: float = 0.0
    num_max_tree_depth: int = 0
    tree_depth_mean: float = 0.0
    tree_depth_max: int = 0
    accept_prob_mean: float = 0.0
    chains: list[ChainDiagnostic] = Field(default_factory=list)
    energy: EnergyDiagnostics | None = None


class FlagReport(BaseModel):
    """A raised diagnostic flag with what triggered it."""

    flag: DiagnosticFlag
    detail: str
    names: list[str] = Field(default_factory=list)
    chain_ids: list[int] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Top-level summary
# ---------------------------------------------------------------------------


class PosteriorSummary(BaseModel):
    """Reduced posterior: estimates, trajectories, diagnostics and flags."""

    family: str
    coverages: list[float]
    rhat_threshold: float
    include_incomplete: bool = False
    parameters: list[ParameterSummary] = Field(default_factory=list)
    trajectories: dict[str, TrajectorySummary] = Field(default_factory=dict)
    sampler: SamplerDiagnostics
    flags: list[FlagReport] = Field(default_factory=list)

    @computed_field
    @property
    def trustworthy(self) -> bool:
        return not any(f.flag in BLOCKING_FLAGS for f in self.flags)

    def has_flag(self, flag: DiagnosticFlag) -> bool:
        return any(f.flag == flag for f in self.flags)

    def flag(self, flag: DiagnosticFlag) -> FlagReport | None:
        return next((f for f in self.flags if f.flag == flag), None)

    def parameter(self, name: str) -> ParameterSummary:
        for p in self.parameters:
            if p.name == name:
                return p
        raise KeyError(f"unknown parameter {name!r}")

    def trajectory(self, name: str) -> TrajectorySummary:
        if name not in self.trajectories:
            raise KeyError(f"unknown trajectory {name!r}; have {sorted(self.trajectories)}")
        return self.trajectories[name]

    def parameters_frame(self) -> pl.DataFrame:
        """One row per static parameter."""
        rows = []
        for p in self.parameters:
            row = {
                "parameter": p.name,
                "mean": p.mean,
                "sd": p.sd,
                "median": p.median,
                "r_hat": p.r_hat,
                "ess_bulk": p.ess_bulk,
            }
            for iv in p.intervals:
                label = coverage_label(iv.coverage)
                row[f"lower_{label}"] = iv.lower
                row[f"upper_{label}"] = iv.upper
            rows.append(row)
        return pl.DataFrame(rows)

    def trajectory_frame(self, name: str) -> pl.DataFrame:
        """One row per step of a latent trajectory."""
        traj = self.trajectory(name)
        columns = {
            "step": list(range(traj.n_steps)),
            "mean": traj.mean,
            "median": traj.median,
            "sd": traj.sd,
        }
        for b in traj.bands:
            label = coverage_label(b.coverage)
            columns[f"lower_{label}"] = b.lower
            columns[f"upper_{label}"] = b.upper
        if traj.r_hat is not None:
            columns["r_hat"] = traj.r_hat
        return pl.DataFrame(columns)
