"""Observation data structures consumed by the log-density evaluator.

Two shapes of data are supported:

- ``ObservationSeries``: T ordered steps, each with zero or more scalar
  measurements tagged with a source identity and a known noise scale.
  Missingness is structural: a boolean ``observed`` mask per (step, source)
  slot. Unobserved slots hold neutral fill values that every consumer masks
  out, so no numeric value ever means "missing".
- ``ReturnSeries``: a fully observed single-source series (e.g. daily
  returns) plus an optional external-information covariate, used by the
  regime-switching mixture.

Data acquisition (scraping, date parsing) happens upstream; these classes
only receive already-cleaned numbers.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from latent_ssm.errors import InvalidParameterError, ShapeMismatchError

if TYPE_CHECKING:
    import polars as pl

_VALUE_FILL = 0.0
_SCALE_FILL = 1.0


class Measurement(NamedTuple):
    """One scalar measurement with its known measurement-noise scale."""

    value: float
    scale: float


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


def _check_measurement(step: int, source: str, m: Measurement) -> None:
    if not math.isfinite(m.value):
        raise InvalidParameterError(
            f"Measurement value at step {step}, source {source!r} is not finite: {m.value}"
        )
    if not (math.isfinite(m.scale) and m.scale > 0):
        raise InvalidParameterError(
            f"Measurement scale at step {step}, source {source!r} must be positive "
            f"and finite, got {m.scale}"
        )


@dataclass(frozen=True, eq=False)
class ObservationSeries:
    """Irregular multi-source observations over T steps.

    Attributes:
        sources: Source identities, in first-appearance order.
        values: (T, S) measurement values; fill value where unobserved.
        scales: (T, S) measurement-noise scales; fill value where unobserved.
        observed: (T, S) boolean mask, True where a measurement is present.
    """

    sources: tuple[str, ...]
    values: np.ndarray
    scales: np.ndarray
    observed: np.ndarray

    def __post_init__(self):
        values = np.asarray(self.values, dtype=float)
        scales = np.asarray(self.scales, dtype=float)
        observed = np.asarray(self.observed, dtype=bool)

        if values.ndim != 2:
            raise ShapeMismatchError(f"values must be 2-D (T, S), got shape {values.shape}")
        if values.shape[0] < 1:
            raise ShapeMismatchError("an observation series needs at least one step")
        if scales.shape != values.shape or observed.shape != values.shape:
            raise ShapeMismatchError(
                f"values {values.shape}, scales {scales.shape} and observed "
                f"{observed.shape} must share one shape"
            )
        if len(self.sources) != values.shape[1]:
            raise ShapeMismatchError(
                f"{len(self.sources)} source names for {values.shape[1]} source columns"
            )
        if len(set(self.sources)) != len(self.sources):
            raise ShapeMismatchError(f"duplicate source names: {self.sources}")

        present_scales = scales[observed]
        if not np.all(np.isfinite(present_scales) & (present_scales > 0)):
            raise InvalidParameterError("all present measurement scales must be positive and finite")
        if not np.all(np.isfinite(values[observed])):
            raise InvalidParameterError("all present measurement values must be finite")

        # Normalize the unread slots so equal series compare equal.
        values = np.where(observed, values, _VALUE_FILL)
        scales = np.where(observed, scales, _SCALE_FILL)

        object.__setattr__(self, "sources", tuple(self.sources))
        object.__setattr__(self, "values", _readonly(values))
        object.__setattr__(self, "scales", _readonly(scales))
        object.__setattr__(self, "observed", _readonly(observed))

    # -- construction ---------------------------------------------------------

    @classmethod
    def from_steps(
        cls,
        steps: Sequence[Mapping[str, Measurement | tuple[float, float] | None]],
        sources: Sequence[str] | None = None,
    ) -> ObservationSeries:
        """Build a series from per-step mappings of source -> measurement.

        A source mapped to ``None``, or absent from a step's mapping, is
        missing at that step.

        Args:
            steps: One mapping per time step, in order.
            sources: Optional explicit source order. Defaults to the order in
                which sources first appear.

        Returns:
            ObservationSeries
        """
        if sources is None:
            seen: dict[str, None] = {}
            for step in steps:
                for name in step:
                    seen.setdefault(name, None)
            sources = tuple(seen)
        else:
            sources = tuple(sources)
            known = set(sources)
            for t, step in enumerate(steps):
                unknown = set(step) - known
                if unknown:
                    raise ShapeMismatchError(
                        f"step {t} references undeclared sources {sorted(unknown)}"
                    )

        T, S = len(steps), len(sources)
        values = np.full((T, S), _VALUE_FILL)
        scales = np.full((T, S), _SCALE_FILL)
        observed = np.zeros((T, S), dtype=bool)
        index = {name: j for j, name in enumerate(sources)}

        for t, step in enumerate(steps):
            for name, raw in step.items():
                if raw is None:
                    continue
                m = Measurement(*raw)
                _check_measurement(t, name, m)
                j = index[name]
                values[t, j] = m.value
                scales[t, j] = m.scale
                observed[t, j] = True

        return cls(sources=sources, values=values, scales=scales, observed=observed)

    @classmethod
    def single_source(
        cls, values: Sequence[float], scale: float | Sequence[float], source: str = "series"
    ) -> ObservationSeries:
        """Fully observed one-source series."""
        vals = np.asarray(values, dtype=float).reshape(-1, 1)
        scl = np.broadcast_to(np.asarray(scale, dtype=float).reshape(-1, 1), vals.shape).copy()
        return cls(
            sources=(source,),
            values=vals,
            scales=scl,
            observed=np.ones_like(vals, dtype=bool),
        )

    @classmethod
    def from_frame(cls, df: pl.DataFrame, n_steps: int | None = None) -> ObservationSeries:
        """Build a series from a long-format polars frame.

        Expected columns: ``step`` (0-based int), ``source`` (str),
        ``value`` (float, null = missing) and ``scale`` (float). Steps with no
        rows at all are fully missing.
        """
        required = {"step", "source", "value", "scale"}
        missing_cols = required - set(df.columns)
        if missing_cols:
            raise ShapeMismatchError(f"frame is missing columns {sorted(missing_cols)}")

        if df.height == 0 and n_steps is None:
            raise ShapeMismatchError("cannot infer the number of steps from an empty frame")

        T = n_steps if n_steps is not None else int(df["step"].max()) + 1
        sources = tuple(df["source"].unique(maintain_order=True).to_list())
        steps: list[dict[str, Measurement | None]] = [{} for _ in range(T)]

        for row in df.iter_rows(named=True):
            t = int(row["step"])
            source = row["source"]
            if not 0 <= t < T:
                raise ShapeMismatchError(f"step {t} outside [0, {T})")
            if source in steps[t]:
                raise ShapeMismatchError(f"duplicate rows for step {t}, source {source!r}")
            if row["value"] is None:
                steps[t][source] = None
            elif row["scale"] is None:
                raise InvalidParameterError(
                    f"measurement at step {t}, source {source!r} has no scale"
                )
            else:
                steps[t][source] = Measurement(float(row["value"]), float(row["scale"]))

        return cls.from_steps(steps, sources=sources)

    # -- queries ---------------------------------------------------------------

    @property
    def n_steps(self) -> int:
        return self.values.shape[0]

    @property
    def n_sources(self) -> int:
        return self.values.shape[1]

    @property
    def n_observed(self) -> int:
        return int(self.observed.sum())

    def source_index(self, source: str) -> int:
        try:
            return self.sources.index(source)
        except ValueError:
            raise ShapeMismatchError(f"unknown source {source!r}") from None

    def step(self, t: int) -> dict[str, Measurement | None]:
        """Return the mapping view of one step."""
        return {
            name: Measurement(float(self.values[t, j]), float(self.scales[t, j]))
            if self.observed[t, j]
            else None
            for j, name in enumerate(self.sources)
        }

    def with_missing(self, step: int, source: str) -> ObservationSeries:
        """Return a copy with one (step, source) slot marked missing.

        Marking an already-missing slot again yields an equal series.
        """
        if not 0 <= step < self.n_steps:
            raise ShapeMismatchError(f"step {step} outside [0, {self.n_steps})")
        j = self.source_index(source)
        observed = self.observed.copy()
        observed[step, j] = False
        return ObservationSeries(
            sources=self.sources,
            values=self.values.copy(),
            scales=self.scales.copy(),
            observed=observed,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ObservationSeries):
            return NotImplemented
        return (
            self.sources == other.sources
            and np.array_equal(self.observed, other.observed)
            and np.array_equal(self.values, other.values)
            and np.array_equal(self.scales, other.scales)
        )

    __hash__ = None  # type: ignore[assignment]


@dataclass(frozen=True, eq=False)
class ReturnSeries:
    """Fully observed single-source series for the regime-switching mixture.

    Attributes:
        values: (T,) observations, e.g. daily returns.
        external: (T,) external-information covariate entering the latent
            logit transition at each step. Defaults to the lagged
            observation (``external[t] = values[t-1]``, ``external[0] = 0``).
    """

    values: np.ndarray
    external: np.ndarray | None = None

    def __post_init__(self):
        values = np.asarray(self.values, dtype=float)
        if values.ndim != 1:
            raise ShapeMismatchError(f"values must be 1-D, got shape {values.shape}")
        if values.shape[0] < 2:
            raise ShapeMismatchError("a return series needs at least two steps")
        if not np.all(np.isfinite(values)):
            raise InvalidParameterError("return series values must be finite")

        if self.external is None:
            external = np.concatenate([[0.0], values[:-1]])
        else:
            external = np.asarray(self.external, dtype=float)
            if external.shape != values.shape:
                raise ShapeMismatchError(
                    f"external information has shape {external.shape}, expected {values.shape}"
                )
            if not np.all(np.isfinite(external)):
                raise InvalidParameterError("external information must be finite")

        object.__setattr__(self, "values", _readonly(values))
        object.__setattr__(self, "external", _readonly(external))

    @classmethod
    def from_observations(
        cls, series: ObservationSeries, external: Sequence[float] | None = None
    ) -> ReturnSeries:
        """Convert a one-source, fully observed ObservationSeries."""
        if series.n_sources != 1:
            raise ShapeMismatchError(
                f"the mixture model takes exactly one source, got {series.n_sources}"
            )
        if not series.observed.all():
            raise ShapeMismatchError("the mixture model requires a fully observed series")
        return cls(values=series.values[:, 0].copy(), external=external)

    @property
    def n_steps(self) -> int:
        return self.values.shape[0]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReturnSeries):
            return NotImplemented
        return np.array_equal(self.values, other.values) and np.array_equal(
            self.external, other.external
        )

    __hash__ = None  # type: ignore[assignment]
