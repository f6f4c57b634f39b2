"""
Temporal extension — correlation trajectories over LSTM latent states.

For each time step t the training hull lives in latent-state space:

    H_t = hull({z_j(τ) : j ∈ training, τ ∈ W_t})
    d_i(t) = dist(z_i(t), H_t)            for evaluation catchments i
    ρ_t = corr(d(t), score)

Window policies:
    - EXPANDING: W_t = [t_0 .. t], accumulated sequentially
    - SLIDING:   W_t = the last `width` steps ending at t, independent
                 windows (may run in parallel)

Each window moves INITIALIZING → ACCUMULATING → STABLE; results before
STABLE carry a NaN coefficient and the reason. An EXPANDING window never
leaves STABLE: a later step that cannot be correlated (e.g. too few matched
pairs) stays STABLE with a NaN coefficient and the reason, and counts as
insufficient. SLIDING windows are evaluated independently at every step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Iterator, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from src.novelty.correlation import CorrelationConfig, correlate
from src.novelty.errors import DegenerateInputError, InsufficientSampleError
from src.novelty.extrapolation import compute_extrapolation
from src.novelty.geometry import ConvexHull, HullConfig, build_hull
from src.novelty.records import (
    AttributeVector,
    CorrelationResult,
    PerformanceRecord,
    PointRole,
    PointSet,
    WindowState,
)

logger = logging.getLogger(__name__)


class WindowKind(str, Enum):
    EXPANDING = "expanding"
    SLIDING = "sliding"


@dataclass(frozen=True)
class WindowPolicy:
    """How the latent-state window grows with time."""

    kind: WindowKind
    width: int | None = None
    """Window length in steps (SLIDING only)."""

    min_steps: int = 1
    """Steps the window must span before it can become STABLE."""

    def __post_init__(self):
        object.__setattr__(self, "kind", WindowKind(self.kind))
        if self.kind == WindowKind.SLIDING:
            if self.width is None or self.width < 1:
                raise ValueError("Sliding windows need a width >= 1")
            if self.min_steps < self.width:
                object.__setattr__(self, "min_steps", self.width)

    @classmethod
    def expanding(cls, min_steps: int = 1) -> "WindowPolicy":
        return cls(WindowKind.EXPANDING, None, min_steps)

    @classmethod
    def sliding(cls, width: int) -> "WindowPolicy":
        return cls(WindowKind.SLIDING, width, width)

    def window(self, t: int) -> range:
        """Step indices covered by the window ending at step t."""
        if self.kind == WindowKind.EXPANDING:
            return range(0, t + 1)
        return range(max(0, t - self.width + 1), t + 1)


@dataclass(frozen=True)
class TemporalConfig:
    """Configuration for correlation trajectories."""

    hull: HullConfig = field(default_factory=HullConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    n_jobs: int = 1
    """joblib workers for SLIDING windows (EXPANDING is always sequential)."""


@dataclass(frozen=True, eq=False)
class LatentStateSeries:
    """Per-catchment, per-time latent state vectors in long format."""

    frame: pd.DataFrame
    dims: tuple[str, ...]
    training_ids: frozenset
    id_column: str = "point_id"
    time_column: str = "time"

    def __post_init__(self):
        missing = [
            c for c in (self.id_column, self.time_column, *self.dims)
            if c not in self.frame.columns
        ]
        if missing:
            raise KeyError(f"Latent state table lacks column(s) {missing}")
        frame = self.frame.loc[:, [self.id_column, self.time_column, *self.dims]].copy()
        frame[self.id_column] = frame[self.id_column].astype(str)
        object.__setattr__(self, "frame", frame)
        object.__setattr__(self, "dims", tuple(self.dims))
        object.__setattr__(self, "training_ids", frozenset(str(i) for i in self.training_ids))

    def times(self) -> np.ndarray:
        return np.sort(self.frame[self.time_column].unique())

    def training_states(self, times: Sequence) -> np.ndarray:
        """Finite training-catchment states at the given times, (n, d)."""
        f = self.frame
        rows = f[f[self.time_column].isin(times) & f[self.id_column].isin(self.training_ids)]
        X = rows.loc[:, list(self.dims)].to_numpy(dtype=float)
        return X[np.all(np.isfinite(X), axis=1)]

    def evaluation_points(self, time) -> PointSet:
        """Evaluation-catchment states at a single time."""
        f = self.frame
        rows = f[(f[self.time_column] == time) & ~f[self.id_column].isin(self.training_ids)]
        rows = rows.sort_values(self.id_column, kind="mergesort")
        values = rows.loc[:, list(self.dims)].to_numpy(dtype=float)
        vectors = tuple(
            AttributeVector(pid, self.dims, tuple(float(v) for v in row))
            for pid, row in zip(rows[self.id_column].tolist(), values)
        )
        return PointSet(role=PointRole.EVALUATION, vectors=vectors)


@dataclass(frozen=True)
class TemporalCorrelation:
    """Time-ordered correlation results, one per step."""

    results: tuple[CorrelationResult, ...]
    policy: WindowPolicy

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[CorrelationResult]:
        return iter(self.results)

    def __getitem__(self, idx) -> CorrelationResult:
        return self.results[idx]

    @property
    def n_insufficient(self) -> int:
        return sum(not r.is_sufficient for r in self.results)

    @property
    def first_stable_time(self) -> int | None:
        for r in self.results:
            if r.is_sufficient:
                return r.time_index
        return None

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "time_index": [r.time_index for r in self.results],
                "time": [r.metadata.get("time") for r in self.results],
                "coefficient": [r.coefficient for r in self.results],
                "p_value": [r.p_value for r in self.results],
                "n": [r.n for r in self.results],
                "n_unmatched_extrapolation": [r.n_unmatched_extrapolation for r in self.results],
                "n_unmatched_performance": [r.n_unmatched_performance for r in self.results],
                "n_skipped": pd.array(
                    [r.metadata.get("n_skipped") for r in self.results], dtype="Int64"
                ),
                "status": [r.status.value for r in self.results],
                "reason": [r.reason for r in self.results],
            }
        )


def _performance_lookup(performance_series: Iterable[PerformanceRecord]):
    records = list(performance_series)
    if any(r.time_index is not None for r in records):
        by_time: dict = {}
        for r in records:
            by_time.setdefault(r.time_index, []).append(r)
        return lambda t: by_time.get(t, [])
    return lambda t: records


def _insufficient(t, time, state, reason, method, n=0) -> CorrelationResult:
    return CorrelationResult(
        coefficient=float("nan"),
        p_value=float("nan"),
        n=n,
        method=method,
        time_index=t,
        status=state,
        reason=reason,
        metadata={"time": time},
    )


def _evaluate_window(
    t: int,
    time,
    dims: tuple[str, ...],
    n_steps: int,
    train_states: np.ndarray | None,
    evaluation: PointSet,
    hull: ConvexHull | None,
    performance: list,
    policy: WindowPolicy,
    config: TemporalConfig,
) -> CorrelationResult:
    """Correlation for the window ending at step t."""
    method = config.correlation.method

    if hull is None:
        n_train = 0 if train_states is None else len(train_states)
        if n_train == 0:
            return _insufficient(t, time, WindowState.INITIALIZING, "no training states yet", method)
    if n_steps < policy.min_steps:
        return _insufficient(
            t, time, WindowState.ACCUMULATING,
            f"window spans {n_steps} of {policy.min_steps} steps", method,
        )

    window_hull = hull
    if window_hull is None:
        try:
            window_hull = build_hull(train_states, config=config.hull)
        except DegenerateInputError as e:
            return _insufficient(t, time, WindowState.ACCUMULATING, str(e), method)
        # Array-built hulls carry positional names
        window_hull = replace(window_hull, dims=dims)

    extrapolation = compute_extrapolation(window_hull, evaluation)
    try:
        result = correlate(extrapolation, performance, config.correlation)
    except InsufficientSampleError as e:
        return _insufficient(t, time, WindowState.ACCUMULATING, str(e), method, n=e.n_matched)

    result.time_index = t
    result.status = WindowState.STABLE
    result.metadata["time"] = time
    result.metadata["n_skipped"] = extrapolation.n_skipped
    return result


def correlate_over_time(
    hull: ConvexHull | None,
    latent_state_series: LatentStateSeries,
    performance_series: Iterable[PerformanceRecord],
    window_policy: WindowPolicy,
    config: TemporalConfig | None = None,
) -> TemporalCorrelation:
    """
    Correlation of latent-space extrapolation with performance over time.

    Args:
        hull: Fixed latent-space hull to reuse at every step, or None to
            rebuild the hull from the training states in each window.
        latent_state_series: Latent states of training and evaluation
            catchments.
        performance_series: Fixed per-catchment records, or windowed
            records whose time_index is matched to the step index.
        window_policy: EXPANDING or SLIDING.
        config: Hull, correlation and parallelism settings.

    Returns:
        TemporalCorrelation with one result per time step.
    """
    if config is None:
        config = TemporalConfig()

    series = latent_state_series
    times = series.times()
    perf_at = _performance_lookup(performance_series)

    def args_for(t, train_states):
        window = window_policy.window(t)
        return (
            t, times[t], series.dims, len(window), train_states,
            series.evaluation_points(times[t]), hull,
            perf_at(t), window_policy, config,
        )

    if window_policy.kind == WindowKind.EXPANDING:
        results = []
        accumulated: list = []
        stable = False
        for t in range(len(times)):
            if hull is None:
                accumulated.append(series.training_states([times[t]]))
            train_states = np.vstack(accumulated) if accumulated else None
            result = _evaluate_window(*args_for(t, train_states))
            if stable and result.status != WindowState.STABLE:
                # The window stays STABLE; only this step lacks a coefficient
                result.status = WindowState.STABLE
            stable = stable or result.status == WindowState.STABLE
            results.append(result)
    else:
        jobs = []
        for t in range(len(times)):
            window_times = times[list(window_policy.window(t))]
            train_states = series.training_states(window_times) if hull is None else None
            jobs.append(args_for(t, train_states))
        if config.n_jobs == 1:
            results = [_evaluate_window(*job) for job in jobs]
        else:
            results = Parallel(n_jobs=config.n_jobs)(
                delayed(_evaluate_window)(*job) for job in jobs
            )

    trajectory = TemporalCorrelation(results=tuple(results), policy=window_policy)
    logger.info(
        f"Temporal correlation ({window_policy.kind.value}): {len(trajectory)} steps, "
        f"{trajectory.n_insufficient} insufficient, first stable at "
        f"{trajectory.first_stable_time}"
    )
    return trajectory
