"""
Performance aggregator — per-catchment goodness-of-fit scores.

Reduces long-format model outputs

    point_id | time | predicted | observed

into one score per catchment, or per catchment × time window.

Metrics:
    - nse: Nash–Sutcliffe efficiency, 1 - Σ(o - p)² / Σ(o - ō)²
    - kge: Kling–Gupta efficiency (r, variability ratio, bias ratio)
    - rmse: root mean squared error
    - pearson_r: linear correlation of predicted vs observed
    - pbias: percent bias, 100 Σ(p - o) / Σo

Every metric raises InsufficientDataError instead of returning NaN.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, Optional, Tuple

import numpy as np
import pandas as pd

from src.novelty.errors import InsufficientDataError
from src.novelty.records import PerformanceRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PerformanceConfig:
    """Column names and validity thresholds for performance aggregation."""

    id_column: str = "point_id"
    time_column: str = "time"
    predicted_column: str = "predicted"
    observed_column: str = "observed"

    min_valid_steps: int = 10
    """Minimum finite (predicted, observed) pairs per group."""

    min_obs_variance: float = 1e-10
    """Observed series with lower variance are rejected."""


@dataclass(frozen=True)
class Grouping:
    """Per-catchment (window=None) or per-window aggregation."""

    window: int | None = None
    """Number of consecutive time steps per window."""

    def __post_init__(self):
        if self.window is not None and self.window < 1:
            raise ValueError(f"Window must be >= 1, got {self.window}")


def _valid_pairs(
    predicted: np.ndarray,
    observed: np.ndarray,
    config: PerformanceConfig,
) -> tuple[np.ndarray, np.ndarray]:
    predicted = np.asarray(predicted, dtype=float)
    observed = np.asarray(observed, dtype=float)
    if predicted.shape != observed.shape:
        raise ValueError(
            f"Predicted {predicted.shape} and observed {observed.shape} differ in shape"
        )
    mask = np.isfinite(predicted) & np.isfinite(observed)
    p, o = predicted[mask], observed[mask]
    if len(o) < config.min_valid_steps:
        raise InsufficientDataError(
            f"{len(o)} valid time steps, need {config.min_valid_steps}"
        )
    if np.var(o) < config.min_obs_variance:
        raise InsufficientDataError(f"Observed variance {np.var(o):.3g} is near zero")
    return p, o


def nse(predicted, observed, config: PerformanceConfig | None = None) -> float:
    """Nash–Sutcliffe efficiency (1 = perfect, 0 = mean-of-observations skill)."""
    p, o = _valid_pairs(predicted, observed, config or PerformanceConfig())
    return float(1.0 - np.sum((o - p) ** 2) / np.sum((o - o.mean()) ** 2))


def kge(predicted, observed, config: PerformanceConfig | None = None) -> float:
    """
    Kling–Gupta efficiency.

    KGE = 1 - sqrt((r - 1)² + (α - 1)² + (β - 1)²), with α = σp/σo and
    β = μp/μo.
    """
    p, o = _valid_pairs(predicted, observed, config or PerformanceConfig())
    if abs(o.mean()) < 1e-12:
        raise InsufficientDataError("Observed mean is zero; KGE bias ratio undefined")
    if np.std(p) == 0:
        raise InsufficientDataError("Predicted series is constant; KGE undefined")
    r = np.corrcoef(p, o)[0, 1]
    alpha = np.std(p) / np.std(o)
    beta = p.mean() / o.mean()
    return float(1.0 - np.sqrt((r - 1) ** 2 + (alpha - 1) ** 2 + (beta - 1) ** 2))


def rmse(predicted, observed, config: PerformanceConfig | None = None) -> float:
    p, o = _valid_pairs(predicted, observed, config or PerformanceConfig())
    return float(np.sqrt(np.mean((p - o) ** 2)))


def pearson_r(predicted, observed, config: PerformanceConfig | None = None) -> float:
    p, o = _valid_pairs(predicted, observed, config or PerformanceConfig())
    if np.std(p) == 0:
        raise InsufficientDataError("Predicted series is constant; correlation undefined")
    return float(np.corrcoef(p, o)[0, 1])


def pbias(predicted, observed, config: PerformanceConfig | None = None) -> float:
    p, o = _valid_pairs(predicted, observed, config or PerformanceConfig())
    total = np.sum(o)
    if abs(total) < 1e-12:
        raise InsufficientDataError("Observed total is zero; percent bias undefined")
    return float(100.0 * np.sum(p - o) / total)


MetricFn = Callable[..., float]

PERFORMANCE_METRICS: Dict[str, MetricFn] = {
    "nse": nse,
    "kge": kge,
    "rmse": rmse,
    "pearson_r": pearson_r,
    "pbias": pbias,
}


def register_metric(name: str, fn: MetricFn) -> None:
    """
    Add a fit statistic to the registry.

    ``fn(predicted, observed, config)`` must be deterministic and raise
    InsufficientDataError instead of returning NaN.
    """
    PERFORMANCE_METRICS[name] = fn


@dataclass(frozen=True)
class PerformanceResult:
    """Ordered performance records plus per-group failures."""

    records: tuple[PerformanceRecord, ...]
    metric: str
    failures: Dict[Tuple[str, Optional[int]], str] = field(default_factory=dict)
    """(point_id, time_index) → InsufficientDataError message."""

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    @property
    def is_windowed(self) -> bool:
        return any(r.time_index is not None for r in self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[PerformanceRecord]:
        return iter(self.records)

    def __getitem__(self, idx) -> PerformanceRecord:
        return self.records[idx]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "point_id": [r.point_id for r in self.records],
                "score": [r.score for r in self.records],
                "metric": [r.metric for r in self.records],
                "time_index": pd.array(
                    [r.time_index for r in self.records], dtype="Int64"
                ),
                "n_valid": [r.n_valid for r in self.records],
            }
        )


def _iter_groups(df: pd.DataFrame, grouping: Grouping, config: PerformanceConfig):
    """Yield (point_id, time_index, group_frame) in sorted order."""
    for point_id, group in df.groupby(config.id_column, sort=True):
        group = group.sort_values(config.time_column, kind="mergesort")
        if grouping.window is None:
            yield str(point_id), None, group
            continue
        blocks = np.arange(len(group)) // grouping.window
        for block, window in group.groupby(blocks, sort=True):
            yield str(point_id), int(block), window


def aggregate_performance(
    model_outputs: pd.DataFrame,
    grouping: Grouping | None = None,
    metric: str | MetricFn = "nse",
    config: PerformanceConfig | None = None,
) -> PerformanceResult:
    """
    Score each catchment (or catchment window) with a fit statistic.

    Args:
        model_outputs: Long-format predictions and observations.
        grouping: Per-catchment (default) or fixed-size time windows.
        metric: Registry name or callable(predicted, observed, config).
        config: Column names and validity thresholds.

    Returns:
        PerformanceResult; groups lacking valid data are listed in
        ``failures`` and do not produce records.
    """
    if grouping is None:
        grouping = Grouping()
    if config is None:
        config = PerformanceConfig()

    if callable(metric):
        metric_fn, metric_name = metric, getattr(metric, "__name__", "custom")
    else:
        if metric not in PERFORMANCE_METRICS:
            raise ValueError(
                f"Unknown metric '{metric}'. Available: {sorted(PERFORMANCE_METRICS)}"
            )
        metric_fn, metric_name = PERFORMANCE_METRICS[metric], metric

    required = [config.id_column, config.time_column, config.predicted_column, config.observed_column]
    missing = [c for c in required if c not in model_outputs.columns]
    if missing:
        raise KeyError(f"Model outputs lack column(s) {missing}")

    records = []
    failures: Dict[Tuple[str, Optional[int]], str] = {}

    for point_id, time_index, group in _iter_groups(model_outputs, grouping, config):
        predicted = group[config.predicted_column].to_numpy(dtype=float)
        observed = group[config.observed_column].to_numpy(dtype=float)
        try:
            score = metric_fn(predicted, observed, config)
        except InsufficientDataError as e:
            failures[(point_id, time_index)] = str(e)
            continue
        n_valid = int(np.sum(np.isfinite(predicted) & np.isfinite(observed)))
        records.append(
            PerformanceRecord(
                point_id=point_id,
                score=float(score),
                metric=metric_name,
                time_index=time_index,
                n_valid=n_valid,
            )
        )

    if failures:
        logger.warning(
            f"{len(failures)} group(s) lacked valid data for {metric_name}: "
            f"{list(failures)[:5]}{' ...' if len(failures) > 5 else ''}"
        )
    logger.info(f"Aggregated {metric_name} for {len(records)} group(s)")

    return PerformanceResult(records=tuple(records), metric=metric_name, failures=failures)
