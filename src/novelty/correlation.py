"""
Correlation analyzer — extrapolation distance vs model performance.

Joins ExtrapolationRecords and PerformanceRecords on point id and
computes ρ(distance, score). A negative ρ for skill scores (NSE, KGE)
means performance degrades with novelty.

Unmatched points are counted and reported through UnmatchedPointWarning.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Iterable, Literal

import numpy as np
import pandas as pd
from scipy.stats import kendalltau, pearsonr, spearmanr

from src.novelty.errors import InsufficientSampleError, UnmatchedPointWarning
from src.novelty.records import CorrelationResult, ExtrapolationRecord, PerformanceRecord

logger = logging.getLogger(__name__)

_CORRELATION_FNS = {
    "spearman": spearmanr,
    "pearson": pearsonr,
    "kendall": kendalltau,
}


@dataclass(frozen=True)
class CorrelationConfig:
    """Configuration for correlation analysis."""

    method: Literal["spearman", "pearson", "kendall"] = "spearman"
    """Rank-based (spearman, kendall) or linear (pearson)."""

    min_pairs: int = 10
    """Minimum matched pairs; fewer raises InsufficientSampleError."""

    n_bins: int | None = None
    """Number of distance buckets for per-bin mean performance."""

    binning: Literal["quantile", "uniform"] = "quantile"

    def __post_init__(self):
        if self.method not in _CORRELATION_FNS:
            raise ValueError(
                f"Unknown correlation method '{self.method}'. "
                f"Available: {sorted(_CORRELATION_FNS)}"
            )
        if self.min_pairs < 2:
            raise ValueError("min_pairs must be at least 2")


def join_records(
    extrapolation_records: Iterable[ExtrapolationRecord],
    performance_records: Iterable[PerformanceRecord],
) -> tuple[pd.DataFrame, int, int]:
    """
    Inner-join records on point id.

    Returns:
        (joined frame with point_id/distance/score, n unmatched
        extrapolation ids, n unmatched performance ids)
    """
    ext = pd.DataFrame(
        [(r.point_id, r.distance) for r in extrapolation_records],
        columns=["point_id", "distance"],
    )
    perf = pd.DataFrame(
        [(r.point_id, r.score) for r in performance_records],
        columns=["point_id", "score"],
    )
    for name, frame in (("extrapolation", ext), ("performance", perf)):
        dup = frame["point_id"][frame["point_id"].duplicated()].unique()
        if len(dup):
            raise ValueError(f"Duplicate point ids in {name} records: {list(dup[:5])}")

    joined = ext.merge(perf, on="point_id", how="inner", sort=False)
    matched = set(joined["point_id"])
    n_unmatched_ext = int((~ext["point_id"].isin(matched)).sum())
    n_unmatched_perf = int((~perf["point_id"].isin(matched)).sum())
    return joined, n_unmatched_ext, n_unmatched_perf


def bin_by_distance(
    joined: pd.DataFrame,
    n_bins: int,
    binning: str = "quantile",
) -> pd.DataFrame:
    """Mean and median performance per ordered distance bucket."""
    if binning == "quantile":
        buckets = pd.qcut(joined["distance"], q=n_bins, duplicates="drop")
    elif binning == "uniform":
        buckets = pd.cut(joined["distance"], bins=n_bins, include_lowest=True)
    else:
        raise ValueError(f"Unknown binning '{binning}'")

    grouped = joined.groupby(buckets, observed=True, sort=True)["score"]
    table = grouped.agg(["count", "mean", "median"]).reset_index()
    table = table.rename(columns={"count": "n", "mean": "mean_score", "median": "median_score"})
    table.insert(0, "bin", np.arange(len(table)))
    table["lower"] = [iv.left for iv in table["distance"]]
    table["upper"] = [iv.right for iv in table["distance"]]
    return table[["bin", "lower", "upper", "n", "mean_score", "median_score"]]


def correlate(
    extrapolation_records: Iterable[ExtrapolationRecord],
    performance_records: Iterable[PerformanceRecord],
    config: CorrelationConfig | None = None,
) -> CorrelationResult:
    """
    Correlate extrapolation distance with performance score.

    Args:
        extrapolation_records: One record per evaluation point.
        performance_records: One record per point (no duplicates).
        config: Correlation configuration. Uses defaults if None.

    Returns:
        CorrelationResult with coefficient, p-value, sample size, unmatched
        counts and optional per-bin table.

    Raises:
        InsufficientSampleError: Fewer than config.min_pairs matched pairs.
    """
    if config is None:
        config = CorrelationConfig()

    joined, n_unmatched_ext, n_unmatched_perf = join_records(
        extrapolation_records, performance_records
    )
    n = len(joined)

    if n_unmatched_ext or n_unmatched_perf:
        message = (
            f"{n_unmatched_ext} extrapolation and {n_unmatched_perf} performance "
            f"point(s) have no counterpart and were excluded"
        )
        logger.warning(message)
        warnings.warn(message, UnmatchedPointWarning, stacklevel=2)

    if n < config.min_pairs:
        raise InsufficientSampleError(
            f"{n} matched pair(s), need at least {config.min_pairs}", n_matched=n
        )

    x = joined["distance"].to_numpy(dtype=float)
    y = joined["score"].to_numpy(dtype=float)

    if np.ptp(x) == 0 or np.ptp(y) == 0:
        logger.warning(
            f"Constant {'distance' if np.ptp(x) == 0 else 'score'} series; "
            f"{config.method} correlation undefined"
        )
        coefficient, p_value = float("nan"), float("nan")
    else:
        stat = _CORRELATION_FNS[config.method](x, y)
        coefficient, p_value = float(stat[0]), float(stat[1])

    bins = None
    if config.n_bins:
        bins = bin_by_distance(joined, config.n_bins, config.binning)

    logger.info(
        f"{config.method} ρ(distance, score) = {coefficient:.3f} "
        f"(p = {p_value:.3g}, n = {n})"
    )

    return CorrelationResult(
        coefficient=coefficient,
        p_value=p_value,
        n=n,
        method=config.method,
        n_unmatched_extrapolation=n_unmatched_ext,
        n_unmatched_performance=n_unmatched_perf,
        bins=bins,
    )
