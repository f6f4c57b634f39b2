"""
Analysis pipeline — one extrapolation/performance/correlation run.

    attributes ─→ subspace ─→ hull ─→ extrapolation ─┐
    model outputs ─→ performance ────────────────────┼→ correlation
    latent states ─→ (optional) temporal trajectory ─┘

A fatal NoveltyError aborts only the analysis it occurs in; whatever was
computed before the failure stays in the report. Every report lists the
errors and warnings it met, with counts.
"""

from __future__ import annotations

import json
import logging
import warnings
from collections import Counter
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Literal, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from omegaconf import DictConfig, OmegaConf

from src.novelty.correlation import CorrelationConfig, correlate
from src.novelty.distribution import compare_distributions, describe_attributes
from src.novelty.errors import DegenerateInputError, NoveltyError, UnmatchedPointWarning
from src.novelty.extrapolation import ExtrapolationResult, compute_extrapolation
from src.novelty.geometry import HullConfig, build_hull
from src.novelty.io import (
    save_correlation,
    save_extrapolation,
    save_performance,
    save_temporal,
)
from src.novelty.performance import (
    Grouping,
    PerformanceConfig,
    PerformanceResult,
    aggregate_performance,
)
from src.novelty.records import CorrelationResult, PointSet
from src.novelty.subspace import complete_points, principal_subspace, standardize
from src.novelty.temporal import (
    LatentStateSeries,
    TemporalConfig,
    TemporalCorrelation,
    WindowPolicy,
    correlate_over_time,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemporalAnalysisConfig:
    """Latent-state trajectory settings of an analysis."""

    policy: WindowPolicy = field(default_factory=WindowPolicy.expanding)
    dims: tuple[str, ...] | None = None
    """Latent dimensions; defaults to every column except id and time."""

    fixed_hull: bool = False
    """Reuse one hull of all training states instead of rebuilding per window."""

    performance_window: int | None = None
    """Score performance per window of this many steps instead of per catchment."""

    n_jobs: int = 1


@dataclass(frozen=True)
class AnalysisConfig:
    """Everything one analysis run needs, passed explicitly."""

    name: str
    corpus: str = "synthetic"
    dims: tuple[str, ...] | None = None
    subspace: Literal["raw", "standardized", "pca"] = "raw"
    n_components: int = 3
    hull: HullConfig = field(default_factory=HullConfig)
    metric: str = "nse"
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    temporal: TemporalAnalysisConfig | None = None

    @classmethod
    def from_omegaconf(cls, cfg: DictConfig | dict, **overrides) -> "AnalysisConfig":
        """Build from an OmegaConf node (see configs/experiments/*.yaml)."""
        if isinstance(cfg, DictConfig):
            cfg = OmegaConf.to_container(cfg, resolve=True)
        cfg = {**cfg, **overrides}

        temporal = None
        if cfg.get("temporal"):
            t = dict(cfg["temporal"])
            kind = t.pop("policy", "expanding")
            width = t.pop("width", None)
            min_steps = t.pop("min_steps", 1)
            policy = (
                WindowPolicy.sliding(int(width))
                if kind == "sliding"
                else WindowPolicy.expanding(min_steps=int(min_steps))
            )
            if t.get("dims") is not None:
                t["dims"] = tuple(t["dims"])
            temporal = TemporalAnalysisConfig(policy=policy, **t)

        return cls(
            name=cfg["name"],
            corpus=cfg.get("corpus", "synthetic"),
            dims=tuple(cfg["dims"]) if cfg.get("dims") else None,
            subspace=cfg.get("subspace", "raw"),
            n_components=int(cfg.get("n_components", 3)),
            hull=HullConfig(**(cfg.get("hull") or {})),
            metric=cfg.get("metric", "nse"),
            performance=PerformanceConfig(**(cfg.get("performance") or {})),
            correlation=CorrelationConfig(**(cfg.get("correlation") or {})),
            temporal=temporal,
        )


@dataclass
class AnalysisReport:
    """Outcome of one analysis: results, failures and warning counts."""

    name: str
    corpus: str
    status: str = "ok"
    errors: Counter = field(default_factory=Counter)
    warnings: Counter = field(default_factory=Counter)
    messages: List[str] = field(default_factory=list)
    subspace: tuple[str, ...] = ()
    explained_variance: np.ndarray | None = None
    distribution: pd.DataFrame | None = None
    attribute_summary: pd.DataFrame | None = None
    dropped_training: tuple[str, ...] = ()
    extrapolation: ExtrapolationResult | None = None
    performance: PerformanceResult | None = None
    correlation: CorrelationResult | None = None
    temporal: TemporalCorrelation | None = None

    def record_failure(self, error: Exception) -> None:
        self.status = "failed"
        self.errors[type(error).__name__] += 1
        self.messages.append(f"{type(error).__name__}: {error}")
        logger.error(f"[{self.name}] analysis aborted: {error}")

    def summary(self) -> Dict[str, Any]:
        corr = self.correlation
        return {
            "name": self.name,
            "corpus": self.corpus,
            "status": self.status,
            "subspace": ",".join(self.subspace),
            "coefficient": corr.coefficient if corr is not None else float("nan"),
            "p_value": corr.p_value if corr is not None else float("nan"),
            "n": corr.n if corr is not None else 0,
            "method": corr.method if corr is not None else None,
            "n_scored": len(self.extrapolation) if self.extrapolation is not None else 0,
            "n_inside": self.extrapolation.n_inside if self.extrapolation is not None else 0,
            "n_skipped": self.extrapolation.n_skipped if self.extrapolation is not None else 0,
            "n_dropped_training": len(self.dropped_training),
            "n_failed_groups": self.performance.n_failed if self.performance is not None else 0,
            "n_insufficient_windows": self.temporal.n_insufficient if self.temporal is not None else 0,
            "errors": dict(self.errors),
            "warnings": dict(self.warnings),
        }


def _prepare_subspace(
    config: AnalysisConfig,
    training: PointSet,
    evaluation: PointSet,
    dims: tuple[str, ...],
    report: AnalysisReport,
) -> tuple[PointSet, PointSet, tuple[str, ...]]:
    if config.subspace == "raw":
        return training, evaluation, dims
    if len(training) < 2:
        raise DegenerateInputError(
            f"Need at least 2 complete training points to fit a {config.subspace} subspace, "
            f"got {len(training)}"
        )
    if config.subspace == "standardized":
        train_z, eval_z = standardize(training, evaluation, dims)
        return train_z, eval_z, dims
    if config.subspace == "pca":
        train_pc, eval_pc, ratio = principal_subspace(
            training, evaluation, config.n_components, dims
        )
        report.explained_variance = ratio
        return train_pc, eval_pc, train_pc.names
    raise ValueError(f"Unknown subspace mode '{config.subspace}'")


def summarize_partitions(
    training: PointSet,
    evaluation: PointSet,
    dims: Sequence[str],
) -> pd.DataFrame:
    """Per-attribute summary statistics of each partition, stacked."""
    frames = []
    for points in (training, evaluation):
        summary = describe_attributes(points, dims)
        summary.insert(0, "partition", points.role.value)
        frames.append(summary)
    return pd.concat(frames, ignore_index=True)


def _latent_series(config: AnalysisConfig, latent_states: pd.DataFrame, training_ids) -> LatentStateSeries:
    perf = config.performance
    dims = config.temporal.dims or tuple(
        c for c in latent_states.columns if c not in (perf.id_column, perf.time_column)
    )
    return LatentStateSeries(
        frame=latent_states,
        dims=dims,
        training_ids=frozenset(training_ids),
        id_column=perf.id_column,
        time_column=perf.time_column,
    )


def _run_temporal(
    config: AnalysisConfig,
    training: PointSet,
    model_outputs: pd.DataFrame,
    latent_states: pd.DataFrame,
    performance: PerformanceResult,
) -> TemporalCorrelation:
    tcfg = config.temporal
    series = _latent_series(config, latent_states, training.ids)

    hull = None
    if tcfg.fixed_hull:
        hull = build_hull(series.training_states(series.times()), config=config.hull)
        hull = replace(hull, dims=series.dims)

    perf_series = performance
    if tcfg.performance_window is not None:
        perf_series = aggregate_performance(
            model_outputs,
            Grouping(window=tcfg.performance_window),
            config.metric,
            config.performance,
        )

    return correlate_over_time(
        hull,
        series,
        perf_series,
        tcfg.policy,
        TemporalConfig(hull=config.hull, correlation=config.correlation, n_jobs=tcfg.n_jobs),
    )


def run_analysis(
    config: AnalysisConfig,
    training: PointSet,
    evaluation: PointSet,
    model_outputs: pd.DataFrame,
    latent_states: pd.DataFrame | None = None,
) -> AnalysisReport:
    """
    Run one extrapolation vs performance analysis.

    Args:
        config: Analysis configuration.
        training: Training catchments (hull generators).
        evaluation: Evaluation catchments.
        model_outputs: Long-format predictions and observations.
        latent_states: Optional long-format latent states for the
            temporal trajectory.

    Returns:
        AnalysisReport (status "failed" if a fatal error occurred).
    """
    report = AnalysisReport(name=config.name, corpus=config.corpus)
    logger.info(f"[{config.name}] starting analysis on corpus '{config.corpus}'")

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", UnmatchedPointWarning)
        try:
            attribute_dims = tuple(config.dims or training.names)
            report.attribute_summary = summarize_partitions(training, evaluation, attribute_dims)
            report.distribution = compare_distributions(training, evaluation, attribute_dims)

            complete, report.dropped_training = complete_points(training, attribute_dims)
            if report.dropped_training:
                report.warnings["SkippedTrainingPoint"] += len(report.dropped_training)
                report.messages.append(
                    f"Dropped {len(report.dropped_training)} training point(s) with missing "
                    f"values: {list(report.dropped_training)}"
                )

            train_s, eval_s, dims = _prepare_subspace(
                config, complete, evaluation, attribute_dims, report
            )
            report.subspace = dims

            hull = build_hull(train_s, dims, config.hull)
            report.extrapolation = compute_extrapolation(hull, eval_s)
            if report.extrapolation.n_skipped:
                report.warnings["SkippedPoint"] += report.extrapolation.n_skipped

            report.performance = aggregate_performance(
                model_outputs, Grouping(), config.metric, config.performance
            )
            if report.performance.n_failed:
                report.errors["InsufficientDataError"] += report.performance.n_failed

            report.correlation = correlate(
                report.extrapolation, report.performance, config.correlation
            )

            if config.temporal is not None and latent_states is not None:
                report.temporal = _run_temporal(
                    config, training, model_outputs, latent_states, report.performance
                )
                if report.temporal.n_insufficient:
                    report.warnings["InsufficientWindow"] += report.temporal.n_insufficient
        except NoveltyError as e:
            report.record_failure(e)

    for w in caught:
        if issubclass(w.category, UnmatchedPointWarning):
            report.warnings[w.category.__name__] += 1
            report.messages.append(str(w.message))
        else:
            warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

    logger.info(
        f"[{config.name}] {report.status}: errors={dict(report.errors)}, "
        f"warnings={dict(report.warnings)}"
    )
    return report


def run_analyses(jobs: Sequence[tuple], n_jobs: int = 1) -> List[AnalysisReport]:
    """
    Run independent analyses, optionally in parallel.

    Each job is the argument tuple of run_analysis(); workers share no
    mutable state.
    """
    if n_jobs == 1:
        return [run_analysis(*job) for job in jobs]
    return Parallel(n_jobs=n_jobs)(delayed(run_analysis)(*job) for job in jobs)


def save_report(report: AnalysisReport, output_dir: Path) -> Path:
    """Write every available result of a report under output_dir/<name>/."""
    out = Path(output_dir) / report.name
    out.mkdir(parents=True, exist_ok=True)

    if report.extrapolation is not None:
        save_extrapolation(report.extrapolation, out / "extrapolation.csv")
    if report.performance is not None:
        save_performance(report.performance, out / "performance.csv")
    if report.correlation is not None:
        save_correlation(report.correlation, out / "correlation.json")
    if report.temporal is not None:
        save_temporal(report.temporal, out / "temporal.csv")
    if report.distribution is not None:
        report.distribution.to_csv(out / "distribution.csv", index=False)
    if report.attribute_summary is not None:
        report.attribute_summary.to_csv(out / "attribute_summary.csv", index=False)

    summary = report.summary()
    summary["messages"] = report.messages
    with open(out / "summary.json", "w") as f:
        json.dump(summary, f, indent=2, default=str)

    logger.info(f"Saved report '{report.name}' to {out}")
    return out


def reports_to_frame(reports: Sequence[AnalysisReport]) -> pd.DataFrame:
    """One summary row per analysis (errors/warnings flattened)."""
    rows = []
    for report in reports:
        row = report.summary()
        for key, count in row.pop("errors").items():
            row[f"error_{key}"] = count
        for key, count in row.pop("warnings").items():
            row[f"warning_{key}"] = count
        rows.append(row)
    return pd.DataFrame(rows)
