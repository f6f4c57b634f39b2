"""
Tabular input/output for analyses.

Inputs:
    - attribute table: one row per catchment, numeric attribute columns and
      a training/evaluation partition flag
    - model outputs: long table point_id | time | predicted | observed
    - latent states: long CSV table, or a PyTorch tensor
      (n_points, n_times, n_dims) with a companion id list

Outputs are CSV (records, bins, trajectories) and JSON (scalar results).
Every field of the records round-trips.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd
import torch

from src.novelty.extrapolation import ExtrapolationResult
from src.novelty.performance import PerformanceResult
from src.novelty.records import (
    CorrelationResult,
    ExtrapolationRecord,
    PerformanceRecord,
    PointRole,
    PointSet,
    WindowState,
)
from src.novelty.temporal import TemporalCorrelation, WindowKind, WindowPolicy

logger = logging.getLogger(__name__)


# --- Inputs ---

def split_point_sets(
    df: pd.DataFrame,
    id_column: str = "point_id",
    partition_column: str = "partition",
    training_value: str = "training",
    columns: Sequence[str] | None = None,
) -> tuple[PointSet, PointSet]:
    """Split an attribute table into training and evaluation point sets."""
    if partition_column not in df.columns:
        raise KeyError(f"Attribute table has no partition column '{partition_column}'")
    if columns is None:
        columns = [
            c for c in df.columns
            if c not in (id_column, partition_column) and pd.api.types.is_numeric_dtype(df[c])
        ]
    is_train = df[partition_column].astype(str) == str(training_value)
    training = PointSet.from_frame(df[is_train], PointRole.TRAINING, id_column, columns)
    evaluation = PointSet.from_frame(df[~is_train], PointRole.EVALUATION, id_column, columns)
    logger.info(
        f"Attribute table: {len(training)} training, {len(evaluation)} evaluation "
        f"points over {len(columns)} attributes"
    )
    return training, evaluation


def load_attribute_table(
    path: Path,
    id_column: str = "point_id",
    partition_column: str = "partition",
    training_value: str = "training",
    columns: Sequence[str] | None = None,
) -> tuple[PointSet, PointSet]:
    df = pd.read_csv(path, dtype={id_column: str})
    return split_point_sets(df, id_column, partition_column, training_value, columns)


def load_model_outputs(path: Path, id_column: str = "point_id") -> pd.DataFrame:
    return pd.read_csv(path, dtype={id_column: str})


def load_latent_states(
    path: Path,
    ids_path: Path | None = None,
    dim_prefix: str = "h",
    id_column: str = "point_id",
    time_column: str = "time",
) -> pd.DataFrame:
    """
    Load latent states as a long table (point_id, time, h0..h{d-1}).

    CSV files are read as-is. ``.pt`` files must hold a tensor of shape
    (n_points, n_times, n_dims); point ids are read from ``ids_path``
    (one per line).
    """
    path = Path(path)
    if path.suffix != ".pt":
        return pd.read_csv(path, dtype={id_column: str})

    if ids_path is None:
        raise ValueError("Tensor latent states need an ids file")
    states = torch.load(path, map_location="cpu")
    if isinstance(states, torch.Tensor):
        states = states.detach().numpy()
    states = np.asarray(states, dtype=float)
    if states.ndim != 3:
        raise ValueError(f"Expected (n_points, n_times, n_dims) tensor, got {states.shape}")

    ids = [line.strip() for line in Path(ids_path).read_text().splitlines() if line.strip()]
    n_points, n_times, n_dims = states.shape
    if len(ids) != n_points:
        raise ValueError(f"{len(ids)} ids for {n_points} latent trajectories")

    frame = pd.DataFrame(
        states.reshape(n_points * n_times, n_dims),
        columns=[f"{dim_prefix}{k}" for k in range(n_dims)],
    )
    frame.insert(0, time_column, np.tile(np.arange(n_times), n_points))
    frame.insert(0, id_column, np.repeat(ids, n_times))
    logger.info(f"Loaded latent states {states.shape} from {path}")
    return frame


# --- Extrapolation records ---

def save_extrapolation(result: ExtrapolationResult, path: Path) -> None:
    """Scored points plus skipped points (distance NaN, skipped=True)."""
    df = result.to_frame()
    df["skipped"] = False
    if result.skipped:
        skipped = pd.DataFrame(
            {
                "point_id": list(result.skipped),
                "distance": np.nan,
                "inside": False,
                "subspace": ",".join(result.subspace),
                "signed": df["signed"].iloc[0] if len(df) else False,
                "skipped": True,
            }
        )
        df = pd.concat([df, skipped], ignore_index=True)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def _split_subspace(value) -> tuple[str, ...]:
    if not isinstance(value, str) or not value:
        return ()
    return tuple(value.split(","))


def read_extrapolation(path: Path) -> ExtrapolationResult:
    df = pd.read_csv(path, dtype={"point_id": str, "subspace": str}, keep_default_na=False,
                     na_values={"distance": ["", "NaN", "nan"]})
    skipped_mask = df["skipped"].astype(str) == "True"
    scored = df[~skipped_mask]
    records = tuple(
        ExtrapolationRecord(
            point_id=row.point_id,
            distance=float(row.distance),
            inside=str(row.inside) == "True",
            subspace=_split_subspace(row.subspace),
            signed=str(row.signed) == "True",
        )
        for row in scored.itertuples(index=False)
    )
    subspace = _split_subspace(df["subspace"].iloc[0]) if len(df) else ()
    return ExtrapolationResult(
        records=records,
        skipped=tuple(df.loc[skipped_mask, "point_id"]),
        subspace=subspace,
    )


# --- Performance records ---

def save_performance(result: PerformanceResult, path: Path) -> None:
    """Scored groups plus failed groups (score NaN, failure message)."""
    df = result.to_frame()
    df["failure"] = ""
    if result.failures:
        failed = pd.DataFrame(
            {
                "point_id": [point_id for point_id, _ in result.failures],
                "score": np.nan,
                "metric": result.metric,
                "time_index": pd.array(
                    [time_index for _, time_index in result.failures], dtype="Int64"
                ),
                "n_valid": 0,
                "failure": list(result.failures.values()),
            }
        )
        df = pd.concat([df, failed], ignore_index=True)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def read_performance(path: Path, metric: str | None = None) -> PerformanceResult:
    df = pd.read_csv(path, dtype={"point_id": str, "failure": str})
    df["failure"] = df["failure"].fillna("")
    failed_mask = df["failure"] != ""

    def _time(value):
        return None if pd.isna(value) else int(value)

    records = tuple(
        PerformanceRecord(
            point_id=row.point_id,
            score=float(row.score),
            metric=row.metric,
            time_index=_time(row.time_index),
            n_valid=int(row.n_valid),
        )
        for row in df[~failed_mask].itertuples(index=False)
    )
    failures = {}
    for row in df[failed_mask].itertuples(index=False):
        failures[(row.point_id, _time(row.time_index))] = row.failure

    if metric is None:
        metric = str(df["metric"].iloc[0]) if len(df) else "unknown"
    return PerformanceResult(records=records, metric=metric, failures=failures)


# --- Correlation results ---

def _bins_path(path: Path) -> Path:
    return path.with_name(f"{path.stem}_bins.csv")


def _json_float(value: float):
    return None if value is None or (isinstance(value, float) and math.isnan(value)) else value


def save_correlation(result: CorrelationResult, path: Path) -> None:
    """Scalar fields as JSON; the binned table (if any) as a sibling CSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = result.to_dict()
    payload["coefficient"] = _json_float(payload["coefficient"])
    payload["p_value"] = _json_float(payload["p_value"])
    payload["metadata"] = result.metadata
    payload["has_bins"] = result.bins is not None
    with open(path, "w") as f:
        json.dump(payload, f, indent=2, default=str)
    if result.bins is not None:
        result.bins.to_csv(_bins_path(path), index=False)


def read_correlation(path: Path) -> CorrelationResult:
    path = Path(path)
    with open(path, "r") as f:
        payload = json.load(f)
    bins = pd.read_csv(_bins_path(path)) if payload.get("has_bins") else None
    nan = float("nan")
    return CorrelationResult(
        coefficient=nan if payload["coefficient"] is None else float(payload["coefficient"]),
        p_value=nan if payload["p_value"] is None else float(payload["p_value"]),
        n=int(payload["n"]),
        method=payload["method"],
        n_unmatched_extrapolation=int(payload["n_unmatched_extrapolation"]),
        n_unmatched_performance=int(payload["n_unmatched_performance"]),
        bins=bins,
        time_index=payload.get("time_index"),
        status=WindowState(payload.get("status", "stable")),
        reason=payload.get("reason"),
        metadata=payload.get("metadata", {}),
    )


def save_temporal(trajectory: TemporalCorrelation, path: Path) -> None:
    """
    Time-indexed coefficients, one row per step, with the window policy.

    Per-step bin tables (if any) are stacked into a sibling CSV keyed by
    time_index.
    """
    df = trajectory.to_frame()
    df["method"] = [r.method for r in trajectory]
    df["policy"] = trajectory.policy.kind.value
    df["width"] = trajectory.policy.width
    df["min_steps"] = trajectory.policy.min_steps
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)

    bins = [
        r.bins.assign(time_index=r.time_index)
        for r in trajectory
        if r.bins is not None
    ]
    if bins:
        pd.concat(bins, ignore_index=True).to_csv(_bins_path(path), index=False)
    elif _bins_path(path).exists():
        _bins_path(path).unlink()


def read_temporal(path: Path) -> TemporalCorrelation:
    path = Path(path)
    df = pd.read_csv(path, dtype={"reason": str})
    if df.empty:
        raise ValueError(f"Empty trajectory file {path}")
    first = df.iloc[0]
    policy = WindowPolicy(
        kind=WindowKind(first["policy"]),
        width=None if pd.isna(first["width"]) else int(first["width"]),
        min_steps=int(first["min_steps"]),
    )

    bins_by_step = {}
    if _bins_path(path).exists():
        stacked = pd.read_csv(_bins_path(path))
        for t, table in stacked.groupby("time_index", sort=True):
            bins_by_step[int(t)] = table.drop(columns="time_index").reset_index(drop=True)

    results = []
    for row in df.itertuples(index=False):
        metadata = {"time": row.time}
        if not pd.isna(row.n_skipped):
            metadata["n_skipped"] = int(row.n_skipped)
        results.append(
            CorrelationResult(
                coefficient=float(row.coefficient),
                p_value=float(row.p_value),
                n=int(row.n),
                method=row.method,
                n_unmatched_extrapolation=int(row.n_unmatched_extrapolation),
                n_unmatched_performance=int(row.n_unmatched_performance),
                bins=bins_by_step.get(int(row.time_index)),
                time_index=int(row.time_index),
                status=WindowState(row.status),
                reason=None if pd.isna(row.reason) else row.reason,
                metadata=metadata,
            )
        )
    return TemporalCorrelation(results=tuple(results), policy=policy)
