"""
Immutable records exchanged between the analysis stages.

    attribute table → PointSet ─┐
                                ├→ ExtrapolationRecord ─┐
    model outputs ──────────────┴→ PerformanceRecord ───┴→ CorrelationResult

Records are frozen dataclasses joined by ``point_id``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Sequence

import numpy as np
import pandas as pd

from src.novelty.errors import DimensionMismatchError


class PointRole(str, Enum):
    """Partition of a point set within one analysis."""

    TRAINING = "training"
    EVALUATION = "evaluation"


class WindowState(str, Enum):
    """Readiness of a correlation window (see temporal.py)."""

    INITIALIZING = "initializing"
    ACCUMULATING = "accumulating"
    STABLE = "stable"


@dataclass(frozen=True)
class AttributeVector:
    """Named attribute values of a single catchment."""

    point_id: str
    names: tuple[str, ...]
    values: tuple[float, ...]

    def __post_init__(self):
        if len(self.names) != len(self.values):
            raise DimensionMismatchError(
                f"Point {self.point_id}: {len(self.names)} names for "
                f"{len(self.values)} values"
            )

    @property
    def has_missing(self) -> bool:
        return any(not math.isfinite(v) for v in self.values)

    def select(self, dims: Sequence[str]) -> np.ndarray:
        """Values of ``dims`` in the requested order."""
        lookup = dict(zip(self.names, self.values))
        missing = [d for d in dims if d not in lookup]
        if missing:
            raise DimensionMismatchError(
                f"Point {self.point_id} has no dimension(s) {missing}"
            )
        return np.array([lookup[d] for d in dims], dtype=float)


@dataclass(frozen=True)
class PointSet:
    """
    Attribute vectors tagged as training or evaluation.

    All vectors share the same ordered dimension names; ids are unique.
    """

    role: PointRole
    vectors: tuple[AttributeVector, ...]

    def __post_init__(self):
        object.__setattr__(self, "vectors", tuple(self.vectors))
        if self.vectors:
            names = self.vectors[0].names
            for vec in self.vectors[1:]:
                if vec.names != names:
                    raise DimensionMismatchError(
                        f"Point {vec.point_id} has dimensions {vec.names}, "
                        f"expected {names}"
                    )
        ids = [v.point_id for v in self.vectors]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate point ids in {self.role.value} set")

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        role: PointRole,
        id_column: str = "point_id",
        columns: Sequence[str] | None = None,
    ) -> "PointSet":
        """Build a point set from one row per point with named numeric columns."""
        if columns is None:
            columns = [c for c in df.columns if c != id_column]
        columns = tuple(columns)
        values = df.loc[:, list(columns)].to_numpy(dtype=float)
        vectors = tuple(
            AttributeVector(str(pid), columns, tuple(float(x) for x in row))
            for pid, row in zip(df[id_column].tolist(), values)
        )
        return cls(role=PointRole(role), vectors=vectors)

    @property
    def names(self) -> tuple[str, ...]:
        return self.vectors[0].names if self.vectors else ()

    @property
    def ids(self) -> list[str]:
        return [v.point_id for v in self.vectors]

    def matrix(self, dims: Sequence[str] | None = None) -> np.ndarray:
        """(n_points, n_dims) array of the selected dimensions."""
        dims = self.names if dims is None else tuple(dims)
        if not self.vectors:
            return np.empty((0, len(dims)))
        return np.stack([v.select(dims) for v in self.vectors])

    def to_frame(self, id_column: str = "point_id") -> pd.DataFrame:
        df = pd.DataFrame(self.matrix(), columns=list(self.names))
        df.insert(0, id_column, self.ids)
        return df

    def __len__(self) -> int:
        return len(self.vectors)

    def __iter__(self) -> Iterator[AttributeVector]:
        return iter(self.vectors)


@dataclass(frozen=True)
class ExtrapolationRecord:
    """Distance of one evaluation point to the training hull."""

    point_id: str
    distance: float
    """Unsigned: 0 inside, > 0 outside. Signed: <= 0 inside, > 0 outside."""

    inside: bool
    subspace: tuple[str, ...]
    signed: bool = False


@dataclass(frozen=True)
class PerformanceRecord:
    """Goodness-of-fit score of one catchment (or catchment window)."""

    point_id: str
    score: float
    metric: str
    time_index: int | None = None
    n_valid: int = 0


@dataclass
class CorrelationResult:
    """Correlation between extrapolation distance and performance."""

    coefficient: float
    p_value: float
    n: int
    """Number of matched pairs used."""

    method: str
    n_unmatched_extrapolation: int = 0
    n_unmatched_performance: int = 0
    bins: pd.DataFrame | None = None
    time_index: int | None = None
    status: WindowState = WindowState.STABLE
    reason: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_sufficient(self) -> bool:
        return self.status == WindowState.STABLE and self.reason is None

    def to_dict(self) -> dict:
        return {
            "coefficient": self.coefficient,
            "p_value": self.p_value,
            "n": self.n,
            "method": self.method,
            "n_unmatched_extrapolation": self.n_unmatched_extrapolation,
            "n_unmatched_performance": self.n_unmatched_performance,
            "time_index": self.time_index,
            "status": self.status.value,
            "reason": self.reason,
        }
