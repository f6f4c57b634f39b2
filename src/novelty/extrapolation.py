"""
Extrapolation metric builder.

Scores every evaluation point against a training hull:

    d_i = dist(x_i, hull(training))

Points with missing dimensions are skipped and accounted for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

import numpy as np
import pandas as pd

from src.novelty.geometry import ConvexHull, distances_to_hull
from src.novelty.records import ExtrapolationRecord, PointSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtrapolationResult:
    """Ordered, re-iterable extrapolation records plus skip accounting."""

    records: tuple[ExtrapolationRecord, ...]
    skipped: tuple[str, ...] = ()
    subspace: tuple[str, ...] = ()

    @property
    def n_skipped(self) -> int:
        return len(self.skipped)

    @property
    def n_inside(self) -> int:
        return sum(r.inside for r in self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ExtrapolationRecord]:
        return iter(self.records)

    def __getitem__(self, idx) -> ExtrapolationRecord:
        return self.records[idx]

    def distances(self) -> np.ndarray:
        return np.array([r.distance for r in self.records], dtype=float)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "point_id": [r.point_id for r in self.records],
                "distance": self.distances(),
                "inside": [r.inside for r in self.records],
                "subspace": [",".join(r.subspace) for r in self.records],
                "signed": [r.signed for r in self.records],
            }
        )


def compute_extrapolation(
    hull: ConvexHull,
    evaluation_points: PointSet,
    signed: bool | None = None,
) -> ExtrapolationResult:
    """
    Distance of each evaluation point to the hull, in input order.

    Args:
        hull: Training hull.
        evaluation_points: Points to score; must carry the hull's dims.
        signed: Override the hull's sign convention.

    Returns:
        ExtrapolationResult with one record per usable point.
    """
    if signed is None:
        signed = hull.signed

    X = evaluation_points.matrix(hull.dims)
    ids = evaluation_points.ids
    usable = np.all(np.isfinite(X), axis=1) if len(X) else np.zeros(0, dtype=bool)

    skipped = tuple(pid for pid, ok in zip(ids, usable) if not ok)
    if skipped:
        logger.warning(
            f"Skipped {len(skipped)}/{len(ids)} evaluation points with missing "
            f"values in {hull.dims}"
        )

    distances = distances_to_hull(hull, X[usable], signed=signed) if usable.any() else np.zeros(0)
    kept_ids = [pid for pid, ok in zip(ids, usable) if ok]

    records = tuple(
        ExtrapolationRecord(
            point_id=pid,
            distance=float(d),
            inside=bool(d <= 0.0),
            subspace=hull.dims,
            signed=signed,
        )
        for pid, d in zip(kept_ids, distances)
    )

    result = ExtrapolationResult(records=records, skipped=skipped, subspace=hull.dims)
    logger.info(
        f"Extrapolation over {hull.dims}: {len(records)} points scored, "
        f"{result.n_inside} inside hull, {len(skipped)} skipped"
    )
    return result
