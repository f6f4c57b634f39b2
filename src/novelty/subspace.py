"""
Subspace preparation for hull analyses.

Hulls in the full attribute space are degenerate or unstable, so each
analysis works in a low-dimensional subspace: a subset of attributes,
their z-scores, or leading principal components of the training set.
Scalers and projections are always fitted on training points only.
"""

from __future__ import annotations

import itertools
import logging
from typing import Sequence

import numpy as np
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from src.novelty.records import AttributeVector, PointSet

logger = logging.getLogger(__name__)


def _rebuild(points: PointSet, names: tuple[str, ...], values: np.ndarray) -> PointSet:
    vectors = tuple(
        AttributeVector(vec.point_id, names, tuple(float(v) for v in row))
        for vec, row in zip(points.vectors, values)
    )
    return PointSet(role=points.role, vectors=vectors)


def standardize(
    training: PointSet,
    evaluation: PointSet,
    dims: Sequence[str] | None = None,
) -> tuple[PointSet, PointSet]:
    """
    Z-score both point sets with statistics of the training set.

    NaNs in evaluation points are preserved (and later skipped).
    """
    names = training.names if dims is None else tuple(dims)
    scaler = StandardScaler().fit(training.matrix(names))
    train_z = scaler.transform(training.matrix(names))
    eval_z = scaler.transform(evaluation.matrix(names)) if len(evaluation) else np.empty((0, len(names)))
    return _rebuild(training, names, train_z), _rebuild(evaluation, names, eval_z)


def principal_subspace(
    training: PointSet,
    evaluation: PointSet,
    n_components: int,
    dims: Sequence[str] | None = None,
) -> tuple[PointSet, PointSet, np.ndarray]:
    """
    Project both sets on the leading principal components of the training set.

    Attributes are standardised first so that units do not dominate the
    components.

    Args:
        training: Training points.
        evaluation: Evaluation points (rows with NaN stay NaN).
        n_components: Number of components k; new dims are "pc1".."pck".
        dims: Attributes to use. Defaults to all.

    Returns:
        (training_pc, evaluation_pc, explained_variance_ratio)
    """
    train_z, eval_z = standardize(training, evaluation, dims)
    n_components = min(n_components, train_z.matrix().shape[1], len(train_z))

    pca = PCA(n_components=n_components, svd_solver="full")
    train_pc = pca.fit_transform(train_z.matrix())

    E = eval_z.matrix()
    eval_pc = np.full((len(E), n_components), np.nan)
    finite = np.all(np.isfinite(E), axis=1)
    if finite.any():
        eval_pc[finite] = pca.transform(E[finite])

    names = tuple(f"pc{i + 1}" for i in range(n_components))
    logger.info(
        f"PCA subspace: {n_components} components explain "
        f"{pca.explained_variance_ratio_.sum():.1%} of training variance"
    )
    return (
        _rebuild(train_z, names, train_pc),
        _rebuild(eval_z, names, eval_pc),
        pca.explained_variance_ratio_,
    )


def enumerate_subspaces(
    names: Sequence[str],
    size: int,
    max_subspaces: int | None = None,
) -> list[tuple[str, ...]]:
    """All attribute combinations of ``size`` in a deterministic order."""
    combos = list(itertools.combinations(names, size))
    if max_subspaces is not None:
        combos = combos[:max_subspaces]
    return combos


def complete_points(
    points: PointSet,
    dims: Sequence[str] | None = None,
) -> tuple[PointSet, tuple[str, ...]]:
    """
    Keep only points with finite values in every dimension of ``dims``.

    Returns:
        (complete points, ids of dropped points)
    """
    names = points.names if dims is None else tuple(dims)
    if not len(points):
        return points, ()
    finite = np.all(np.isfinite(points.matrix(names)), axis=1)
    dropped = tuple(pid for pid, ok in zip(points.ids, finite) if not ok)
    if not dropped:
        return points, ()
    kept = tuple(vec for vec, ok in zip(points.vectors, finite) if ok)
    logger.warning(
        f"Dropped {len(dropped)}/{len(points)} {points.role.value} points with "
        f"missing values in {names}"
    )
    return PointSet(role=points.role, vectors=kept), dropped
