"""
Geometry kernel — convex hull of training points and distance queries.

The hull is stored in half-space form (Qhull facet equations):

    inside  ⇔  max_i (a_i · x + b_i) <= ε

with unit outward normals a_i, so a_i · x + b_i is the signed distance
of x to the hyperplane of facet i.

Distance conventions:
    - inside (or within ε of the boundary): 0 (unsigned) or the negative
      distance to the nearest facet hyperplane (signed)
    - outside: Euclidean distance to the nearest point of the hull

Outside distances are exact: closed form for 1-D and 2-D hulls, and a
projection onto the polytope (SLSQP) in higher dimensions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy.optimize import minimize
from scipy.spatial import ConvexHull as _QhullHull
from scipy.spatial import QhullError

from src.novelty.errors import DegenerateInputError, DimensionMismatchError
from src.novelty.records import AttributeVector, PointSet

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = 1e-9
"""Points within this distance of a facet count as boundary (inside)."""


@dataclass(frozen=True)
class HullConfig:
    """Configuration for hull construction and distance queries."""

    epsilon: float = DEFAULT_EPSILON
    """Boundary tolerance shared by contains() and distance_to_hull()."""

    signed: bool = False
    """Report negative distances for interior points."""

    qhull_options: str | None = None
    """Extra Qhull options (e.g. "QJ" to joggle nearly degenerate input)."""


@dataclass(frozen=True, eq=False)
class ConvexHull:
    """Read-only convex hull over a named subspace."""

    dims: tuple[str, ...]
    points: np.ndarray
    """Generating points (n, d), sorted lexicographically."""

    equations: np.ndarray
    """Facet equations (n_facets, d + 1): [normal, offset]."""

    simplices: np.ndarray
    """Point indices of each facet."""

    vertices: np.ndarray
    epsilon: float = DEFAULT_EPSILON
    signed: bool = False

    @property
    def ndim(self) -> int:
        return len(self.dims)

    @property
    def centroid(self) -> np.ndarray:
        return self.points[self.vertices].mean(axis=0)

    @property
    def n_facets(self) -> int:
        return len(self.equations)


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


def _as_matrix(training_points, dims) -> tuple[np.ndarray, tuple[str, ...]]:
    """Resolve (points, dims) into an (n, d) matrix and dimension names."""
    if isinstance(training_points, PointSet):
        if not len(training_points):
            raise DegenerateInputError("No training points supplied")
        names = training_points.names if dims is None else tuple(dims)
        absent = [d for d in names if d not in training_points.names]
        if absent:
            raise DimensionMismatchError(f"Unknown dimension(s) {absent}")
        return training_points.matrix(names), names

    rows = [np.asarray(r, dtype=float).ravel() for r in training_points]
    lengths = {len(r) for r in rows}
    if len(lengths) > 1:
        raise DimensionMismatchError(f"Points have inconsistent lengths {sorted(lengths)}")
    if not rows:
        raise DegenerateInputError("No training points supplied")
    X = np.stack(rows)

    if dims is None:
        idx = list(range(X.shape[1]))
    else:
        idx = [int(i) for i in dims]
        if any(i < 0 or i >= X.shape[1] for i in idx):
            raise DimensionMismatchError(
                f"Dimension indices {idx} out of range for {X.shape[1]}-D points"
            )
    return X[:, idx], tuple(f"x{i}" for i in idx)


def build_hull(
    training_points: PointSet | Sequence[Sequence[float]] | np.ndarray,
    dims: Sequence[str] | Sequence[int] | None = None,
    config: HullConfig | None = None,
) -> ConvexHull:
    """
    Build the convex hull of the training points in a chosen subspace.

    Args:
        training_points: PointSet (dims are attribute names) or array-like
            (n, d) (dims are column indices).
        dims: Subspace to use. Defaults to all dimensions.
        config: Hull configuration. Uses defaults if None.

    Returns:
        Immutable ConvexHull.

    Raises:
        DimensionMismatchError: Rows of unequal length or unknown dims.
        DegenerateInputError: Fewer than d + 1 points, non-finite values,
            or points that do not span the subspace.
    """
    if config is None:
        config = HullConfig()

    X, names = _as_matrix(training_points, dims)
    n, d = X.shape

    if d == 0:
        raise DegenerateInputError("Empty subspace")
    if not np.all(np.isfinite(X)):
        raise DegenerateInputError("Training points contain NaN or infinite values")
    if n < d + 1:
        raise DegenerateInputError(
            f"Need at least {d + 1} points for a {d}-D hull, got {n}"
        )

    # Sorting makes the hull independent of input order
    X = X[np.lexsort(X.T[::-1])]

    rank = np.linalg.matrix_rank(X - X.mean(axis=0))
    if rank < d:
        raise DegenerateInputError(
            f"Points span only {rank} of {d} dimensions {names}"
        )

    if d == 1:
        lo, hi = int(np.argmin(X[:, 0])), int(np.argmax(X[:, 0]))
        equations = np.array([[-1.0, X[lo, 0]], [1.0, -X[hi, 0]]])
        simplices = np.array([[lo], [hi]])
        vertices = np.array([lo, hi])
    else:
        try:
            qh = _QhullHull(X, qhull_options=config.qhull_options)
        except QhullError as e:
            raise DegenerateInputError(f"Qhull failed for dims {names}: {e}") from e
        equations = qh.equations
        simplices = qh.simplices
        vertices = qh.vertices

    hull = ConvexHull(
        dims=names,
        points=_readonly(X),
        equations=_readonly(equations),
        simplices=_readonly(simplices),
        vertices=_readonly(np.sort(vertices)),
        epsilon=config.epsilon,
        signed=config.signed,
    )
    logger.debug(
        f"Built {d}-D hull over {names}: {n} points, "
        f"{len(hull.vertices)} vertices, {hull.n_facets} facets"
    )
    return hull


def facet_offsets(hull: ConvexHull, points: np.ndarray) -> np.ndarray:
    """Signed offsets of each point to each facet plane, shape (m, n_facets)."""
    P = np.atleast_2d(np.asarray(points, dtype=float))
    return P @ hull.equations[:, :-1].T + hull.equations[:, -1]


def _segment_distances(hull: ConvexHull, x: np.ndarray) -> float:
    """Distance from x to the closest hull edge (2-D)."""
    a = hull.points[hull.simplices[:, 0]]
    b = hull.points[hull.simplices[:, 1]]
    ab = b - a
    t = np.einsum("ij,ij->i", x - a, ab) / np.einsum("ij,ij->i", ab, ab)
    t = np.clip(t, 0.0, 1.0)
    nearest = a + t[:, None] * ab
    return float(np.min(np.linalg.norm(nearest - x, axis=1)))


def _project_outside(hull: ConvexHull, x: np.ndarray, max_offset: float) -> float:
    """Euclidean distance from an outside point to the hull."""
    if hull.ndim == 1:
        return float(max_offset)
    if hull.ndim == 2:
        return max(_segment_distances(hull, x), float(max_offset))

    A = hull.equations[:, :-1]
    b = hull.equations[:, -1]
    res = minimize(
        lambda y: 0.5 * np.sum((y - x) ** 2),
        hull.centroid,
        jac=lambda y: y - x,
        constraints=[{"type": "ineq", "fun": lambda y: -(A @ y + b), "jac": lambda y: -A}],
        method="SLSQP",
        options={"ftol": 1e-12, "maxiter": 500},
    )
    if not res.success:
        logger.warning(f"Hull projection did not converge: {res.message}")
    # The largest facet offset is a lower bound on the true distance
    return max(float(np.linalg.norm(res.x - x)), float(max_offset))


def distances_to_hull(
    hull: ConvexHull,
    points: np.ndarray,
    signed: bool | None = None,
) -> np.ndarray:
    """
    Vectorised distance of each row of ``points`` to the hull.

    Membership is decided for all rows at once; only outside rows are
    projected onto the hull.
    """
    if signed is None:
        signed = hull.signed

    P = np.atleast_2d(np.asarray(points, dtype=float))
    if P.shape[1] != hull.ndim:
        raise DimensionMismatchError(
            f"Points have {P.shape[1]} dimensions, hull has {hull.ndim} {hull.dims}"
        )
    if not np.all(np.isfinite(P)):
        raise ValueError("Query points contain NaN or infinite values")

    max_offset = facet_offsets(hull, P).max(axis=1)
    inside = max_offset <= hull.epsilon

    out = np.zeros(len(P))
    if signed:
        out[inside] = np.minimum(max_offset[inside], 0.0)
    for i in np.flatnonzero(~inside):
        out[i] = _project_outside(hull, P[i], max_offset[i])
    return out


def _as_point(hull: ConvexHull, point) -> np.ndarray:
    if isinstance(point, AttributeVector):
        return point.select(hull.dims)
    x = np.asarray(point, dtype=float).ravel()
    if x.size != hull.ndim:
        raise DimensionMismatchError(
            f"Point has {x.size} dimensions, hull has {hull.ndim} {hull.dims}"
        )
    return x


def distance_to_hull(
    hull: ConvexHull,
    point: AttributeVector | Sequence[float] | np.ndarray,
    signed: bool | None = None,
) -> float:
    """
    Distance of a single point to the hull.

    Args:
        hull: Hull built by build_hull().
        point: AttributeVector (selected by the hull's dims) or array of
            length hull.ndim.
        signed: Override the hull's sign convention.

    Returns:
        0 (or a negative value when signed) inside; the Euclidean distance
        to the nearest hull point outside.
    """
    return float(distances_to_hull(hull, _as_point(hull, point)[None, :], signed)[0])


def contains(hull: ConvexHull, point: AttributeVector | Sequence[float] | np.ndarray) -> bool:
    """Membership test, consistent with distance_to_hull() <= 0."""
    return distance_to_hull(hull, point) <= 0.0
