"""
Univariate distribution summaries of catchment attributes.

Complements the multivariate hull distance: per attribute, how do the
evaluation catchments compare with the training catchments?
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd
from scipy.stats import ks_2samp

from src.novelty.records import PointSet

logger = logging.getLogger(__name__)


def describe_attributes(points: PointSet, dims: Sequence[str] | None = None) -> pd.DataFrame:
    """
    Count, mean, std, min, quartiles and max of each attribute.

    Non-finite values are ignored per attribute.
    """
    dims = points.names if dims is None else tuple(dims)
    X = points.matrix(dims)

    rows = []
    for j, name in enumerate(dims):
        v = X[:, j]
        v = v[np.isfinite(v)]
        if len(v) == 0:
            rows.append({"attribute": name, "count": 0})
            continue
        p25, p50, p75 = np.percentile(v, [25, 50, 75])
        rows.append(
            {
                "attribute": name,
                "count": len(v),
                "mean": float(np.mean(v)),
                "std": float(np.std(v, ddof=1)) if len(v) > 1 else 0.0,
                "min": float(np.min(v)),
                "p25": float(p25),
                "p50": float(p50),
                "p75": float(p75),
                "max": float(np.max(v)),
            }
        )
    return pd.DataFrame(rows)


def compare_distributions(
    training: PointSet,
    evaluation: PointSet,
    dims: Sequence[str] | None = None,
) -> pd.DataFrame:
    """
    Per-attribute two-sample Kolmogorov–Smirnov test and range exceedance.

    Returns:
        DataFrame with ks_statistic, ks_p_value and frac_outside_range
        (fraction of evaluation values below the training minimum or above
        the training maximum).
    """
    dims = training.names if dims is None else tuple(dims)
    T = training.matrix(dims)
    E = evaluation.matrix(dims)

    rows = []
    for j, name in enumerate(dims):
        t = T[:, j][np.isfinite(T[:, j])]
        e = E[:, j][np.isfinite(E[:, j])]
        if len(t) == 0 or len(e) == 0:
            logger.warning(f"No finite values to compare for attribute '{name}'")
            continue
        ks = ks_2samp(t, e)
        outside = (e < t.min()) | (e > t.max())
        rows.append(
            {
                "attribute": name,
                "n_training": len(t),
                "n_evaluation": len(e),
                "ks_statistic": float(ks.statistic),
                "ks_p_value": float(ks.pvalue),
                "frac_outside_range": float(outside.mean()),
            }
        )
    return pd.DataFrame(rows)
