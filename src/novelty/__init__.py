"""
Catchment novelty — does LSTM skill degrade outside the training support?

Core idea: d_i = dist(x_i, hull(training)) measures how far evaluation
catchment i extrapolates beyond the training attributes (or latent
states); ρ(d, score) tells whether performance degrades with novelty.

Modules:
    geometry: Convex hull construction, membership and distance queries
    subspace: Standardisation and PCA subspaces for hull analyses
    extrapolation: Per-point extrapolation distances
    performance: Per-catchment fit statistics (NSE, KGE, ...)
    correlation: ρ(distance, score) with binning and join accounting
    temporal: Correlation trajectories over latent-state windows
    distribution: Per-attribute distribution comparison
    pipeline: Analysis runs, error/warning reports, persistence
    io: Tabular inputs and outputs
"""

# --- Errors ---
from src.novelty.errors import (
    NoveltyError,
    DimensionMismatchError,
    DegenerateInputError,
    InsufficientDataError,
    InsufficientSampleError,
    UnmatchedPointWarning,
)

# --- Records ---
from src.novelty.records import (
    AttributeVector,
    PointSet,
    PointRole,
    ExtrapolationRecord,
    PerformanceRecord,
    CorrelationResult,
    WindowState,
)

# --- Geometry ---
from src.novelty.geometry import (
    DEFAULT_EPSILON,
    HullConfig,
    ConvexHull,
    build_hull,
    distance_to_hull,
    distances_to_hull,
    contains,
)

# --- Extrapolation ---
from src.novelty.extrapolation import ExtrapolationResult, compute_extrapolation

# --- Performance ---
from src.novelty.performance import (
    Grouping,
    PerformanceConfig,
    PerformanceResult,
    aggregate_performance,
    register_metric,
)

# --- Correlation ---
from src.novelty.correlation import CorrelationConfig, correlate

# --- Temporal ---
from src.novelty.temporal import (
    LatentStateSeries,
    TemporalConfig,
    TemporalCorrelation,
    WindowKind,
    WindowPolicy,
    correlate_over_time,
)

# --- Pipeline ---
from src.novelty.pipeline import (
    AnalysisConfig,
    AnalysisReport,
    run_analysis,
    run_analyses,
    save_report,
)

__all__ = [
    # errors
    "NoveltyError",
    "DimensionMismatchError",
    "DegenerateInputError",
    "InsufficientDataError",
    "InsufficientSampleError",
    "UnmatchedPointWarning",
    # records
    "AttributeVector",
    "PointSet",
    "PointRole",
    "ExtrapolationRecord",
    "PerformanceRecord",
    "CorrelationResult",
    "WindowState",
    # geometry
    "DEFAULT_EPSILON",
    "HullConfig",
    "ConvexHull",
    "build_hull",
    "distance_to_hull",
    "distances_to_hull",
    "contains",
    # extrapolation
    "ExtrapolationResult",
    "compute_extrapolation",
    # performance
    "Grouping",
    "PerformanceConfig",
    "PerformanceResult",
    "aggregate_performance",
    "register_metric",
    # correlation
    "CorrelationConfig",
    "correlate",
    # temporal
    "LatentStateSeries",
    "TemporalConfig",
    "TemporalCorrelation",
    "WindowKind",
    "WindowPolicy",
    "correlate_over_time",
    # pipeline
    "AnalysisConfig",
    "AnalysisReport",
    "run_analysis",
    "run_analyses",
    "save_report",
]
