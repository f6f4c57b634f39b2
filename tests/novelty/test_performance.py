"""Tests for per-catchment fit statistics and their aggregation."""

import numpy as np
import pandas as pd
import pytest

from src.novelty.errors import InsufficientDataError
from src.novelty.performance import (
    PERFORMANCE_METRICS,
    Grouping,
    PerformanceConfig,
    aggregate_performance,
    kge,
    nse,
    pbias,
    pearson_r,
    register_metric,
    rmse,
)


def _outputs(series: dict) -> pd.DataFrame:
    """Long model outputs from {point_id: (predicted, observed)}."""
    frames = []
    for pid, (predicted, observed) in series.items():
        frames.append(
            pd.DataFrame(
                {
                    "point_id": pid,
                    "time": np.arange(len(observed)),
                    "predicted": predicted,
                    "observed": observed,
                }
            )
        )
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def observed():
    return 2.0 + np.sin(np.linspace(0, 4 * np.pi, 30))


class TestMetrics:
    def test_nse_perfect_and_mean(self, observed):
        assert nse(observed, observed) == pytest.approx(1.0)
        mean_forecast = np.full_like(observed, observed.mean())
        assert nse(mean_forecast, observed) == pytest.approx(0.0)

    def test_kge_perfect(self, observed):
        assert kge(observed, observed) == pytest.approx(1.0)

    def test_kge_bias(self, observed):
        # Scaling by 2 doubles both variability and bias ratios
        expected = 1.0 - np.sqrt(0.0 + 1.0 + 1.0)
        assert kge(2.0 * observed, observed) == pytest.approx(expected)

    def test_rmse_and_pbias(self, observed):
        assert rmse(observed + 0.5, observed) == pytest.approx(0.5)
        assert pbias(observed * 1.1, observed) == pytest.approx(10.0)

    def test_pearson(self, observed):
        assert pearson_r(3.0 * observed - 1.0, observed) == pytest.approx(1.0)

    def test_too_few_valid_steps(self):
        with pytest.raises(InsufficientDataError):
            nse(np.arange(5.0), np.arange(5.0))

    def test_constant_observations(self):
        with pytest.raises(InsufficientDataError):
            nse(np.arange(20.0), np.ones(20))

    def test_nan_pairs_ignored(self, observed):
        predicted = observed.copy()
        predicted[:5] = np.nan
        assert nse(predicted, observed) == pytest.approx(1.0)
        config = PerformanceConfig(min_valid_steps=26)
        with pytest.raises(InsufficientDataError):
            nse(predicted, observed, config)

    def test_registry(self):
        assert set(PERFORMANCE_METRICS) >= {"nse", "kge", "rmse", "pearson_r", "pbias"}


class TestAggregatePerformance:
    def test_per_catchment(self, observed):
        outputs = _outputs({"b": (observed, observed), "a": (observed + 0.1, observed)})
        result = aggregate_performance(outputs, metric="rmse")

        assert [r.point_id for r in result] == ["a", "b"]
        assert result[0].score == pytest.approx(0.1)
        assert result[1].score == pytest.approx(0.0)
        assert all(r.time_index is None for r in result)
        assert result[0].n_valid == 30
        assert not result.is_windowed

    def test_failures_are_recorded_not_scored(self, observed):
        outputs = _outputs(
            {"good": (observed, observed), "flat": (observed, np.ones_like(observed))}
        )
        result = aggregate_performance(outputs)

        assert [r.point_id for r in result] == ["good"]
        assert list(result.failures) == [("flat", None)]
        assert result.n_failed == 1

    def test_windowed(self, observed):
        outputs = _outputs({"a": (observed, observed)})
        result = aggregate_performance(
            outputs, Grouping(window=10), "nse", PerformanceConfig(min_valid_steps=5)
        )
        assert [r.time_index for r in result] == [0, 1, 2]
        assert result.is_windowed
        assert all(r.score == pytest.approx(1.0) for r in result)

    def test_windowed_failure_keys(self, observed):
        outputs = _outputs({"a": (observed, observed)})
        result = aggregate_performance(outputs, Grouping(window=10))
        assert len(result) == 3

        short = aggregate_performance(outputs, Grouping(window=8))
        # Windows of 8 steps fall below the default minimum of 10
        assert list(short.failures) == [("a", 0), ("a", 1), ("a", 2), ("a", 3)]
        assert [r.time_index for r in short] == []

    def test_windows_follow_time_order(self, observed):
        outputs = _outputs({"a": (observed, observed)}).sample(frac=1.0, random_state=3)
        outputs.loc[outputs["time"] >= 15, "predicted"] += 1.0
        result = aggregate_performance(
            outputs, Grouping(window=15), "rmse", PerformanceConfig(min_valid_steps=5)
        )
        assert [r.score for r in result] == pytest.approx([0.0, 1.0])

    def test_custom_metric(self, observed):
        def mean_error(predicted, observed, config):
            return float(np.mean(predicted - observed))

        register_metric("mean_error", mean_error)
        try:
            outputs = _outputs({"a": (observed + 2.0, observed)})
            result = aggregate_performance(outputs, metric="mean_error")
            assert result[0].score == pytest.approx(2.0)
            assert result.metric == "mean_error"
        finally:
            PERFORMANCE_METRICS.pop("mean_error")

    def test_unknown_metric(self, observed):
        with pytest.raises(ValueError):
            aggregate_performance(_outputs({"a": (observed, observed)}), metric="r2")

    def test_missing_columns(self):
        with pytest.raises(KeyError):
            aggregate_performance(pd.DataFrame({"point_id": ["a"], "time": [0]}))

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            Grouping(window=0)

    def test_to_frame(self, observed):
        outputs = _outputs({"a": (observed, observed)})
        frame = aggregate_performance(outputs).to_frame()
        assert list(frame.columns) == ["point_id", "score", "metric", "time_index", "n_valid"]
        assert frame["time_index"].isna().all()
