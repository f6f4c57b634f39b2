"""Tests for tabular inputs and lossless result persistence."""

import numpy as np
import pandas as pd
import pytest
import torch

from src.novelty.correlation import CorrelationConfig, correlate
from src.novelty.extrapolation import compute_extrapolation
from src.novelty.geometry import build_hull
from src.novelty.io import (
    load_attribute_table,
    load_latent_states,
    read_correlation,
    read_extrapolation,
    read_performance,
    read_temporal,
    save_correlation,
    save_extrapolation,
    save_performance,
    save_temporal,
    split_point_sets,
)
from src.novelty.performance import Grouping, aggregate_performance
from src.novelty.records import (
    CorrelationResult,
    ExtrapolationRecord,
    PerformanceRecord,
    PointRole,
    WindowState,
)
from src.novelty.temporal import TemporalCorrelation, WindowPolicy


@pytest.fixture
def attributes():
    return pd.DataFrame(
        {
            "point_id": ["01013500", "01022500", "01030500", "01031500", "01047000", "01052500"],
            "partition": ["training"] * 4 + ["evaluation"] * 2,
            "aridity": [0.0, 1.0, 0.0, 1.0, 2.0, np.nan],
            "slope": [0.0, 0.0, 1.0, 1.0, 2.0, 0.5],
            "huc": ["01"] * 6,
        }
    )


class TestInputs:
    def test_split_point_sets(self, attributes):
        training, evaluation = split_point_sets(attributes)
        assert training.role == PointRole.TRAINING
        assert len(training) == 4
        assert evaluation.ids == ["01047000", "01052500"]
        # Non-numeric columns are not attributes
        assert training.names == ("aridity", "slope")

    def test_load_attribute_table_keeps_leading_zeros(self, attributes, tmp_path):
        path = tmp_path / "attributes.csv"
        attributes.to_csv(path, index=False)
        training, _ = load_attribute_table(path, columns=["slope"])
        assert training.ids[0] == "01013500"
        assert training.names == ("slope",)

    def test_missing_partition_column(self, attributes):
        with pytest.raises(KeyError):
            split_point_sets(attributes.drop(columns="partition"))

    def test_latent_states_from_tensor(self, tmp_path):
        states = torch.arange(2 * 3 * 4, dtype=torch.float32).reshape(2, 3, 4)
        torch.save(states, tmp_path / "states.pt")
        (tmp_path / "ids.txt").write_text("a\nb\n")

        frame = load_latent_states(tmp_path / "states.pt", ids_path=tmp_path / "ids.txt")
        assert list(frame.columns) == ["point_id", "time", "h0", "h1", "h2", "h3"]
        assert len(frame) == 6
        assert frame["point_id"].tolist() == ["a", "a", "a", "b", "b", "b"]
        assert frame["time"].tolist() == [0, 1, 2, 0, 1, 2]
        assert frame.iloc[4]["h2"] == pytest.approx(float(states[1, 1, 2]))

    def test_latent_states_id_count_mismatch(self, tmp_path):
        torch.save(torch.zeros(2, 3, 4), tmp_path / "states.pt")
        (tmp_path / "ids.txt").write_text("a\n")
        with pytest.raises(ValueError):
            load_latent_states(tmp_path / "states.pt", ids_path=tmp_path / "ids.txt")

    def test_latent_states_need_ids(self, tmp_path):
        torch.save(torch.zeros(2, 3, 4), tmp_path / "states.pt")
        with pytest.raises(ValueError):
            load_latent_states(tmp_path / "states.pt")


class TestRoundTrips:
    def test_extrapolation(self, attributes, tmp_path):
        training, evaluation = split_point_sets(attributes)
        result = compute_extrapolation(build_hull(training), evaluation)
        assert result.n_skipped == 1

        save_extrapolation(result, tmp_path / "extrapolation.csv")
        loaded = read_extrapolation(tmp_path / "extrapolation.csv")

        assert loaded.records == result.records
        assert loaded.skipped == result.skipped
        assert loaded.subspace == result.subspace

    def test_performance_with_failures(self, tmp_path):
        t = np.arange(30)
        observed = 1.0 + np.sin(t / 3.0)
        outputs = pd.DataFrame(
            {
                "point_id": ["a"] * 30 + ["gauge@b"] * 30,
                "time": np.concatenate([t, t]),
                "predicted": np.concatenate([observed + 0.1, observed]),
                "observed": np.concatenate([observed, np.ones(30)]),
            }
        )
        result = aggregate_performance(outputs, Grouping(window=15), "rmse")
        assert result.n_failed == 2

        save_performance(result, tmp_path / "performance.csv")
        loaded = read_performance(tmp_path / "performance.csv")

        assert loaded.records == result.records
        assert loaded.failures == result.failures
        assert set(loaded.failures) == {("gauge@b", 0), ("gauge@b", 1)}
        assert loaded.metric == "rmse"

    def test_correlation_with_bins(self, tmp_path):
        ids = [f"c{i}" for i in range(12)]
        ext = [ExtrapolationRecord(pid, float(i), i == 0, ("aridity",)) for i, pid in enumerate(ids)]
        perf = [PerformanceRecord(pid, 1.0 - 0.1 * i, "nse") for i, pid in enumerate(ids)]
        result = correlate(ext, perf, CorrelationConfig(n_bins=3))

        save_correlation(result, tmp_path / "correlation.json")
        loaded = read_correlation(tmp_path / "correlation.json")

        assert loaded.to_dict() == result.to_dict()
        pd.testing.assert_frame_equal(loaded.bins, result.bins, check_dtype=False)

    def test_correlation_nan_coefficient(self, tmp_path):
        result = CorrelationResult(
            coefficient=float("nan"),
            p_value=float("nan"),
            n=3,
            method="spearman",
            status=WindowState.ACCUMULATING,
            reason="3 matched pair(s), need at least 10",
        )
        save_correlation(result, tmp_path / "c.json")
        loaded = read_correlation(tmp_path / "c.json")
        assert np.isnan(loaded.coefficient)
        assert loaded.status == WindowState.ACCUMULATING
        assert loaded.reason == result.reason
        assert loaded.bins is None

    def test_temporal(self, tmp_path):
        bins = pd.DataFrame(
            {
                "bin": [0, 1],
                "lower": [0.0, 0.5],
                "upper": [0.5, 1.0],
                "n": [10, 10],
                "mean_score": [0.8, 0.4],
                "median_score": [0.82, 0.35],
            }
        )
        results = (
            CorrelationResult(
                float("nan"), float("nan"), 0, "spearman", time_index=0,
                status=WindowState.INITIALIZING, reason="no training states yet",
                metadata={"time": 0},
            ),
            CorrelationResult(
                -0.8, 0.001, 20, "spearman", time_index=1,
                n_unmatched_extrapolation=3, n_unmatched_performance=7,
                bins=bins, status=WindowState.STABLE,
                metadata={"time": 1, "n_skipped": 2},
            ),
        )
        trajectory = TemporalCorrelation(results=results, policy=WindowPolicy.sliding(2))

        save_temporal(trajectory, tmp_path / "temporal.csv")
        loaded = read_temporal(tmp_path / "temporal.csv")

        assert loaded.policy == trajectory.policy
        assert [r.status for r in loaded] == [r.status for r in trajectory]
        assert loaded[0].reason == "no training states yet"
        assert loaded[1].reason is None
        assert loaded[1].coefficient == pytest.approx(-0.8)
        assert np.isnan(loaded[0].coefficient)
        assert loaded.first_stable_time == 1
        assert (loaded[1].n_unmatched_extrapolation, loaded[1].n_unmatched_performance) == (3, 7)
        assert loaded[1].metadata == {"time": 1, "n_skipped": 2}
        assert loaded[0].metadata == {"time": 0}
        assert loaded[0].bins is None
        pd.testing.assert_frame_equal(loaded[1].bins, bins, check_dtype=False)
