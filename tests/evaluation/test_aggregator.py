"""Tests for cross-corpus aggregation and export."""

import numpy as np
import pandas as pd
import pytest

from src.evaluation.aggregator import ResultsAggregator
from src.novelty.extrapolation import ExtrapolationResult
from src.novelty.io import save_extrapolation, save_performance
from src.novelty.performance import PerformanceResult
from src.novelty.records import ExtrapolationRecord, PerformanceRecord


def _summary(coefficients, status=None):
    n = len(coefficients)
    return pd.DataFrame(
        {
            "name": [f"analysis_{i}" for i in range(n)],
            "status": status or ["ok"] * n,
            "subspace": ["aridity,slope", "aridity,slope", "pc1,pc2"][:n],
            "coefficient": coefficients,
            "p_value": [0.01] * n,
            "n": [40] * n,
            "n_inside": [5] * n,
            "n_skipped": [0] * n,
        }
    )


def _points(shift, n=30, seed=0):
    rng = np.random.default_rng(seed)
    return pd.DataFrame(
        {
            "analysis": ["analysis_0"] * n,
            "point_id": [f"p{i}" for i in range(n)],
            "distance": rng.uniform(0.0, 1.0, n) + shift,
            "score": rng.uniform(0.0, 1.0, n),
        }
    )


@pytest.fixture
def aggregator():
    agg = ResultsAggregator()
    agg.add_results("synthetic", _summary([-0.6, -0.4, -0.2]), _points(0.0, seed=1))
    agg.add_results("camels", _summary([-0.3, -0.1, 0.05]), _points(2.0, seed=2))
    return agg


class TestResultsAggregator:
    def test_add_results(self, aggregator):
        assert set(aggregator.results) == {"synthetic", "camels"}
        assert aggregator.metadata["camels"] == {}

    def test_summarize_by_subspace(self, aggregator):
        summary = aggregator.summarize_by_subspace().set_index("subspace")
        assert summary.loc["aridity,slope", "n_runs"] == 4
        assert summary.loc["aridity,slope", "coefficient_mean"] == pytest.approx(-0.35)
        assert summary.loc["pc1,pc2", "coefficient_min"] == pytest.approx(-0.2)

    def test_failed_analyses_excluded(self):
        agg = ResultsAggregator()
        agg.add_results("x", _summary([-0.5, np.nan], status=["ok", "failed"]))
        summary = agg.summarize_by_subspace()
        assert summary["n_runs"].sum() == 1

    def test_compare_corpora(self, aggregator):
        comparison = aggregator.compare_corpora(value="distance")
        assert len(comparison) == 1
        row = comparison.iloc[0]
        assert row["analysis"] == "analysis_0"
        assert row["n_corpora"] == 2
        assert row["significant"]
        assert row["camels_mean"] > row["synthetic_mean"]

    def test_compare_needs_two_corpora(self):
        agg = ResultsAggregator()
        agg.add_results("only", _summary([-0.5]), _points(0.0))
        assert agg.compare_corpora().empty

    @pytest.mark.parametrize("test", ["mannwhitneyu", "ttest"])
    def test_pairwise_comparison(self, aggregator, test):
        pairwise = aggregator.pairwise_comparison("synthetic", "camels", test=test)
        assert len(pairwise) == 1
        assert pairwise.iloc[0]["cohens_d"] < 0
        assert pairwise.iloc[0]["significant_005"]

    def test_pairwise_unknown_corpus(self, aggregator):
        assert aggregator.pairwise_comparison("synthetic", "missing").empty

    def test_pairwise_unknown_test(self, aggregator):
        with pytest.raises(ValueError):
            aggregator.pairwise_comparison("synthetic", "camels", test="anova")

    def test_export_latex(self, aggregator, tmp_path):
        out = tmp_path / "table.tex"
        aggregator.export_latex_table(out)
        text = out.read_text()
        assert "\\begin{tabular}{llrrr}" in text
        assert "\\textbf{-0.600}" in text
        assert "analysis\\_0" in text

    def test_export_markdown(self, aggregator, tmp_path):
        out = tmp_path / "summary.md"
        aggregator.export_summary_markdown(out)
        text = out.read_text()
        assert "- synthetic: 3 analyses, 0 failed" in text
        assert "## Cross-Corpus Comparison" in text


def test_load_results_from_dir(tmp_path):
    corpus_dir = tmp_path / "synthetic"
    analysis_dir = corpus_dir / "analysis_0"
    analysis_dir.mkdir(parents=True)
    _summary([-0.5]).to_csv(corpus_dir / "analysis_summary.csv", index=False)

    records = tuple(
        ExtrapolationRecord(f"p{i}", float(i), i == 0, ("aridity",)) for i in range(4)
    )
    save_extrapolation(
        ExtrapolationResult(records, skipped=("p9",), subspace=("aridity",)),
        analysis_dir / "extrapolation.csv",
    )
    save_performance(
        PerformanceResult(
            tuple(PerformanceRecord(f"p{i}", 1.0 - i / 10, "nse", n_valid=30) for i in range(3)),
            "nse",
        ),
        analysis_dir / "performance.csv",
    )

    agg = ResultsAggregator()
    agg.load_results_from_dir(tmp_path)

    assert list(agg.results) == ["synthetic"]
    points = agg.points["synthetic"]
    assert points["point_id"].tolist() == ["p0", "p1", "p2", "p3"]
    assert points["score"].isna().tolist() == [False, False, False, True]
