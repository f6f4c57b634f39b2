"""
Tests for end-to-end analysis runs.

Tests verify:
- A synthetic corpus with known degradation yields a negative ρ
- Fatal errors abort only their analysis and are counted in the report
- Non-fatal warnings and group failures are counted
- Reports persist to disk
"""

import json

import numpy as np
import pandas as pd
import pytest
from omegaconf import OmegaConf

from src.experiments.synthetic import generate_corpus
from src.novelty.io import split_point_sets
from src.novelty.pipeline import (
    AnalysisConfig,
    reports_to_frame,
    run_analyses,
    run_analysis,
    save_report,
)
from src.novelty.records import PointSet, WindowState
from src.novelty.temporal import WindowKind


@pytest.fixture(scope="module")
def corpus():
    cfg = OmegaConf.create(
        {
            "attributes": ["aridity", "mean_slope", "forest_frac"],
            "n_training": 50,
            "n_evaluation": 40,
            "n_steps": 100,
            "period": 50,
            "spread": 0.6,
            "noise": 0.05,
            "degradation": 2.0,
            "n_latent": 2,
            "n_latent_steps": 10,
        }
    )
    return generate_corpus(cfg, seed=3)


@pytest.fixture(scope="module")
def point_sets(corpus):
    return split_point_sets(corpus.attributes)


class TestAnalysisConfig:
    def test_from_omegaconf(self):
        cfg = OmegaConf.create(
            {
                "name": "latent",
                "dims": ["aridity", "forest_frac"],
                "subspace": "standardized",
                "metric": "kge",
                "hull": {"signed": True},
                "correlation": {"method": "kendall", "n_bins": 3},
                "performance": {"min_valid_steps": 5},
                "temporal": {"policy": "sliding", "width": 4, "performance_window": 10},
            }
        )
        config = AnalysisConfig.from_omegaconf(cfg, corpus="camels")

        assert config.corpus == "camels"
        assert config.dims == ("aridity", "forest_frac")
        assert config.hull.signed
        assert config.correlation.method == "kendall"
        assert config.performance.min_valid_steps == 5
        assert config.temporal.policy.kind == WindowKind.SLIDING
        assert config.temporal.policy.width == 4
        assert config.temporal.performance_window == 10

    def test_defaults(self):
        config = AnalysisConfig.from_omegaconf({"name": "plain"})
        assert config.subspace == "raw"
        assert config.metric == "nse"
        assert config.temporal is None


class TestRunAnalysis:
    def test_degradation_is_detected(self, corpus, point_sets):
        training, evaluation = point_sets
        config = AnalysisConfig(name="raw")
        report = run_analysis(config, training, evaluation, corpus.model_outputs)

        assert report.status == "ok"
        assert report.subspace == ("aridity", "mean_slope", "forest_frac")
        assert len(report.extrapolation) == 40
        assert report.correlation.n == 40
        assert report.correlation.coefficient < -0.3
        assert report.distribution is not None
        assert not report.errors

    @pytest.mark.parametrize("subspace", ["standardized", "pca"])
    def test_subspace_modes(self, corpus, point_sets, subspace):
        training, evaluation = point_sets
        config = AnalysisConfig(name=subspace, subspace=subspace, n_components=2)
        report = run_analysis(config, training, evaluation, corpus.model_outputs)

        assert report.status == "ok"
        if subspace == "pca":
            assert report.subspace == ("pc1", "pc2")
            assert report.explained_variance is not None

    def test_degenerate_hull_aborts_analysis(self, corpus, point_sets):
        training, evaluation = point_sets
        tiny = PointSet(training.role, training.vectors[:2])
        config = AnalysisConfig(name="tiny", dims=("aridity", "forest_frac"))
        report = run_analysis(config, tiny, evaluation, corpus.model_outputs)

        assert report.status == "failed"
        assert report.errors["DegenerateInputError"] == 1
        assert report.extrapolation is None
        assert report.correlation is None
        assert report.messages

    def test_unmatched_points_are_counted(self, corpus, point_sets):
        training, evaluation = point_sets
        dropped = set(evaluation.ids[:5])
        outputs = corpus.model_outputs[~corpus.model_outputs["point_id"].isin(dropped)]
        report = run_analysis(AnalysisConfig(name="partial"), training, evaluation, outputs)

        assert report.status == "ok"
        assert report.warnings["UnmatchedPointWarning"] == 1
        assert report.correlation.n_unmatched_extrapolation == 5

    def test_group_failures_are_counted(self, corpus, point_sets):
        training, evaluation = point_sets
        outputs = corpus.model_outputs.copy()
        flat = outputs["point_id"] == evaluation.ids[0]
        outputs.loc[flat, "observed"] = 1.0
        report = run_analysis(AnalysisConfig(name="flat"), training, evaluation, outputs)

        assert report.status == "ok"
        assert report.errors["InsufficientDataError"] == 1
        assert report.correlation.n == 39

    def test_skipped_points_are_counted(self, corpus, point_sets):
        training, evaluation = point_sets
        attributes = corpus.attributes.copy()
        attributes.loc[attributes["point_id"] == evaluation.ids[0], "aridity"] = np.nan
        training, evaluation = split_point_sets(attributes)
        report = run_analysis(AnalysisConfig(name="nan"), training, evaluation, corpus.model_outputs)

        assert report.warnings["SkippedPoint"] == 1
        assert report.extrapolation.n_skipped == 1

    def test_incomplete_training_points_are_dropped(self, corpus, point_sets):
        training, _ = point_sets
        attributes = corpus.attributes.copy()
        attributes.loc[attributes["point_id"] == training.ids[0], "forest_frac"] = np.nan
        training, evaluation = split_point_sets(attributes)

        jobs = [
            (AnalysisConfig(name="pair", dims=("aridity", "mean_slope")), training, evaluation,
             corpus.model_outputs),
            (AnalysisConfig(name="all"), training, evaluation, corpus.model_outputs),
            (AnalysisConfig(name="pca", subspace="pca", n_components=2), training, evaluation,
             corpus.model_outputs),
        ]
        pair, full, pca = run_analyses(jobs)

        assert [r.status for r in (pair, full, pca)] == ["ok", "ok", "ok"]
        assert "SkippedTrainingPoint" not in pair.warnings
        assert full.warnings["SkippedTrainingPoint"] == 1
        assert full.dropped_training == (training.ids[0],)
        assert pca.warnings["SkippedTrainingPoint"] == 1
        assert full.summary()["n_dropped_training"] == 1
        assert len(full.extrapolation) == 40

    @pytest.mark.parametrize("subspace", ["raw", "pca"])
    def test_missing_training_attribute_fails_only_its_analysis(self, corpus, subspace):
        attributes = corpus.attributes.copy()
        attributes.loc[attributes["partition"] == "training", "forest_frac"] = np.nan
        training, evaluation = split_point_sets(attributes)

        jobs = [
            (AnalysisConfig(name="pair", dims=("aridity", "mean_slope")), training, evaluation,
             corpus.model_outputs),
            (AnalysisConfig(name="all", subspace=subspace, n_components=2), training, evaluation,
             corpus.model_outputs),
        ]
        pair, full = run_analyses(jobs)

        assert [pair.status, full.status] == ["ok", "failed"]
        assert full.errors["DegenerateInputError"] == 1
        assert full.warnings["SkippedTrainingPoint"] == 50
        assert full.distribution is not None
        assert full.extrapolation is None
        assert pair.correlation.n == 40

    def test_temporal_trajectory(self, corpus, point_sets):
        training, evaluation = point_sets
        config = AnalysisConfig.from_omegaconf(
            {
                "name": "latent",
                "temporal": {"policy": "sliding", "width": 3, "performance_window": 10},
            }
        )
        report = run_analysis(
            config, training, evaluation, corpus.model_outputs, corpus.latent_states
        )

        assert report.status == "ok"
        assert len(report.temporal) == 10
        assert report.temporal[0].status == WindowState.ACCUMULATING
        assert report.temporal[2].status == WindowState.STABLE
        assert report.warnings["InsufficientWindow"] == 2

    def test_temporal_fixed_hull(self, corpus, point_sets):
        training, evaluation = point_sets
        config = AnalysisConfig.from_omegaconf(
            {"name": "latent_fixed", "temporal": {"policy": "expanding", "fixed_hull": True}}
        )
        report = run_analysis(
            config, training, evaluation, corpus.model_outputs, corpus.latent_states
        )
        assert report.status == "ok"
        assert report.temporal.n_insufficient == 0


class TestReports:
    def test_save_report(self, corpus, point_sets, tmp_path):
        training, evaluation = point_sets
        report = run_analysis(
            AnalysisConfig.from_omegaconf({"name": "saved", "correlation": {"n_bins": 4}}),
            training,
            evaluation,
            corpus.model_outputs,
        )
        out = save_report(report, tmp_path)

        for name in ("extrapolation.csv", "performance.csv", "correlation.json",
                     "correlation_bins.csv", "distribution.csv", "attribute_summary.csv",
                     "summary.json"):
            assert (out / name).exists(), name
        assert not (out / "temporal.csv").exists()

        attribute_summary = pd.read_csv(out / "attribute_summary.csv")
        assert attribute_summary["partition"].tolist() == ["training"] * 3 + ["evaluation"] * 3
        assert attribute_summary["count"].tolist() == [50] * 3 + [40] * 3

        with open(out / "summary.json") as f:
            summary = json.load(f)
        assert summary["status"] == "ok"
        assert summary["n"] == 40

    def test_run_analyses_and_frame(self, corpus, point_sets):
        training, evaluation = point_sets
        jobs = [
            (AnalysisConfig(name="a", dims=("aridity", "mean_slope")), training, evaluation,
             corpus.model_outputs),
            (AnalysisConfig(name="b", dims=("aridity",)), PointSet(training.role, training.vectors[:1]),
             evaluation, corpus.model_outputs),
        ]
        reports = run_analyses(jobs)
        assert [r.status for r in reports] == ["ok", "failed"]

        frame = reports_to_frame(reports)
        assert frame["name"].tolist() == ["a", "b"]
        assert frame.loc[1, "error_DegenerateInputError"] == 1
