"""
Results aggregation and cross-corpus comparison.

Aggregates analysis reports across corpora (synthetic, CAMELS, ...).
Provides statistical comparison of extrapolation distances and LaTeX
export for paper-ready tables.
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Optional
from pathlib import Path
from scipy import stats
import logging
import json

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ['coefficient', 'p_value', 'n', 'n_inside', 'n_skipped']


class ResultsAggregator:
    """
    Aggregate and compare analysis results across corpora.

    Each corpus contributes two tables:
    - results: one summary row per analysis (see pipeline.reports_to_frame)
    - points: per-point distances and scores, long format
      (analysis | point_id | distance | score)
    """

    def __init__(self):
        self.results: Dict[str, pd.DataFrame] = {}
        self.points: Dict[str, pd.DataFrame] = {}
        self.metadata: Dict[str, Dict] = {}

    def add_results(
        self,
        name: str,
        results: pd.DataFrame,
        points: Optional[pd.DataFrame] = None,
        metadata: Optional[Dict] = None
    ):
        """
        Add the analysis results of a single corpus.

        Args:
            name: Unique identifier (e.g., 'synthetic', 'camels')
            results: Summary DataFrame, one row per analysis
            points: Optional per-point distances and scores
            metadata: Optional metadata (corpus config, seed, ...)
        """
        self.results[name] = results.copy()
        if points is not None:
            self.points[name] = points.copy()
        self.metadata[name] = metadata or {}
        logger.info(f"Added results for '{name}': {len(results)} analyses")

    def load_results_from_dir(
        self,
        results_dir: Path,
        pattern: str = '**/analysis_summary.csv'
    ):
        """
        Load all corpus runs under a directory.

        Expected structure:
        results/
            synthetic/
                analysis_summary.csv
                metadata.json            (optional)
                <analysis>/extrapolation.csv
                <analysis>/performance.csv

        Args:
            results_dir: Root directory containing results
            pattern: Glob pattern to match summary files
        """
        results_dir = Path(results_dir)

        for summary_file in sorted(results_dir.glob(pattern)):
            corpus_dir = summary_file.parent
            name = corpus_dir.name

            try:
                results = pd.read_csv(summary_file)
            except (OSError, pd.errors.ParserError) as e:
                logger.warning(f"Failed to load {summary_file}: {e}")
                continue

            metadata = {}
            metadata_file = corpus_dir / 'metadata.json'
            if metadata_file.exists():
                with open(metadata_file, 'r') as f:
                    metadata = json.load(f)

            points = self._load_points(corpus_dir, results['name'].tolist())
            self.add_results(name, results, points, metadata)

    @staticmethod
    def _load_points(corpus_dir: Path, analyses: List[str]) -> pd.DataFrame:
        """Join each analysis' extrapolation and performance tables."""
        frames = []
        for analysis in analyses:
            ext_file = corpus_dir / analysis / 'extrapolation.csv'
            if not ext_file.exists():
                continue
            ext = pd.read_csv(ext_file, dtype={'point_id': str})
            ext = ext[ext['skipped'].astype(str) != 'True']
            frame = ext[['point_id', 'distance']].copy()

            perf_file = corpus_dir / analysis / 'performance.csv'
            if perf_file.exists():
                perf = pd.read_csv(perf_file, dtype={'point_id': str})
                perf = perf[perf['time_index'].isna() & perf['score'].notna()]
                frame = frame.merge(perf[['point_id', 'score']], on='point_id', how='left')
            else:
                frame['score'] = np.nan

            frame.insert(0, 'analysis', analysis)
            frames.append(frame)

        if not frames:
            return pd.DataFrame(columns=['analysis', 'point_id', 'distance', 'score'])
        return pd.concat(frames, ignore_index=True)

    def combined(self) -> pd.DataFrame:
        """All summary rows with a 'corpus_run' column."""
        if not self.results:
            return pd.DataFrame()
        frames = []
        for name, results in self.results.items():
            frame = results.copy()
            frame['corpus_run'] = name
            frames.append(frame)
        return pd.concat(frames, ignore_index=True)

    def summarize_by_subspace(
        self,
        columns: Optional[List[str]] = None
    ) -> pd.DataFrame:
        """
        Aggregate analysis statistics by subspace across all corpora.

        Args:
            columns: Summary columns to aggregate (default: SUMMARY_COLUMNS)

        Returns:
            DataFrame with mean/std/median/min/max per subspace
        """
        combined = self.combined()
        if combined.empty:
            logger.warning("No results to aggregate")
            return pd.DataFrame()

        if columns is None:
            columns = [c for c in SUMMARY_COLUMNS if c in combined.columns]

        combined = combined[combined['status'] == 'ok']
        agg_funcs = {
            col: ['mean', 'std', 'median', 'min', 'max']
            for col in columns
        }
        summary = combined.groupby('subspace').agg(agg_funcs)

        # Flatten column names
        summary.columns = ['_'.join(col).strip() for col in summary.columns.values]
        summary['n_runs'] = combined.groupby('subspace').size()
        return summary.reset_index()

    def compare_corpora(
        self,
        value: str = 'distance',
        alpha: float = 0.05
    ) -> pd.DataFrame:
        """
        Compare per-point values of each analysis across corpora.

        Uses the Kruskal-Wallis test to determine whether the same analysis
        extrapolates differently in different corpora.

        Args:
            value: Per-point column to compare ('distance' or 'score')
            alpha: Significance level

        Returns:
            DataFrame with one row per analysis present in >= 2 corpora
        """
        if len(self.points) < 2:
            logger.warning("Need at least 2 corpora for comparison")
            return pd.DataFrame()

        analyses = set()
        for points in self.points.values():
            analyses.update(points['analysis'].unique())

        comparison_results = []

        for analysis in sorted(analyses):
            corpus_values = {}
            for name, points in self.points.items():
                values = points.loc[points['analysis'] == analysis, value].dropna().values
                if len(values) > 0:
                    corpus_values[name] = values

            if len(corpus_values) < 2:
                continue

            try:
                h_stat, p_value = stats.kruskal(*corpus_values.values())
            except ValueError as e:
                # Raised when all values are identical
                logger.warning(f"Failed comparison for {analysis}: {e}")
                continue

            result = {
                'analysis': analysis,
                'value': value,
                'n_corpora': len(corpus_values),
                'kruskal_h': h_stat,
                'kruskal_p': p_value,
                'significant': p_value < alpha
            }
            for name, values in corpus_values.items():
                result[f'{name}_mean'] = np.mean(values)
                result[f'{name}_std'] = np.std(values)

            comparison_results.append(result)

        return pd.DataFrame(comparison_results)

    def pairwise_comparison(
        self,
        corpus1: str,
        corpus2: str,
        value: str = 'distance',
        test: str = 'mannwhitneyu'
    ) -> pd.DataFrame:
        """
        Pairwise comparison of per-point values between two corpora.

        Args:
            corpus1: Name of first corpus
            corpus2: Name of second corpus
            value: Per-point column to compare
            test: Statistical test ('mannwhitneyu' or 'ttest')

        Returns:
            DataFrame with one row per shared analysis
        """
        if corpus1 not in self.points or corpus2 not in self.points:
            logger.error(f"Corpora not found: {corpus1}, {corpus2}")
            return pd.DataFrame()

        points1 = self.points[corpus1]
        points2 = self.points[corpus2]
        common = set(points1['analysis']).intersection(points2['analysis'])

        comparison_results = []

        for analysis in sorted(common):
            values1 = points1.loc[points1['analysis'] == analysis, value].dropna().values
            values2 = points2.loc[points2['analysis'] == analysis, value].dropna().values

            if len(values1) < 2 or len(values2) < 2:
                continue

            if test == 'mannwhitneyu':
                statistic, p_value = stats.mannwhitneyu(values1, values2, alternative='two-sided')
            elif test == 'ttest':
                statistic, p_value = stats.ttest_ind(values1, values2)
            else:
                raise ValueError(f"Unknown test: {test}")

            # Effect size (Cohen's d)
            mean_diff = np.mean(values1) - np.mean(values2)
            pooled_std = np.sqrt((np.std(values1)**2 + np.std(values2)**2) / 2)
            cohens_d = mean_diff / pooled_std if pooled_std > 0 else 0.0

            comparison_results.append({
                'analysis': analysis,
                f'{corpus1}_mean': np.mean(values1),
                f'{corpus1}_std': np.std(values1),
                f'{corpus2}_mean': np.mean(values2),
                f'{corpus2}_std': np.std(values2),
                'statistic': statistic,
                'p_value': p_value,
                'cohens_d': cohens_d,
                'significant_005': p_value < 0.05,
                'significant_001': p_value < 0.01
            })

        return pd.DataFrame(comparison_results)

    def export_latex_table(
        self,
        output_file: Path,
        columns: Optional[List[str]] = None,
        caption: str = 'Extrapolation vs performance',
        label: str = 'tab:extrapolation',
        format_spec: str = '.3f',
        bold_best: bool = True
    ):
        """
        Export per-analysis results as a LaTeX table.

        Args:
            output_file: Output .tex file path
            columns: Summary columns to include (default: coefficient, p_value, n)
            caption: Table caption
            label: LaTeX label
            format_spec: Number format specification
            bold_best: Bold the strongest (largest |ρ|) coefficient
        """
        combined = self.combined()
        if combined.empty:
            logger.error("No results to export")
            return

        if columns is None:
            columns = ['coefficient', 'p_value', 'n']
        export_df = combined[['corpus_run', 'name'] + columns].reset_index(drop=True)

        strongest = None
        if bold_best and 'coefficient' in columns and export_df['coefficient'].notna().any():
            strongest = export_df['coefficient'].abs().idxmax()

        for col in columns:
            if col == 'n':
                export_df[col] = export_df[col].astype(int).astype(str)
            else:
                export_df[col] = export_df[col].apply(
                    lambda x: '--' if pd.isna(x) else f"{x:{format_spec}}"
                )
        if strongest is not None:
            export_df.at[strongest, 'coefficient'] = f"\\textbf{{{export_df.at[strongest, 'coefficient']}}}"

        header_names = ['Corpus', 'Analysis'] + [c.replace('_', ' ') for c in columns]

        # Generate LaTeX
        latex = []
        latex.append("\\begin{table}[htbp]")
        latex.append("\\centering")
        latex.append(f"\\caption{{{caption}}}")
        latex.append(f"\\label{{{label}}}")

        col_spec = "ll" + "r" * len(columns)
        latex.append(f"\\begin{{tabular}}{{{col_spec}}}")
        latex.append("\\toprule")
        latex.append(" & ".join(header_names) + " \\\\")
        latex.append("\\midrule")

        for _, row in export_df.iterrows():
            cells = [str(v).replace('_', '\\_') if i < 2 else str(v) for i, v in enumerate(row.values)]
            latex.append(" & ".join(cells) + " \\\\")

        latex.append("\\bottomrule")
        latex.append("\\end{tabular}")
        latex.append("\\end{table}")

        output_file = Path(output_file)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        with open(output_file, 'w') as f:
            f.write('\n'.join(latex))

        logger.info(f"Exported LaTeX table to {output_file}")

    def export_summary_markdown(self, output_file: Path):
        """
        Export human-readable summary in Markdown format.

        Args:
            output_file: Output .md file path
        """
        output_file = Path(output_file)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        with open(output_file, 'w') as f:
            f.write("# Extrapolation Results Summary\n\n")

            f.write("## Overview\n\n")
            f.write(f"- Total corpora: {len(self.results)}\n")

            for name, results in self.results.items():
                n_failed = int((results['status'] != 'ok').sum())
                f.write(f"- {name}: {len(results)} analyses, {n_failed} failed\n")

            f.write("\n## By Subspace\n\n")
            summary = self.summarize_by_subspace()
            if not summary.empty:
                f.write(summary.to_markdown(index=False))

            f.write("\n\n## Cross-Corpus Comparison\n\n")
            if len(self.points) >= 2:
                comparison = self.compare_corpora()
                if not comparison.empty:
                    f.write(comparison.to_markdown(index=False))

        logger.info(f"Exported summary to {output_file}")
