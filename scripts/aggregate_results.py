"""
Aggregate analysis reports across corpora into paper-ready tables.

Usage:
    python scripts/aggregate_results.py --results_dir results --output_dir results/aggregated
"""

import argparse
from pathlib import Path
import logging

from src.evaluation.aggregator import ResultsAggregator
from src.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Aggregate extrapolation analysis results")
    parser.add_argument(
        "--results_dir",
        type=Path,
        default=Path("results"),
        help="Directory containing one subdirectory per corpus run",
    )
    parser.add_argument(
        "--output_dir",
        type=Path,
        default=Path("results/aggregated"),
        help="Output directory for aggregated results",
    )
    parser.add_argument(
        "--value",
        choices=["distance", "score"],
        default="distance",
        help="Per-point value compared across corpora",
    )
    parser.add_argument(
        "--test",
        choices=["mannwhitneyu", "ttest"],
        default="mannwhitneyu",
        help="Pairwise test",
    )
    parser.add_argument("--latex", action="store_true", help="Generate LaTeX tables")
    parser.add_argument(
        "--markdown",
        action="store_true",
        default=True,
        help="Generate Markdown summary",
    )

    args = parser.parse_args()
    setup_logging(format_string="%(levelname)s: %(message)s")

    args.output_dir.mkdir(parents=True, exist_ok=True)

    logger.info(f"Loading results from {args.results_dir}")

    aggregator = ResultsAggregator()
    aggregator.load_results_from_dir(results_dir=args.results_dir)

    if not aggregator.results:
        logger.error("No results found. Make sure analysis_summary.csv files exist.")
        return

    logger.info(f"Loaded {len(aggregator.results)} corpora")
    for name, results in aggregator.results.items():
        n_failed = int((results["status"] != "ok").sum())
        logger.info(f"  - {name}: {len(results)} analyses ({n_failed} failed)")

    # Per-subspace summary
    summary = aggregator.summarize_by_subspace()
    if not summary.empty:
        output_csv = args.output_dir / "subspace_summary.csv"
        summary.to_csv(output_csv, index=False)
        logger.info(f"Saved subspace summary to {output_csv}")

    # Cross-corpus comparison
    if len(aggregator.points) >= 2:
        logger.info("Performing cross-corpus comparison...")
        comparison = aggregator.compare_corpora(value=args.value)
        if not comparison.empty:
            output_csv = args.output_dir / f"comparison_{args.value}.csv"
            comparison.to_csv(output_csv, index=False)
            logger.info(f"Saved comparison to {output_csv}")

        names = list(aggregator.points.keys())
        for i, corpus1 in enumerate(names):
            for corpus2 in names[i + 1 :]:
                logger.info(f"  Comparing {corpus1} vs {corpus2}...")
                pairwise = aggregator.pairwise_comparison(
                    corpus1, corpus2, value=args.value, test=args.test
                )
                if not pairwise.empty:
                    output_csv = args.output_dir / f"pairwise_{corpus1}_vs_{corpus2}.csv"
                    pairwise.to_csv(output_csv, index=False)

    if args.latex:
        latex_file = args.output_dir / "table_extrapolation.tex"
        aggregator.export_latex_table(
            output_file=latex_file,
            caption="Correlation of extrapolation distance with model performance",
            label="tab:extrapolation",
            bold_best=True,
        )

    if args.markdown:
        aggregator.export_summary_markdown(args.output_dir / "summary.md")

    logger.info("=" * 60)
    logger.info("AGGREGATION COMPLETE")
    logger.info("=" * 60)


if __name__ == "__main__":
    main()
