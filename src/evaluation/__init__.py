"""Evaluation module for cross-corpus aggregation of analysis results."""

from .aggregator import ResultsAggregator

__all__ = [
    "ResultsAggregator",
]
