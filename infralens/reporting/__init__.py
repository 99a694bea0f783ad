"""Reporting over stored infra objects."""

from infralens.reporting.statistics import ObjectStatistics, ReviewBacklog, compute_statistics

__all__ = ["ObjectStatistics", "ReviewBacklog", "compute_statistics"]
