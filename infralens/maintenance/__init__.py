"""Periodic maintenance jobs."""

from infralens.maintenance.retention import run_retention_sweep

__all__ = ["run_retention_sweep"]
