"""Conflict detection between objects on a plan."""

from infralens.conflicts.detector import ConflictDetector, ScanResult, SkippedPair

__all__ = ["ConflictDetector", "ScanResult", "SkippedPair"]
