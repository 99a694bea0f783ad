"""Infra object persistence."""

from infralens.objects.repository import ObjectStore, diff_objects, to_domain

__all__ = ["ObjectStore", "diff_objects", "to_domain"]
