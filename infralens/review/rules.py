"""Rules deciding whether an object needs a human reviewer."""

from __future__ import annotations

from infralens.catalog import CATALOG
from infralens.config import ReviewConfig, get_config
from infralens.models import Criticality, InfraObject, ObjectSource, ObjectStatus

_SAFETY_CRITICAL = frozenset({Criticality.HIGH, Criticality.CRITICAL})


def review_threshold(criticality: Criticality, config: ReviewConfig | None = None) -> float:
    """Confidence below which an object of this criticality is sent to review."""
    config = config or get_config().review
    if criticality == Criticality.MEDIUM:
        return config.medium_confidence_threshold
    return config.confidence_threshold


def compute_requires_review(obj: InfraObject, config: ReviewConfig | None = None) -> bool:
    """True when confidence is below threshold, conflicts are attached, or the
    object is safety critical and nobody has validated it yet.

    Objects without a confidence (manual creation) never fail the confidence check.
    """
    if obj.confidence is not None and obj.confidence < review_threshold(obj.criticality, config):
        return True
    if obj.conflicts:
        return True
    return obj.criticality in _SAFETY_CRITICAL and not obj.manually_validated


def initial_status(source: ObjectSource) -> ObjectStatus:
    # Duplicating an object is an edit of the copy
    if source == ObjectSource.DUPLICATED:
        return ObjectStatus.MODIFIED
    return ObjectStatus.DETECTED


def apply_review_flags(obj: InfraObject, config: ReviewConfig | None = None) -> InfraObject:
    """Recompute ``requires_review`` and take the automatic detected -> pending_review step."""
    requires_review = compute_requires_review(obj, config)
    status = obj.status
    if requires_review and status == ObjectStatus.DETECTED:
        status = ObjectStatus.PENDING_REVIEW
    if requires_review == obj.requires_review and status == obj.status:
        return obj
    return obj.model_copy(update={"requires_review": requires_review, "status": status})


def outstanding_validations(obj: InfraObject) -> list[str]:
    """Catalog-required validations with no passing compliance result yet.

    A validation counts as passed once every recorded check covering it is
    compliant or not applicable.
    """
    spec = CATALOG.get((obj.category, obj.type))
    if spec is None:
        return []

    outstanding = []
    for validation in spec.validations:
        covering = [c for c in obj.compliance_checks if c.validation == validation]
        if not covering or not all(c.passed for c in covering):
            outstanding.append(validation)
    return outstanding
