"""Review rules, validation state machine and object lifecycle operations."""

from infralens.review.rules import (
    apply_review_flags,
    compute_requires_review,
    initial_status,
    outstanding_validations,
)
from infralens.review.service import (
    add_annotation,
    approve_object,
    archive_object,
    create_object,
    ingest_detection,
    ingest_detections,
    move_object,
    record_compliance_check,
    reject_object,
    request_review,
    resize_object,
    resolve_annotation,
    start_review,
    update_object,
    update_properties,
)
from infralens.review.state_machine import TRANSITIONS, Trigger, next_status

__all__ = [
    "TRANSITIONS",
    "Trigger",
    "next_status",
    "apply_review_flags",
    "compute_requires_review",
    "initial_status",
    "outstanding_validations",
    "add_annotation",
    "approve_object",
    "archive_object",
    "create_object",
    "ingest_detection",
    "ingest_detections",
    "move_object",
    "record_compliance_check",
    "reject_object",
    "request_review",
    "resize_object",
    "resolve_annotation",
    "start_review",
    "update_object",
    "update_properties",
]
