"""Validation state machine for infra objects.

All status changes go through :func:`next_status`, which looks the trigger
up in a single transition table and raises ``InvalidTransitionError`` for
anything the table does not allow.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from infralens.errors import InvalidTransitionError, ValidationConflictError
from infralens.models import TERMINAL_STATUSES, InfraObject, ObjectStatus

S = ObjectStatus
_NON_TERMINAL = frozenset(status for status in ObjectStatus if status not in TERMINAL_STATUSES)


class Trigger(str, Enum):
    """Events that move an object between states."""

    REVIEW_REQUIRED = "review_required"  # automatic
    REQUEST_REVIEW = "request_review"
    START_REVIEW = "start_review"
    APPROVE = "approve"
    REJECT = "reject"
    CONFLICT_ATTACHED = "conflict_attached"  # automatic, conflict scan
    CONFLICTS_CLEARED = "conflicts_cleared"  # automatic, conflict scan
    EDIT = "edit"
    ARCHIVE = "archive"
    REDETECT = "redetect"  # automatic, AI ingestion


@dataclass(frozen=True)
class Transition:
    sources: frozenset[ObjectStatus]
    target: ObjectStatus
    automatic: bool = False


TRANSITIONS: dict[Trigger, Transition] = {
    Trigger.REVIEW_REQUIRED: Transition(frozenset({S.DETECTED}), S.PENDING_REVIEW, automatic=True),
    Trigger.REQUEST_REVIEW: Transition(frozenset({S.DETECTED, S.MODIFIED}), S.PENDING_REVIEW),
    Trigger.START_REVIEW: Transition(frozenset({S.PENDING_REVIEW, S.CONFLICTED}), S.UNDER_REVIEW),
    Trigger.APPROVE: Transition(
        frozenset({S.PENDING_REVIEW, S.UNDER_REVIEW, S.CONFLICTED}), S.APPROVED
    ),
    Trigger.REJECT: Transition(
        frozenset({S.PENDING_REVIEW, S.UNDER_REVIEW, S.CONFLICTED}), S.REJECTED
    ),
    Trigger.CONFLICT_ATTACHED: Transition(
        frozenset({S.APPROVED, S.DETECTED}), S.CONFLICTED, automatic=True
    ),
    # Target is approved instead when the object was manually validated
    Trigger.CONFLICTS_CLEARED: Transition(frozenset({S.CONFLICTED}), S.DETECTED, automatic=True),
    Trigger.EDIT: Transition(_NON_TERMINAL, S.MODIFIED),
    Trigger.ARCHIVE: Transition(_NON_TERMINAL, S.ARCHIVED),
    Trigger.REDETECT: Transition(frozenset({S.REJECTED}), S.DETECTED, automatic=True),
}


def can_fire(current: ObjectStatus, trigger: Trigger) -> bool:
    return current in TRANSITIONS[trigger].sources


def next_status(
    current: ObjectStatus, trigger: Trigger, *, manually_validated: bool = False
) -> ObjectStatus:
    """Target state for ``trigger`` fired from ``current``.

    Raises:
        InvalidTransitionError: ``trigger`` is not allowed from ``current``
    """
    transition = TRANSITIONS[trigger]
    target = transition.target
    if trigger == Trigger.CONFLICTS_CLEARED and manually_validated:
        target = S.APPROVED

    if current not in transition.sources:
        allowed = ", ".join(sorted(status.value for status in transition.sources))
        raise InvalidTransitionError(
            current.value, target.value, f"'{trigger.value}' requires one of: {allowed}"
        )
    return target


def ensure_approvable(obj: InfraObject) -> None:
    """Refuse approval while an unresolved, non-auto-resolvable duplicate is attached.

    Raises:
        ValidationConflictError: With the ids of the conflicting objects
    """
    blocking = obj.blocking_conflicts
    if blocking:
        object_id = str(obj.id)
        raise ValidationConflictError(
            obj.id, sorted({conflict.other_id(object_id) for conflict in blocking})
        )
