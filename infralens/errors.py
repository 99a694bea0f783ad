"""Typed errors raised by the InfraLens core.

Translation to protocol-level responses (HTTP status codes, CLI exit codes)
is left to the caller.
"""

from __future__ import annotations

from uuid import UUID


class InfraLensError(Exception):
    """Base class for all core errors."""


class NotFoundError(InfraLensError, LookupError):
    """Unknown object (or object outside the caller's tenant)."""

    def __init__(self, object_id: UUID | str, org_id: str | None = None):
        self.object_id = object_id
        self.org_id = org_id
        super().__init__(f"Infra object {object_id} not found")


class InvalidTransitionError(InfraLensError):
    """State-machine guard violation."""

    def __init__(self, current: str, target: str, reason: str | None = None):
        self.current = current
        self.target = target
        message = f"Cannot move object from '{current}' to '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class PermissionDeniedError(InfraLensError):
    """The caller-supplied authorization decision refused the action."""

    def __init__(self, actor: str, action: str):
        self.actor = actor
        self.action = action
        super().__init__(f"Actor '{actor}' is not allowed to {action}")


class DataIntegrityError(InfraLensError):
    """Malformed geometry or confidence found on a stored object."""

    def __init__(self, object_id: UUID | str, field: str, detail: str):
        self.object_id = object_id
        self.field = field
        self.detail = detail
        super().__init__(f"Object {object_id} has malformed {field}: {detail}")


class ValidationConflictError(InfraLensError):
    """Approval attempted while non-auto-resolvable duplicates are unresolved."""

    def __init__(self, object_id: UUID | str, conflicting_ids: list[str]):
        self.object_id = object_id
        self.conflicting_ids = conflicting_ids
        super().__init__(
            f"Cannot approve object {object_id}: unresolved duplicate conflict(s) "
            f"with {', '.join(conflicting_ids)}"
        )


class ConcurrentModificationError(InfraLensError):
    """Compare-and-set retries exhausted for a single object."""

    def __init__(self, object_id: UUID | str, attempts: int):
        self.object_id = object_id
        self.attempts = attempts
        super().__init__(
            f"Object {object_id} kept changing underneath {attempts} update attempts"
        )


class InvalidObjectError(InfraLensError, ValueError):
    """Rejected input: unknown category/type or properties failing the schema."""
