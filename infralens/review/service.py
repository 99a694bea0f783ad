"""Object lifecycle operations: creation, AI ingestion, edits and review decisions.

Every operation takes the caller's session and an :class:`Actor` carrying
the authorization decision made upstream. Status, review flags and the
edited fields are written together in one compare-and-set update.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from infralens.catalog import get_type_spec, validate_properties
from infralens.errors import InvalidObjectError, NotFoundError, PermissionDeniedError
from infralens.geometry import Geometry, Point
from infralens.models import (
    Actor,
    Annotation,
    ComplianceCheck,
    DetectionPayload,
    HistoryAction,
    InfraObject,
    ObjectCreate,
    ObjectSource,
    utcnow,
)
from infralens.objects.repository import ObjectStore
from infralens.review.rules import apply_review_flags, initial_status, outstanding_validations
from infralens.review.state_machine import Trigger, ensure_approvable, next_status

logger = logging.getLogger(__name__)


def _require_edit(actor: Actor, action: str) -> None:
    if not actor.can_edit:
        raise PermissionDeniedError(actor.id, action)


def _require_review(actor: Actor, action: str) -> None:
    if not actor.can_review:
        raise PermissionDeniedError(actor.id, action)


_REVIEW_FIELDS = frozenset({"status", "requires_review", "manually_validated"})


def _edit_action(changes: dict[str, dict[str, Any]]) -> HistoryAction:
    if changes.keys() - _REVIEW_FIELDS == {"geometry"}:
        old_box = changes["geometry"]["old"]["bounding_box"]
        new_box = changes["geometry"]["new"]["bounding_box"]
        if (old_box["width"], old_box["height"]) != (new_box["width"], new_box["height"]):
            return HistoryAction.RESIZED
        return HistoryAction.MOVED
    return HistoryAction.PROPERTIES_CHANGED


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


async def create_object(
    session: AsyncSession,
    org_id: str,
    payload: ObjectCreate,
    actor: Actor,
) -> InfraObject:
    """Create an object by hand (or from an import, template or duplicate).

    Raises:
        PermissionDeniedError: Actor may not edit
        InvalidObjectError: Unknown category/type, bad properties or parent
    """
    _require_edit(actor, "create objects")
    store = ObjectStore(session)

    if payload.parent_object_id is not None:
        try:
            parent = await store.get(org_id, payload.parent_object_id)
        except NotFoundError as exc:
            raise InvalidObjectError(
                f"Parent object {payload.parent_object_id} does not exist"
            ) from exc
        if parent.plan_id != payload.plan_id:
            raise InvalidObjectError("Parent must be on the same plan")

    obj = _new_object(
        org_id,
        payload,
        actor=actor.id,
        source=payload.source,
        parent_object_id=payload.parent_object_id,
        related_object_ids=payload.related_object_ids,
    )
    obj = await store.insert(obj, actor=actor.id)
    logger.info("Created %s.%s object %s on plan %s", obj.category, obj.type, obj.id, obj.plan_id)
    return obj


async def ingest_detection(
    session: AsyncSession,
    org_id: str,
    payload: DetectionPayload,
    actor: Actor | None = None,
) -> InfraObject:
    """Store one AI detection.

    When the payload names a previously rejected object via
    ``redetected_object_id``, that object is reopened as ``detected`` with
    the new geometry and confidence instead of creating a new one.
    """
    actor = actor or Actor.system()
    _require_edit(actor, "ingest detections")
    store = ObjectStore(session)

    if payload.redetected_object_id is not None:
        return await _reopen_rejected(store, org_id, payload, actor)

    obj = _new_object(
        org_id,
        payload,
        actor=actor.id,
        source=ObjectSource.AI_DETECTION,
        ai_job_id=payload.ai_job_id,
        detection_metadata=payload.detection_metadata,
    )
    return await store.insert(obj, actor=actor.id, reason="ai detection")


async def ingest_detections(
    session: AsyncSession,
    org_id: str,
    payloads: Iterable[DetectionPayload],
    actor: Actor | None = None,
) -> list[InfraObject]:
    """Store a batch of detections from one recognition run."""
    created = [await ingest_detection(session, org_id, payload, actor) for payload in payloads]
    logger.info("Ingested %d detections for org %s", len(created), org_id)
    return created


def _new_object(
    org_id: str,
    payload: ObjectCreate | DetectionPayload,
    *,
    actor: str,
    source: ObjectSource,
    **extra: Any,
) -> InfraObject:
    spec = get_type_spec(payload.category, payload.type)
    now = utcnow()
    obj = InfraObject(
        id=uuid4(),
        org_id=org_id,
        plan_id=payload.plan_id,
        name=payload.name or spec.name,
        description=payload.description,
        category=payload.category,
        type=payload.type,
        subtype=payload.subtype,
        geometry=payload.geometry,
        properties=validate_properties(payload.category, payload.type, payload.properties),
        confidence=payload.confidence,
        criticality=payload.criticality or spec.criticality,
        status=initial_status(source),
        source=source,
        created_by=actor,
        created_at=now,
        updated_at=now,
        **extra,
    )
    return apply_review_flags(obj)


async def _reopen_rejected(
    store: ObjectStore, org_id: str, payload: DetectionPayload, actor: Actor
) -> InfraObject:
    properties = validate_properties(payload.category, payload.type, payload.properties)

    def reopen(obj: InfraObject) -> InfraObject:
        if obj.plan_id != payload.plan_id:
            raise InvalidObjectError("Re-detection must target an object on the same plan")
        status = next_status(obj.status, Trigger.REDETECT)
        reopened = obj.model_copy(
            update={
                "status": status,
                "category": payload.category,
                "type": payload.type,
                "subtype": payload.subtype or obj.subtype,
                "geometry": payload.geometry,
                "properties": {**obj.properties, **properties},
                "confidence": payload.confidence,
                "ai_job_id": payload.ai_job_id,
                "detection_metadata": payload.detection_metadata,
                "manually_validated": False,
            }
        )
        return apply_review_flags(reopened)

    obj = await store.mutate(
        org_id,
        payload.redetected_object_id,
        reopen,
        actor=actor.id,
        action=HistoryAction.STATUS_CHANGED,
        reason="re-detected by AI ingestion",
        automatic=True,
    )
    logger.info("Reopened rejected object %s after re-detection", obj.id)
    return obj


# ---------------------------------------------------------------------------
# Edits
# ---------------------------------------------------------------------------


async def update_object(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    actor: Actor,
    *,
    geometry: Geometry | None = None,
    properties: dict[str, Any] | None = None,
    name: str | None = None,
    description: str | None = None,
    subtype: str | None = None,
    reason: str | None = None,
) -> InfraObject:
    """Edit an object; any effective change moves it to ``modified``.

    ``properties`` are merged into the existing map and validated against
    the catalog. Editing geometry or properties clears ``manually_validated``
    (``validated_at``/``validated_by`` keep the last validation).

    Raises:
        InvalidTransitionError: Object is rejected or archived
    """
    _require_edit(actor, "edit objects")

    def edit(obj: InfraObject) -> InfraObject | None:
        update: dict[str, Any] = {}
        if geometry is not None and geometry != obj.geometry:
            update["geometry"] = geometry
        if properties:
            merged = validate_properties(obj.category, obj.type, {**obj.properties, **properties})
            if merged != obj.properties:
                update["properties"] = merged
        for field, value in (("name", name), ("description", description), ("subtype", subtype)):
            if value is not None and value != getattr(obj, field):
                update[field] = value
        if not update:
            return None

        update["status"] = next_status(obj.status, Trigger.EDIT)
        if "geometry" in update or "properties" in update:
            update["manually_validated"] = False
        return apply_review_flags(obj.model_copy(update=update))

    return await ObjectStore(session).mutate(
        org_id, object_id, edit, actor=actor.id, action=_edit_action, reason=reason
    )


async def move_object(
    session: AsyncSession, org_id: str, object_id: UUID, x: float, y: float, actor: Actor
) -> InfraObject:
    """Translate an object so its center lands on (x, y)."""
    current = await ObjectStore(session).get(org_id, object_id)
    return await update_object(
        session, org_id, object_id, actor, geometry=current.geometry.moved_to(x, y)
    )


async def resize_object(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    width: float,
    height: float,
    actor: Actor,
) -> InfraObject:
    """Change an object's extent, keeping its anchor corner."""
    current = await ObjectStore(session).get(org_id, object_id)
    return await update_object(
        session, org_id, object_id, actor, geometry=current.geometry.resized(width, height)
    )


async def update_properties(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    properties: dict[str, Any],
    actor: Actor,
) -> InfraObject:
    return await update_object(session, org_id, object_id, actor, properties=properties)


# ---------------------------------------------------------------------------
# Review decisions
# ---------------------------------------------------------------------------


async def _change_status(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    actor: Actor,
    trigger: Trigger,
    reason: str | None,
) -> InfraObject:
    def transition(obj: InfraObject) -> InfraObject:
        status = next_status(obj.status, trigger)
        return apply_review_flags(obj.model_copy(update={"status": status}))

    return await ObjectStore(session).mutate(
        org_id,
        object_id,
        transition,
        actor=actor.id,
        action=HistoryAction.STATUS_CHANGED,
        reason=reason,
    )


async def request_review(
    session: AsyncSession, org_id: str, object_id: UUID, actor: Actor, reason: str | None = None
) -> InfraObject:
    _require_edit(actor, "request review")
    return await _change_status(session, org_id, object_id, actor, Trigger.REQUEST_REVIEW, reason)


async def start_review(
    session: AsyncSession, org_id: str, object_id: UUID, actor: Actor
) -> InfraObject:
    _require_review(actor, "start review")
    return await _change_status(session, org_id, object_id, actor, Trigger.START_REVIEW, None)


async def approve_object(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    actor: Actor,
    notes: str | None = None,
) -> InfraObject:
    """Approve an object and record who validated it.

    The duplicate-conflict guard is evaluated on the row being written, so
    a conflict attached by a concurrent scan cannot slip through.

    Raises:
        PermissionDeniedError: Actor may not review
        InvalidTransitionError: Object is not awaiting review
        ValidationConflictError: Unresolved duplicate that is not auto-resolvable
    """
    _require_review(actor, "approve objects")

    def approve(obj: InfraObject) -> InfraObject:
        status = next_status(obj.status, Trigger.APPROVE)
        ensure_approvable(obj)
        approved = obj.model_copy(
            update={
                "status": status,
                "manually_validated": True,
                "validated_at": utcnow(),
                "validated_by": actor.id,
            }
        )
        return apply_review_flags(approved)

    obj = await ObjectStore(session).mutate(
        org_id,
        object_id,
        approve,
        actor=actor.id,
        action=HistoryAction.STATUS_CHANGED,
        reason=notes or "approved",
    )
    logger.info("Object %s approved by %s", object_id, actor.id)
    return obj


async def reject_object(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    actor: Actor,
    reason: str | None = None,
) -> InfraObject:
    _require_review(actor, "reject objects")
    obj = await _change_status(
        session, org_id, object_id, actor, Trigger.REJECT, reason or "rejected"
    )
    logger.info("Object %s rejected by %s", object_id, actor.id)
    return obj


async def archive_object(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    actor: Actor,
    reason: str | None = None,
) -> InfraObject:
    _require_edit(actor, "archive objects")
    return await _change_status(session, org_id, object_id, actor, Trigger.ARCHIVE, reason)


# ---------------------------------------------------------------------------
# Annotations and compliance
# ---------------------------------------------------------------------------


async def add_annotation(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    actor: Actor,
    text: str,
    *,
    annotation_type: str = "comment",
    position: Point | None = None,
    priority: str | None = None,
) -> Annotation:
    """Attach a reviewer comment to an object."""
    if not (actor.can_edit or actor.can_review):
        raise PermissionDeniedError(actor.id, "annotate objects")

    annotation = Annotation(
        type=annotation_type,
        text=text,
        created_by=actor.id,
        position=position,
        priority=priority,
    )
    await ObjectStore(session).mutate(
        org_id,
        object_id,
        lambda obj: obj.model_copy(update={"annotations": [*obj.annotations, annotation]}),
        actor=actor.id,
        action=HistoryAction.ANNOTATED,
    )
    return annotation


async def resolve_annotation(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    annotation_id: str,
    actor: Actor,
) -> InfraObject:
    """Mark an annotation resolved.

    Raises:
        NotFoundError: No annotation with that id on the object
    """
    if not (actor.can_edit or actor.can_review):
        raise PermissionDeniedError(actor.id, "resolve annotations")

    def resolve(obj: InfraObject) -> InfraObject | None:
        annotations = []
        found = False
        for annotation in obj.annotations:
            if annotation.id == annotation_id:
                found = True
                if annotation.resolved:
                    return None
                annotation = annotation.model_copy(
                    update={"resolved": True, "resolved_at": utcnow(), "resolved_by": actor.id}
                )
            annotations.append(annotation)
        if not found:
            raise NotFoundError(annotation_id, org_id)
        return obj.model_copy(update={"annotations": annotations})

    return await ObjectStore(session).mutate(
        org_id, object_id, resolve, actor=actor.id, action=HistoryAction.ANNOTATED
    )


async def record_compliance_check(
    session: AsyncSession,
    org_id: str,
    object_id: UUID,
    check: ComplianceCheck,
    actor: Actor,
) -> InfraObject:
    """Store a compliance result, replacing any earlier result for the same rule.

    Use ``outstanding_validations`` on the returned object to see which of the
    type's required validations still lack a passing result.
    """
    _require_review(actor, "record compliance checks")
    check = check.model_copy(update={"checked_by": check.checked_by or actor.id})

    def record(obj: InfraObject) -> InfraObject:
        kept = [
            existing
            for existing in obj.compliance_checks
            if (existing.standard, existing.rule) != (check.standard, check.rule)
        ]
        return obj.model_copy(update={"compliance_checks": [*kept, check]})

    updated = await ObjectStore(session).mutate(
        org_id,
        object_id,
        record,
        actor=actor.id,
        action=HistoryAction.COMPLIANCE_CHECKED,
        reason=f"{check.standard} {check.rule}: {check.status}",
    )
    if check.validation and not outstanding_validations(updated):
        logger.info("All required validations passed for object %s", object_id)
    return updated
