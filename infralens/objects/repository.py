"""Object store for infra objects.

Every write is a compare-and-set ``UPDATE ... WHERE version = :expected``
followed by an insert into the history table, both in the caller's
transaction. A writer that loses the race re-reads the row and re-applies
its change, so concurrent edits to one object serialise without losing any
history entry.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from infralens.config import get_config
from infralens.db.models import InfraObjectModel, ObjectHistoryModel
from infralens.errors import (
    ConcurrentModificationError,
    DataIntegrityError,
    InvalidObjectError,
    NotFoundError,
)
from infralens.models import (
    HistoryAction,
    HistoryEntry,
    InfraObject,
    ObjectPage,
    ObjectQuery,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

Mutator = Callable[[InfraObject], "InfraObject | None | Awaitable[InfraObject | None]"]

# Fields diffed into history entries and written back by mutate()
_TRACKED_FIELDS = (
    "name",
    "description",
    "category",
    "type",
    "subtype",
    "geometry",
    "properties",
    "confidence",
    "criticality",
    "status",
    "source",
    "requires_review",
    "manually_validated",
    "validated_at",
    "validated_by",
    "parent_object_id",
    "related_object_ids",
    "conflicts",
    "annotations",
    "compliance_checks",
    "detection_metadata",
    "ai_job_id",
    "is_active",
    "is_deleted",
)

# Written as Python values rather than their JSON dump
_NATIVE_FIELDS = frozenset({"validated_at", "parent_object_id"})


def _column_name(field: str) -> str:
    return "object_type" if field == "type" else field


def _row_values(obj: InfraObject, fields=_TRACKED_FIELDS) -> dict[str, Any]:
    """Domain snapshot to column values (JSON columns get plain dicts)."""
    dumped = obj.model_dump(mode="json", include=set(fields))
    return {
        _column_name(field): getattr(obj, field) if field in _NATIVE_FIELDS else dumped[field]
        for field in fields
    }


def diff_objects(before: InfraObject, after: InfraObject) -> dict[str, dict[str, Any]]:
    """Field-level ``{old, new}`` diff between two snapshots."""
    old = before.model_dump(mode="json", include=set(_TRACKED_FIELDS))
    new = after.model_dump(mode="json", include=set(_TRACKED_FIELDS))
    return {
        field: {"old": old[field], "new": new[field]}
        for field in _TRACKED_FIELDS
        if old[field] != new[field]
    }


def to_domain(row: InfraObjectModel) -> InfraObject:
    """Convert a row to a validated snapshot.

    Raises:
        DataIntegrityError: Stored geometry, confidence or conflicts are malformed
    """
    try:
        return InfraObject.model_validate(
            {
                "id": row.id,
                "org_id": row.org_id,
                "plan_id": row.plan_id,
                "ai_job_id": row.ai_job_id,
                "name": row.name,
                "description": row.description,
                "category": row.category,
                "type": row.object_type,
                "subtype": row.subtype,
                "geometry": row.geometry,
                "properties": row.properties or {},
                "confidence": row.confidence,
                "criticality": row.criticality,
                "status": row.status,
                "source": row.source,
                "requires_review": row.requires_review,
                "manually_validated": row.manually_validated,
                "validated_at": as_utc(row.validated_at),
                "validated_by": row.validated_by,
                "parent_object_id": row.parent_object_id,
                "related_object_ids": row.related_object_ids or [],
                "conflicts": row.conflicts or [],
                "annotations": row.annotations or [],
                "compliance_checks": row.compliance_checks or [],
                "detection_metadata": row.detection_metadata,
                "created_by": row.created_by,
                "last_modified_by": row.last_modified_by,
                "created_at": as_utc(row.created_at),
                "updated_at": as_utc(row.updated_at),
                "is_active": row.is_active,
                "is_deleted": row.is_deleted,
                "version": row.version,
            }
        )
    except ValidationError as exc:
        error = exc.errors()[0]
        field = str(error["loc"][0]) if error["loc"] else "object"
        raise DataIntegrityError(row.id, field, error["msg"]) from exc


def _escape_like(text: str) -> str:
    """Escape LIKE wildcards so search text matches literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _history_from_row(row: ObjectHistoryModel) -> HistoryEntry:
    return HistoryEntry(
        object_id=row.object_id,
        timestamp=as_utc(row.timestamp),
        actor=row.actor,
        action=HistoryAction(row.action),
        changes=row.changes or {},
        reason=row.reason,
        automatic=row.automatic,
    )


class ObjectStore:
    """Tenant-scoped access to infra objects and their history."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        max_retries: int | None = None,
        max_page_size: int | None = None,
        max_parent_depth: int | None = None,
        default_page_size: int | None = None,
    ):
        """Initialize the store with a database session.

        Limits default to the ``StoreConfig`` section of the app config.
        """
        self.session = session
        if None in (max_retries, max_page_size, max_parent_depth, default_page_size):
            store_config = get_config().store
            if max_retries is None:
                max_retries = store_config.max_retries
            if max_page_size is None:
                max_page_size = store_config.max_page_size
            if max_parent_depth is None:
                max_parent_depth = store_config.max_parent_depth
            if default_page_size is None:
                default_page_size = store_config.default_page_size
        self.max_retries = max_retries
        self.max_page_size = max_page_size
        self.max_parent_depth = max_parent_depth
        self.default_page_size = default_page_size

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_row(
        self, org_id: str, object_id: UUID, *, include_deleted: bool = False
    ) -> InfraObjectModel:
        """Fresh read of the raw row, bypassing the identity map.

        Raises:
            NotFoundError: Unknown id, other tenant, or soft-deleted
        """
        stmt = (
            select(InfraObjectModel)
            .where(InfraObjectModel.id == object_id, InfraObjectModel.org_id == org_id)
            .execution_options(populate_existing=True)
        )
        if not include_deleted:
            stmt = stmt.where(InfraObjectModel.is_deleted.is_(False))

        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise NotFoundError(object_id, org_id)
        return row

    async def get(
        self,
        org_id: str,
        object_id: UUID,
        *,
        include_deleted: bool = False,
        with_history: bool = False,
    ) -> InfraObject:
        """Snapshot of one object; ``with_history`` also loads its history rows."""
        row = await self.get_row(org_id, object_id, include_deleted=include_deleted)
        obj = to_domain(row)
        if with_history:
            entries = await self._load_history(org_id, object_id)
            obj = obj.model_copy(update={"modification_history": entries})
        return obj

    async def active_rows(self, org_id: str, plan_id: str) -> list[InfraObjectModel]:
        """Raw active rows of one plan, oldest first.

        Returned unparsed so callers can contain malformed records per object.
        """
        stmt = (
            self._active(org_id)
            .where(InfraObjectModel.plan_id == plan_id)
            .order_by(InfraObjectModel.created_at.asc(), InfraObjectModel.id.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def query(self, org_id: str, query: ObjectQuery | None = None) -> ObjectPage:
        """List active objects matching ``query``, newest first."""
        query = query or ObjectQuery()
        limit = min(query.limit or self.default_page_size, self.max_page_size)

        stmt = self._apply_filters(self._active(org_id), query)

        total = (
            await self.session.execute(select(func.count()).select_from(stmt.subquery()))
        ).scalar_one()

        stmt = (
            stmt.order_by(InfraObjectModel.created_at.desc(), InfraObjectModel.id.asc())
            .offset((query.page - 1) * limit)
            .limit(limit)
        )
        rows = (await self.session.execute(stmt)).scalars().all()

        return ObjectPage(
            items=[to_domain(row) for row in rows],
            total=total,
            page=query.page,
            limit=limit,
        )

    async def history(self, org_id: str, object_id: UUID) -> list[HistoryEntry]:
        """Full modification history of an object, oldest entry first."""
        await self.get_row(org_id, object_id, include_deleted=True)
        return await self._load_history(org_id, object_id)

    async def _load_history(self, org_id: str, object_id: UUID) -> list[HistoryEntry]:
        stmt = (
            select(ObjectHistoryModel)
            .where(
                ObjectHistoryModel.object_id == object_id,
                ObjectHistoryModel.org_id == org_id,
            )
            .order_by(ObjectHistoryModel.timestamp.asc())
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [_history_from_row(row) for row in rows]

    async def get_parent_chain(self, org_id: str, object_id: UUID) -> list[InfraObject]:
        """Ancestors of an object, nearest parent first.

        Raises:
            DataIntegrityError: The stored links form a cycle or exceed the depth limit
        """
        chain: list[InfraObject] = []
        seen = {object_id}
        current = await self.get(org_id, object_id)

        while current.parent_object_id is not None:
            parent_id = current.parent_object_id
            if parent_id in seen:
                raise DataIntegrityError(object_id, "parent_object_id", "cycle in parent links")
            if len(chain) >= self.max_parent_depth:
                raise DataIntegrityError(
                    object_id,
                    "parent_object_id",
                    f"parent chain deeper than {self.max_parent_depth}",
                )
            seen.add(parent_id)
            try:
                current = await self.get(org_id, parent_id)
            except NotFoundError:
                # Dangling link to a deleted parent ends the chain
                break
            chain.append(current)

        return chain

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(
        self, obj: InfraObject, *, actor: str, reason: str | None = None
    ) -> InfraObject:
        """Insert a new object together with its ``created`` history entry."""
        row = InfraObjectModel(
            id=obj.id,
            org_id=obj.org_id,
            plan_id=obj.plan_id,
            created_by=obj.created_by,
            last_modified_by=obj.last_modified_by,
            created_at=obj.created_at,
            updated_at=obj.updated_at,
            version=obj.version,
            **_row_values(obj),
        )
        self.session.add(row)
        self.append_history(
            obj,
            actor=actor,
            action=HistoryAction.CREATED,
            changes={
                "status": {"old": None, "new": obj.status.value},
                "source": {"old": None, "new": obj.source.value},
            },
            reason=reason,
            timestamp=obj.created_at,
        )
        await self.session.flush()
        return obj

    async def mutate(
        self,
        org_id: str,
        object_id: UUID,
        mutator: Mutator,
        *,
        actor: str,
        action: HistoryAction | Callable[[dict], HistoryAction],
        reason: str | None = None,
        automatic: bool = False,
    ) -> InfraObject:
        """Apply ``mutator`` to the current snapshot with compare-and-set.

        ``mutator`` receives the freshly read object and returns the updated
        snapshot, or ``None`` (or an unchanged copy) for a no-op. It may raise
        to abort; it is re-run against the new state after a lost race.
        ``action`` may be a callable picking the history action from the diff.

        Raises:
            NotFoundError: Object missing or soft-deleted
            ConcurrentModificationError: Every attempt lost the race
        """
        for attempt in range(1, self.max_retries + 1):
            current = await self.get(org_id, object_id)
            updated = mutator(current)
            if inspect.isawaitable(updated):
                updated = await updated
            if updated is None:
                return current

            changes = diff_objects(current, updated)
            if not changes:
                return current

            now = utcnow()
            values = _row_values(updated, [field for field in _TRACKED_FIELDS if field in changes])
            values.update(
                updated_at=now,
                last_modified_by=actor,
                version=current.version + 1,
            )

            result = await self.session.execute(
                update(InfraObjectModel)
                .where(
                    InfraObjectModel.id == object_id,
                    InfraObjectModel.org_id == org_id,
                    InfraObjectModel.version == current.version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                committed = updated.model_copy(
                    update={
                        "updated_at": now,
                        "last_modified_by": actor,
                        "version": current.version + 1,
                    }
                )
                self.append_history(
                    committed,
                    actor=actor,
                    action=action(changes) if callable(action) else action,
                    changes=changes,
                    reason=reason,
                    automatic=automatic,
                    timestamp=now,
                )
                await self.session.flush()
                return committed

            logger.info(
                "Version conflict on object %s (expected v%d, attempt %d/%d); retrying",
                object_id,
                current.version,
                attempt,
                self.max_retries,
            )

        raise ConcurrentModificationError(object_id, self.max_retries)

    async def set_parent(
        self,
        org_id: str,
        object_id: UUID,
        parent_id: UUID | None,
        *,
        actor: str,
    ) -> InfraObject:
        """Link an object under ``parent_id`` (or unlink with ``None``).

        Raises:
            InvalidObjectError: The link would create a cycle or cross plans
        """
        if parent_id is not None:
            if parent_id == object_id:
                raise InvalidObjectError("An object cannot be its own parent")
            child = await self.get(org_id, object_id)
            parent = await self.get(org_id, parent_id)
            if parent.plan_id != child.plan_id:
                raise InvalidObjectError("Parent must be on the same plan")
            ancestors = await self.get_parent_chain(org_id, parent_id)
            if any(ancestor.id == object_id for ancestor in ancestors):
                raise InvalidObjectError(
                    f"Linking {object_id} under {parent_id} would create a cycle"
                )

        return await self.mutate(
            org_id,
            object_id,
            lambda obj: obj.model_copy(update={"parent_object_id": parent_id}),
            actor=actor,
            action=HistoryAction.PROPERTIES_CHANGED,
            reason="parent link changed",
        )

    def append_history(
        self,
        obj: InfraObject,
        *,
        actor: str,
        action: HistoryAction,
        changes: dict[str, dict[str, Any]] | None = None,
        reason: str | None = None,
        automatic: bool = False,
        timestamp: datetime | None = None,
    ) -> None:
        """Stage one insert-only history row (flushed with the transaction)."""
        self.session.add(
            ObjectHistoryModel(
                object_id=obj.id,
                org_id=obj.org_id,
                plan_id=obj.plan_id,
                timestamp=timestamp or utcnow(),
                actor=actor,
                action=action.value,
                changes=changes or {},
                reason=reason,
                automatic=automatic,
            )
        )

    async def purge_plan(self, org_id: str, plan_id: str) -> int:
        """Hard-delete every object of a plan with its history.

        Only called when the owning plan itself is deleted.
        """
        ids = select(InfraObjectModel.id).where(
            InfraObjectModel.org_id == org_id, InfraObjectModel.plan_id == plan_id
        )
        await self.session.execute(
            delete(ObjectHistoryModel)
            .where(ObjectHistoryModel.object_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(
            delete(InfraObjectModel)
            .where(InfraObjectModel.org_id == org_id, InfraObjectModel.plan_id == plan_id)
            .execution_options(synchronize_session=False)
        )
        logger.info("Purged %d objects of plan %s (org %s)", result.rowcount, plan_id, org_id)
        return result.rowcount

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _active(org_id: str) -> Select:
        return select(InfraObjectModel).where(
            InfraObjectModel.org_id == org_id,
            InfraObjectModel.is_deleted.is_(False),
            InfraObjectModel.is_active.is_(True),
        )

    @staticmethod
    def _apply_filters(stmt: Select, query: ObjectQuery) -> Select:
        model = InfraObjectModel
        if query.plan_id:
            stmt = stmt.where(model.plan_id == query.plan_id)
        if query.status:
            stmt = stmt.where(model.status == query.status.value)
        if query.category:
            stmt = stmt.where(model.category == query.category)
        if query.type:
            stmt = stmt.where(model.object_type == query.type)
        if query.criticality:
            stmt = stmt.where(model.criticality == query.criticality.value)
        if query.source:
            stmt = stmt.where(model.source == query.source.value)
        if query.requires_review is not None:
            stmt = stmt.where(model.requires_review.is_(query.requires_review))
        if query.manually_validated is not None:
            stmt = stmt.where(model.manually_validated.is_(query.manually_validated))
        if query.has_conflicts is not None:
            conflict_count = func.json_array_length(model.conflicts)
            stmt = stmt.where(conflict_count > 0 if query.has_conflicts else conflict_count == 0)
        if query.min_confidence is not None:
            stmt = stmt.where(model.confidence >= query.min_confidence)
        if query.max_confidence is not None:
            stmt = stmt.where(model.confidence <= query.max_confidence)
        if query.created_by:
            stmt = stmt.where(model.created_by == query.created_by)
        if query.created_from:
            stmt = stmt.where(model.created_at >= query.created_from)
        if query.created_to:
            stmt = stmt.where(model.created_at <= query.created_to)
        if query.search:
            pattern = f"%{_escape_like(query.search)}%"
            stmt = stmt.where(
                or_(
                    model.name.ilike(pattern, escape="\\"),
                    model.description.ilike(pattern, escape="\\"),
                )
            )
        return stmt
