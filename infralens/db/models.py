"""SQLAlchemy async database models for InfraLens.

One logical collection of infra objects (JSON columns for the embedded
geometry, properties and current conflicts), an insert-only history table,
and a log of background maintenance runs.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from infralens.models import utcnow

_STATUS_VALUES = (
    "'detected', 'pending_review', 'under_review', 'approved', "
    "'rejected', 'modified', 'conflicted', 'archived'"
)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class InfraObjectModel(Base):
    """Facility object positioned on a floor plan."""

    __tablename__ = "infra_objects"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Tenant / plan scoping (opaque keys owned by other services)
    org_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(Text, nullable=False)
    ai_job_id: Mapped[str | None] = mapped_column(Text, index=True)

    # Identification
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    object_type: Mapped[str] = mapped_column(Text, nullable=False)
    subtype: Mapped[str | None] = mapped_column(Text)

    # Embedded payloads
    geometry: Mapped[dict] = mapped_column(JSON, nullable=False)
    properties: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    detection_metadata: Mapped[dict | None] = mapped_column(JSON)

    # Review state
    confidence: Mapped[float | None] = mapped_column(Float)
    criticality: Mapped[str] = mapped_column(Text, nullable=False, default="none")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="detected")
    source: Mapped[str] = mapped_column(Text, nullable=False, default="ai_detection")
    requires_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manually_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    validated_by: Mapped[str | None] = mapped_column(Text)

    # Relationships by id (resolved through the store, never embedded)
    parent_object_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)
    related_object_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Current conflicts and reviewer material
    conflicts: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    annotations: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    compliance_checks: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Audit
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    last_modified_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Bumped by every compare-and-set write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="check_infra_object_status"),
        CheckConstraint(
            "criticality IN ('none', 'low', 'medium', 'high', 'critical')",
            name="check_infra_object_criticality",
        ),
        Index("idx_infra_objects_plan_org", "plan_id", "org_id"),
        Index("idx_infra_objects_status_org", "status", "org_id"),
        Index("idx_infra_objects_category_type", "category", "object_type"),
        Index("idx_infra_objects_criticality_status", "criticality", "status"),
        Index("idx_infra_objects_review_org", "requires_review", "org_id"),
        Index("idx_infra_objects_org_created", "org_id", "created_at"),
    )


class ObjectHistoryModel(Base):
    """Append-only modification history for infra objects.

    Rows are only ever inserted; a concurrent writer can lose the race on
    the object row but never on its history entry.
    """

    __tablename__ = "infra_object_history"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    object_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("infra_objects.id", ondelete="CASCADE"),
        nullable=False,
    )
    org_id: Mapped[str] = mapped_column(Text, nullable=False)
    plan_id: Mapped[str] = mapped_column(Text, nullable=False)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    actor: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    changes: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_history_object_timestamp", "object_id", "timestamp"),
        Index("idx_history_org_plan", "org_id", "plan_id"),
    )


class MaintenanceRunModel(Base):
    """Outcome of a background conflict scan or retention sweep."""

    __tablename__ = "maintenance_runs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    kind: Mapped[str] = mapped_column(Text, nullable=False)  # conflict_scan | retention_sweep
    org_id: Mapped[str | None] = mapped_column(Text, index=True)
    plan_id: Mapped[str | None] = mapped_column(Text)
    job_id: Mapped[str | None] = mapped_column(Text, index=True)  # arq job id when queued

    status: Mapped[str] = mapped_column(Text, nullable=False, default="running")
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    result: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    requested_by: Mapped[str] = mapped_column(Text, nullable=False, default="system")

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'succeeded', 'failed')", name="check_run_status"
        ),
        Index("idx_runs_kind_started", "kind", "started_at"),
    )
