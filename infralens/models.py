"""InfraLens Pydantic models for type-safe data validation.

Domain snapshots returned by the store plus the input payloads accepted by
the lifecycle service.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

from infralens.geometry import Geometry, Point


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ObjectStatus(str, Enum):
    """Review lifecycle states."""

    DETECTED = "detected"
    PENDING_REVIEW = "pending_review"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"
    CONFLICTED = "conflicted"
    ARCHIVED = "archived"


TERMINAL_STATUSES = frozenset({ObjectStatus.REJECTED, ObjectStatus.ARCHIVED})


class ObjectSource(str, Enum):
    """Where an object came from."""

    AI_DETECTION = "ai_detection"
    MANUAL_CREATION = "manual_creation"
    IMPORTED = "imported"
    TEMPLATE = "template"
    DUPLICATED = "duplicated"


class Criticality(str, Enum):
    """Safety relevance of an object."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConfidenceLevel(str, Enum):
    """Bucketed detection confidence."""

    VERY_LOW = "very_low"  # <= 0.2
    LOW = "low"  # <= 0.4
    MEDIUM = "medium"  # <= 0.6
    HIGH = "high"  # <= 0.8
    VERY_HIGH = "very_high"

    @classmethod
    def from_confidence(cls, confidence: float | None) -> ConfidenceLevel | None:
        if confidence is None:
            return None
        if confidence <= 0.2:
            return cls.VERY_LOW
        if confidence <= 0.4:
            return cls.LOW
        if confidence <= 0.6:
            return cls.MEDIUM
        if confidence <= 0.8:
            return cls.HIGH
        return cls.VERY_HIGH


class ConflictType(str, Enum):
    DUPLICATE = "duplicate"
    OVERLAP = "overlap"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"


class HistoryAction(str, Enum):
    """Kinds of modification-history entries."""

    CREATED = "created"
    MOVED = "moved"
    RESIZED = "resized"
    PROPERTIES_CHANGED = "properties_changed"
    STATUS_CHANGED = "status_changed"
    CONFLICTS_UPDATED = "conflicts_updated"
    ANNOTATED = "annotated"
    COMPLIANCE_CHECKED = "compliance_checked"
    DELETED = "deleted"


class Actor(BaseModel):
    """Caller identity plus the authorization decision made upstream."""

    id: str
    can_edit: bool = True
    can_review: bool = False

    @classmethod
    def system(cls) -> Actor:
        return cls(id="system", can_edit=True, can_review=True)


class Conflict(BaseModel):
    """Geometric conflict between two objects on the same plan."""

    type: ConflictType
    object1_id: str
    object2_id: str
    description: str
    severity: ConflictSeverity
    auto_resolvable: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @model_validator(mode="after")
    def _ordered_pair(self) -> Conflict:
        if not self.object1_id < self.object2_id:
            raise ValueError("object1_id must sort before object2_id")
        return self

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.object1_id}:{self.object2_id}"

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @property
    def blocks_approval(self) -> bool:
        return (
            self.type == ConflictType.DUPLICATE
            and not self.auto_resolvable
            and not self.is_resolved
        )

    def other_id(self, object_id: str) -> str:
        return self.object2_id if object_id == self.object1_id else self.object1_id


class Annotation(BaseModel):
    """Reviewer comment attached to an object."""

    id: str = Field(default_factory=lambda: f"ann_{uuid4().hex[:12]}")
    type: str = "comment"  # comment | issue | note | reminder
    text: str
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    position: Point | None = None
    priority: str | None = None  # low | medium | high
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None


class ComplianceCheck(BaseModel):
    """Result of checking an object against a code or standard rule."""

    standard: str  # NBR, NFPA, ADA, ...
    rule: str
    status: str  # compliant | non_compliant | partial | unknown | not_applicable
    checked_at: datetime = Field(default_factory=utcnow)
    checked_by: str | None = None
    details: str | None = None
    severity: str | None = None  # info | warning | error | critical
    validation: str | None = None  # catalog validation this result covers

    @property
    def passed(self) -> bool:
        return self.status in ("compliant", "not_applicable")


class HistoryEntry(BaseModel):
    """One append-only modification-history record."""

    object_id: UUID
    timestamp: datetime
    actor: str
    action: HistoryAction
    changes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    reason: str | None = None
    automatic: bool = False


class InfraObject(BaseModel):
    """Snapshot of a stored infra object."""

    id: UUID
    org_id: str
    plan_id: str
    ai_job_id: str | None = None
    name: str
    description: str | None = None
    category: str
    type: str
    subtype: str | None = None
    geometry: Geometry
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    criticality: Criticality = Criticality.NONE
    status: ObjectStatus = ObjectStatus.DETECTED
    source: ObjectSource = ObjectSource.AI_DETECTION
    requires_review: bool = False
    manually_validated: bool = False
    validated_at: datetime | None = None
    validated_by: str | None = None
    parent_object_id: UUID | None = None
    related_object_ids: list[str] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    annotations: list[Annotation] = Field(default_factory=list)
    compliance_checks: list[ComplianceCheck] = Field(default_factory=list)
    detection_metadata: dict[str, Any] | None = None
    modification_history: list[HistoryEntry] = Field(default_factory=list)
    created_by: str
    last_modified_by: str | None = None
    created_at: datetime
    updated_at: datetime
    is_active: bool = True
    is_deleted: bool = False
    version: int = 1

    @property
    def confidence_level(self) -> ConfidenceLevel | None:
        return ConfidenceLevel.from_confidence(self.confidence)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0

    @property
    def blocking_conflicts(self) -> list[Conflict]:
        return [c for c in self.conflicts if c.blocks_approval]

    @property
    def quality_score(self) -> float:
        """Confidence as a percentage, or a neutral 50 when unknown."""
        if self.confidence is None:
            return 50.0
        return self.confidence * 100


class _ObjectInput(BaseModel):
    plan_id: str
    category: str
    type: str
    subtype: str | None = None
    name: str | None = None
    description: str | None = None
    geometry: Geometry
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    criticality: Criticality | None = None  # defaults from the type catalog


class ObjectCreate(_ObjectInput):
    """Manual creation payload."""

    source: ObjectSource = ObjectSource.MANUAL_CREATION
    parent_object_id: UUID | None = None
    related_object_ids: list[str] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "plan_id": "plan-ground-floor",
                "category": "FIRE_SAFETY",
                "type": "FIRE_EXTINGUISHER",
                "name": "Extinguisher near stair A",
                "geometry": {
                    "bounding_box": {"x": 120, "y": 80, "width": 12, "height": 24},
                    "center": {"x": 126, "y": 92},
                },
                "properties": {"capacity": "6kg", "type": "ABC"},
            }
        }


class DetectionPayload(_ObjectInput):
    """One object reported by the AI recognition pipeline."""

    confidence: float = Field(ge=0.0, le=1.0)
    ai_job_id: str | None = None
    detection_metadata: dict[str, Any] = Field(default_factory=dict)
    redetected_object_id: UUID | None = None  # reopens a rejected object


class ObjectQuery(BaseModel):
    """Filters for listing active objects."""

    plan_id: str | None = None
    status: ObjectStatus | None = None
    category: str | None = None
    type: str | None = None
    criticality: Criticality | None = None
    source: ObjectSource | None = None
    requires_review: bool | None = None
    manually_validated: bool | None = None
    has_conflicts: bool | None = None
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    max_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    created_by: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    search: str | None = None
    page: int = Field(default=1, ge=1)
    limit: int | None = Field(default=None, ge=1)  # store default when unset

    @model_validator(mode="after")
    def _confidence_range(self) -> ObjectQuery:
        if (
            self.min_confidence is not None
            and self.max_confidence is not None
            and self.min_confidence > self.max_confidence
        ):
            raise ValueError("min_confidence must not exceed max_confidence")
        return self


class ObjectPage(BaseModel):
    """One page of query results."""

    items: list[InfraObject]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0
