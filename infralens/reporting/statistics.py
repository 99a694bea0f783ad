"""Object statistics for an organization or a single plan.

All figures come from one point-in-time SELECT over active objects and are
aggregated in Python, so counts, averages and backlog always agree with
each other.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from infralens.db.models import InfraObjectModel
from infralens.models import as_utc, utcnow

PENDING_STATUSES = ("pending_review", "under_review")
STALE_AFTER_DAYS = 7


@dataclass
class ReviewBacklog:
    """Objects waiting on a reviewer."""

    pending_by_criticality: dict[str, int] = field(default_factory=dict)
    oldest_pending_days: Optional[float] = None
    pending_over_7_days: int = 0


@dataclass
class ObjectStatistics:
    """Aggregated object counts and quality figures."""

    org_id: str
    plan_id: Optional[str]
    total: int
    by_status: dict[str, int]
    by_category: dict[str, int]
    by_criticality: dict[str, int]
    by_source: dict[str, int]
    requires_review: int
    manually_validated: int
    with_conflicts: int
    avg_confidence: Optional[float]  # objects without a confidence are left out
    avg_quality_score: Optional[float]  # unknown confidence counts as 50
    validation_rate: float  # percent of objects manually validated
    backlog: ReviewBacklog
    computed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["computed_at"] = self.computed_at.isoformat()
        return data


async def compute_statistics(
    session: AsyncSession,
    org_id: str,
    plan_id: str | None = None,
    now: datetime | None = None,
) -> ObjectStatistics:
    """Compute statistics over active, non-deleted objects.

    Args:
        session: Database session
        org_id: Organization ID
        plan_id: Restrict to one plan when given
        now: Reference time for backlog ages (defaults to the current time)
    """
    now = now or utcnow()
    model = InfraObjectModel

    stmt = select(
        model.status,
        model.category,
        model.criticality,
        model.source,
        model.requires_review,
        model.manually_validated,
        model.confidence,
        model.created_at,
        func.json_array_length(model.conflicts).label("conflict_count"),
    ).where(
        model.org_id == org_id,
        model.is_active.is_(True),
        model.is_deleted.is_(False),
    )
    if plan_id:
        stmt = stmt.where(model.plan_id == plan_id)

    rows = (await session.execute(stmt)).all()
    total = len(rows)

    confidences = [row.confidence for row in rows if row.confidence is not None]
    avg_confidence = sum(confidences) / len(confidences) if confidences else None

    quality_scores = [
        row.confidence * 100 if row.confidence is not None else 50.0 for row in rows
    ]
    avg_quality = sum(quality_scores) / total if total else None

    manually_validated = sum(1 for row in rows if row.manually_validated)

    pending = [row for row in rows if row.status in PENDING_STATUSES]
    ages = [(now - as_utc(row.created_at)).total_seconds() / 86400 for row in pending]
    backlog = ReviewBacklog(
        pending_by_criticality=dict(Counter(row.criticality for row in pending)),
        oldest_pending_days=round(max(ages), 2) if ages else None,
        pending_over_7_days=sum(1 for age in ages if age > STALE_AFTER_DAYS),
    )

    return ObjectStatistics(
        org_id=org_id,
        plan_id=plan_id,
        total=total,
        by_status=dict(Counter(row.status for row in rows)),
        by_category=dict(Counter(row.category for row in rows)),
        by_criticality=dict(Counter(row.criticality for row in rows)),
        by_source=dict(Counter(row.source for row in rows)),
        requires_review=sum(1 for row in rows if row.requires_review),
        manually_validated=manually_validated,
        with_conflicts=sum(1 for row in rows if row.conflict_count),
        avg_confidence=avg_confidence,
        avg_quality_score=avg_quality,
        validation_rate=(manually_validated / total) * 100 if total else 0.0,
        backlog=backlog,
        computed_at=now,
    )
