"""Retention sweep: soft-delete old rejected and archived objects."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from infralens.db.models import InfraObjectModel, ObjectHistoryModel
from infralens.models import HistoryAction, utcnow

logger = logging.getLogger(__name__)

RETAINED_STATUSES = ("rejected", "archived")


async def run_retention_sweep(
    session: AsyncSession,
    days_old: int = 180,
    org_id: str | None = None,
    now: datetime | None = None,
    actor: str = "system",
) -> int:
    """Soft-delete rejected/archived objects created more than ``days_old`` days ago.

    Each object is flagged with the same version compare-and-set the object
    store uses and gets a ``deleted`` history entry. Objects already deleted
    are not matched, so re-running the sweep changes nothing.

    Args:
        session: Database session
        days_old: Age threshold in days
        org_id: Restrict the sweep to one organization
        now: Reference time (defaults to the current time)
        actor: Recorded as the author of the history entries

    Returns:
        Number of objects soft-deleted by this run
    """
    now = now or utcnow()
    threshold = now - timedelta(days=days_old)
    model = InfraObjectModel

    predicate = [
        model.status.in_(RETAINED_STATUSES),
        model.is_deleted.is_(False),
        model.created_at < threshold,
    ]
    if org_id:
        predicate.append(model.org_id == org_id)

    candidates = (
        await session.execute(
            select(model.id, model.org_id, model.plan_id, model.version).where(*predicate)
        )
    ).all()

    deleted = 0
    for candidate in candidates:
        result = await session.execute(
            update(model)
            .where(
                model.id == candidate.id,
                model.version == candidate.version,
                *predicate,
            )
            .values(is_deleted=True, updated_at=now, version=candidate.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Changed since the candidate read; the next sweep re-evaluates it
            continue

        session.add(
            ObjectHistoryModel(
                object_id=candidate.id,
                org_id=candidate.org_id,
                plan_id=candidate.plan_id,
                timestamp=now,
                actor=actor,
                action=HistoryAction.DELETED.value,
                changes={"is_deleted": {"old": False, "new": True}},
                reason=f"retention: older than {days_old} days",
                automatic=True,
            )
        )
        deleted += 1

    await session.flush()
    logger.info(
        "Retention sweep soft-deleted %d objects (threshold %s, org %s)",
        deleted,
        threshold.isoformat(),
        org_id or "*",
    )
    return deleted
