"""Integration tests for multi-tenant isolation.

Tests that org_id isolates objects, queries, scans and statistics between
organizations sharing one database, even when plan ids collide.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from infralens.conflicts import ConflictDetector
from infralens.errors import NotFoundError
from infralens.maintenance import run_retention_sweep
from infralens.models import utcnow
from infralens.objects.repository import ObjectStore
from infralens.reporting import compute_statistics
from infralens.review import service


@pytest.mark.asyncio
@pytest.mark.integration
async def test_objects_are_invisible_across_organizations(
    db_session: AsyncSession, editor, make_detection
):
    """Scenario:
    - Organizations 'acme' and 'beta' both detect a table on "shared-plan"
    - Each organization only ever sees its own object
    """
    acme = await service.ingest_detection(db_session, "acme", make_detection(plan="shared-plan"))
    beta = await service.ingest_detection(db_session, "beta", make_detection(plan="shared-plan"))
    store = ObjectStore(db_session)

    acme_page = await store.query("acme")
    assert [o.id for o in acme_page.items] == [acme.id]

    with pytest.raises(NotFoundError):
        await store.get("acme", beta.id)
    with pytest.raises(NotFoundError):
        await service.move_object(db_session, "acme", beta.id, 50, 50, editor)
    with pytest.raises(NotFoundError):
        await store.history("acme", beta.id)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_scan_never_pairs_objects_of_different_organizations(
    db_session: AsyncSession, make_detection
):
    """Identical boxes on the same plan id in two organizations are not duplicates."""
    await service.ingest_detection(db_session, "acme", make_detection(plan="shared-plan"))
    await service.ingest_detection(db_session, "beta", make_detection(plan="shared-plan"))

    result = await ConflictDetector(db_session, tolerance_pixels=5).scan("acme", "shared-plan")

    assert result.scanned_objects == 1
    assert result.conflicts == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_statistics_and_purge_are_tenant_scoped(db_session: AsyncSession, make_detection):
    for _ in range(3):
        await service.ingest_detection(db_session, "acme", make_detection(plan="shared-plan"))
    await service.ingest_detection(db_session, "beta", make_detection(plan="shared-plan"))

    assert (await compute_statistics(db_session, "acme")).total == 3
    assert (await compute_statistics(db_session, "beta")).total == 1

    purged = await ObjectStore(db_session).purge_plan("acme", "shared-plan")

    assert purged == 3
    assert (await compute_statistics(db_session, "beta")).total == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_retention_sweep_without_org_covers_everyone(
    db_session: AsyncSession, reviewer, make_detection
):
    for org in ("acme", "beta"):
        obj = await service.ingest_detection(
            db_session, org, make_detection(plan="shared-plan", confidence=0.5)
        )
        await service.reject_object(db_session, org, obj.id, reviewer)

    deleted = await run_retention_sweep(
        db_session, days_old=30, now=utcnow() + timedelta(days=31)
    )

    assert deleted == 2
