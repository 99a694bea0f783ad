"""Helpers for recording background maintenance runs."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from infralens.db.models import MaintenanceRunModel
from infralens.models import utcnow

RUN_KINDS = ("conflict_scan", "retention_sweep")


async def start_run(
    session: AsyncSession,
    kind: str,
    *,
    org_id: str | None = None,
    plan_id: str | None = None,
    job_id: str | None = None,
    requested_by: str = "system",
) -> MaintenanceRunModel:
    """Insert a ``running`` row for a scan or sweep."""
    if kind not in RUN_KINDS:
        raise ValueError(f"Unknown run kind: {kind}")

    run = MaintenanceRunModel(
        kind=kind,
        org_id=org_id,
        plan_id=plan_id,
        job_id=job_id,
        requested_by=requested_by,
        status="running",
        started_at=utcnow(),
    )
    session.add(run)
    await session.flush()
    return run


async def finish_run(
    session: AsyncSession,
    run_id: UUID,
    *,
    result: dict[str, Any] | None = None,
    error: str | None = None,
) -> MaintenanceRunModel:
    """Close a run as succeeded, or failed when ``error`` is given."""
    run = await session.get(MaintenanceRunModel, run_id)
    if run is None:
        raise LookupError(f"Maintenance run {run_id} not found")

    run.status = "failed" if error else "succeeded"
    run.finished_at = utcnow()
    run.result = result or {}
    run.error = error
    await session.flush()
    return run


async def list_runs(
    session: AsyncSession,
    *,
    kind: str | None = None,
    org_id: str | None = None,
    limit: int = 20,
) -> list[MaintenanceRunModel]:
    """Most recent runs first."""
    stmt = select(MaintenanceRunModel)
    if kind:
        stmt = stmt.where(MaintenanceRunModel.kind == kind)
    if org_id:
        stmt = stmt.where(MaintenanceRunModel.org_id == org_id)
    stmt = stmt.order_by(MaintenanceRunModel.started_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
