"""arq worker: conflict scans and retention sweeps as background jobs.

Each job records a ``maintenance_runs`` row before it starts and closes it
with the outcome, so callers can poll a run by its arq job id as well as
await the job result.
"""

import os
from typing import Any
from uuid import UUID

from arq.connections import RedisSettings
from arq.cron import cron
from arq.worker import func

from infralens.config import get_config
from infralens.conflicts.detector import ConflictDetector
from infralens.core.logging import configure_logging, get_logger
from infralens.db.connection import close_db, get_session
from infralens.db.runs import finish_run, start_run
from infralens.maintenance.retention import run_retention_sweep

logger = get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    configure_logging()
    ctx["config"] = get_config()
    logger.info("worker_started")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    await close_db()
    logger.info("worker_stopped")


async def _open_run(kind: str, ctx: dict[str, Any], **fields: Any) -> UUID:
    async with get_session() as session:
        run = await start_run(session, kind, job_id=ctx.get("job_id"), **fields)
        return run.id


async def _close_run(run_id: UUID, **outcome: Any) -> None:
    async with get_session() as session:
        await finish_run(session, run_id, **outcome)


async def run_conflict_scan(
    ctx: dict[str, Any], org_id: str, plan_id: str, requested_by: str = "system"
) -> dict[str, Any]:
    """Scan one plan for duplicates and overlaps."""
    run_id = await _open_run(
        "conflict_scan", ctx, org_id=org_id, plan_id=plan_id, requested_by=requested_by
    )
    log = logger.bind(run_id=str(run_id), org_id=org_id, plan_id=plan_id)
    log.info("conflict_scan_started")

    try:
        async with get_session() as session:
            result = await ConflictDetector(session).scan(org_id, plan_id, actor=requested_by)
    except Exception as exc:
        log.exception("conflict_scan_failed")
        await _close_run(run_id, error=f"{type(exc).__name__}: {exc}")
        raise

    summary = result.to_dict()
    await _close_run(run_id, result=summary)
    log.info(
        "conflict_scan_finished",
        conflicts=summary["conflicts"],
        skipped_pairs=len(summary["skipped_pairs"]),
    )
    return {"run_id": str(run_id), **summary}


async def run_retention_sweep_job(
    ctx: dict[str, Any],
    days_old: int | None = None,
    org_id: str | None = None,
    requested_by: str = "system",
) -> dict[str, Any]:
    """Soft-delete rejected/archived objects past the retention window."""
    days_old = days_old if days_old is not None else get_config().retention.days_old
    run_id = await _open_run(
        "retention_sweep", ctx, org_id=org_id, requested_by=requested_by
    )
    log = logger.bind(run_id=str(run_id), org_id=org_id, days_old=days_old)

    try:
        async with get_session() as session:
            deleted = await run_retention_sweep(
                session, days_old=days_old, org_id=org_id, actor=requested_by
            )
    except Exception as exc:
        log.exception("retention_sweep_failed")
        await _close_run(run_id, error=f"{type(exc).__name__}: {exc}")
        raise

    summary = {"deleted": deleted, "days_old": days_old, "org_id": org_id}
    await _close_run(run_id, result=summary)
    log.info("retention_sweep_finished", deleted=deleted)
    return {"run_id": str(run_id), **summary}


async def scheduled_retention_sweep(ctx: dict[str, Any]) -> dict[str, Any]:
    """Daily cron entry point sweeping every organization."""
    return await run_retention_sweep_job(ctx)


class WorkerSettings:
    functions = [
        run_conflict_scan,
        func(run_retention_sweep_job, name="run_retention_sweep"),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(
        os.environ.get("REDIS_URL", "redis://localhost:6379")
    )
    cron_jobs = [
        cron(
            scheduled_retention_sweep,
            hour=int(os.environ.get("RETENTION_CRON_HOUR", "3")),
            minute=0,
        )
    ]
