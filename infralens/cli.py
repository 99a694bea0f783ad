"""InfraLens CLI - operator commands over the object store.

Commands:
- init: Initialize database schema
- objects list / show: Browse objects and their history
- scan: Run a conflict scan on a plan
- stats: Show object statistics
- sweep: Run the retention sweep
- purge-plan: Hard-delete every object of a deleted plan
- review approve / reject: Record a review decision
- jobs enqueue-scan / enqueue-sweep / runs: Background jobs
"""

from __future__ import annotations

import asyncio
import json
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from infralens.config import get_config
from infralens.conflicts.detector import ConflictDetector
from infralens.core.logging import configure_logging
from infralens.db.connection import close_db, get_engine, get_session
from infralens.db.models import Base
from infralens.db.runs import list_runs
from infralens.errors import InfraLensError
from infralens.maintenance.retention import run_retention_sweep
from infralens.models import Actor, Criticality, ObjectQuery, ObjectStatus
from infralens.objects.repository import ObjectStore
from infralens.reporting.statistics import compute_statistics
from infralens.review.service import approve_object, reject_object

app = typer.Typer(
    name="infralens",
    help="InfraLens - infrastructure object review and conflict detection",
    no_args_is_help=True,
)
objects_cli = typer.Typer(help="Browse infra objects")
app.add_typer(objects_cli, name="objects")

review_cli = typer.Typer(help="Review decisions")
app.add_typer(review_cli, name="review")

jobs_cli = typer.Typer(help="Background jobs (arq)")
app.add_typer(jobs_cli, name="jobs")

console = Console()

_STATUS_STYLES = {
    "approved": "green",
    "rejected": "red",
    "conflicted": "magenta",
    "pending_review": "yellow",
    "under_review": "yellow",
}


def _run(coro) -> None:
    """Run a command coroutine, turning core errors into a clean exit."""

    async def _wrapped():
        try:
            await coro
        finally:
            await close_db()

    try:
        asyncio.run(_wrapped())
    except InfraLensError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1) from exc


@app.callback()
def _main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    configure_logging("DEBUG" if verbose else None)


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        async with get_engine().begin() as conn:
            if drop:
                console.print("[yellow]Dropping existing tables...[/yellow]")
                await conn.run_sync(Base.metadata.drop_all)
            console.print("[green]Creating tables...[/green]")
            await conn.run_sync(Base.metadata.create_all)

    _run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@objects_cli.command("list")
def list_objects_cmd(
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
    plan_id: str | None = typer.Option(None, "--plan", help="Plan ID"),
    status: ObjectStatus | None = typer.Option(None, "--status", help="Filter by status"),
    category: str | None = typer.Option(None, "--category", help="Filter by category"),
    criticality: Criticality | None = typer.Option(None, "--criticality"),
    needs_review: bool = typer.Option(False, "--needs-review", help="Only objects needing review"),
    search: str | None = typer.Option(None, "--search", help="Search name/description"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int | None = typer.Option(None, "--limit", min=1),
):
    """List active objects, newest first."""
    config = get_config()
    org_id = org_id or config.org_id
    query = ObjectQuery(
        plan_id=plan_id,
        status=status,
        category=category,
        criticality=criticality,
        requires_review=True if needs_review else None,
        search=search,
        page=page,
        limit=limit,
    )

    async def _list():
        async with get_session() as session:
            result = await ObjectStore(session).query(org_id, query)

        table = Table(title=f"Objects ({result.total} total, page {result.page}/{max(result.pages, 1)})")
        table.add_column("ID", style="dim")
        table.add_column("Plan")
        table.add_column("Type", style="cyan")
        table.add_column("Status")
        table.add_column("Criticality")
        table.add_column("Confidence", justify="right")
        table.add_column("Conflicts", justify="right")
        table.add_column("Review")

        for obj in result.items:
            style = _STATUS_STYLES.get(obj.status.value, "white")
            table.add_row(
                str(obj.id),
                obj.plan_id,
                f"{obj.category}.{obj.type}",
                f"[{style}]{obj.status.value}[/{style}]",
                obj.criticality.value,
                f"{obj.confidence:.2f}" if obj.confidence is not None else "-",
                str(len(obj.conflicts)),
                "yes" if obj.requires_review else "",
            )
        console.print(table)

    _run(_list())


@objects_cli.command("show")
def show_object_cmd(
    object_id: UUID = typer.Argument(..., help="Object ID"),
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
    history: bool = typer.Option(False, "--history", help="Include modification history"),
):
    """Show one object as JSON."""
    org_id = org_id or get_config().org_id

    async def _show():
        async with get_session() as session:
            obj = await ObjectStore(session).get(org_id, object_id, with_history=history)
            data = obj.model_dump(
                mode="json", exclude=None if history else {"modification_history"}
            )
        console.print_json(json.dumps(data))

    _run(_show())


@app.command()
def scan(
    plan_id: str = typer.Option(..., "--plan", help="Plan ID"),
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
    tolerance: float | None = typer.Option(None, "--tolerance", help="Tolerance in plan pixels"),
):
    """Detect duplicate and overlapping objects on a plan."""
    org_id = org_id or get_config().org_id

    async def _scan():
        async with get_session() as session:
            result = await ConflictDetector(session, tolerance_pixels=tolerance).scan(
                org_id, plan_id, actor="cli"
            )

        table = Table(title=f"Conflict scan: {plan_id}")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right", style="green")
        table.add_row("Objects scanned", str(result.scanned_objects))
        table.add_row("Duplicates", str(result.duplicates))
        table.add_row("Overlaps", str(result.overlaps))
        table.add_row("Objects updated", str(result.objects_updated))
        table.add_row("Pairs skipped", str(len(result.skipped_pairs)))
        console.print(table)

        for pair in result.skipped_pairs:
            console.print(f"[yellow]Skipped[/yellow] {pair.object1_id}/{pair.object2_id}: {pair.reason}")

    _run(_scan())


@app.command()
def stats(
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
    plan_id: str | None = typer.Option(None, "--plan", help="Plan ID"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Show object statistics."""
    org_id = org_id or get_config().org_id

    async def _stats():
        async with get_session() as session:
            result = await compute_statistics(session, org_id, plan_id)

        if as_json:
            console.print_json(json.dumps(result.to_dict()))
            return

        table = Table(title=f"Statistics: org={org_id}, plan={plan_id or 'all'}")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right", style="green")
        table.add_row("Objects", str(result.total))
        table.add_row("Requiring review", str(result.requires_review))
        table.add_row("Manually validated", str(result.manually_validated))
        table.add_row("With conflicts", str(result.with_conflicts))
        table.add_row(
            "Avg confidence",
            f"{result.avg_confidence:.3f}" if result.avg_confidence is not None else "-",
        )
        table.add_row(
            "Avg quality score",
            f"{result.avg_quality_score:.1f}" if result.avg_quality_score is not None else "-",
        )
        table.add_row("Validation rate", f"{result.validation_rate:.1f}%")
        table.add_row("Pending > 7 days", str(result.backlog.pending_over_7_days))
        for status, count in sorted(result.by_status.items()):
            table.add_row(f"status: {status}", str(count))
        console.print(table)

    _run(_stats())


@app.command()
def sweep(
    days: int | None = typer.Option(None, "--days", help="Retention window in days"),
    org_id: str | None = typer.Option(None, "--org", help="Limit to one organization"),
):
    """Soft-delete rejected/archived objects past the retention window."""
    days = days if days is not None else get_config().retention.days_old

    async def _sweep():
        async with get_session() as session:
            deleted = await run_retention_sweep(session, days_old=days, org_id=org_id, actor="cli")
        console.print(f"[bold green]✓[/bold green] Soft-deleted {deleted} objects older than {days} days")

    _run(_sweep())


@app.command(name="purge-plan")
def purge_plan_cmd(
    plan_id: str = typer.Option(..., "--plan", help="Plan ID"),
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation"),
):
    """Hard-delete all objects of a plan (after the plan itself was deleted)."""
    org_id = org_id or get_config().org_id
    if not yes:
        typer.confirm(f"Permanently delete every object of plan {plan_id}?", abort=True)

    async def _purge():
        async with get_session() as session:
            count = await ObjectStore(session).purge_plan(org_id, plan_id)
        console.print(f"[bold green]✓[/bold green] Purged {count} objects")

    _run(_purge())


@review_cli.command("approve")
def approve_cmd(
    object_id: UUID = typer.Argument(..., help="Object ID"),
    actor: str = typer.Option(..., "--actor", help="Reviewer ID"),
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
    notes: str | None = typer.Option(None, "--notes"),
):
    """Approve an object awaiting review."""
    org_id = org_id or get_config().org_id

    async def _approve():
        async with get_session() as session:
            obj = await approve_object(
                session, org_id, object_id, Actor(id=actor, can_review=True), notes=notes
            )
        console.print(f"[bold green]✓[/bold green] {obj.id} approved by {obj.validated_by}")

    _run(_approve())


@review_cli.command("reject")
def reject_cmd(
    object_id: UUID = typer.Argument(..., help="Object ID"),
    actor: str = typer.Option(..., "--actor", help="Reviewer ID"),
    reason: str = typer.Option(..., "--reason", help="Why the object is rejected"),
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
):
    """Reject an object awaiting review."""
    org_id = org_id or get_config().org_id

    async def _reject():
        async with get_session() as session:
            obj = await reject_object(
                session, org_id, object_id, Actor(id=actor, can_review=True), reason=reason
            )
        console.print(f"[bold red]✗[/bold red] {obj.id} rejected")

    _run(_reject())


@jobs_cli.command("enqueue-scan")
def enqueue_scan_cmd(
    plan_id: str = typer.Option(..., "--plan", help="Plan ID"),
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
    wait: bool = typer.Option(False, "--wait", help="Wait for the job result"),
):
    """Queue a conflict scan for the worker."""
    from infralens.core.queue import get_queue

    org_id = org_id or get_config().org_id

    async def _enqueue():
        redis = await get_queue()
        try:
            job = await redis.enqueue_job("run_conflict_scan", org_id, plan_id, "cli")
            console.print(f"Queued conflict scan job [bold]{job.job_id}[/bold]")
            if wait:
                result = await job.result(timeout=300)
                console.print_json(json.dumps(result))
        finally:
            await redis.aclose()

    _run(_enqueue())


@jobs_cli.command("enqueue-sweep")
def enqueue_sweep_cmd(
    days: int | None = typer.Option(None, "--days", help="Retention window in days"),
    org_id: str | None = typer.Option(None, "--org", help="Limit to one organization"),
):
    """Queue a retention sweep for the worker."""
    from infralens.core.queue import get_queue

    async def _enqueue():
        redis = await get_queue()
        try:
            job = await redis.enqueue_job("run_retention_sweep", days, org_id, "cli")
            console.print(f"Queued retention sweep job [bold]{job.job_id}[/bold]")
        finally:
            await redis.aclose()

    _run(_enqueue())


@jobs_cli.command("runs")
def runs_cmd(
    kind: str | None = typer.Option(None, "--kind", help="conflict_scan or retention_sweep"),
    last_n: int = typer.Option(10, "--last", "-n", help="Show last N runs"),
):
    """Show recent background runs and their outcome."""

    async def _runs():
        async with get_session() as session:
            runs = await list_runs(session, kind=kind, limit=last_n)

        if not runs:
            console.print("[yellow]No runs recorded[/yellow]")
            return

        table = Table(title=f"Last {last_n} runs")
        table.add_column("Started")
        table.add_column("Kind", style="cyan")
        table.add_column("Job")
        table.add_column("Status")
        table.add_column("Result / error")
        for run in runs:
            style = {"succeeded": "green", "failed": "red"}.get(run.status, "yellow")
            table.add_row(
                run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                run.kind,
                run.job_id or "-",
                f"[{style}]{run.status}[/{style}]",
                run.error or json.dumps(run.result),
            )
        console.print(table)

    _run(_runs())


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
