"""
CLI: ``category-spine jobs`` — job ledger commands.
"""

from __future__ import annotations

import typer

from category_spine.cli.utils import console, fail, make_engine, output_item, output_table, run
from category_spine.execution.models import JobRecord

app = typer.Typer(no_args_is_help=True)


def _row(job: JobRecord) -> dict:
    return {
        "job_id": job.job_id,
        "stage": job.stage_kind.value,
        "work_item": job.work_item_id,
        "status": job.status.value,
        "progress": f"{job.progress:.0f}%",
        "message": job.message,
        "started_at": job.started_at.isoformat() if job.started_at else "-",
    }


@app.command("list")
def list_jobs(
    limit: int = typer.Option(20, "--limit", "-n", help="Max jobs to show"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List recent jobs, newest first."""
    with make_engine(database) as engine:
        jobs = run(engine.ledger.get_recent_jobs(limit))
    output_table([_row(j) for j in jobs], as_json=json_out, title="Jobs")


@app.command("show")
def show_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
    logs: bool = typer.Option(False, "--logs", help="Print the job log"),
) -> None:
    """Show one job."""
    with make_engine(database) as engine:
        job = run(engine.ledger.get_job(job_id))
    if job is None:
        fail(f"job {job_id} not found", code="NOT_FOUND")
    output_item(job, as_json=json_out, title=f"Job: {job_id}")
    if logs and not json_out:
        for line in job.logs:
            console.print(f"    {line}", markup=False, highlight=False)


@app.command()
def cancel(
    job_id: str = typer.Argument(..., help="Job ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Request cancellation of a live job."""
    with make_engine(database) as engine:
        result = run(engine.ledger.request_cancel(job_id))
    if result is None:
        fail(f"job {job_id} not found", code="NOT_FOUND")
    if result.degraded:
        fail(f"cancel request not persisted: {result.error}", code="DEGRADED")
    console.print(f"[green]✓[/green] {job_id}: {result.value.status.value}")


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Delete every job record."""
    if not yes:
        typer.confirm("Delete all job records?", abort=True)
    with make_engine(database) as engine:
        run(engine.ledger.reset())
    console.print("[green]✓[/green] Job ledger cleared")


@app.command("self-test")
def self_test(
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Create a PING job and read it back."""
    with make_engine(database) as engine:
        result = run(engine.ledger.self_test())
    if not result.ok:
        fail(f"self-test failed for {result.job_id}: {result.error}", code="SELF_TEST")
    console.print(f"[green]✓[/green] ledger OK ({result.job_id})")
