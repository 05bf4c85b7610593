"""
CLI: ``category-spine chunks`` — chunked job inspection.
"""

from __future__ import annotations

import typer

from category_spine.cli.utils import console, fail, make_engine, output_table, run
from category_spine.execution.chunked import ChunkedJob

app = typer.Typer(no_args_is_help=True)


def _row(job: ChunkedJob) -> dict:
    return {
        "id": job.id,
        "status": job.status.value,
        "chunk": f"{min(job.current_chunk_index, job.total_chunks)}/{job.total_chunks}",
        "keys": job.total_keys,
        "processed": len(job.processed_keys),
        "failed": len(job.failed_keys),
        "updated": job.last_updated_at.isoformat(),
    }


@app.command("list")
def list_chunked(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List chunked jobs."""
    with make_engine(database) as engine:
        jobs = run(engine.chunked_store.list_jobs())
    output_table([_row(j) for j in jobs], as_json=json_out, title="Chunked jobs")


@app.command("show")
def show_chunked(
    window_id: str = typer.Argument(..., help="Window ID"),
    work_item_id: str = typer.Argument(..., help="Work item ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one chunked job with per-chunk status."""
    with make_engine(database) as engine:
        job = run(engine.chunked_store.get_job(window_id, work_item_id))
    if job is None:
        fail(f"no chunked job for {window_id}::{work_item_id}", code="NOT_FOUND")
    output_table([_row(job)], as_json=json_out, title=f"Chunked job: {job.id}")
    if json_out:
        return
    output_table(
        [
            {
                "chunk": c.index + 1,
                "keys": len(c.keys),
                "status": c.status.value,
                "attempts": c.attempt_count,
            }
            for c in job.frozen_chunks
        ],
        title="Chunks",
    )


@app.command()
def reset(
    window_id: str = typer.Argument(..., help="Window ID"),
    work_item_id: str = typer.Argument(..., help="Work item ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Delete a chunked job so the next run re-partitions its keys."""
    with make_engine(database) as engine:
        run(engine.chunk_runner.reset(window_id, work_item_id))
    console.print(f"[green]✓[/green] Cleared {window_id}::{work_item_id}")
