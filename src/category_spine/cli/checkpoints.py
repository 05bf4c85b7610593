"""
CLI: ``category-spine checkpoints`` — stage checkpoint commands.
"""

from __future__ import annotations

import typer

from category_spine.cli.utils import console, fail, make_engine, output_item, run

app = typer.Typer(no_args_is_help=True)


@app.command("show")
def show_checkpoint(
    work_item_id: str = typer.Argument(..., help="Work item ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show the checkpoint of a work item."""
    with make_engine(database) as engine:
        checkpoint = run(engine.checkpoints.get_checkpoint(work_item_id))
    if checkpoint is None:
        fail(f"no checkpoint for {work_item_id}", code="NOT_FOUND")
    output_item(checkpoint, as_json=json_out, title=f"Checkpoint: {work_item_id}")


@app.command()
def reset(
    work_item_id: str = typer.Argument(..., help="Work item ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Delete a checkpoint so the stage starts from scratch."""
    with make_engine(database) as engine:
        run(engine.checkpoints.clear_checkpoint(work_item_id))
    console.print(f"[green]✓[/green] Cleared checkpoint for {work_item_id}")
