"""
Root Typer application for the category-spine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from category_spine.core.logging import configure_logging

app = Typer(
    name="category-spine",
    help="category-spine — pipeline orchestration and checkpointing engine.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from category_spine import __version__

        typer.echo(f"category-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """category-spine CLI — inspect jobs, chunked jobs and checkpoints."""
    configure_logging(
        level="DEBUG" if verbose else "WARNING",
        json_format=False,
        cache_loggers=False,
    )


# ── Sub-command registration ─────────────────────────────────────────────

from category_spine.cli.checkpoints import app as checkpoints_app  # noqa: E402
from category_spine.cli.chunks import app as chunks_app  # noqa: E402
from category_spine.cli.jobs import app as jobs_app  # noqa: E402

app.add_typer(jobs_app, name="jobs", help="Job ledger commands.")
app.add_typer(chunks_app, name="chunks", help="Chunked job commands.")
app.add_typer(checkpoints_app, name="checkpoints", help="Stage checkpoint commands.")
