"""
CLI utility helpers — engine construction and output formatting.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from category_spine.core.settings import CategorySpineSettings, StorageBackend, get_settings
from category_spine.core.storage import SqliteStore
from category_spine.engine import Engine, build_engine

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


# ── Engine helper ────────────────────────────────────────────────────────


def make_engine(database: str | None = None) -> Engine:
    """Open an engine over SQLite.  Defaults to ``settings.sqlite_path``."""
    settings: CategorySpineSettings = get_settings().model_copy(
        update={"storage_backend": StorageBackend.SQLITE}
    )
    db_path = Path(database) if database else settings.sqlite_path
    return build_engine(settings, store=SqliteStore(db_path))


def run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def fail(message: str, code: str = "ERROR") -> None:
    err_console.print(f"[bold red]Error[/bold red] ({code}): {message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert a model (``to_dict``) or dict to a plain dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output_item(obj: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a single record."""
    data = _to_dict(obj)
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        if isinstance(v, list) and len(v) > 5:
            v = f"[{len(v)} items]"
        console.print(f"  [cyan]{k}[/cyan]: {escape(str(v))}")


def output_table(
    rows: list[dict[str, Any]],
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render rows (already reduced to display columns) as a Rich table."""
    if as_json:
        console.print_json(json.dumps(rows, default=str))
        return
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(escape(str(v)) for v in row.values()))
    console.print(table)
