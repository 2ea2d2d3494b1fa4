"""Output helpers: Rich tables, or JSON under ``--json``."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel
from rich.table import Table

if TYPE_CHECKING:
    from datavault.cli._context import CliContext


def to_jsonable(data: Any) -> Any:
    """Dump pydantic models (also inside lists) to plain JSON values."""
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, list):
        return [to_jsonable(item) for item in data]
    return data


def print_result(
    ctx: CliContext,
    data: BaseModel | dict[str, Any] | list[Any],
    *,
    columns: list[tuple[str, str]] | None = None,
    title: str = "",
) -> None:
    """Print a record as a key/value table, or a list of records as rows.

    ``columns`` holds ``(header, key)`` pairs; without it the keys of the
    first row are used.
    """
    data = to_jsonable(data)
    if ctx.json_mode:
        ctx.console.print_json(json.dumps(data, default=str))
    elif isinstance(data, dict):
        _print_record(ctx, data, title=title)
    elif not data:
        ctx.err_console.print("[dim]No results found.[/dim]")
    else:
        _print_rows(ctx, data, columns=columns or [(k, k) for k in data[0]], title=title)


def print_success(ctx: CliContext, message: str) -> None:
    ctx.err_console.print(f"[green]{message}[/green]")


def _print_rows(
    ctx: CliContext,
    rows: list[dict[str, Any]],
    *,
    columns: list[tuple[str, str]],
    title: str,
) -> None:
    table = Table(title=title or None)
    for header, _ in columns:
        table.add_column(header)
    for row in rows:
        table.add_row(*(str(row.get(key, "")) for _, key in columns))
    ctx.console.print(table)


def _print_record(ctx: CliContext, record: dict[str, Any], *, title: str) -> None:
    table = Table(title=title or None, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in record.items():
        shown = json.dumps(value, default=str) if isinstance(value, dict | list) else str(value)
        table.add_row(str(key), shown)
    ctx.console.print(table)
