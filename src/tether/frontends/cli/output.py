"""Output helpers shared by the CLI commands.

Tables are rendered with rich; JSON goes straight to stdout so it stays
pipeable.
"""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING, Any, NoReturn

import rich_click as click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


def truncate(text: str, width: int) -> str:
    """First line of text, cut to width with an ellipsis."""
    line = text.strip().split("\n", 1)[0]
    return line if len(line) <= width else line[: width - 3] + "..."


def print_table(
    headers: Sequence[str],
    rows: Sequence[Sequence[str]],
    max_widths: Sequence[int | None] | None = None,
    console: Console | None = None,
) -> None:
    """Render rows as a rich table.

    Short rows are padded with empty cells. Cell text is escaped, so output
    containing square brackets (tool names, log lines) prints verbatim.

    Args:
        headers: Column headers.
        rows: Cell values, one list per row.
        max_widths: Optional per-column maximum widths; longer cells wrap.
        console: Console to print to (defaults to stdout).
    """
    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    widths = list(max_widths or [])
    for index, header in enumerate(headers):
        width = widths[index] if index < len(widths) else None
        table.add_column(header, max_width=width, overflow="fold")

    for row in rows:
        cells = [escape(str(cell)) for cell in row][: len(headers)]
        table.add_row(*cells, *[""] * (len(headers) - len(cells)))

    (console or Console(highlight=False)).print(table)


def output_json(data: Any, indent: int = 2) -> None:
    click.echo(json.dumps(data, indent=indent, default=str))


def output_json_or_table(
    data: Any,
    json_flag: bool,
    table_fn: Callable[[], None],
) -> None:
    """JSON when the flag is set, otherwise whatever table_fn prints."""
    if json_flag:
        output_json(data)
    else:
        table_fn()


def error_exit(message: str, code: int = 1) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)
