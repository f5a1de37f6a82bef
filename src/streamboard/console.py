"""Terminal output for the streamboard CLI.

The CLI installs one Rich console at startup (the same one the log handler
writes to) and every command prints through the helpers here, so leaderboard
tables, spinners and log lines never interleave badly.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Literal

from rich.console import Console
from rich.status import Status
from rich.table import Table

Justify = Literal["left", "right", "center"]

_console: Console | None = None


def get_console() -> Console:
    """Return the console installed by the CLI callback.

    Raises:
        RuntimeError: If no command has installed one yet
    """
    if _console is None:
        raise RuntimeError("Console not initialized. Call set_console() first.")
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console


@contextmanager
def status(message: str) -> Iterator[Status]:
    """Spinner shown while a blocking refresh runs."""
    with get_console().status(message, spinner="dots") as st:
        yield st


def make_table(title: str | None, columns: Sequence[tuple[str, Justify]]) -> Table:
    """Leaderboard-style table from (header, justify) pairs."""
    table = Table(title=title, header_style="bold")
    for header, justify in columns:
        table.add_column(header, justify=justify)
    return table


def rank_movement(delta: int | None) -> str:
    """
    Render a rank delta as an arrow.

    Deltas are current minus previous rank, so a negative delta is a climb.
    No delta means the entry is new on the chart.
    """
    if delta is None:
        return "new"
    if delta < 0:
        return f"[green]▲{-delta}[/green]"
    if delta > 0:
        return f"[red]▼{delta}[/red]"
    return "="


def print(*args: Any, **kwargs: Any) -> None:
    get_console().print(*args, **kwargs)


def print_json(data: Any) -> None:
    """Dump ``data`` as indented JSON with markup and highlighting off."""
    get_console().print(json.dumps(data, indent=2, default=str), markup=False, highlight=False, soft_wrap=True)


def print_error(message: str) -> None:
    get_console().print(f"[red]Error: {message}[/red]")


def print_warning(message: str) -> None:
    get_console().print(f"[yellow]Warning: {message}[/yellow]")


def print_success(message: str) -> None:
    get_console().print(f"[green]{message}[/green]")


## Tests


def test_rank_movement():
    assert rank_movement(None) == "new"
    assert rank_movement(0) == "="
    assert "▲3" in rank_movement(-3)
    assert "▼2" in rank_movement(2)


def test_print_json_is_plain(capsys):
    set_console(Console(force_terminal=False, width=200))
    print_json({"rank": 1, "name": "[bold]x[/bold]"})

    out = capsys.readouterr().out
    assert json.loads(out) == {"rank": 1, "name": "[bold]x[/bold]"}


def test_make_table_columns():
    table = make_table("Top artists (nl)", [("#", "right"), ("Artist", "left")])
    assert [c.header for c in table.columns] == ["#", "Artist"]
    assert table.columns[0].justify == "right"
