"""Archive commands - schema, sample rows and temp-file cleanup."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table as RichTable

from cortex.cli.common import (
    ArchiveArg,
    JsonFlag,
    console,
    get_engine,
    print_json,
    print_rows,
)


def schema(archive: ArchiveArg, json_output: JsonFlag = False) -> None:
    """Show column names and inferred types of an archive."""
    from cortex.storage.archive import ArchiveStore

    engine = get_engine()
    try:
        store = ArchiveStore(engine)
        columns = store.describe_schema(archive)
        rows = store.row_count(archive)
    finally:
        engine.close()

    if json_output:
        print_json({"archive": str(archive), "rows": rows, "columns": [list(c) for c in columns]})
        return

    table = RichTable(show_header=True, header_style="bold", title=f"{archive.name} ({rows} rows)")
    table.add_column("Column")
    table.add_column("Type", style="cyan")
    for name, column_type in columns:
        table.add_row(name, column_type)
    console.print(table)


def sample(
    archive: ArchiveArg,
    n: Annotated[int, typer.Option("--rows", "-n", help="Number of rows", min=1)] = 10,
    json_output: JsonFlag = False,
) -> None:
    """Show the first rows of an archive."""
    from cortex.storage.archive import ArchiveStore

    engine = get_engine()
    try:
        rows = ArchiveStore(engine).sample(archive, n)
    finally:
        engine.close()

    if json_output:
        print_json(rows)
        return
    columns = list(rows[0]) if rows else []
    print_rows(columns, rows, title=archive.name)


def gc(
    directory: Annotated[
        Path | None,
        typer.Argument(help="Archive directory (default: CORTEX_STORAGE_PATH)", file_okay=False),
    ] = None,
    older_than: Annotated[
        float,
        typer.Option("--older-than", help="Only remove temp files older than this many seconds"),
    ] = 0,
) -> None:
    """Remove temp files left behind by interrupted appends."""
    from cortex.storage.archive import ArchiveStore

    engine = get_engine()
    try:
        removed = ArchiveStore(engine).collect_orphans(directory, older_than_seconds=older_than)
    finally:
        engine.close()

    if not removed:
        console.print("[dim]No orphaned temp files[/dim]")
        return
    for path in removed:
        console.print(f"removed {path}")
    console.print(f"[green]Removed {len(removed)} temp file(s)[/green]")
