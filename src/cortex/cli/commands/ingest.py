"""Ingest command - convert a raw export into a columnar archive."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from cortex.cli.common import (
    JsonFlag,
    VerboseOption,
    console,
    get_engine,
    print_json,
    setup_logging,
)


def ingest(
    raw_path: Annotated[
        Path,
        typer.Argument(help="Delimited or JSON-lines file to ingest", exists=True, dir_okay=False),
    ],
    fmt: Annotated[
        str | None,
        typer.Option(
            "--format",
            "-f",
            help="Source format (delimited, json_lines); detected from the extension if omitted",
        ),
    ] = None,
    out_dir: Annotated[
        Path | None,
        typer.Option("--out", "-o", help="Archive directory (default: CORTEX_STORAGE_PATH)"),
    ] = None,
    json_output: JsonFlag = False,
    verbose: VerboseOption = 0,
) -> None:
    """Write a raw export as an immutable parquet archive.

    Examples:

        cortex ingest exports/orders.csv

        cortex ingest exports/events.ndjson --out ./data/archives
    """
    from cortex.storage.archive import ArchiveStore, IngestError

    setup_logging(verbosity=verbose)
    engine = get_engine()
    try:
        store = ArchiveStore(engine)
        try:
            archive = store.ingest_to_archive(raw_path, fmt=fmt, archive_dir=out_dir)
        except IngestError as e:
            console.print(f"[red]Ingest failed: {e}[/red]")
            raise typer.Exit(1) from e
        rows = store.row_count(archive)
    finally:
        engine.close()

    if json_output:
        print_json({"archive": str(archive), "rows": rows})
    else:
        console.print(f"[green]Wrote {rows} rows to[/green] {archive}")
