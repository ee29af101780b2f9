"""Shared CLI utilities and constants."""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table as RichTable

from cortex.core import EngineConfig, EngineHandle, get_settings
from cortex.core.logging import configure_logging
from cortex.metrics.catalog import CatalogLoadError, MetricCatalog
from cortex.query.results import to_json_safe
from cortex.unified.events import RealtimeEvent

# Load .env file from current directory (CORTEX_* settings)
load_dotenv()

# Shared console instance
console = Console()

MAX_TABLE_ROWS = 50

# Common type aliases for typer options
ArchiveArg = Annotated[
    Path,
    typer.Argument(
        help="Archive file (.parquet, .csv, .jsonl, ...)",
        exists=True,
        dir_okay=False,
        file_okay=True,
    ),
]

EventsOption = Annotated[
    Path | None,
    typer.Option(
        "--events",
        "-e",
        help="JSON-lines file of buffered events to fold in as hot data",
        exists=True,
        dir_okay=False,
    ),
]

JsonFlag = Annotated[
    bool,
    typer.Option(
        "--json",
        help="Output as JSON for scripting",
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-v=INFO, -vv=DEBUG)",
    ),
]


def setup_logging(verbosity: int = 0, log_format: str = "console") -> None:
    """Configure structured logging based on verbosity level.

    Args:
        verbosity: 0=WARNING, 1=INFO, 2+=DEBUG
        log_format: "console" for development, "json" for production/cloud
    """
    if verbosity >= 2:
        level = "DEBUG"
    elif verbosity >= 1:
        level = "INFO"
    else:
        level = "WARNING"

    configure_logging(
        log_level=level,
        log_format=log_format,
        show_timestamps=verbosity >= 1,
        color=log_format == "console",
    )


def get_engine() -> EngineHandle:
    """Create and initialize an engine handle sized from settings.

    Returns the handle. Caller is responsible for closing it.
    """
    engine = EngineHandle(EngineConfig.from_settings(get_settings()))
    engine.initialize()
    return engine


def load_catalog(metrics_file: Path | None) -> MetricCatalog:
    """Load the metric catalog, falling back to the configured default file."""
    path = metrics_file or get_settings().metrics_file
    if metrics_file is None and not path.exists():
        return MetricCatalog()
    try:
        return MetricCatalog.from_yaml(path)
    except CatalogLoadError as e:
        console.print(f"[red]Error loading metrics: {e}[/red]")
        raise typer.Exit(1) from e


def load_events(events_file: Path | None) -> list[RealtimeEvent]:
    """Read buffered events from a JSON-lines file."""
    if events_file is None:
        return []
    events = []
    with open(events_file, encoding="utf-8") as f:
        for number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                events.append(RealtimeEvent.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                console.print(f"[red]{events_file}:{number}: invalid event: {e}[/red]")
                raise typer.Exit(1) from e
    return events


def print_json(payload: Any) -> None:
    console.print(
        json.dumps(to_json_safe(payload), indent=2),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


def print_rows(
    columns: Sequence[str], rows: Sequence[dict[str, Any]], title: str | None = None
) -> None:
    """Render rows as a Rich table, truncated to MAX_TABLE_ROWS."""
    table = RichTable(show_header=True, header_style="bold", title=title)
    for col in columns:
        table.add_column(str(col))
    for row in rows[:MAX_TABLE_ROWS]:
        table.add_row(*["" if row.get(c) is None else str(row.get(c)) for c in columns])
    console.print(table)
    if len(rows) > MAX_TABLE_ROWS:
        console.print(f"[dim]... showing {MAX_TABLE_ROWS} of {len(rows)} rows[/dim]")
