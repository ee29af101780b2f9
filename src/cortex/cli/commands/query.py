"""Query command - run a structured query intent over archives and live events."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from cortex.cli.common import (
    EventsOption,
    JsonFlag,
    VerboseOption,
    console,
    get_engine,
    load_catalog,
    load_events,
    print_json,
    print_rows,
    setup_logging,
)


def query(
    archives: Annotated[
        list[Path],
        typer.Argument(help="Archive files to query", exists=True, dir_okay=False),
    ],
    operation: Annotated[
        str,
        typer.Option("--operation", "-o", help="rank, trend, aggregate or sample"),
    ] = "sample",
    metric: Annotated[
        list[str] | None,
        typer.Option("--metric", "-m", help="Metric column or catalog name (repeatable)"),
    ] = None,
    dimension: Annotated[
        list[str] | None,
        typer.Option("--dimension", "-d", help="Grouping column (repeatable)"),
    ] = None,
    aggregation: Annotated[
        str,
        typer.Option("--aggregation", "-a", help="sum, avg, count, min, max or none"),
    ] = "sum",
    limit: Annotated[int, typer.Option("--limit", "-l", help="Row limit")] = 10,
    ascending: Annotated[
        bool, typer.Option("--ascending", help="Sort ascending (bottom-N)")
    ] = False,
    name_column: Annotated[
        str | None,
        typer.Option("--name-column", help="Label column for a per-row rank"),
    ] = None,
    metrics_file: Annotated[
        Path | None,
        typer.Option("--metrics-file", help="Metric catalog YAML (default: config/metrics.yaml)"),
    ] = None,
    events_file: EventsOption = None,
    json_output: JsonFlag = False,
    verbose: VerboseOption = 0,
) -> None:
    """Run a query intent over one or more archives.

    Examples:

        cortex query orders.parquet --operation aggregate -m revenue -d category

        cortex query a.parquet b.parquet -o rank -m "Gross Profit" -d product --limit 5

        cortex query orders.parquet -o trend -m revenue -d day --events events.jsonl --json
    """
    from cortex.query.intent import QueryIntent
    from cortex.unified.engine import UnifiedQueryEngine

    setup_logging(verbosity=verbose)

    intent = QueryIntent(
        operation=operation,
        metrics=metric or [],
        dimensions=dimension or [],
        aggregation=aggregation,
        limit=limit,
        ascending=ascending,
        name_column=name_column,
    )
    catalog = load_catalog(metrics_file)
    events = load_events(events_file)

    engine = get_engine()
    try:
        result = UnifiedQueryEngine(engine).run_query(
            archives, intent, catalog, hot_events=events or None
        )
    finally:
        engine.close()

    if json_output:
        print_json(result.to_wire())
        return

    if result.degraded is not None:
        console.print(
            f"[yellow]Fallback sample ({result.degraded.reason.value}): "
            f"{result.degraded.detail}[/yellow]"
        )
    for warning in result.warnings:
        console.print(f"[dim]warning: {warning}[/dim]")
    print_rows(result.columns, result.rows)
