"""Stats command - record count, revenue and distinct customers over hot and cold data."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table as RichTable

from cortex.cli.common import (
    EventsOption,
    JsonFlag,
    VerboseOption,
    console,
    get_engine,
    load_events,
    print_json,
    setup_logging,
)


def stats(
    archives: Annotated[
        list[Path],
        typer.Argument(help="Archive files", exists=True, dir_okay=False),
    ],
    events_file: EventsOption = None,
    record_type: Annotated[
        str | None,
        typer.Option(
            "--type",
            help="Value of the _type column to count (archives without it count every row)",
        ),
    ] = "order",
    revenue_column: Annotated[
        str, typer.Option("--revenue", help="Revenue column")
    ] = "total_price",
    customer_column: Annotated[
        str, typer.Option("--customer", help="Customer id column")
    ] = "customer_id",
    json_output: JsonFlag = False,
    verbose: VerboseOption = 0,
) -> None:
    """Summarize archives plus buffered events.

    Examples:

        cortex stats data/archives/*.parquet --events events.jsonl
    """
    from cortex.unified.engine import StatsFields, UnifiedQueryEngine

    setup_logging(verbosity=verbose)
    events = load_events(events_file)
    fields = StatsFields(record_type=record_type, revenue=revenue_column, customer=customer_column)

    engine = get_engine()
    try:
        summary = UnifiedQueryEngine(engine).get_stats(archives, events, fields=fields)
    finally:
        engine.close()

    if json_output:
        print_json(summary.model_dump())
        return

    table = RichTable(show_header=True, header_style="bold")
    table.add_column("Measure")
    table.add_column("Value", justify="right")
    table.add_row("Records", f"{summary.records:,}")
    table.add_row("  hot", f"{summary.hot_records:,}")
    table.add_row("  cold", f"{summary.cold_records:,}")
    table.add_row("Revenue", f"{summary.revenue:,.2f}")
    table.add_row("Customers", f"{summary.customers:,}")
    table.add_row("Products", f"{summary.products:,}")
    console.print(table)

    for source in summary.failed_sources:
        console.print(f"[yellow]Could not read {source}[/yellow]")
