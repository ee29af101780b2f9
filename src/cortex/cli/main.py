"""Main CLI application entry point."""

from __future__ import annotations

import typer

from cortex.cli.commands import archive, ingest, query, stats

app = typer.Typer(
    name="cortex",
    help="Cortex - analytical queries over columnar archives and live events.",
    no_args_is_help=True,
)

# Register commands
app.command()(ingest.ingest)
app.command()(archive.schema)
app.command()(archive.sample)
app.command()(archive.gc)
app.command()(query.query)
app.command()(stats.stats)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
