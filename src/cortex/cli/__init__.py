"""Command-line interface."""

from cortex.cli.main import app, main

__all__ = ["app", "main"]
