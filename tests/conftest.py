"""Shared pytest fixtures for all tests."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import duckdb
import pandas as pd
import pytest

from cortex.core.config import Settings
from cortex.core.connections import EngineHandle

SALES_ROWS = [
    {"category": "A", "revenue": 100, "cost": 50},
    {"category": "A", "revenue": 150, "cost": 60},
    {"category": "B", "revenue": 200, "cost": 80},
]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated to the test's tmp directory, with caching off."""
    return Settings(
        storage_path=tmp_path / "archives",
        config_path=tmp_path / "config",
        cache_enabled=False,
        query_timeout_seconds=30.0,
    )


@pytest.fixture
def engine():
    """Create an initialized in-memory engine handle."""
    handle = EngineHandle.in_memory(threads=2)
    yield handle
    handle.close()


@pytest.fixture
def write_archive(tmp_path: Path) -> Callable[..., Path]:
    """Write rows to an archive file in tmp_path; the format follows the suffix."""

    def _write(name: str, rows: list[dict[str, Any]]) -> Path:
        path = tmp_path / name
        frame = pd.DataFrame.from_records(rows)
        options = {
            ".parquet": "FORMAT PARQUET",
            ".csv": "FORMAT CSV, HEADER",
            ".jsonl": "FORMAT JSON",
        }[path.suffix]
        conn = duckdb.connect(":memory:")
        try:
            conn.register("rows_df", frame)
            conn.execute(f"COPY (SELECT * FROM rows_df) TO '{path}' ({options})")
        finally:
            conn.close()
        return path

    return _write


@pytest.fixture
def sales_csv(tmp_path: Path) -> Path:
    """The three-row category/revenue/cost export as CSV text."""
    path = tmp_path / "sales.csv"
    lines = ["category,revenue,cost"]
    lines += [f"{r['category']},{r['revenue']},{r['cost']}" for r in SALES_ROWS]
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def sales_parquet(write_archive: Callable[..., Path]) -> Path:
    return write_archive("sales.parquet", SALES_ROWS)
