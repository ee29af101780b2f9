"""Tests for the cortex command line."""

import json
from datetime import UTC, datetime

import pytest
from typer.testing import CliRunner

from cortex.cli.main import app
from cortex.core.config import get_settings

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch):
    """Point settings at tmp_path and keep the session logging configuration."""
    monkeypatch.setenv("CORTEX_STORAGE_PATH", str(tmp_path / "archives"))
    monkeypatch.setenv("CORTEX_CONFIG_PATH", str(tmp_path / "config"))
    monkeypatch.setenv("CORTEX_CACHE_ENABLED", "false")
    monkeypatch.setattr("cortex.cli.common.configure_logging", lambda **kwargs: None)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def metrics_file(tmp_path):
    path = tmp_path / "metrics.yaml"
    path.write_text("metrics:\n  - name: Gross Profit\n    formula: SUM(revenue - cost)\n")
    return path


def invoke_json(*args):
    result = runner.invoke(app, [*map(str, args), "--json"])
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestIngestAndArchive:
    def test_ingest(self, sales_csv, tmp_path):
        payload = invoke_json("ingest", sales_csv)
        assert payload["rows"] == 3
        assert payload["archive"].startswith(str(tmp_path / "archives"))

    def test_ingest_out_dir(self, sales_csv, tmp_path):
        payload = invoke_json("ingest", sales_csv, "--out", tmp_path / "elsewhere")
        assert payload["archive"].startswith(str(tmp_path / "elsewhere"))

    def test_ingest_empty_source(self, tmp_path):
        source = tmp_path / "empty.csv"
        source.write_text("a,b\n")
        result = runner.invoke(app, ["ingest", str(source)])
        assert result.exit_code == 1
        assert "Ingest failed" in result.stdout

    def test_schema(self, sales_parquet):
        payload = invoke_json("schema", sales_parquet)
        assert payload["rows"] == 3
        assert ["category", "VARCHAR"] in payload["columns"]

    def test_sample(self, sales_parquet):
        rows = invoke_json("sample", sales_parquet, "-n", 2)
        assert rows == [
            {"category": "A", "revenue": 100, "cost": 50},
            {"category": "A", "revenue": 150, "cost": 60},
        ]

    def test_sample_table(self, sales_parquet):
        result = runner.invoke(app, ["sample", str(sales_parquet)])
        assert result.exit_code == 0
        assert "category" in result.stdout

    def test_gc(self, sales_parquet):
        orphan = sales_parquet.with_name(f".{sales_parquet.name}.0badf00d.tmp")
        orphan.write_bytes(b"partial")
        result = runner.invoke(app, ["gc", str(sales_parquet.parent)])
        assert result.exit_code == 0
        assert "Removed 1 temp file" in result.stdout
        assert not orphan.exists()


class TestQueryCommand:
    def test_catalog_metric(self, sales_csv, metrics_file):
        payload = invoke_json(
            "query", sales_csv, "-o", "aggregate", "-m", "Gross Profit", "-d", "category",
            "--metrics-file", metrics_file,
        )
        assert payload["fallback"] is False
        assert payload["rows"] == [
            {"category": "A", "Gross Profit": 140.0},
            {"category": "B", "Gross Profit": 120.0},
        ]

    def test_degraded_query(self, sales_csv):
        payload = invoke_json("query", sales_csv, "-o", "aggregate", "-m", "revenue", "-l", "2")
        assert payload["fallback"] is True
        assert payload["degraded_reason"] == "missing_fields"
        assert len(payload["rows"]) == 2

    def test_events_are_folded_in(self, sales_parquet, tmp_path):
        events = tmp_path / "events.jsonl"
        event = {
            "id": "e1",
            "type": "order.created",
            "createdAt": datetime.now(UTC).isoformat(),
            "payload": {"category": "B", "revenue": "$5", "cost": "1"},
        }
        events.write_text(json.dumps(event) + "\n")

        payload = invoke_json(
            "query", sales_parquet, "-o", "rank", "-m", "revenue", "-d", "category",
            "--events", events,
        )
        assert {r["category"]: r["revenue"] for r in payload["rows"]} == {"A": 250, "B": 205}

    def test_invalid_event_file(self, sales_parquet, tmp_path):
        events = tmp_path / "events.jsonl"
        events.write_text("{not json\n")
        result = runner.invoke(app, ["query", str(sales_parquet), "--events", str(events)])
        assert result.exit_code == 1
        assert "invalid" in result.stdout

    def test_invalid_metrics_file(self, sales_parquet, tmp_path):
        broken = tmp_path / "broken.yaml"
        broken.write_text("other: 1\n")
        result = runner.invoke(
            app, ["query", str(sales_parquet), "--metrics-file", str(broken)]
        )
        assert result.exit_code == 1
        assert "Error loading metrics" in result.stdout

    def test_table_output_shows_fallback(self, sales_parquet):
        result = runner.invoke(app, ["query", str(sales_parquet), "-o", "trend", "-m", "revenue"])
        assert result.exit_code == 0
        assert "Fallback sample (missing_fields)" in result.stdout


class TestStatsCommand:
    def test_stats(self, sales_parquet):
        payload = invoke_json(
            "stats", sales_parquet, "--revenue", "revenue", "--customer", "category"
        )
        assert payload["records"] == 3
        assert payload["revenue"] == 450.0
        assert payload["customers"] == 2
        assert payload["failed_sources"] == []
