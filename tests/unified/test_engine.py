"""Tests for hot/cold unified queries."""

from datetime import UTC, datetime, timedelta

import pytest

from cortex.query.intent import QueryIntent
from cortex.query.results import DegradedReason
from cortex.unified.engine import RowFilters, StatsFields, UnifiedQueryEngine
from cortex.unified.events import RealtimeEvent, TransformerRegistry

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
GROSS_PROFIT = {"Gross Profit": "SUM(revenue - cost)"}


def event(event_id, payload, age=timedelta(hours=1), event_type="order.created", **extra):
    return {
        "id": event_id,
        "type": event_type,
        "createdAt": (NOW - age).isoformat(),
        "payload": payload,
        **extra,
    }


@pytest.fixture
def unified(engine, settings):
    return UnifiedQueryEngine(engine, settings)


@pytest.fixture
def split_sales(write_archive):
    """The three sales rows spread over two archives."""
    first = write_archive(
        "sales_2023.parquet",
        [
            {"category": "A", "revenue": 100, "cost": 50},
            {"category": "A", "revenue": 150, "cost": 60},
        ],
    )
    second = write_archive("sales_2024.csv", [{"category": "B", "revenue": 200, "cost": 80}])
    return [first, second]


@pytest.fixture
def hot_sale():
    return [event("h1", {"category": "A", "revenue": "$10", "cost": "5"})]


class TestHotRows:
    """Tests for hot event selection."""

    def test_cutoff_is_inclusive(self, unified):
        window = timedelta(hours=unified.settings.hot_window_hours)
        events = [
            event("at-cutoff", {"n": 1}, age=window),
            event("too-old", {"n": 2}, age=window + timedelta(seconds=1)),
        ]
        assert unified.hot_rows(events, now=NOW) == [{"n": 1}]

    def test_processed_events_are_cold(self, unified):
        events = [event("e1", {"n": 1}, processed=True), event("e2", {"n": 2})]
        assert unified.hot_rows(events, now=NOW) == [{"n": 2}]

    def test_newest_first(self, unified):
        events = [
            event("e1", {"n": 1}, age=timedelta(hours=3)),
            event("e2", {"n": 2}, age=timedelta(minutes=5)),
            event("e3", {"n": 3}, age=timedelta(hours=1)),
        ]
        assert [r["n"] for r in unified.hot_rows(events, now=NOW)] == [2, 3, 1]

    def test_owner_and_type_filters(self, unified):
        events = [
            event("e1", {"n": 1}, ownerId="alice"),
            event("e2", {"n": 2}, ownerId="bob"),
            event("e3", {"n": 3}, ownerId="alice", event_type="refund"),
        ]
        rows = unified.hot_rows(events, owner_id="alice", event_types=["order.created"], now=NOW)
        assert rows == [{"n": 1}]

    def test_event_limit(self, engine, settings):
        unified = UnifiedQueryEngine(engine, settings.model_copy(update={"hot_event_limit": 2}))
        events = [event(f"e{n}", {"n": n}, age=timedelta(minutes=n)) for n in range(5)]
        assert [r["n"] for r in unified.hot_rows(events, now=NOW)] == [0, 1]

    def test_failing_transformer_skips_event(self, unified):
        def to_row(payload):
            return {"total": float(payload["total"])}

        events = [event("e1", {"total": "12.5"}), event("e2", {})]
        assert unified.hot_rows(events, to_row, now=NOW) == [{"total": 12.5}]

    def test_registry_skips_unregistered_types(self, unified):
        registry = TransformerRegistry({"order": lambda p: {"kind": "order", **p}})
        events = [
            event("e1", {"n": 1}),
            event("e2", {"n": 2}, event_type="customer.created"),
        ]
        assert unified.hot_rows(events, registry, now=NOW) == [{"kind": "order", "n": 1}]

    def test_accepts_event_models(self, unified):
        model = RealtimeEvent.model_validate(event("e1", {"n": 1}))
        assert unified.hot_rows([model], now=NOW) == [{"n": 1}]


class TestRunQuery:
    """Tests for run_query over several sources."""

    def test_gross_profit_across_archives(self, unified, split_sales):
        intent = QueryIntent(
            operation="aggregate", metrics=["Gross Profit"], dimensions=["category"]
        )

        result = unified.run_query(split_sales, intent, catalog=GROSS_PROFIT, now=NOW)

        assert not result.fallback
        assert result.source_count == 2
        assert result.columns == ["category", "Gross Profit"]
        assert result.rows == [
            {"category": "A", "Gross Profit": 140},
            {"category": "B", "Gross Profit": 120},
        ]

    def test_hot_rows_are_unioned(self, unified, split_sales, hot_sale):
        intent = QueryIntent(
            operation="aggregate", metrics=["Gross Profit"], dimensions=["category"]
        )
        result = unified.run_query(
            split_sales, intent, catalog=GROSS_PROFIT, hot_events=hot_sale, now=NOW
        )
        assert result.source_count == 3
        assert {r["category"]: r["Gross Profit"] for r in result.rows} == {"A": 145, "B": 120}

    def test_average_recombined_from_partials(self, unified, split_sales, hot_sale):
        intent = QueryIntent(
            operation="aggregate", metrics=["revenue"], dimensions=["category"], aggregation="avg"
        )
        result = unified.run_query(split_sales, intent, hot_events=hot_sale, now=NOW)
        averages = {r["category"]: r["revenue"] for r in result.rows}
        assert averages["A"] == pytest.approx(260 / 3)
        assert averages["B"] == pytest.approx(200)

    def test_hot_only(self, unified, hot_sale):
        intent = QueryIntent(operation="rank", metrics=["revenue"], dimensions=["category"])
        result = unified.run_query([], intent, hot_events=hot_sale, now=NOW)
        assert result.rows == [{"category": "A", "revenue": 10.0}]
        assert result.source_count == 1

    def test_grouped_rank_limit_after_merge(self, unified, split_sales):
        intent = QueryIntent(
            operation="rank", metrics=["revenue"], dimensions=["category"], limit=1
        )
        result = unified.run_query(split_sales, intent, now=NOW)
        assert result.rows == [{"category": "A", "revenue": 250}]

    def test_per_row_rank_renumbers_positions(self, unified, split_sales, hot_sale):
        intent = QueryIntent(operation="rank", metrics=["revenue"], aggregation="none", limit=2)
        result = unified.run_query(split_sales, intent, hot_events=hot_sale, now=NOW)
        assert result.columns == ["position", "revenue"]
        assert [(r["position"], r["revenue"]) for r in result.rows] == [(1, 200.0), (2, 150.0)]

    def test_trend_sorted_by_label(self, unified, write_archive):
        first = write_archive(
            "jan.parquet",
            [{"day": "2024-01-02", "revenue": 5}, {"day": "2024-01-03", "revenue": 1}],
        )
        second = write_archive("feb.parquet", [{"day": "2024-01-01", "revenue": 7}])
        intent = QueryIntent(operation="trend", metrics=["revenue"], dimensions=["day"])
        result = unified.run_query([first, second], intent, now=NOW)
        assert [r["day"] for r in result.rows] == ["2024-01-01", "2024-01-02", "2024-01-03"]

    def test_merged_labels_keep_archive_type(self, unified, write_archive):
        """Integer keys stay integers whether one source or several answer."""
        first = write_archive("k1.parquet", [{"k": 1, "v": 10}, {"k": 2, "v": 5}])
        second = write_archive("k2.parquet", [{"k": 2, "v": 1}])
        intent = QueryIntent(operation="aggregate", metrics=["v"], dimensions=["k"])

        single = unified.run_query([first], intent, now=NOW)
        merged = unified.run_query(
            [first, second], intent, hot_events=[event("h1", {"k": 1, "v": 3})], now=NOW
        )

        assert [type(r["k"]) for r in single.rows] == [int, int]
        assert merged.rows == [{"k": 1, "v": 13}, {"k": 2, "v": 6}]
        assert [type(r["k"]) for r in merged.rows] == [int, int]

    def test_hot_timestamps_group_with_archive_timestamps(self, unified, engine, tmp_path):
        """A live datetime and an archived TIMESTAMP for the same instant share a group."""
        path = tmp_path / "daily.parquet"
        with engine.duckdb_cursor() as cursor:
            cursor.execute(
                "COPY (SELECT TIMESTAMP '2024-06-01 10:00:00' AS day, 5 AS revenue) "
                f"TO '{path}' (FORMAT PARQUET)"
            )

        def to_row(payload):
            return {"day": datetime(2024, 6, 1, 10, 0), "revenue": payload["revenue"]}

        intent = QueryIntent(operation="trend", metrics=["revenue"], dimensions=["day"])
        result = unified.run_query(
            [path],
            intent,
            hot_events=[event("h1", {"revenue": 7})],
            event_transformer=to_row,
            now=NOW,
        )

        assert result.rows == [{"day": datetime(2024, 6, 1, 10, 0), "revenue": 12}]

    def test_failing_source_becomes_warning(self, unified, split_sales, tmp_path):
        broken = tmp_path / "broken.parquet"
        broken.write_bytes(b"not parquet")
        intent = QueryIntent(operation="aggregate", metrics=["revenue"], dimensions=["category"])

        result = unified.run_query([*split_sales, broken], intent, now=NOW)

        assert not result.fallback
        assert {r["category"] for r in result.rows} == {"A", "B"}
        assert any(str(broken) in w for w in result.warnings)

    def test_every_source_failing_degrades(self, unified, tmp_path):
        paths = []
        for name in ("a.parquet", "b.parquet"):
            path = tmp_path / name
            path.write_bytes(b"not parquet")
            paths.append(path)
        intent = QueryIntent(operation="aggregate", metrics=["revenue"], dimensions=["category"])

        result = unified.run_query(paths, intent, now=NOW)

        assert result.fallback
        assert result.degraded.reason == DegradedReason.ARCHIVE_ERROR
        assert result.rows == []

    def test_missing_fields_merged_sample(self, unified, split_sales):
        intent = QueryIntent(operation="aggregate", metrics=["revenue"], limit=2)
        result = unified.run_query(split_sales, intent, now=NOW)
        assert result.fallback
        assert result.degraded.reason == DegradedReason.MISSING_FIELDS
        assert len(result.rows) == 2

    def test_sample_spans_sources(self, unified, split_sales):
        result = unified.run_query(split_sales, QueryIntent(operation="sample"), now=NOW)
        assert not result.fallback
        assert len(result.rows) == 3

    def test_unknown_extension_skipped(self, unified, split_sales, tmp_path):
        intent = QueryIntent(operation="sample")
        result = unified.run_query([*split_sales, tmp_path / "notes.xlsx"], intent, now=NOW)
        assert result.source_count == 2
        assert any("notes.xlsx" in w for w in result.warnings)

    def test_no_sources(self, unified):
        result = unified.run_query([], QueryIntent(operation="sample"), now=NOW)
        assert result.fallback
        assert result.source_count == 0


class TestQueryCaching:
    def test_archive_only_results_are_cached(self, engine, settings, split_sales, hot_sale):
        unified = UnifiedQueryEngine(engine, settings.model_copy(update={"cache_enabled": True}))
        intent = QueryIntent(operation="aggregate", metrics=["revenue"], dimensions=["category"])

        first = unified.run_query(split_sales, intent, now=NOW)
        second = unified.run_query(split_sales, intent, now=NOW)
        assert second.rows == first.rows
        assert unified.cache.stats()["hits"] == 1

        unified.run_query(split_sales, intent, hot_events=hot_sale, now=NOW)
        assert unified.cache.stats()["hits"] == 1
        assert len(unified.cache) == 1

    def test_append_invalidates(self, engine, settings, split_sales):
        unified = UnifiedQueryEngine(engine, settings.model_copy(update={"cache_enabled": True}))
        intent = QueryIntent(operation="aggregate", metrics=["revenue"], dimensions=["category"])
        unified.run_query(split_sales, intent, now=NOW)

        unified.store.append(split_sales[0], [{"category": "C", "revenue": 999, "cost": 1}])
        result = unified.run_query(split_sales, intent, now=NOW)

        assert result.rows[0] == {"category": "C", "revenue": 999}


@pytest.fixture
def orders(write_archive):
    return write_archive(
        "orders.parquet",
        [
            {"_type": "order", "created_at": "2024-05-01T10:00:00", "status": "paid",
             "total_price": "$100.00", "customer_id": "c1", "product_id": None},
            {"_type": "order", "created_at": "2024-05-03T10:00:00", "status": "refunded",
             "total_price": "50", "customer_id": "c2", "product_id": None},
            {"_type": "order", "created_at": "2024-05-02T10:00:00", "status": "paid",
             "total_price": "25.5", "customer_id": "c1", "product_id": None},
            {"_type": "product", "created_at": "2024-04-01T10:00:00", "status": None,
             "total_price": None, "customer_id": None, "product_id": "p1"},
        ],
    )


@pytest.fixture
def hot_orders():
    return [
        event("h1", {"_type": "order", "created_at": "2024-06-01T11:00:00",
                     "status": "paid", "total_price": "10", "customer_id": "c9"}),
        event("h2", {"created_at": "2024-06-01T10:00:00", "status": "paid",
                     "total_price": "$5", "customer_id": "c1"}, age=timedelta(hours=2)),
        event(
            "h3",
            {"_type": "product", "product_id": "p2"},
            age=timedelta(hours=3),
            event_type="product.created",
        ),
        event("h4", {"_type": "order", "total_price": "1000"}, processed=True),
        event("h5", {"_type": "order", "total_price": "1000"}, age=timedelta(days=3)),
    ]


class TestGetStats:
    """Tests for get_stats."""

    def test_each_record_counted_once(self, unified, orders, hot_orders):
        stats = unified.get_stats([orders], hot_events=hot_orders, now=NOW)

        assert stats.cold_records == 3
        assert stats.hot_records == 2
        assert stats.records == 5
        assert stats.revenue == pytest.approx(190.5)
        assert stats.customers == 4
        assert stats.products == 2
        assert stats.failed_sources == []

    def test_archive_without_type_column(self, unified, sales_parquet):
        fields = StatsFields(revenue="revenue", customer="category")
        stats = unified.get_stats([sales_parquet], fields=fields, now=NOW)
        assert stats.records == 3
        assert stats.revenue == pytest.approx(450)
        assert stats.customers == 2
        assert stats.products == 0

    def test_failed_source_reported(self, unified, orders, tmp_path):
        broken = tmp_path / "broken.parquet"
        broken.write_bytes(b"nope")
        stats = unified.get_stats([orders, broken], now=NOW)
        assert stats.records == 3
        assert stats.failed_sources == [str(broken)]


class TestGetRows:
    """Tests for get_rows."""

    def test_hot_first_then_newest_cold(self, unified, orders, hot_orders):
        rows = unified.get_rows([orders], hot_events=hot_orders, now=NOW)
        stamps = [r.get("created_at") for r in rows]
        assert stamps[:2] == ["2024-06-01T11:00:00", "2024-06-01T10:00:00"]
        assert stamps[3:] == [
            "2024-05-03T10:00:00",
            "2024-05-02T10:00:00",
            "2024-05-01T10:00:00",
            "2024-04-01T10:00:00",
        ]

    def test_record_type(self, unified, orders, hot_orders):
        rows = unified.get_rows(
            [orders], hot_events=hot_orders, filters=RowFilters(record_type="order"), now=NOW
        )
        assert len(rows) == 5
        assert all(r.get("_type", "order") == "order" for r in rows)

    def test_status_and_dates(self, unified, orders):
        filters = RowFilters(
            status="paid",
            start_date=datetime(2024, 5, 2, tzinfo=UTC),
            end_date=datetime(2024, 5, 31, tzinfo=UTC),
        )
        rows = unified.get_rows([orders], filters=filters, now=NOW)
        assert [r["total_price"] for r in rows] == ["25.5"]

    def test_limit(self, unified, orders):
        rows = unified.get_rows([orders], filters=RowFilters(limit=2), now=NOW)
        assert len(rows) == 2

    def test_cold_row_cap(self, engine, settings, orders):
        unified = UnifiedQueryEngine(engine, settings.model_copy(update={"cold_row_limit": 1}))
        rows = unified.get_rows([orders], now=NOW)
        assert [r["created_at"] for r in rows] == ["2024-05-03T10:00:00"]

    def test_unreadable_archive_skipped(self, unified, orders, tmp_path):
        broken = tmp_path / "broken.parquet"
        broken.write_bytes(b"nope")
        assert len(unified.get_rows([broken, orders], now=NOW)) == 4
