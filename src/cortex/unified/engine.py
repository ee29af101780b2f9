"""Hot/cold unified queries.

Answers one question over every archive of a caller plus the events that
arrived since the last sync:

- cold: each archive is queried on its own; archives are never merged on disk
- hot: unprocessed events newer than the cutoff are flattened by a
  transformer and registered as an in-memory relation
- the per-source answers are unioned (never intersected) and, for grouped
  queries, re-aggregated from decomposable partials

Usage:
    unified = UnifiedQueryEngine(engine)
    result = unified.run_query(
        archive_paths=[Path("orders_2024.parquet"), Path("orders_2025.parquet")],
        intent=QueryIntent(operation="trend", metrics=["revenue"], dimensions=["day"]),
        catalog={"Net": "SUM(revenue - refunds)"},
        hot_events=events,
        event_transformer=TransformerRegistry({"order": shopify_order_to_row}),
    )
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import duckdb
import pandas as pd
from pydantic import BaseModel, Field

from cortex.core.config import Settings, get_settings
from cortex.core.logging import get_logger, log_context, timed
from cortex.metrics.catalog import MetricCatalog
from cortex.query.cache import QueryCache
from cortex.query.compiler import PARTIAL_LABEL, PARTIAL_LABEL_VALUE, IntentCompiler, QueryPlan
from cortex.query.execution import ExecutionResult, QueryExecutionError
from cortex.query.expressions import combine_partials, evaluate
from cortex.query.intent import Operation, QueryIntent
from cortex.query.normalize import normalize_numeric, numeric_sql, quote_identifier
from cortex.query.results import Degradation, DegradedReason, ResultSet
from cortex.storage.archive import ArchiveStore, read_function_sql
from cortex.unified.events import EventTransformer, RealtimeEvent, TransformerRegistry, passthrough

if TYPE_CHECKING:
    from cortex.core.connections import EngineHandle

logger = get_logger(__name__)

HOT_RELATION = "hot_rows"


@dataclass
class RowFilters:
    """Post-union filters for row-level reads.

    `record_type` matches the archive's type column; hot rows that carry no
    type column are kept, since their event type already selected them.
    """

    record_type: str | None = None
    start_date: datetime | date | None = None
    end_date: datetime | date | None = None
    status: str | None = None
    limit: int | None = None
    timestamp_column: str = "created_at"
    status_column: str = "status"
    type_column: str = "_type"


@dataclass
class StatsFields:
    """Column names the scalar rollups read."""

    type_column: str = "_type"
    record_type: str | None = "order"
    product_type: str | None = "product"
    revenue: str = "total_price"
    customer: str = "customer_id"
    product: str = "product_id"


class UnifiedStats(BaseModel):
    """Scalar rollups summed over hot and cold sources.

    `customers` and `products` are distinct counts per source, summed; a
    customer present in two sources is counted twice.
    """

    records: int = 0
    revenue: float = 0.0
    customers: int = 0
    products: int = 0
    hot_records: int = 0
    cold_records: int = 0
    failed_sources: list[str] = Field(default_factory=list)


@dataclass
class _Source:
    name: str
    sql: str
    relations: dict[str, pd.DataFrame] = field(default_factory=dict)
    archive: Path | None = None


def _cell(value: Any) -> str | None:
    """Hot rows are registered as text; the normalizer parses them like archive text."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        # Same spelling as DuckDB's CAST(TIMESTAMP AS VARCHAR)
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


def _hot_frame(rows: list[dict[str, Any]]) -> pd.DataFrame:
    columns: dict[str, None] = {}
    for row in rows:
        for key in row:
            columns.setdefault(key)
    data = {col: [_cell(row.get(col)) for row in rows] for col in columns}
    return pd.DataFrame(data, columns=list(columns), dtype=object)


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _label_key(value: Any) -> tuple[int, float, str]:
    if value is None:
        return (2, 0.0, "")
    number = normalize_numeric(value)
    if not math.isnan(number):
        return (0, number, "")
    return (1, 0.0, str(value))


def _order_rows(rows: list[dict[str, Any]], plan: QueryPlan) -> list[dict[str, Any]]:
    label = plan.label_alias
    rows = sorted(rows, key=lambda r: _label_key(r.get(label)))
    if plan.order_by_label:
        return rows
    value = plan.series[0].name
    present = [r for r in rows if r.get(value) is not None]
    missing = [r for r in rows if r.get(value) is None]
    present.sort(key=lambda r: r[value], reverse=plan.descending)
    return present + missing


class UnifiedQueryEngine:
    """One view over a caller's archives and live event buffer.

    Hot rows are unprocessed events with arrival >= cutoff; cold rows are
    whatever the archives hold. The two are unioned without ID-based
    deduplication. This relies on the sync pipeline marking events processed
    before (or atomically with) writing the archive that contains them: an
    event that is both archived and still unprocessed is counted twice, and
    one marked processed but never archived is lost. The engine does not
    verify this.
    """

    def __init__(
        self,
        engine: EngineHandle,
        settings: Settings | None = None,
        compiler: IntentCompiler | None = None,
        cache: QueryCache | None = None,
    ):
        self.engine = engine
        self.settings = settings or get_settings()
        self.compiler = compiler or IntentCompiler(settings=self.settings)
        if cache is None and self.settings.cache_enabled:
            cache = QueryCache(self.settings.cache_max_entries, self.settings.cache_ttl_seconds)
        self.cache = cache
        self.store = ArchiveStore(engine, self.settings)

    def cutoff(self, now: datetime | None = None) -> datetime:
        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        return now - timedelta(hours=self.settings.hot_window_hours)

    # === Hot path ===

    def hot_rows(
        self,
        events: Iterable[RealtimeEvent | Mapping[str, Any]],
        transformer: EventTransformer | TransformerRegistry | None = None,
        owner_id: str | None = None,
        event_types: Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Transform unprocessed events newer than the cutoff into rows, newest first.

        Events whose transformer raises are logged and skipped. With a
        TransformerRegistry, events of unregistered types are skipped.
        """
        cutoff = self.cutoff(now)
        selected = []
        for raw in events:
            event = raw if isinstance(raw, RealtimeEvent) else RealtimeEvent.model_validate(raw)
            if event.processed or event.created_at < cutoff:
                continue
            if owner_id is not None and event.owner_id != owner_id:
                continue
            if event_types is not None and event.event_type not in event_types:
                continue
            selected.append(event)

        selected.sort(key=lambda e: e.created_at, reverse=True)
        limit = self.settings.hot_event_limit
        if len(selected) > limit:
            logger.warning("hot_events_truncated", available=len(selected), limit=limit)
            selected = selected[:limit]

        if isinstance(transformer, TransformerRegistry):
            resolve = transformer.resolve
        else:
            single = transformer or passthrough

            def resolve(_event_type: str) -> EventTransformer | None:
                return single

        rows: list[dict[str, Any]] = []
        for event in selected:
            transform = resolve(event.event_type)
            if transform is None:
                continue
            try:
                row = transform(event.payload)
            except Exception as e:
                logger.warning(
                    "hot_event_transform_failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    error=str(e),
                )
                continue
            if row is not None:
                rows.append(dict(row))

        logger.debug("hot_rows_collected", events=len(selected), rows=len(rows))
        return rows

    # === Queries ===

    def run_query(
        self,
        archive_paths: Sequence[Path | str],
        intent: QueryIntent,
        catalog: MetricCatalog | Mapping[str, str] | None = None,
        hot_events: Iterable[RealtimeEvent | Mapping[str, Any]] | None = None,
        event_transformer: EventTransformer | TransformerRegistry | None = None,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> ResultSet:
        """Answer `intent` over every archive plus the hot events.

        Never raises for query-shape or archive problems: failing sources
        are reported in `warnings`, and only when every source fails is the
        result degraded to a sample.
        """
        compiler = self.compiler.with_catalog(catalog)
        paths = [Path(p) for p in archive_paths]
        hot = self.hot_rows(hot_events, event_transformer, owner_id, now=now) if hot_events else []

        with log_context(query_id=uuid4().hex[:8], operation=intent.operation.value):
            sources, warnings = self._sources(paths, hot)
            if not sources:
                return ResultSet(
                    degraded=Degradation(
                        reason=DegradedReason.ARCHIVE_ERROR, detail="no readable sources"
                    ),
                    warnings=[*intent.warnings, *warnings],
                    source_count=0,
                )

            cache_key = None
            if self.cache is not None and not hot:
                cache_key = self.cache.make_key(paths, intent, compiler.catalog.fingerprint())
                cached = self.cache.get(cache_key)
                if cached is not None:
                    logger.debug("query_cache_hit")
                    return cached

            with timed("unified_query", sources=len(sources)) as extra:
                if len(sources) == 1:
                    source = sources[0]
                    result = compiler.run_source(self.engine, source.sql, intent, source.relations)
                else:
                    result = self._run_multi(compiler, sources, intent)
                extra["rows"] = len(result.rows)

            result.warnings = [*result.warnings, *warnings]
            result.source_count = len(sources)

            if cache_key is not None and not result.fallback and self.cache is not None:
                self.cache.set(cache_key, result, paths)
            return result

    def _sources(
        self, paths: list[Path], hot: list[dict[str, Any]]
    ) -> tuple[list[_Source], list[str]]:
        sources: list[_Source] = []
        warnings: list[str] = []
        if hot:
            sources.append(
                _Source("hot", quote_identifier(HOT_RELATION), {HOT_RELATION: _hot_frame(hot)})
            )
        for path in paths:
            try:
                sources.append(_Source(str(path), read_function_sql(path), archive=path))
            except ValueError as e:
                logger.warning("source_skipped", source=str(path), error=str(e))
                warnings.append(f"skipped {path}: {e}")
        return sources, warnings

    def _run_multi(
        self, compiler: IntentCompiler, sources: list[_Source], intent: QueryIntent
    ) -> ResultSet:
        planned = compiler.plan(intent)
        if not planned.success:
            reason = DegradedReason(planned.code)
            logger.warning("query_degraded", reason=reason.value, detail=planned.error)
            return self._merged_sample(
                compiler, sources, intent, Degradation(reason=reason, detail=planned.error or "")
            )

        plan = planned.unwrap()
        if plan.operation == Operation.SAMPLE:
            result = self._merged_sample(compiler, sources, intent, None)
            result.warnings = [*plan.warnings, *result.warnings]
            return result

        executed: list[ExecutionResult] = []
        failures: list[tuple[_Source, QueryExecutionError]] = []
        for source in sources:
            try:
                sql = compiler.render_partial(plan, source.sql)
                executed.append(compiler.execute(self.engine, sql, source.relations))
            except QueryExecutionError as e:
                logger.warning(
                    "source_failed", source=source.name, reason=e.reason.value, detail=e.detail
                )
                failures.append((source, e))

        if not executed:
            first = failures[0][1]
            result = self._merged_sample(
                compiler, sources, intent, Degradation(reason=first.reason, detail=first.detail)
            )
            result.warnings = [*plan.warnings, *result.warnings]
            return result

        warnings = list(plan.warnings)
        if plan.grouped:
            warnings += plan.partial_warnings()
            rows = self._merge_grouped(plan, executed)
        else:
            rows = self._merge_rows(plan, executed)
        warnings += [f"source {s.name} failed: {e.detail}" for s, e in failures]
        return ResultSet(columns=plan.columns, rows=rows, warnings=warnings)

    def _merge_grouped(
        self, plan: QueryPlan, executed: list[ExecutionResult]
    ) -> list[dict[str, Any]]:
        layout = plan.partial_layout()
        partial_columns = [column for _, _, columns in layout for column in columns]

        groups: dict[Any, dict[str, Any]] = {}
        # Archives keep the label's own type; hot rows only have its text.
        labels: dict[Any, Any] = {}
        for result in executed:
            for values in result.rows:
                record = dict(zip(result.columns, values, strict=False))
                key = record[PARTIAL_LABEL]
                combine_partials(partial_columns, groups.setdefault(key, {}), record)
                native = record.get(PARTIAL_LABEL_VALUE, key)
                if key not in labels or (
                    isinstance(labels[key], str) and not isinstance(native, str)
                ):
                    labels[key] = native

        rows = []
        for key, partials in groups.items():
            row: dict[str, Any] = {plan.label_alias: labels[key]}
            for spec, prefix, _ in layout:
                row[spec.name] = evaluate(spec.expr, partials, prefix)
            rows.append(row)

        rows = _order_rows(rows, plan)
        return rows[: plan.limit] if plan.limit is not None else rows

    def _merge_rows(
        self, plan: QueryPlan, executed: list[ExecutionResult]
    ) -> list[dict[str, Any]]:
        rows = [
            dict(zip(result.columns, values, strict=False))
            for result in executed
            for values in result.rows
        ]
        rows = _order_rows(rows, plan) if plan.label else self._by_value(rows, plan)
        if plan.limit is not None:
            rows = rows[: plan.limit]
        if plan.label is None:
            for position, row in enumerate(rows, start=1):
                row[plan.label_alias] = position
        return rows

    @staticmethod
    def _by_value(rows: list[dict[str, Any]], plan: QueryPlan) -> list[dict[str, Any]]:
        value = plan.series[0].name
        return sorted(rows, key=lambda r: r[value], reverse=plan.descending)

    def _merged_sample(
        self,
        compiler: IntentCompiler,
        sources: list[_Source],
        intent: QueryIntent,
        degraded: Degradation | None,
    ) -> ResultSet:
        limit = int(intent.limit)
        columns: dict[str, None] = {}
        rows: list[dict[str, Any]] = []
        warnings: list[str] = []
        for source in sources:
            if len(rows) >= limit:
                break
            sql = f"SELECT * FROM {source.sql} LIMIT {limit - len(rows)}"
            try:
                result = compiler.execute(self.engine, sql, source.relations)
            except QueryExecutionError as e:
                logger.warning("source_failed", source=source.name, detail=e.detail)
                warnings.append(f"source {source.name} failed: {e.detail}")
                continue
            for name in result.columns:
                columns.setdefault(name)
            rows += [dict(zip(result.columns, values, strict=False)) for values in result.rows]

        if not columns and degraded is None:
            degraded = Degradation(
                reason=DegradedReason.ARCHIVE_ERROR, detail="; ".join(warnings) or "no rows"
            )
        elif not columns and degraded is not None:
            degraded = Degradation(
                reason=DegradedReason.ARCHIVE_ERROR,
                detail=f"{degraded.detail}; sample failed",
            )
        return ResultSet(
            columns=list(columns), rows=rows[:limit], degraded=degraded, warnings=warnings
        )

    # === Row-level reads ===

    def get_rows(
        self,
        archive_paths: Sequence[Path | str],
        hot_events: Iterable[RealtimeEvent | Mapping[str, Any]] | None = None,
        transformer: EventTransformer | TransformerRegistry | None = None,
        filters: RowFilters | None = None,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Hot rows first, then each archive's rows (newest first, capped), then filters."""
        filters = filters or RowFilters()
        rows = self.hot_rows(hot_events or [], transformer, owner_id, now=now)
        if filters.record_type is not None:
            rows = [
                r
                for r in rows
                if filters.type_column not in r or r[filters.type_column] == filters.record_type
            ]

        for path in (Path(p) for p in archive_paths):
            try:
                rows += self._cold_rows(path, filters)
            except (QueryExecutionError, ValueError) as e:
                logger.warning("source_failed", source=str(path), error=str(e))

        return self._apply_filters(rows, filters)

    def _cold_rows(self, path: Path, filters: RowFilters) -> list[dict[str, Any]]:
        columns = {name for name, _ in self._schema(path)}
        sql = f"SELECT * FROM {read_function_sql(path)}"
        params: list[Any] = []
        if filters.record_type is not None and filters.type_column in columns:
            sql += f" WHERE {quote_identifier(filters.type_column)} = ?"
            params.append(filters.record_type)
        if filters.timestamp_column in columns:
            sql += f" ORDER BY {quote_identifier(filters.timestamp_column)} DESC"
        sql += f" LIMIT {int(self.settings.cold_row_limit)}"

        result = self.compiler.execute(self.engine, sql, params=params)
        return [dict(zip(result.columns, values, strict=False)) for values in result.rows]

    def _schema(self, path: Path) -> list[tuple[str, str]]:
        try:
            return self.store.describe_schema(path)
        except duckdb.Error as e:
            raise QueryExecutionError(DegradedReason.ARCHIVE_ERROR, str(e)) from e

    @staticmethod
    def _apply_filters(rows: list[dict[str, Any]], filters: RowFilters) -> list[dict[str, Any]]:
        start = _as_datetime(filters.start_date) if filters.start_date else None
        end = _as_datetime(filters.end_date) if filters.end_date else None
        if start or end:
            kept = []
            for row in rows:
                stamp = _as_datetime(row.get(filters.timestamp_column))
                if stamp is None:
                    continue
                if start and stamp < start:
                    continue
                if end and stamp > end:
                    continue
                kept.append(row)
            rows = kept
        if filters.status is not None:
            rows = [r for r in rows if str(r.get(filters.status_column)) == filters.status]
        if filters.limit is not None:
            rows = rows[: filters.limit]
        return rows

    # === Stats ===

    def get_stats(
        self,
        archive_paths: Sequence[Path | str],
        hot_events: Iterable[RealtimeEvent | Mapping[str, Any]] | None = None,
        transformer: EventTransformer | TransformerRegistry | None = None,
        fields: StatsFields | None = None,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> UnifiedStats:
        """Count, revenue and distinct customers/products, computed per source and summed.

        The type filter applies only to sources that have the type column.
        """
        fields = fields or StatsFields()
        stats = UnifiedStats()

        hot = self.hot_rows(hot_events or [], transformer, owner_id, now=now)
        self._add_hot_stats(stats, hot, fields)

        for path in (Path(p) for p in archive_paths):
            try:
                self._add_cold_stats(stats, path, fields)
            except (QueryExecutionError, ValueError) as e:
                logger.warning("stats_source_failed", source=str(path), error=str(e))
                stats.failed_sources.append(str(path))

        stats.records = stats.hot_records + stats.cold_records
        return stats

    @staticmethod
    def _add_hot_stats(
        stats: UnifiedStats, rows: list[dict[str, Any]], fields: StatsFields
    ) -> None:
        def of_type(row: dict[str, Any], wanted: str | None) -> bool:
            if wanted is None or fields.type_column not in row:
                return True
            return row[fields.type_column] == wanted

        records = [r for r in rows if of_type(r, fields.record_type)]
        revenue = [normalize_numeric(r.get(fields.revenue)) for r in records]
        stats.hot_records += len(records)
        stats.revenue += math.fsum(v for v in revenue if not math.isnan(v))
        customers = {r[fields.customer] for r in records if r.get(fields.customer) is not None}
        stats.customers += len(customers)

        products = [r for r in rows if fields.type_column in r and of_type(r, fields.product_type)]
        stats.products += len(
            {r[fields.product] for r in products if r.get(fields.product) is not None}
        )

    def _add_cold_stats(self, stats: UnifiedStats, path: Path, fields: StatsFields) -> None:
        columns = {name for name, _ in self._schema(path)}
        source = read_function_sql(path)
        has_type = fields.type_column in columns

        where, params = "", []
        if has_type and fields.record_type is not None:
            where = f" WHERE {quote_identifier(fields.type_column)} = ?"
            params = [fields.record_type]
        revenue = (
            f"SUM({numeric_sql(quote_identifier(fields.revenue))})"
            if fields.revenue in columns
            else "NULL"
        )
        customers = (
            f"COUNT(DISTINCT {quote_identifier(fields.customer)})"
            if fields.customer in columns
            else "0"
        )
        result = self.compiler.execute(
            self.engine,
            f"SELECT COUNT(*), {revenue}, {customers} FROM {source}{where}",
            params=params,
        )
        count, total, distinct_customers = result.rows[0]
        stats.cold_records += int(count or 0)
        stats.revenue += float(total or 0.0)
        stats.customers += int(distinct_customers or 0)

        if has_type and fields.product in columns and fields.product_type is not None:
            products = self.compiler.execute(
                self.engine,
                f"SELECT COUNT(DISTINCT {quote_identifier(fields.product)}) FROM {source} "
                f"WHERE {quote_identifier(fields.type_column)} = ?",
                params=[fields.product_type],
            )
            stats.products += int(products.rows[0][0] or 0)
