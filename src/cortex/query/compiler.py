"""Intent compiler.

Turns a QueryIntent plus the metric catalog into SQL against one archive:

- plan(): validate the intent and resolve each metric to a value expression
  (catalog formula, or aggregation over the normalized column)
- render(): full SQL for a single source
- render_partial(): decomposable per-source SQL, re-aggregated by the unifier
- run(): plan, render, execute; any failure degrades to a raw sample

Usage:
    compiler = IntentCompiler(MetricCatalog.from_mapping({"Gross Profit": "SUM(revenue - cost)"}))
    result = compiler.run(engine, Path("orders.parquet"), QueryIntent(
        operation="aggregate", metrics=["Gross Profit"], dimensions=["category"],
    ))
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cortex.core.config import Settings, get_settings
from cortex.core.logging import get_logger, log_context
from cortex.core.models import Result
from cortex.metrics.catalog import MetricCatalog
from cortex.query.execution import ExecutionResult, QueryExecutionError, execute_with_timeout
from cortex.query.expressions import (
    Aggregate,
    Column,
    Expr,
    FormulaError,
    PartialColumn,
    bare_columns,
    contains_aggregate,
    partial_columns,
    render_sql,
)
from cortex.query.intent import Aggregation, Operation, QueryIntent
from cortex.query.normalize import quote_identifier
from cortex.query.results import Degradation, DegradedReason, ResultSet
from cortex.storage.archive import read_function_sql

if TYPE_CHECKING:
    import pandas as pd

    from cortex.core.connections import EngineHandle

logger = get_logger(__name__)

AGGREGATE_FUNCTIONS: dict[Aggregation, str] = {
    Aggregation.SUM: "SUM",
    Aggregation.AVG: "AVG",
    Aggregation.COUNT: "COUNT",
    Aggregation.MIN: "MIN",
    Aggregation.MAX: "MAX",
}

# Output label column of a per-row rank with no name column
POSITION_COLUMN = "position"
# Group key column in partial SQL
PARTIAL_LABEL = "__label"
# Native-typed label carried next to the text group key
PARTIAL_LABEL_VALUE = "__label_value"


class _Unsupported(Exception):
    pass


@dataclass(frozen=True)
class SeriesSpec:
    """One output value column."""

    name: str
    expr: Expr
    from_catalog: bool = False


@dataclass
class QueryPlan:
    """Source-independent shape of one query.

    Grouped plans aggregate `series` per distinct `label`. Per-row plans (rank
    without a dimension) order rows by the single series value and label them
    by `label`, or by position when `label` is None.
    """

    operation: Operation
    grouped: bool = False
    label: str | None = None
    series: list[SeriesSpec] = field(default_factory=list)
    descending: bool = True
    order_by_label: bool = False
    limit: int | None = None
    row_filter: Expr | None = None
    sample_limit: int = 10
    warnings: list[str] = field(default_factory=list)

    @property
    def label_alias(self) -> str:
        return self.label or POSITION_COLUMN

    @property
    def columns(self) -> list[str]:
        """Output columns; empty for sample plans (the archive's own columns)."""
        if self.operation == Operation.SAMPLE:
            return []
        return [self.label_alias, *(s.name for s in self.series)]

    def partial_layout(self) -> list[tuple[SeriesSpec, str, list[PartialColumn]]]:
        """(series, alias prefix, partial columns) for every series."""
        layout = []
        for index, spec in enumerate(self.series):
            prefix = f"s{index}"
            columns, _ = partial_columns(spec.expr, prefix)
            layout.append((spec, prefix, columns))
        return layout

    def partial_warnings(self) -> list[str]:
        warnings: list[str] = []
        for index, spec in enumerate(self.series):
            for warning in partial_columns(spec.expr, f"s{index}")[1]:
                if warning not in warnings:
                    warnings.append(warning)
        return warnings


class IntentCompiler:
    """Compiles and runs query intents against columnar archives."""

    def __init__(
        self,
        catalog: MetricCatalog | Mapping[str, str] | None = None,
        settings: Settings | None = None,
    ):
        self.catalog = MetricCatalog.coerce(catalog)
        self.settings = settings or get_settings()

    def with_catalog(self, catalog: MetricCatalog | Mapping[str, str] | None) -> IntentCompiler:
        """Same settings, different catalog (None keeps the current one)."""
        if catalog is None or catalog is self.catalog:
            return self
        return IntentCompiler(catalog, self.settings)

    # === Planning ===

    def plan(self, intent: QueryIntent) -> Result[QueryPlan]:
        """Resolve an intent into a QueryPlan.

        Returns:
            Result with the plan; on failure `code` is a DegradedReason value
        """
        warnings = list(intent.warnings)
        missing = intent.missing_fields()
        if missing:
            return Result.fail(
                f"{intent.operation.value} requires {', '.join(missing)}",
                code=DegradedReason.MISSING_FIELDS.value,
            )

        if intent.operation == Operation.SAMPLE:
            return Result.ok(
                QueryPlan(Operation.SAMPLE, sample_limit=intent.limit, warnings=warnings)
            )

        aggregation = intent.aggregation
        metrics = list(intent.metrics)

        if intent.operation == Operation.RANK:
            grouped = bool(intent.dimensions) and aggregation != Aggregation.NONE
            label = intent.dimensions[0] if grouped else intent.name_column
            if not grouped and intent.dimensions and not label:
                label = intent.dimensions[0]
            if len(metrics) > 1:
                warnings.append(f"rank uses only the first metric; ignored {metrics[1:]}")
                metrics = metrics[:1]
            plan = QueryPlan(
                Operation.RANK,
                grouped=grouped,
                label=label,
                descending=not intent.ascending,
                limit=intent.limit,
                sample_limit=intent.limit,
            )
        else:
            if aggregation == Aggregation.NONE:
                warnings.append(f"{intent.operation.value} needs an aggregation; using sum")
                aggregation = Aggregation.SUM
            if intent.operation == Operation.TREND:
                if len(metrics) > 1:
                    warnings.append(f"trend uses only the first metric; ignored {metrics[1:]}")
                    metrics = metrics[:1]
                plan = QueryPlan(
                    Operation.TREND,
                    grouped=True,
                    label=intent.temporal_dimension,
                    descending=False,
                    order_by_label=True,
                    sample_limit=intent.limit,
                )
            else:
                max_series = self.settings.max_series
                if len(metrics) > max_series:
                    ignored = metrics[max_series:]
                    warnings.append(
                        f"aggregate supports up to {max_series} metrics; ignored {ignored}"
                    )
                    metrics = metrics[:max_series]
                plan = QueryPlan(
                    Operation.AGGREGATE,
                    grouped=True,
                    label=intent.dimensions[0],
                    descending=not intent.ascending,
                    sample_limit=intent.limit,
                )

        try:
            plan.series = [self._series(name, aggregation, plan.grouped) for name in metrics]
        except FormulaError as e:
            return Result.fail(str(e), code=DegradedReason.INVALID_FORMULA.value)
        except _Unsupported as e:
            return Result.fail(str(e), code=DegradedReason.UNSUPPORTED_INTENT.value)

        primary = plan.series[0]
        # Grouped plans keep every row; aggregates skip values that do not parse.
        if not plan.grouped:
            plan.row_filter = primary.expr
        plan.warnings = warnings
        return Result.ok(plan)

    def _series(self, name: str, aggregation: Aggregation, grouped: bool) -> SeriesSpec:
        if name in self.catalog:
            expr = self.catalog.expression(name)
            formula = self.catalog.get(name).formula  # type: ignore[union-attr]
            if grouped:
                if not contains_aggregate(expr):
                    expr = Aggregate(AGGREGATE_FUNCTIONS[aggregation], expr)
                elif bare_columns(expr):
                    column = bare_columns(expr)[0]
                    raise FormulaError(formula, f"column {column!r} outside an aggregate")
            elif contains_aggregate(expr):
                raise _Unsupported(
                    f"metric {name!r} is an aggregate formula and cannot rank individual rows; "
                    "add a dimension"
                )
            return SeriesSpec(name, expr, from_catalog=True)

        column = Column(name)
        if grouped:
            return SeriesSpec(name, Aggregate(AGGREGATE_FUNCTIONS[aggregation], column))
        return SeriesSpec(name, column)

    # === Rendering ===

    def render(self, plan: QueryPlan, source_sql: str) -> str:
        """Full SQL answering `plan` from a single source."""
        if plan.operation == Operation.SAMPLE:
            return f"SELECT * FROM {source_sql} LIMIT {int(plan.sample_limit)}"

        where = _where(plan)
        if not plan.grouped:
            return self._render_rows(plan, source_sql, where)

        label = quote_identifier(plan.label or "")
        select = [f"{label} AS {quote_identifier(plan.label_alias)}"]
        select += [f"{render_sql(s.expr)} AS {quote_identifier(s.name)}" for s in plan.series]
        direction = "DESC" if plan.descending else "ASC"
        if plan.order_by_label:
            order = f"{quote_identifier(plan.label_alias)} ASC"
        else:
            order = (
                f"{quote_identifier(plan.series[0].name)} {direction} NULLS LAST, "
                f"{quote_identifier(plan.label_alias)} ASC"
            )
        sql = (
            f"SELECT {', '.join(select)} FROM {source_sql} AS src{where} "
            f"GROUP BY {label} ORDER BY {order}"
        )
        if plan.limit is not None:
            sql += f" LIMIT {int(plan.limit)}"
        return sql

    def _render_rows(self, plan: QueryPlan, source_sql: str, where: str) -> str:
        series = plan.series[0]
        value = render_sql(series.expr)
        direction = "DESC" if plan.descending else "ASC"
        if plan.label:
            label = quote_identifier(plan.label)
        else:
            label = f"ROW_NUMBER() OVER (ORDER BY {value} {direction})"
        sql = (
            f"SELECT {label} AS {quote_identifier(plan.label_alias)}, "
            f"{value} AS {quote_identifier(series.name)} "
            f"FROM {source_sql} AS src{where} "
            f"ORDER BY {quote_identifier(series.name)} {direction}, "
            f"{quote_identifier(plan.label_alias)} ASC"
        )
        if plan.limit is not None:
            sql += f" LIMIT {int(plan.limit)}"
        return sql

    def render_partial(self, plan: QueryPlan, source_sql: str) -> str:
        """Per-source SQL whose output the unifier can merge across sources.

        Grouped plans emit the label as text (the merge key) and in its own
        type, plus one partial aggregate column per decomposable piece of each
        series; ordering and limit are applied after merging. Per-row and
        sample plans emit the same rows as render(), since a global top-N is
        contained in the union of per-source top-Ns.
        """
        if plan.operation == Operation.SAMPLE or not plan.grouped:
            return self.render(plan, source_sql)

        label = f"CAST({quote_identifier(plan.label or '')} AS VARCHAR)"
        select = [
            f"{label} AS {quote_identifier(PARTIAL_LABEL)}",
            f"ANY_VALUE({quote_identifier(plan.label or '')}) "
            f"AS {quote_identifier(PARTIAL_LABEL_VALUE)}",
        ]
        for _, _, columns in plan.partial_layout():
            select += [f"{c.sql} AS {quote_identifier(c.alias)}" for c in columns]
        return (
            f"SELECT {', '.join(select)} FROM {source_sql} AS src{_where(plan)} GROUP BY {label}"
        )

    # === Execution ===

    def execute(
        self,
        engine: EngineHandle,
        sql: str,
        relations: dict[str, pd.DataFrame] | None = None,
        params: list[Any] | None = None,
    ) -> ExecutionResult:
        """Execute with the configured timeout.

        Raises:
            QueryExecutionError: On engine error or timeout
        """
        result = execute_with_timeout(
            engine,
            sql,
            params,
            timeout=self.settings.query_timeout_seconds,
            relations=relations,
        )
        if not result.success:
            raise QueryExecutionError.from_result(result)
        return result.unwrap()

    def run(self, engine: EngineHandle, archive_path: Path, intent: QueryIntent) -> ResultSet:
        """Answer `intent` from one archive. Never raises for query-shape or archive problems."""
        archive_path = Path(archive_path)
        with log_context(archive=str(archive_path), operation=intent.operation.value):
            try:
                source_sql = read_function_sql(archive_path)
            except ValueError as e:
                return ResultSet(
                    degraded=Degradation(reason=DegradedReason.ARCHIVE_ERROR, detail=str(e)),
                    warnings=list(intent.warnings),
                )

            return self.run_source(engine, source_sql, intent)

    def run_source(
        self,
        engine: EngineHandle,
        source_sql: str,
        intent: QueryIntent,
        relations: dict[str, pd.DataFrame] | None = None,
    ) -> ResultSet:
        """Answer `intent` from any single FROM-able source (table function or relation)."""
        planned = self.plan(intent)
        if not planned.success:
            return self.fallback(
                engine,
                source_sql,
                intent,
                DegradedReason(planned.code),
                planned.error or "",
                relations=relations,
            )

        plan = planned.unwrap()
        try:
            executed = self.execute(engine, self.render(plan, source_sql), relations)
        except QueryExecutionError as e:
            return self.fallback(
                engine, source_sql, intent, e.reason, e.detail, plan.warnings, relations
            )

        logger.debug("query_completed", rows=len(executed.rows))
        return ResultSet.from_tuples(executed.columns, executed.rows, warnings=plan.warnings)

    def fallback(
        self,
        engine: EngineHandle,
        source_sql: str,
        intent: QueryIntent,
        reason: DegradedReason,
        detail: str,
        warnings: list[str] | None = None,
        relations: dict[str, pd.DataFrame] | None = None,
    ) -> ResultSet:
        """Raw sample of `intent.limit` rows, flagged with why it was degraded."""
        logger.warning("query_degraded", reason=reason.value, detail=detail)
        warnings = list(warnings if warnings is not None else intent.warnings)
        sample_sql = f"SELECT * FROM {source_sql} LIMIT {int(intent.limit)}"
        try:
            executed = self.execute(engine, sample_sql, relations)
        except QueryExecutionError as e:
            logger.warning("sample_failed", reason=e.reason.value, detail=e.detail)
            return ResultSet(
                degraded=Degradation(
                    reason=DegradedReason.ARCHIVE_ERROR,
                    detail=f"{detail}; sample failed: {e.detail}",
                ),
                warnings=warnings,
            )
        return ResultSet.from_tuples(
            executed.columns,
            executed.rows,
            degraded=Degradation(reason=reason, detail=detail),
            warnings=warnings,
        )


def _where(plan: QueryPlan) -> str:
    if plan.row_filter is None:
        return ""
    return f" WHERE {render_sql(plan.row_filter)} IS NOT NULL"
