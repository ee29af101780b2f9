"""Compiled query execution with a timeout.

Each query runs on its own cursor in a worker thread. If it does not finish
within the timeout the cursor is interrupted and a failed Result with code
`timeout` is returned; engine errors come back with code `archive_error`.

Usage:
    result = execute_with_timeout(engine, "SELECT 42 AS answer", timeout=5.0)
    if result.success:
        columns, rows = result.value.columns, result.value.rows
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import duckdb

from cortex.core.logging import get_logger
from cortex.core.models import Result
from cortex.query.results import DegradedReason

if TYPE_CHECKING:
    import pandas as pd

    from cortex.core.connections import EngineHandle

logger = get_logger(__name__)


class QueryExecutionError(Exception):
    """A compiled query could not be answered.

    Raised inside the compiler and unifier to unwind out of nested helpers;
    always caught there and turned into a degraded result.
    """

    def __init__(self, reason: DegradedReason, detail: str):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}")

    @classmethod
    def from_result(cls, result: Result[Any]) -> QueryExecutionError:
        reason = DegradedReason(result.code or DegradedReason.ARCHIVE_ERROR.value)
        return cls(reason, result.error or "query failed")


@dataclass
class ExecutionResult:
    """Columns and rows of one executed statement."""

    sql: str
    columns: list[str] = field(default_factory=list)
    rows: list[tuple[Any, ...]] = field(default_factory=list)


def _fetch(
    cursor: duckdb.DuckDBPyConnection, sql: str, params: list[Any] | None
) -> Result[ExecutionResult]:
    try:
        relation = cursor.execute(sql, params) if params else cursor.execute(sql)
        rows = relation.fetchall()
        columns = [d[0] for d in cursor.description or []]
        return Result.ok(ExecutionResult(sql=sql, columns=columns, rows=rows))
    except duckdb.Error as e:
        return Result.fail(str(e), code=DegradedReason.ARCHIVE_ERROR.value)


def execute_with_timeout(
    engine: EngineHandle,
    sql: str,
    params: list[Any] | None = None,
    timeout: float | None = None,
    *,
    relations: dict[str, pd.DataFrame] | None = None,
) -> Result[ExecutionResult]:
    """Execute one statement on a fresh cursor.

    Args:
        engine: Engine handle to run on
        sql: Statement to execute
        params: Positional parameters for `?` placeholders
        timeout: Seconds before the cursor is interrupted; None or <= 0 waits forever
        relations: DataFrames registered by name on the cursor for this statement

    Returns:
        Result with ExecutionResult; failure code is a DegradedReason value
    """
    with engine.duckdb_cursor() as cursor:
        for name, frame in (relations or {}).items():
            cursor.register(name, frame)

        if timeout is None or timeout <= 0:
            return _fetch(cursor, sql, params)

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cortex-query")
        future = pool.submit(_fetch, cursor, sql, params)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            cursor.interrupt()
            logger.warning("query_timeout", timeout_seconds=timeout)
            return Result.fail(
                f"query exceeded {timeout:g}s timeout", code=DegradedReason.TIMEOUT.value
            )
        finally:
            # Wait for the interrupted statement to unwind before the cursor closes
            pool.shutdown(wait=True)
