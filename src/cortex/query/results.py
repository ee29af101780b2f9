"""Query results and degradation reasons.

A query never hard-fails: when an intent cannot be answered as asked, the
caller still gets rows (a raw sample) together with a `Degradation` saying
why. `ResultSet.to_wire()` is the JSON shape handed to collaborators.
"""

from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from cortex.query.normalize import is_number, normalize_numeric

# Integers beyond this cannot round-trip through a JavaScript number
_MAX_SAFE_INTEGER = 2**53 - 1


class DegradedReason(str, Enum):
    """Why a result is a fallback sample instead of the requested shape."""

    MISSING_FIELDS = "missing_fields"
    UNSUPPORTED_INTENT = "unsupported_intent"
    INVALID_FORMULA = "invalid_formula"
    ARCHIVE_ERROR = "archive_error"
    TIMEOUT = "timeout"


class Degradation(BaseModel):
    reason: DegradedReason
    detail: str = ""


class ResultStats(BaseModel):
    """Scalar rollups over one result column."""

    column: str
    total: float = 0.0
    count: int = 0
    distinct_count: int = 0


def to_json_safe(value: Any) -> Any:
    """Convert a DuckDB/Python value into something json.dumps accepts."""
    if value is None or isinstance(value, bool | str):
        return value
    if isinstance(value, int):
        return value if abs(value) <= _MAX_SAFE_INTEGER else str(value)
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Decimal):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set):
        return [to_json_safe(v) for v in value]
    return str(value)


class ResultSet(BaseModel):
    """Rows and column names produced by one query call."""

    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    degraded: Degradation | None = None
    stats: ResultStats | None = None
    warnings: list[str] = Field(default_factory=list)
    source_count: int = 1

    @property
    def fallback(self) -> bool:
        return self.degraded is not None

    @classmethod
    def from_tuples(
        cls, columns: list[str], rows: list[tuple[Any, ...]], **kwargs: Any
    ) -> ResultSet:
        return cls(
            columns=list(columns),
            rows=[dict(zip(columns, row, strict=False)) for row in rows],
            **kwargs,
        )

    def __len__(self) -> int:
        return len(self.rows)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to `{columns, rows, fallback}` with JSON-safe values."""
        wire: dict[str, Any] = {
            "columns": list(self.columns),
            "rows": [{k: to_json_safe(v) for k, v in row.items()} for row in self.rows],
            "fallback": self.fallback,
        }
        if self.degraded is not None:
            wire["degraded_reason"] = self.degraded.reason.value
            wire["degraded_detail"] = self.degraded.detail
        if self.warnings:
            wire["warnings"] = list(self.warnings)
        return wire

    def to_chart_points(
        self, label: str | None = None, value: str | None = None
    ) -> list[dict[str, Any]]:
        """Flatten into `[{name, value}]` points for a single-series chart.

        Defaults to the first column as the label and the first column after
        it whose values are numeric as the value. Non-numeric values become 0.
        """
        if not self.rows or not self.columns:
            return []
        label = label or self.columns[0]
        if value is None:
            candidates = [c for c in self.columns if c != label]
            value = next(
                (c for c in candidates if any(is_number(row.get(c)) for row in self.rows)),
                candidates[0] if candidates else label,
            )

        points = []
        for row in self.rows:
            number = normalize_numeric(row.get(value))
            points.append(
                {
                    "name": str(to_json_safe(row.get(label))),
                    "value": 0.0 if math.isnan(number) else number,
                }
            )
        return points

    def compute_stats(self, column: str) -> ResultStats:
        """Sum, count of numeric values and distinct count over `column`; cached on the set."""
        values = [row.get(column) for row in self.rows]
        numbers = [n for n in (normalize_numeric(v) for v in values) if not math.isnan(n)]
        self.stats = ResultStats(
            column=column,
            total=math.fsum(numbers),
            count=len(numbers),
            distinct_count=len({repr(v) for v in values if v is not None}),
        )
        return self.stats
