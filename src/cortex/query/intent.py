"""Structured query intents.

An intent is what the upstream interpreter extracted from a question: which
operation, which metrics, grouped by what. It is validated leniently: unknown
operations and aggregations are coerced to safe defaults and the coercion is
recorded in `warnings` instead of rejecting the query.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

DEFAULT_LIMIT = 10


class Operation(str, Enum):
    """Operation families the compiler understands."""

    RANK = "rank"
    TREND = "trend"
    AGGREGATE = "aggregate"
    SAMPLE = "sample"


class Aggregation(str, Enum):
    """Aggregation applied to a metric column."""

    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MIN = "min"
    MAX = "max"
    NONE = "none"


# Names emitted by the upstream interpreter
OPERATION_ALIASES: dict[str, Operation] = {
    "top_n": Operation.RANK,
    "ranking": Operation.RANK,
    "trend_analysis": Operation.TREND,
    "comparison": Operation.AGGREGATE,
    "category_analysis": Operation.AGGREGATE,
    "summary": Operation.AGGREGATE,
    "aggregation": Operation.AGGREGATE,
    "group_by": Operation.AGGREGATE,
}

AGGREGATION_ALIASES: dict[str, Aggregation] = {
    "average": Aggregation.AVG,
    "mean": Aggregation.AVG,
    "total": Aggregation.SUM,
}


def _as_names(value: Any) -> list[str]:
    """Accept a single name or a list of names; drop blanks and duplicates."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    names: dict[str, None] = {}
    for item in value:
        if item is None:
            continue
        name = str(item).strip()
        if name:
            names.setdefault(name)
    return list(names)


class QueryIntent(BaseModel):
    """Immutable description of one analytical question.

    `metrics[0]` is the primary metric. `name_column` labels rows of a per-row
    rank; `time_dimension` is the key a trend groups on (falls back to the
    first dimension).
    """

    model_config = ConfigDict(frozen=True)

    operation: Operation = Operation.SAMPLE
    metrics: tuple[str, ...] = ()
    dimensions: tuple[str, ...] = ()
    aggregation: Aggregation = Aggregation.SUM
    limit: int = DEFAULT_LIMIT
    ascending: bool = False
    name_column: str | None = None
    time_dimension: str | None = None
    warnings: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        warnings = list(data.get("warnings") or [])

        operation = data.get("operation")
        if isinstance(operation, Operation) or operation is None:
            pass
        else:
            key = str(operation).strip().lower()
            if key in Operation._value2member_map_:
                data["operation"] = Operation(key)
            elif key in OPERATION_ALIASES:
                data["operation"] = OPERATION_ALIASES[key]
            else:
                warnings.append(f"unknown operation {operation!r}, using sample")
                data["operation"] = Operation.SAMPLE

        aggregation = data.get("aggregation")
        if aggregation is None:
            data.pop("aggregation", None)
        elif not isinstance(aggregation, Aggregation):
            key = str(aggregation).strip().lower()
            if key in Aggregation._value2member_map_:
                data["aggregation"] = Aggregation(key)
            elif key in AGGREGATION_ALIASES:
                data["aggregation"] = AGGREGATION_ALIASES[key]
            else:
                warnings.append(f"unknown aggregation {aggregation!r}, using sum")
                data["aggregation"] = Aggregation.SUM

        data["metrics"] = tuple(_as_names(data.get("metrics")))
        data["dimensions"] = tuple(_as_names(data.get("dimensions")))

        limit = data.get("limit")
        if limit is None:
            data.pop("limit", None)
        else:
            try:
                coerced = int(limit)
            except (TypeError, ValueError):
                coerced = 0
            if coerced <= 0 or isinstance(limit, bool):
                warnings.append(f"invalid limit {limit!r}, using {DEFAULT_LIMIT}")
                coerced = DEFAULT_LIMIT
            data["limit"] = coerced

        # Interpreters sometimes send sort direction as text
        order = data.pop("order", None) or data.pop("sort", None)
        if isinstance(order, str) and "ascending" not in data:
            data["ascending"] = order.strip().lower().startswith("asc")

        data["warnings"] = tuple(warnings)
        return data

    @property
    def primary_metric(self) -> str | None:
        return self.metrics[0] if self.metrics else None

    @property
    def temporal_dimension(self) -> str | None:
        if self.time_dimension:
            return self.time_dimension
        return self.dimensions[0] if self.dimensions else None

    def missing_fields(self) -> list[str]:
        """What the declared operation requires but this intent lacks."""
        missing: list[str] = []
        if self.operation == Operation.SAMPLE:
            return missing
        if not self.metrics:
            missing.append("metric")
        if self.operation == Operation.AGGREGATE and not self.dimensions:
            missing.append("dimension")
        if self.operation == Operation.TREND and not self.temporal_dimension:
            missing.append("time_dimension")
        return missing
