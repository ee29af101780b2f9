"""Cortex analytical query core.

Runs structured query intents against columnar archives and folds recent,
not-yet-archived events into the same result.

Example:
    from cortex import EngineHandle, MetricCatalog, QueryIntent, UnifiedQueryEngine

    with EngineHandle.in_memory() as engine:
        unified = UnifiedQueryEngine(engine)
        result = unified.run_query(
            ["data/archives/orders.parquet"],
            QueryIntent(operation="aggregate", metrics=["revenue"], dimensions=["category"]),
            MetricCatalog(),
        )
        result.to_wire()
"""

__version__ = "0.1.0"

from cortex.core.connections import EngineConfig, EngineHandle
from cortex.core.models import Result
from cortex.metrics.catalog import MetricCatalog, MetricDefinition
from cortex.query.compiler import IntentCompiler
from cortex.query.intent import Aggregation, Operation, QueryIntent
from cortex.query.normalize import normalize_numeric
from cortex.query.results import DegradedReason, ResultSet
from cortex.storage.archive import AppendConflict, ArchiveStore, IngestError
from cortex.unified.engine import UnifiedQueryEngine
from cortex.unified.events import RealtimeEvent, TransformerRegistry

__all__ = [
    "Aggregation",
    "AppendConflict",
    "ArchiveStore",
    "DegradedReason",
    "EngineConfig",
    "EngineHandle",
    "IngestError",
    "IntentCompiler",
    "MetricCatalog",
    "MetricDefinition",
    "Operation",
    "QueryIntent",
    "RealtimeEvent",
    "Result",
    "ResultSet",
    "TransformerRegistry",
    "UnifiedQueryEngine",
    "normalize_numeric",
    "__version__",
]
