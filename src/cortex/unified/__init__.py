"""Hot/cold unified queries."""

from cortex.unified.engine import RowFilters, StatsFields, UnifiedQueryEngine, UnifiedStats
from cortex.unified.events import (
    EventTransformer,
    RealtimeEvent,
    TransformerRegistry,
    passthrough,
)

__all__ = [
    "EventTransformer",
    "RealtimeEvent",
    "RowFilters",
    "StatsFields",
    "TransformerRegistry",
    "UnifiedQueryEngine",
    "UnifiedStats",
    "passthrough",
]
