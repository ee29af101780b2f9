"""Named business metrics."""

from cortex.metrics.catalog import CatalogLoadError, MetricCatalog, MetricDefinition

__all__ = [
    "CatalogLoadError",
    "MetricCatalog",
    "MetricDefinition",
]
