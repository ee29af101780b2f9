"""Metric catalog.

Named business metrics ("Gross Profit" -> "SUM(revenue - cost)") shared by
every caller, so an ad-hoc question and a dashboard tile that name the same
metric compute it with the same formula.

Usage:
    from cortex.metrics.catalog import MetricCatalog

    catalog = MetricCatalog.from_yaml(Path("config/metrics.yaml"))
    catalog = MetricCatalog.from_mapping({"Gross Profit": "SUM(revenue - cost)"})

    if "Gross Profit" in catalog:
        expr = catalog.expression("Gross Profit")

YAML layout (either form):
    metrics:
      - name: Gross Profit
        formula: SUM(revenue - cost)
        format: currency
        category: profitability

    metrics:
      Gross Profit: SUM(revenue - cost)
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from cortex.core.logging import get_logger
from cortex.query.expressions import Expr, parse_formula

logger = get_logger(__name__)


class CatalogLoadError(Exception):
    """Error loading a metric catalog file."""

    def __init__(self, path: Path, message: str):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


class MetricDefinition(BaseModel):
    """One named metric and the formula it stands for."""

    name: str
    formula: str
    description: str | None = None
    format: str = "number"  # number, currency, percentage
    category: str | None = None


class MetricCatalog:
    """Name -> formula mapping consulted by the compiler.

    Formulas are parsed on first use and cached; a malformed formula only
    fails the queries that reference it.
    """

    def __init__(self, definitions: list[MetricDefinition] | None = None):
        self._definitions: dict[str, MetricDefinition] = {}
        self._expressions: dict[str, Expr] = {}
        for definition in definitions or []:
            self.register(definition)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> MetricCatalog:
        """Build a catalog from a plain name -> formula mapping."""
        return cls(
            [MetricDefinition(name=name, formula=formula) for name, formula in mapping.items()]
        )

    @classmethod
    def coerce(cls, catalog: MetricCatalog | Mapping[str, str] | None) -> MetricCatalog:
        """Accept a catalog, a plain mapping, or nothing."""
        if isinstance(catalog, MetricCatalog):
            return catalog
        if catalog is None:
            return cls()
        return cls.from_mapping(catalog)

    @classmethod
    def from_yaml(cls, path: Path) -> MetricCatalog:
        """Load a catalog from YAML.

        Raises:
            CatalogLoadError: If the file is missing, invalid, or an entry lacks a name/formula
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise CatalogLoadError(path, f"Cannot read file: {e}") from e
        except yaml.YAMLError as e:
            raise CatalogLoadError(path, f"Invalid YAML: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict) or "metrics" not in data:
            raise CatalogLoadError(path, "Missing top-level 'metrics' key")

        entries = data["metrics"] or []
        if isinstance(entries, dict):
            entries = [{"name": name, "formula": formula} for name, formula in entries.items()]
        if not isinstance(entries, list):
            raise CatalogLoadError(path, "'metrics' must be a list or a mapping")

        catalog = cls()
        for index, entry in enumerate(entries):
            catalog.register(cls._parse_entry(path, index, entry))

        logger.debug("metric_catalog_loaded", path=str(path), metrics=len(catalog))
        return catalog

    @staticmethod
    def _parse_entry(path: Path, index: int, entry: Any) -> MetricDefinition:
        if not isinstance(entry, dict):
            raise CatalogLoadError(path, f"metrics[{index}] must be a mapping")
        if not entry.get("name"):
            raise CatalogLoadError(path, f"metrics[{index}]: missing required field: name")
        if not entry.get("formula"):
            raise CatalogLoadError(path, f"metrics[{index}]: missing required field: formula")
        try:
            return MetricDefinition(**entry)
        except ValidationError as e:
            raise CatalogLoadError(path, f"metrics[{index}]: {e}") from e

    def register(self, definition: MetricDefinition) -> None:
        """Add or replace a metric."""
        self._definitions[definition.name] = definition
        self._expressions.pop(definition.name, None)

    def get(self, name: str) -> MetricDefinition | None:
        return self._definitions.get(name)

    def names(self) -> list[str]:
        return list(self._definitions)

    def expression(self, name: str) -> Expr:
        """Parsed formula for `name`.

        Raises:
            KeyError: If the metric is not in the catalog
            FormulaError: If its formula does not parse
        """
        if name not in self._expressions:
            self._expressions[name] = parse_formula(self._definitions[name].formula)
        return self._expressions[name]

    def to_mapping(self) -> dict[str, str]:
        return {name: d.formula for name, d in self._definitions.items()}

    def fingerprint(self) -> str:
        """Stable digest of the name -> formula mapping."""
        payload = json.dumps(self.to_mapping(), sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()[:16]

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def __iter__(self) -> Iterator[MetricDefinition]:
        return iter(self._definitions.values())
