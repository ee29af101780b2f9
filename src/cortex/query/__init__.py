"""Query intents, expressions and results.

The compiler and cache live in `cortex.query.compiler` and
`cortex.query.cache`; they depend on the metric catalog and are imported
from there directly.
"""

from cortex.query.execution import QueryExecutionError, execute_with_timeout
from cortex.query.expressions import FormulaError, parse_formula
from cortex.query.intent import Aggregation, Operation, QueryIntent
from cortex.query.normalize import is_number, normalize_numeric, numeric_sql
from cortex.query.results import Degradation, DegradedReason, ResultSet

__all__ = [
    "Aggregation",
    "Degradation",
    "DegradedReason",
    "FormulaError",
    "Operation",
    "QueryExecutionError",
    "QueryIntent",
    "ResultSet",
    "execute_with_timeout",
    "is_number",
    "normalize_numeric",
    "numeric_sql",
    "parse_formula",
]
