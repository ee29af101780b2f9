"""Numeric normalization for metric values.

Business exports carry numbers as text: "$1,234.50", "€ 99", "1 200".
Every path that sums, ranks or trends a metric goes through the same rule,
in Python (`normalize_numeric`) for hot rows and in SQL (`numeric_sql`) for
archive scans, so "$1,234.50" and "1234.50" always aggregate identically.

Unparseable values become NaN (Python) / NULL (SQL) and drop out of
aggregation instead of counting as zero.
"""

from __future__ import annotations

import math
import re
from decimal import Decimal
from typing import Any

CURRENCY_SYMBOLS = "$€£₹"

NUMBER_PATTERN = r"[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?"

# ASCII whitespace only, so Python and RE2 strip the same characters.
WHITESPACE = " \t\n\r\f\v"

_STRIP_RE = re.compile(rf"[{re.escape(CURRENCY_SYMBOLS)},{re.escape(WHITESPACE)}]")
_NUMBER_RE = re.compile(NUMBER_PATTERN, re.ASCII)

# Character class for DuckDB (RE2); `$` is literal inside a class.
_SQL_STRIP_CLASS = f"[{CURRENCY_SYMBOLS}, \\t\\n\\r\\f\\v]"


def normalize_numeric(value: Any) -> float:
    """Convert a raw cell value to a float, or NaN when it is not a number.

    Never raises. Idempotent: normalize_numeric(normalize_numeric(x)) ==
    normalize_numeric(x) for every numeric input.
    """
    if value is None or isinstance(value, bool):
        return math.nan
    if isinstance(value, int | float | Decimal):
        number = float(value)
        return number if math.isfinite(number) else math.nan
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    if not isinstance(value, str):
        return math.nan

    cleaned = _STRIP_RE.sub("", value)
    if not _NUMBER_RE.fullmatch(cleaned):
        return math.nan
    number = float(cleaned)
    return number if math.isfinite(number) else math.nan


def is_number(value: Any) -> bool:
    """True when `value` normalizes to a finite number."""
    return not math.isnan(normalize_numeric(value))


def numeric_sql(expression_sql: str) -> str:
    """Render the normalization rule around a SQL expression.

    Args:
        expression_sql: Already-quoted SQL expression (usually a column ref)

    Returns:
        A DOUBLE-valued SQL expression that is NULL where the value is not a number
    """
    cleaned = (
        f"REGEXP_REPLACE(TRIM(CAST({expression_sql} AS VARCHAR)), '{_SQL_STRIP_CLASS}', '', 'g')"
    )
    return (
        f"CASE WHEN REGEXP_FULL_MATCH({cleaned}, '{NUMBER_PATTERN}') "
        f"THEN TRY_CAST({cleaned} AS DOUBLE) END"
    )


def quote_identifier(name: str) -> str:
    """Quote a column name for DuckDB."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a string literal for DuckDB."""
    return "'" + value.replace("'", "''") + "'"
