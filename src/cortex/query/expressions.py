"""Typed value expressions for metrics.

Metric formulas ("SUM(revenue - cost)", "SUM(revenue) / COUNT(order_id)")
are parsed into a small tree instead of being spliced into SQL text. The
tree renders to DuckDB SQL with every identifier quoted, and it can be split
into decomposable partial aggregates so the same formula can be evaluated
over several independently queried sources.

Grammar:
    expr    := term (("+" | "-") term)*
    term    := unary (("*" | "/") unary)*
    unary   := ("-" | "+") unary | primary
    primary := NUMBER | IDENT | QUOTED_IDENT | call | "(" expr ")"
    call    := AGG "(" ["DISTINCT"] expr ")" | "COUNT" "(" "*" ")"
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from cortex.query.normalize import numeric_sql, quote_identifier

AGGREGATE_FUNCTIONS = frozenset({"SUM", "AVG", "COUNT", "MIN", "MAX"})


class FormulaError(ValueError):
    """A metric formula could not be parsed or is not usable where it appears."""

    def __init__(self, formula: str, message: str):
        self.formula = formula
        self.message = message
        super().__init__(f"{message} in formula {formula!r}")


@dataclass(frozen=True)
class Column:
    name: str


@dataclass(frozen=True)
class Literal:
    value: float


@dataclass(frozen=True)
class Aggregate:
    func: str
    arg: Expr | None  # None only for COUNT(*)
    distinct: bool = False


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Negate:
    operand: Expr


Expr = Column | Literal | Aggregate | BinaryOp | Negate


# === Parsing ===

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?)
      | (?P<quoted>"(?:[^"]|"")*")
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
      | (?P<op>[-+*/(),])
    )
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str


def _tokenize(formula: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    text = formula.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None or match.end() == pos:
            raise FormulaError(formula, f"unexpected character {text[pos:].lstrip()[:1]!r}")
        kind = match.lastgroup
        assert kind is not None
        tokens.append(_Token(kind, match.group(kind)))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, formula: str):
        self.formula = formula
        self.tokens = _tokenize(formula)
        self.pos = 0

    def peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> _Token:
        token = self.peek()
        if token is None:
            raise FormulaError(self.formula, "unexpected end of formula")
        self.pos += 1
        return token

    def expect(self, text: str) -> None:
        token = self.take()
        if token.text != text:
            raise FormulaError(self.formula, f"expected {text!r}, found {token.text!r}")

    def at(self, text: str) -> bool:
        token = self.peek()
        return token is not None and token.kind == "op" and token.text == text

    def parse(self) -> Expr:
        if not self.tokens:
            raise FormulaError(self.formula, "empty formula")
        expr = self.expr()
        token = self.peek()
        if token is not None:
            raise FormulaError(self.formula, f"unexpected {token.text!r}")
        return expr

    def expr(self) -> Expr:
        node = self.term()
        while self.at("+") or self.at("-"):
            op = self.take().text
            node = BinaryOp(op, node, self.term())
        return node

    def term(self) -> Expr:
        node = self.unary()
        while self.at("*") or self.at("/"):
            op = self.take().text
            node = BinaryOp(op, node, self.unary())
        return node

    def unary(self) -> Expr:
        if self.at("-"):
            self.take()
            return Negate(self.unary())
        if self.at("+"):
            self.take()
            return self.unary()
        return self.primary()

    def primary(self) -> Expr:
        token = self.take()
        if token.kind == "number":
            return Literal(float(token.text))
        if token.kind == "quoted":
            return Column(token.text[1:-1].replace('""', '"'))
        if token.kind == "ident":
            if self.at("("):
                return self.call(token.text)
            return Column(token.text)
        if token.text == "(":
            node = self.expr()
            self.expect(")")
            return node
        raise FormulaError(self.formula, f"unexpected {token.text!r}")

    def call(self, name: str) -> Expr:
        func = name.upper()
        if func not in AGGREGATE_FUNCTIONS:
            raise FormulaError(self.formula, f"unsupported function {name}")
        self.expect("(")

        if func == "COUNT" and self.at("*"):
            self.take()
            self.expect(")")
            return Aggregate("COUNT", None)

        distinct = False
        token = self.peek()
        if token is not None and token.kind == "ident" and token.text.upper() == "DISTINCT":
            if func != "COUNT":
                raise FormulaError(self.formula, f"DISTINCT is only supported in COUNT, not {func}")
            self.take()
            distinct = True

        arg = self.expr()
        self.expect(")")
        if contains_aggregate(arg):
            raise FormulaError(self.formula, f"nested aggregate inside {func}")
        return Aggregate(func, arg, distinct)


def parse_formula(formula: str) -> Expr:
    """Parse a metric formula into an expression tree.

    Raises:
        FormulaError: If the formula is malformed or uses unsupported syntax
    """
    return _Parser(formula).parse()


# === Inspection ===


def walk(expr: Expr) -> Iterator[Expr]:
    """Pre-order traversal."""
    yield expr
    if isinstance(expr, Aggregate) and expr.arg is not None:
        yield from walk(expr.arg)
    elif isinstance(expr, BinaryOp):
        yield from walk(expr.left)
        yield from walk(expr.right)
    elif isinstance(expr, Negate):
        yield from walk(expr.operand)


def aggregates(expr: Expr) -> list[Aggregate]:
    """Aggregate nodes in pre-order. Positions are stable and used as partial ids."""
    return [node for node in walk(expr) if isinstance(node, Aggregate)]


def contains_aggregate(expr: Expr) -> bool:
    return any(isinstance(node, Aggregate) for node in walk(expr))


def referenced_columns(expr: Expr) -> list[str]:
    seen: dict[str, None] = {}
    for node in walk(expr):
        if isinstance(node, Column):
            seen.setdefault(node.name)
    return list(seen)


def bare_columns(expr: Expr) -> list[str]:
    """Columns referenced outside any aggregate."""
    if isinstance(expr, Column):
        return [expr.name]
    if isinstance(expr, BinaryOp):
        return bare_columns(expr.left) + bare_columns(expr.right)
    if isinstance(expr, Negate):
        return bare_columns(expr.operand)
    return []


# === SQL rendering ===


def _render_number(value: float) -> str:
    return str(int(value)) if value.is_integer() and abs(value) < 1e15 else repr(value)


def render_sql(expr: Expr, normalize: bool = True) -> str:
    """Render an expression as DuckDB SQL.

    Column refs in value position go through the numeric normalizer unless
    `normalize` is False; a bare column counted by COUNT is counted as stored.
    Division by zero yields NULL.
    """
    if isinstance(expr, Column):
        quoted = quote_identifier(expr.name)
        return numeric_sql(quoted) if normalize else quoted
    if isinstance(expr, Literal):
        return _render_number(expr.value)
    if isinstance(expr, Negate):
        return f"(-{render_sql(expr.operand, normalize)})"
    if isinstance(expr, BinaryOp):
        left = render_sql(expr.left, normalize)
        right = render_sql(expr.right, normalize)
        if expr.op == "/":
            return f"({left} / NULLIF({right}, 0))"
        return f"({left} {expr.op} {right})"
    return _render_aggregate(expr)


def _render_aggregate(node: Aggregate) -> str:
    if node.arg is None:
        return "COUNT(*)"
    if node.func == "COUNT":
        inner = render_sql(node.arg, normalize=not isinstance(node.arg, Column))
        return f"COUNT(DISTINCT {inner})" if node.distinct else f"COUNT({inner})"
    return f"{node.func}({render_sql(node.arg)})"


# === Partial aggregation ===


@dataclass(frozen=True)
class PartialColumn:
    """One decomposable partial aggregate computed per source.

    `combine` names how partials from several sources merge: sum, min or max.
    """

    alias: str
    sql: str
    combine: str


def partial_columns(expr: Expr, prefix: str) -> tuple[list[PartialColumn], list[str]]:
    """Split the aggregates of `expr` into per-source partial columns.

    Returns:
        (partial columns, warnings). COUNT(DISTINCT ...) is not decomposable;
        its per-source counts are summed and a warning is returned.
    """
    columns: list[PartialColumn] = []
    warnings: list[str] = []
    for index, node in enumerate(aggregates(expr)):
        alias = f"{prefix}_a{index}"
        if node.func == "AVG":
            assert node.arg is not None
            value_sql = render_sql(node.arg)
            columns.append(PartialColumn(f"{alias}_s", f"SUM({value_sql})", "sum"))
            columns.append(PartialColumn(f"{alias}_n", f"COUNT({value_sql})", "sum"))
        elif node.func in ("SUM", "COUNT"):
            if node.distinct:
                warnings.append(
                    "COUNT(DISTINCT ...) is summed across sources and may over-count "
                    "values present in more than one source"
                )
            columns.append(PartialColumn(alias, _render_aggregate(node), "sum"))
        else:
            columns.append(PartialColumn(alias, _render_aggregate(node), node.func.lower()))
    return columns, warnings


def combine_values(kind: str, left: Any, right: Any) -> Any:
    """Merge two partial values; None means the source had no input rows."""
    if left is None:
        return right
    if right is None:
        return left
    if kind == "sum":
        return left + right
    if kind == "min":
        return min(left, right)
    return max(left, right)


def combine_partials(
    columns: list[PartialColumn], into: dict[str, Any], partial_row: dict[str, Any]
) -> None:
    """Fold one source's partial row into the accumulated partials, in place."""
    for column in columns:
        into[column.alias] = combine_values(
            column.combine, into.get(column.alias), partial_row.get(column.alias)
        )


def evaluate(expr: Expr, partials: dict[str, Any], prefix: str) -> float | None:
    """Evaluate `expr` from combined partials produced by `partial_columns`."""
    values: list[float | None] = []
    for index, node in enumerate(aggregates(expr)):
        alias = f"{prefix}_a{index}"
        if node.func == "AVG":
            total, count = partials.get(f"{alias}_s"), partials.get(f"{alias}_n")
            values.append(float(total) / count if total is not None and count else None)
        else:
            raw = partials.get(alias)
            values.append(float(raw) if raw is not None else None)

    iterator = iter(values)
    return _evaluate(expr, iterator)


def _evaluate(expr: Expr, agg_values: Iterator[float | None]) -> float | None:
    # Consumes aggregate values in the same pre-order as aggregates().
    if isinstance(expr, Aggregate):
        return next(agg_values)
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Negate):
        operand = _evaluate(expr.operand, agg_values)
        return None if operand is None else -operand
    if isinstance(expr, BinaryOp):
        left = _evaluate(expr.left, agg_values)
        right = _evaluate(expr.right, agg_values)
        if left is None or right is None:
            return None
        if expr.op == "+":
            return left + right
        if expr.op == "-":
            return left - right
        if expr.op == "*":
            return left * right
        return left / right if right != 0 else None
    raise ValueError(f"column {expr.name!r} outside an aggregate cannot be evaluated")
