"""Whitelisted arithmetic evaluator for reward formulas.

Grammar (recursive descent, Decimal arithmetic throughout)::

    expr   := term (("+" | "-") term)*
    term   := unary (("*" | "/") unary)*
    unary  := ("+" | "-") unary | atom
    atom   := NUMBER | NAME | NAME "(" expr ("," expr)* ")" | "(" expr ")"

Names resolve to numeric payload fields; calls resolve to a fixed set of
functions. Nothing derived from the stored string is ever executed.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Union

from bodydfi.errors import FormulaError

MAX_FORMULA_LENGTH = 512

_TOKEN_RE = re.compile(
    r"\s*(?:"
    r"(?P<number>\d+(?:\.\d*)?|\.\d+)"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?)"
    r"|(?P<op>[-+*/(),])"
    r")"
)


def _integral(rounding: str) -> Callable[..., Decimal]:
    def apply(*args: Decimal) -> Decimal:
        if len(args) != 1:
            raise FormulaError("Function expects exactly one argument")
        return args[0].to_integral_value(rounding=rounding)

    return apply


def _variadic(pick: Callable[..., Decimal]) -> Callable[..., Decimal]:
    def apply(*args: Decimal) -> Decimal:
        if not args:
            raise FormulaError("Function expects at least one argument")
        return pick(args)

    return apply


FUNCTIONS: dict[str, Callable[..., Decimal]] = {
    "min": _variadic(min),
    "max": _variadic(max),
    "floor": _integral(ROUND_FLOOR),
    "ceil": _integral(ROUND_CEILING),
    "round": _integral(ROUND_HALF_UP),
}


# --- AST ---------------------------------------------------------------


@dataclass(frozen=True)
class Number:
    value: Decimal


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Call:
    function: str
    args: tuple[Node, ...]


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Node


@dataclass(frozen=True)
class BinOp:
    op: str
    left: Node
    right: Node


Node = Union[Number, Name, Call, UnaryOp, BinOp]


# --- Parsing -----------------------------------------------------------


def _tokenize(source: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    source = source.rstrip()
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None or match.end() == pos:
            raise FormulaError(f"Unexpected character at position {pos}: {source[pos]!r}")
        kind = match.lastgroup
        if kind is None:
            raise FormulaError(f"Unexpected character at position {pos}")
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> tuple[str, str]:
        token = self.peek()
        if token is None:
            raise FormulaError("Unexpected end of formula")
        self.pos += 1
        return token

    def expect(self, op: str) -> None:
        kind, text = self.take()
        if kind != "op" or text != op:
            raise FormulaError(f"Expected {op!r}, got {text!r}")

    def parse(self) -> Node:
        node = self.expr()
        if self.peek() is not None:
            raise FormulaError(f"Unexpected token {self.peek()[1]!r}")  # type: ignore[index]
        return node

    def expr(self) -> Node:
        node = self.term()
        while (token := self.peek()) is not None and token[0] == "op" and token[1] in "+-":
            self.take()
            node = BinOp(token[1], node, self.term())
        return node

    def term(self) -> Node:
        node = self.unary()
        while (token := self.peek()) is not None and token[0] == "op" and token[1] in "*/":
            self.take()
            node = BinOp(token[1], node, self.unary())
        return node

    def unary(self) -> Node:
        token = self.peek()
        if token is not None and token[0] == "op" and token[1] in "+-":
            self.take()
            return UnaryOp(token[1], self.unary())
        return self.atom()

    def atom(self) -> Node:
        kind, text = self.take()
        if kind == "number":
            return Number(Decimal(text))
        if kind == "name":
            nxt = self.peek()
            if nxt == ("op", "("):
                return self.call(text)
            if "." in text:
                raise FormulaError(f"Unknown identifier {text!r}")
            return Name(text)
        if (kind, text) == ("op", "("):
            node = self.expr()
            self.expect(")")
            return node
        raise FormulaError(f"Unexpected token {text!r}")

    def call(self, name: str) -> Node:
        function = name.removeprefix("Math.")
        if function not in FUNCTIONS:
            raise FormulaError(f"Function {name!r} is not allowed")
        self.expect("(")
        args = [self.expr()]
        while self.peek() == ("op", ","):
            self.take()
            args.append(self.expr())
        self.expect(")")
        return Call(function, tuple(args))


def parse_formula(source: str) -> Node:
    """Parse a formula into an AST, raising FormulaError on any syntax problem."""
    if not source or not source.strip():
        raise FormulaError("Formula is empty")
    if len(source) > MAX_FORMULA_LENGTH:
        raise FormulaError("Formula is too long")
    return _Parser(_tokenize(source)).parse()


def formula_variables(node: Node) -> set[str]:
    """Names referenced by a parsed formula."""
    if isinstance(node, Name):
        return {node.name}
    if isinstance(node, Call):
        return set().union(*(formula_variables(arg) for arg in node.args))
    if isinstance(node, UnaryOp):
        return formula_variables(node.operand)
    if isinstance(node, BinOp):
        return formula_variables(node.left) | formula_variables(node.right)
    return set()


# --- Evaluation --------------------------------------------------------


def numeric_fields(payload: Mapping[str, Any]) -> dict[str, Decimal]:
    """Top-level numeric payload values usable as formula variables (bools excluded)."""
    fields: dict[str, Decimal] = {}
    for key, value in payload.items():
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            continue
        try:
            number = Decimal(repr(value)) if isinstance(value, float) else Decimal(value)
        except InvalidOperation:
            continue
        if number.is_finite():
            fields[key] = number
    return fields


def _evaluate(node: Node, variables: Mapping[str, Decimal]) -> Decimal:
    if isinstance(node, Number):
        return node.value
    if isinstance(node, Name):
        if node.name not in variables:
            raise FormulaError(f"Unknown identifier {node.name!r}")
        return variables[node.name]
    if isinstance(node, UnaryOp):
        value = _evaluate(node.operand, variables)
        return -value if node.op == "-" else value
    if isinstance(node, Call):
        return FUNCTIONS[node.function](*(_evaluate(arg, variables) for arg in node.args))

    left = _evaluate(node.left, variables)
    right = _evaluate(node.right, variables)
    if node.op == "+":
        return left + right
    if node.op == "-":
        return left - right
    if node.op == "*":
        return left * right
    if right == 0:
        raise FormulaError("Division by zero")
    return left / right


def evaluate_formula(source: str, payload: Mapping[str, Any]) -> Decimal:
    """Evaluate a formula against a payload's numeric fields."""
    try:
        return _evaluate(parse_formula(source), numeric_fields(payload))
    except (InvalidOperation, ArithmeticError) as exc:
        raise FormulaError(f"Formula arithmetic failed: {exc}") from exc
