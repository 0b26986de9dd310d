"""
Parser for the short textual rule notation emitted by the rule generation service.

Examples:
    productLine == "Premium"
    amount >= 100 && (region == "North" || vip == true)
    ceil(amount / 200)
    points * 2
    50

Text is tokenized and mapped onto the structured grammar in `models`; nothing
is ever executed.
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Any, List, Tuple

from .models import (
    And,
    CeilDiv,
    FieldCompare,
    FieldEquals,
    FieldNotEquals,
    FieldThreshold,
    FixedBonus,
    Multiply,
    Not,
    Or,
)


class NotationError(ValueError):
    pass


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>===|!==|==|!=|>=|<=|>|<|&&|\|\||!|\(|\)|/|\*)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_.]*)
    """,
    re.VERBOSE,
)

_COMPARISONS = {
    "==": "eq",
    "===": "eq",
    "!=": "ne",
    "!==": "ne",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}
_FLIPPED = {"eq": "eq", "ne": "ne", "gt": "lt", "gte": "lte", "lt": "gt", "lte": "gte"}
_KEYWORDS = {"true": True, "false": False, "null": None, "none": None}
_RECORD_PREFIXES = ("transactionData.", "transaction.", "record.")

Token = Tuple[str, Any]


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise NotationError(f"Unexpected character {text[pos]!r} at position {pos} in {text!r}.")
        pos = match.end()
        kind = match.lastgroup
        raw = match.group()
        if kind == "ws":
            continue
        if kind == "string":
            tokens.append(("literal", re.sub(r"\\(.)", r"\1", raw[1:-1])))
        elif kind == "number":
            tokens.append(("literal", Decimal(raw)))
        elif kind == "ident":
            lowered = raw.lower()
            if lowered in _KEYWORDS:
                tokens.append(("literal", _KEYWORDS[lowered]))
            elif lowered in ("and", "or", "not"):
                tokens.append(("op", {"and": "&&", "or": "||", "not": "!"}[lowered]))
            else:
                tokens.append(("ident", _strip_record_prefix(raw)))
        else:
            tokens.append(("op", raw))
    return tokens


def parse_condition(text: str) -> Any:
    parser = _Parser(tokenize(text), text)
    node = parser.parse_or()
    parser.expect_end()
    return node


def parse_calculation(text: str) -> Any:
    tokens = tokenize(text)
    shape = [kind if kind != "op" else value for kind, value in tokens]

    # 50
    if shape == ["literal"] and _is_decimal(tokens[0][1]):
        amount = tokens[0][1]
        if amount != amount.to_integral_value() or amount < 0:
            raise NotationError(f"Fixed bonus must be a non-negative whole number: {text!r}")
        return FixedBonus(amount=int(amount))

    # ident * n  |  n * ident
    if shape == ["ident", "*", "literal"] and _is_decimal(tokens[2][1]):
        return Multiply(field=tokens[0][1], factor=tokens[2][1])
    if shape == ["literal", "*", "ident"] and _is_decimal(tokens[0][1]):
        return Multiply(field=tokens[2][1], factor=tokens[0][1])

    # ceil(ident / n)  |  ceil(ident * n)  |  floor(ident * n)  |  round(ident * n)
    if len(tokens) == 6 and shape[0] == "ident" and shape[1] == "(" and shape[5] == ")":
        func = tokens[0][1].lower().removeprefix("math.")
        inner_field, inner_op, inner_value = tokens[2], shape[3], tokens[4]
        if inner_field[0] == "ident" and inner_value[0] == "literal" and _is_decimal(inner_value[1]):
            if func == "ceil" and inner_op == "/":
                if inner_value[1] <= 0:
                    raise NotationError(f"Divisor must be positive: {text!r}")
                return CeilDiv(field=inner_field[1], divisor=inner_value[1])
            if inner_op == "*" and func in ("ceil", "floor", "round"):
                rounding = {"ceil": "ceiling", "floor": "floor", "round": "half_up"}[func]
                return Multiply(field=inner_field[1], factor=inner_value[1], rounding=rounding)

    raise NotationError(f"Unsupported calculation: {text!r}")


class _Parser:
    def __init__(self, tokens: List[Token], text: str):
        self._tokens = tokens
        self._pos = 0
        self._text = text

    def _peek(self) -> Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _take(self) -> Token:
        tok = self._peek()
        if tok is None:
            raise NotationError(f"Unexpected end of condition: {self._text!r}")
        self._pos += 1
        return tok

    def _at_op(self, value: str) -> bool:
        return self._peek() == ("op", value)

    def expect_end(self) -> None:
        if self._peek() is not None:
            raise NotationError(f"Unexpected token {self._peek()[1]!r} in {self._text!r}")

    def parse_or(self) -> Any:
        nodes = [self.parse_and()]
        while self._at_op("||"):
            self._take()
            nodes.append(self.parse_and())
        return nodes[0] if len(nodes) == 1 else Or(conditions=nodes)

    def parse_and(self) -> Any:
        nodes = [self.parse_unary()]
        while self._at_op("&&"):
            self._take()
            nodes.append(self.parse_unary())
        return nodes[0] if len(nodes) == 1 else And(conditions=nodes)

    def parse_unary(self) -> Any:
        if self._at_op("!"):
            self._take()
            return Not(condition=self.parse_unary())
        if self._at_op("("):
            self._take()
            node = self.parse_or()
            if not self._at_op(")"):
                raise NotationError(f"Missing closing parenthesis in {self._text!r}")
            self._take()
            return node
        return self.parse_comparison()

    def parse_comparison(self) -> Any:
        left = self._take()
        if left[0] == "op":
            raise NotationError(f"Unexpected token {left[1]!r} in {self._text!r}")
        nxt = self._peek()
        if nxt is None or nxt[0] != "op" or nxt[1] not in _COMPARISONS:
            if left[0] == "ident":
                # Bare field name reads as `field == true`.
                return FieldEquals(field=left[1], value=True)
            raise NotationError(f"Expected a comparison after {left[1]!r} in {self._text!r}")
        op = _COMPARISONS[self._take()[1]]
        right = self._take()
        if right[0] == "op":
            raise NotationError(f"Unexpected token {right[1]!r} in {self._text!r}")

        if left[0] == "ident" and right[0] == "ident":
            return FieldCompare(field=left[1], operator=op, other_field=right[1])
        if left[0] == "literal" and right[0] == "ident":
            left, right, op = right, left, _FLIPPED[op]
        if left[0] != "ident":
            raise NotationError(f"Comparison needs at least one field in {self._text!r}")
        return _literal_comparison(left[1], op, right[1], self._text)


def _literal_comparison(field: str, op: str, value: Any, text: str) -> Any:
    if op == "eq":
        return FieldEquals(field=field, value=_plain(value))
    if op == "ne":
        return FieldNotEquals(field=field, value=_plain(value))
    if not _is_decimal(value):
        raise NotationError(f"Ordering comparison needs a numeric literal in {text!r}")
    return FieldThreshold(field=field, operator=op, value=value)


def _plain(value: Any) -> Any:
    if _is_decimal(value):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def _is_decimal(value: Any) -> bool:
    return isinstance(value, Decimal)


def _strip_record_prefix(name: str) -> str:
    for prefix in _RECORD_PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):]
    return name
