"""Evaluation of constant expressions that appear in assembler immediates.

Expressions follow Go constant-expression syntax: integer and floating
literals, parentheses, unary ``+ - ^`` and the binary operators
``* / % << >> & &^ + - | ^`` with Go's two precedence levels.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Optional, Union

UINT64_MASK = (1 << 64) - 1
INT64_MAX = (1 << 63) - 1


class _Unsupported(Exception):
    """Raised internally when an expression cannot be parsed or evaluated."""


@dataclass(frozen=True)
class _Number:
    text: str
    is_float: bool


@dataclass(frozen=True)
class _Unary:
    op: str
    operand: "_Node"


@dataclass(frozen=True)
class _Binary:
    op: str
    left: "_Node"
    right: "_Node"


_Node = Union[_Number, _Unary, _Binary]

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<num>
        0[xX][0-9a-fA-F_]*(?:\.[0-9a-fA-F_]*)?(?:[pP][+-]?[0-9_]+)?
        |0[bB][01_]+
        |0[oO][0-7_]+
        |(?:[0-9][0-9_]*(?:\.[0-9_]*)?|\.[0-9][0-9_]*)(?:[eE][+-]?[0-9_]+)?
    )
    |(?P<op>&\^|<<|>>|[-+*/%&|^()])
    """,
    re.VERBOSE,
)

_BINARY_PRECEDENCE = {
    "*": 5,
    "/": 5,
    "%": 5,
    "<<": 5,
    ">>": 5,
    "&": 5,
    "&^": 5,
    "+": 4,
    "-": 4,
    "|": 4,
    "^": 4,
}


def _classify_number(text: str) -> bool:
    lower = text.lower()
    if lower.startswith("0x"):
        return "." in lower or "p" in lower
    if lower.startswith(("0b", "0o")):
        return False
    return "." in lower or "e" in lower


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise _Unsupported(text[pos:])
        kind = m.lastgroup
        value = m.group()
        pos = m.end()
        if kind == "ws":
            continue
        if kind == "num":
            if pos < len(text) and (text[pos].isalnum() or text[pos] in "_."):
                raise _Unsupported(value + text[pos])
        tokens.append((kind, value))
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self._tokens = tokens
        self._pos = 0

    def _peek(self) -> Optional[tuple[str, str]]:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _next(self) -> tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise _Unsupported("unexpected end of expression")
        self._pos += 1
        return tok

    def parse(self) -> _Node:
        node = self._binary(1)
        if self._peek() is not None:
            raise _Unsupported("trailing tokens")
        return node

    def _binary(self, min_prec: int) -> _Node:
        left = self._unary()
        while True:
            tok = self._peek()
            if tok is None or tok[0] != "op":
                return left
            prec = _BINARY_PRECEDENCE.get(tok[1])
            if prec is None or prec < min_prec:
                return left
            self._pos += 1
            right = self._binary(prec + 1)
            left = _Binary(tok[1], left, right)

    def _unary(self) -> _Node:
        kind, value = self._next()
        if kind == "num":
            return _Number(value, _classify_number(value))
        if value in ("+", "-", "^"):
            return _Unary(value, self._unary())
        if value == "(":
            inner = self._binary(1)
            if self._next() != ("op", ")"):
                raise _Unsupported("missing ')'")
            return inner
        raise _Unsupported(f"unexpected token {value!r}")


def _parse(text: str) -> _Node:
    tokens = _tokenize(text)
    if not tokens:
        raise _Unsupported("empty expression")
    return _Parser(tokens).parse()


def _int_literal(text: str) -> int:
    try:
        if text.lower().startswith(("0x", "0b", "0o")):
            return int(text, 0)
        if len(text) > 1 and text[0] == "0":
            return int("0o" + text[1:], 0)
        return int(text, 10)
    except ValueError as exc:
        raise _Unsupported(text) from exc


def _float_literal(text: str) -> float:
    lower = text.lower()
    try:
        if lower.startswith("0x"):
            if "p" not in lower:
                raise _Unsupported(text)
            mantissa = lower[2 : lower.index("p")]
            if not any(c in "0123456789abcdef" for c in mantissa):
                raise _Unsupported(text)
            value = float.fromhex(text.replace("_", ""))
        else:
            value = float(text)
    except (ValueError, OverflowError) as exc:
        raise _Unsupported(text) from exc
    if math.isinf(value):
        raise _Unsupported(text)
    return value


def _eval_uint(node: _Node) -> int:
    if isinstance(node, _Number):
        if node.is_float:
            raise _Unsupported(node.text)
        value = _int_literal(node.text)
        if value > UINT64_MASK:
            raise _Unsupported(node.text)
        return value
    if isinstance(node, _Unary):
        value = _eval_uint(node.operand)
        if node.op == "+":
            return value
        if node.op == "-":
            return -value & UINT64_MASK
        return ~value & UINT64_MASK
    lv = _eval_uint(node.left)
    rv = _eval_uint(node.right)
    op = node.op
    if op == "+":
        return (lv + rv) & UINT64_MASK
    if op == "-":
        return (lv - rv) & UINT64_MASK
    if op == "*":
        return (lv * rv) & UINT64_MASK
    if op in ("/", "%"):
        if rv == 0:
            raise _Unsupported("division by zero")
        return lv // rv if op == "/" else lv % rv
    if op == "<<":
        return 0 if rv >= 64 else (lv << rv) & UINT64_MASK
    if op == ">>":
        return 0 if rv >= 64 else lv >> rv
    if op == "&":
        return lv & rv
    if op == "|":
        return lv | rv
    if op == "^":
        return lv ^ rv
    if op == "&^":
        return lv & ~rv & UINT64_MASK
    raise _Unsupported(op)


def _eval_float(node: _Node) -> float:
    if isinstance(node, _Number):
        if node.is_float:
            return _float_literal(node.text)
        value = _int_literal(node.text)
        if value > INT64_MAX:
            raise _Unsupported(node.text)
        return float(value)
    if isinstance(node, _Unary):
        value = _eval_float(node.operand)
        if node.op == "+":
            return value
        if node.op == "-":
            return -value
        raise _Unsupported(node.op)
    lv = _eval_float(node.left)
    rv = _eval_float(node.right)
    op = node.op
    if op == "+":
        return lv + rv
    if op == "-":
        return lv - rv
    if op == "*":
        return lv * rv
    if op == "/":
        if rv == 0:
            raise _Unsupported("division by zero")
        return lv / rv
    raise _Unsupported(op)


def parse_imm_expr(text: str) -> Optional[int]:
    """Evaluate an integer immediate expression as an unsigned 64-bit value.

    The C-style ``~`` is accepted as bitwise complement. Returns None when
    the text is not a supported constant expression.
    """
    expr = text.replace("~", "^").strip()
    if not expr:
        return None
    try:
        return _eval_uint(_parse(expr))
    except _Unsupported:
        return None


def parse_imm_float_expr(text: str) -> Optional[float]:
    """Evaluate a floating immediate expression, or return None."""
    expr = text.strip()
    if not expr:
        return None
    try:
        return _eval_float(_parse(expr))
    except _Unsupported:
        return None