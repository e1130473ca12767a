"""
conditions.py - Boolean condition language for workflow edges.

Grammar:

    expr  := "true" | "false"
           | "exists" "(" key ")"
           | "eq" "(" key "," value ")"
           | "contains" "(" key "," value ")"
           | "and" "(" expr "," expr ")"
           | "or" "(" expr "," expr ")"
           | "not" "(" expr ")"
    key   := identifier
    value := quoted string | raw text up to the closing ")"

Quoted values may use single or double quotes; a backslash before the
matching quote keeps it in the value. A quote only opens a string at the
start of an argument, so O'Brien is a plain value. Unquoted values are
taken verbatim (trimmed) and cannot contain "(", ")" or ",".

Comparison semantics: eq and contains compare string forms, so the number
3 equals the value "3" and True equals "true". A missing key never equals
anything. contains only matches when the stored value is a list.

Usage:
    from tiller.workflow.conditions import evaluate_condition, parse_condition

    evaluate_condition('and(exists(plan), eq(status, "ready"))', state)
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Mapping, Optional, Union

from ..runtime.errors import ValidationError


class ConditionSyntaxError(ValidationError):
    """Raised when a condition expression does not parse."""

    def __init__(self, expression: str, message: str, position: int):
        self.expression = expression
        self.position = position
        super().__init__(f"{message} at position {position} in condition: {expression}")


# =============================================================================
# AST
# =============================================================================


@dataclass(frozen=True)
class Literal:
    value: bool


@dataclass(frozen=True)
class Exists:
    key: str


@dataclass(frozen=True)
class Eq:
    key: str
    value: str


@dataclass(frozen=True)
class Contains:
    key: str
    value: str


@dataclass(frozen=True)
class And:
    left: "ConditionNode"
    right: "ConditionNode"


@dataclass(frozen=True)
class Or:
    left: "ConditionNode"
    right: "ConditionNode"


@dataclass(frozen=True)
class Not:
    operand: "ConditionNode"


ConditionNode = Union[Literal, Exists, Eq, Contains, And, Or, Not]


# =============================================================================
# Tokenizer
# =============================================================================

WORD = "WORD"
STRING = "STRING"
LPAREN = "LPAREN"
RPAREN = "RPAREN"
COMMA = "COMMA"
END = "END"

_PUNCTUATION = {"(": LPAREN, ")": RPAREN, ",": COMMA}
_QUOTES = ("'", '"')
_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    start: int
    end: int


def tokenize(expression: str) -> List[Token]:
    """Split an expression into tokens with source positions."""
    tokens: List[Token] = []
    i = 0
    length = len(expression)
    while i < length:
        ch = expression[i]
        if ch.isspace():
            i += 1
        elif ch in _PUNCTUATION:
            tokens.append(Token(_PUNCTUATION[ch], ch, i, i + 1))
            i += 1
        elif ch in _QUOTES and (not tokens or tokens[-1].kind in (LPAREN, COMMA)):
            start = i
            i += 1
            chars: List[str] = []
            while i < length and expression[i] != ch:
                if expression[i] == "\\" and i + 1 < length and expression[i + 1] == ch:
                    i += 1
                chars.append(expression[i])
                i += 1
            if i >= length:
                raise ConditionSyntaxError(expression, "Unterminated string", start)
            i += 1
            tokens.append(Token(STRING, "".join(chars), start, i))
        else:
            start = i
            while (
                i < length
                and not expression[i].isspace()
                and expression[i] not in _PUNCTUATION
            ):
                i += 1
            tokens.append(Token(WORD, expression[start:i], start, i))
    tokens.append(Token(END, "", length, length))
    return tokens


# =============================================================================
# Parser
# =============================================================================


class _Parser:
    """Recursive-descent parser over the token list."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.pos = 0

    def _peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def _next(self) -> Token:
        token = self._peek()
        self.pos += 1
        return token

    def _error(self, message: str, token: Optional[Token] = None) -> ConditionSyntaxError:
        return ConditionSyntaxError(self.expression, message, (token or self._peek()).start)

    def _expect(self, kind: str, what: str) -> Token:
        token = self._peek()
        if token.kind != kind:
            found = token.text or "end of input"
            raise self._error(f"Expected {what}, found '{found}'", token)
        return self._next()

    def parse(self) -> ConditionNode:
        if self._peek().kind == END:
            raise self._error("Empty condition")
        node = self._expression()
        if self._peek().kind != END:
            raise self._error(f"Unexpected '{self._peek().text}' after expression")
        return node

    def _expression(self) -> ConditionNode:
        token = self._peek()
        if token.kind != WORD:
            found = token.text or "end of input"
            raise self._error(f"Expected an expression, found '{found}'", token)

        if token.text in ("true", "false") and self._peek(1).kind != LPAREN:
            self._next()
            return Literal(token.text == "true")

        name = self._next().text
        if name in ("and", "or"):
            self._expect(LPAREN, "'('")
            left = self._expression()
            self._expect(COMMA, f"',' ({name} takes two arguments)")
            right = self._expression()
            self._expect(RPAREN, f"')' ({name} takes two arguments)")
            return And(left, right) if name == "and" else Or(left, right)
        if name == "not":
            self._expect(LPAREN, "'('")
            operand = self._expression()
            self._expect(RPAREN, "')' (not takes one argument)")
            return Not(operand)
        if name == "exists":
            self._expect(LPAREN, "'('")
            key = self._key()
            self._expect(RPAREN, "')' (exists takes one argument)")
            return Exists(key)
        if name in ("eq", "contains"):
            self._expect(LPAREN, "'('")
            key = self._key()
            self._expect(COMMA, f"',' ({name} takes two arguments)")
            value = self._value()
            self._expect(RPAREN, f"')' ({name} takes two arguments)")
            return Eq(key, value) if name == "eq" else Contains(key, value)

        raise self._error(f"Unknown operator '{name}'", token)

    def _key(self) -> str:
        token = self._peek()
        if token.kind != WORD or not _KEY_RE.match(token.text):
            found = token.text or "end of input"
            raise self._error(f"Expected a key, found '{found}'", token)
        self._next()
        return token.text

    def _value(self) -> str:
        first = self._peek()
        if first.kind == STRING:
            self._next()
            return first.text
        if first.kind != WORD:
            found = first.text or "end of input"
            raise self._error(f"Expected a value, found '{found}'", first)

        last = first
        while self._peek().kind == WORD:
            last = self._next()
        return self.expression[first.start:last.end].strip()


@lru_cache(maxsize=512)
def parse_condition(expression: str) -> ConditionNode:
    """Parse an expression into a ConditionNode.

    Raises:
        ConditionSyntaxError: On unknown operators, wrong arity, bad keys,
            unterminated strings, or trailing input.
    """
    return _Parser(expression.strip()).parse()


def validate_condition(expression: str) -> Optional[str]:
    """Return a syntax error message, or None if the expression parses."""
    try:
        parse_condition(expression)
    except ConditionSyntaxError as e:
        return str(e)
    return None


# =============================================================================
# Evaluation
# =============================================================================


_MISSING = object()


def coerce_to_string(value: Any) -> str:
    """String form used by eq/contains comparisons."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(coerce_to_string(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def evaluate(node: ConditionNode, state: Mapping[str, Any]) -> bool:
    """Evaluate a parsed condition against a read-only state mapping."""
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Exists):
        return state.get(node.key) is not None
    if isinstance(node, Eq):
        actual = state.get(node.key, _MISSING)
        if actual is _MISSING:
            return False
        return coerce_to_string(actual) == node.value
    if isinstance(node, Contains):
        actual = state.get(node.key)
        if not isinstance(actual, (list, tuple)):
            return False
        return any(coerce_to_string(item) == node.value for item in actual)
    if isinstance(node, And):
        return evaluate(node.left, state) and evaluate(node.right, state)
    if isinstance(node, Or):
        return evaluate(node.left, state) or evaluate(node.right, state)
    if isinstance(node, Not):
        return not evaluate(node.operand, state)
    raise TypeError(f"Unknown condition node: {node!r}")


def evaluate_condition(expression: Optional[str], state: Mapping[str, Any]) -> bool:
    """Parse and evaluate an expression. An absent condition is always true."""
    if expression is None:
        return True
    return evaluate(parse_condition(expression), state)
