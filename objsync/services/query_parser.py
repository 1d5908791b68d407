"""Filter query language: tokenizer, AST and recursive-descent parser.

Grammar (``AND`` binds tighter than ``OR``, ``NOT`` binds tightest)::

    query    := or_expr
    or_expr  := and_expr ("OR" and_expr)*
    and_expr := not_expr ("AND" not_expr)*
    not_expr := "NOT" not_expr | "(" query ")" | atom

Atoms are ``tag:<key><op><value>``, ``mime_type:<glob>``, ``path:<glob>``,
``backend:<id>``, ``size<op><bytes>`` and ``modified_time<op><date>``.
Values may be double-quoted to include spaces, parentheses or keywords.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from objsync.exceptions import ValidationError
from objsync.services.datetime_service import is_relative, parse_datetime

OPERATORS = (">=", "<=", "=", ">", "<")
GLOB_FIELDS = frozenset({"mime_type", "path", "backend"})
COMPARISON_FIELDS = frozenset({"size", "modified_time"})

_FIELD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([A-Za-z]*)$")
_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}


class TokenKind(StrEnum):
    LPAREN = "("
    RPAREN = ")"
    AND = "AND"
    OR = "OR"
    NOT = "NOT"
    ATOM = "atom"
    EOF = "end of query"


_KEYWORDS = {"AND": TokenKind.AND, "OR": TokenKind.OR, "NOT": TokenKind.NOT}


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    position: int


@dataclass(frozen=True)
class TagPredicate:
    """``tag:<key><op><value>``."""

    key: str
    op: str
    value: str
    position: int = 0


@dataclass(frozen=True)
class FieldPredicate:
    """Predicate on a built-in file attribute.

    Glob fields (``mime_type``, ``path``, ``backend``) always carry ``op="="``.
    """

    field: str
    op: str
    value: str
    position: int = 0


@dataclass(frozen=True)
class And:
    terms: tuple[Node, ...]


@dataclass(frozen=True)
class Or:
    terms: tuple[Node, ...]


@dataclass(frozen=True)
class Not:
    operand: Node


Node = TagPredicate | FieldPredicate | And | Or | Not


def parse_size(text: str) -> int:
    """Parse ``512``, ``10MB``, ``1.5GiB`` into a byte count. Raises ValueError."""
    match = _SIZE_RE.match(text.strip())
    if match is None:
        raise ValueError(f"Invalid size: {text!r}")
    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"Unknown size unit: {unit!r}")
    return int(float(number) * multiplier)


def _skip_quoted(query: str, start: int) -> int:
    """Return the index just past the quoted string opening at ``start``."""
    index = start + 1
    while index < len(query):
        char = query[index]
        if char == "\\":
            index += 2
            continue
        if char == '"':
            return index + 1
        index += 1
    raise ValidationError("Unterminated quoted string", start)


def tokenize(query: str) -> list[Token]:
    """Split a query into tokens, recording each token's character offset."""
    tokens: list[Token] = []
    index = 0
    length = len(query)
    while index < length:
        char = query[index]
        if char.isspace():
            index += 1
            continue
        if char == "(":
            tokens.append(Token(TokenKind.LPAREN, char, index))
            index += 1
            continue
        if char == ")":
            tokens.append(Token(TokenKind.RPAREN, char, index))
            index += 1
            continue

        start = index
        while index < length and not query[index].isspace() and query[index] not in "()":
            if query[index] == '"':
                index = _skip_quoted(query, index)
            else:
                index += 1
        word = query[start:index]
        kind = _KEYWORDS.get(word.upper(), TokenKind.ATOM)
        tokens.append(Token(kind, word, start))

    tokens.append(Token(TokenKind.EOF, "", length))
    return tokens


def _unquote(raw: str, position: int) -> str:
    if not raw.startswith('"'):
        if '"' in raw:
            raise ValidationError("Quotes must enclose the whole value", position)
        return raw
    if len(raw) < 2 or not raw.endswith('"') or _skip_quoted(raw, 0) != len(raw):
        raise ValidationError("Unexpected characters after quoted value", position)
    body = raw[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def _split_operator(text: str, position: int) -> tuple[str, str]:
    for op in OPERATORS:
        if text.startswith(op):
            return op, text[len(op) :]
    raise ValidationError(f"Expected one of {', '.join(OPERATORS)}", position)


def _parse_tag(body: str, position: int, start: int) -> TagPredicate:
    op_index = next((i for i, char in enumerate(body) if char in "=<>"), None)
    if op_index is None:
        raise ValidationError("Expected an operator after the tag key", position + len(body))
    key = body[:op_index]
    if not key:
        raise ValidationError("Missing tag key", position)
    if '"' in key:
        raise ValidationError("Tag keys cannot be quoted", position)
    op, raw_value = _split_operator(body[op_index:], position + op_index)
    value_position = position + op_index + len(op)
    if not raw_value:
        raise ValidationError(f"Missing value for tag '{key}'", value_position)
    value = _unquote(raw_value, value_position)
    return TagPredicate(key=key, op=op, value=value, position=start)


def parse_atom(text: str, position: int) -> TagPredicate | FieldPredicate:
    """Parse a single predicate token."""
    match = _FIELD_RE.match(text)
    if match is None:
        raise ValidationError(f"Expected a predicate, got {text!r}", position)
    field = match.group(0).lower()
    rest = text[match.end() :]
    rest_position = position + match.end()

    if field == "tag":
        if not rest.startswith(":"):
            raise ValidationError("Expected ':' after 'tag'", rest_position)
        return _parse_tag(rest[1:], rest_position + 1, position)

    if field in GLOB_FIELDS:
        if not rest.startswith(":"):
            raise ValidationError(f"Expected ':' after '{field}'", rest_position)
        value = _unquote(rest[1:], rest_position + 1)
        if not value:
            raise ValidationError(f"Missing value for '{field}'", rest_position + 1)
        return FieldPredicate(field=field, op="=", value=value, position=position)

    if field in COMPARISON_FIELDS:
        op, raw_value = _split_operator(rest, rest_position)
        value_position = rest_position + len(op)
        value = _unquote(raw_value, value_position)
        if not value:
            raise ValidationError(f"Missing value for '{field}'", value_position)
        _check_comparison_value(field, value, value_position)
        return FieldPredicate(field=field, op=op, value=value, position=position)

    raise ValidationError(f"Unknown field {match.group(0)!r}", position)


def _check_comparison_value(field: str, value: str, position: int) -> None:
    try:
        if field == "size":
            parse_size(value)
        elif not is_relative(value):
            parse_datetime(value)
    except ValueError as exc:
        raise ValidationError(str(exc), position) from exc


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._index = 0

    def _peek(self) -> Token:
        return self._tokens[self._index]

    def _advance(self) -> Token:
        token = self._tokens[self._index]
        if token.kind != TokenKind.EOF:
            self._index += 1
        return token

    def parse(self) -> Node:
        if self._peek().kind == TokenKind.EOF:
            raise ValidationError("Empty query", 0)
        node = self._or_expr()
        token = self._peek()
        if token.kind != TokenKind.EOF:
            raise ValidationError(f"Unexpected token {token.text!r}", token.position)
        return node

    def _or_expr(self) -> Node:
        terms = [self._and_expr()]
        while self._peek().kind == TokenKind.OR:
            self._advance()
            terms.append(self._and_expr())
        return terms[0] if len(terms) == 1 else Or(tuple(terms))

    def _and_expr(self) -> Node:
        terms = [self._not_expr()]
        while self._peek().kind == TokenKind.AND:
            self._advance()
            terms.append(self._not_expr())
        return terms[0] if len(terms) == 1 else And(tuple(terms))

    def _not_expr(self) -> Node:
        token = self._advance()
        if token.kind == TokenKind.NOT:
            return Not(self._not_expr())
        if token.kind == TokenKind.LPAREN:
            node = self._or_expr()
            closing = self._advance()
            if closing.kind != TokenKind.RPAREN:
                raise ValidationError("Expected ')'", closing.position)
            return node
        if token.kind == TokenKind.ATOM:
            return parse_atom(token.text, token.position)
        raise ValidationError(f"Unexpected {token.kind.value} {token.text!r}", token.position)


def parse_query(query: str) -> Node:
    """Parse a filter query into an AST. Raises ValidationError with the offending position."""
    return _Parser(tokenize(query)).parse()
