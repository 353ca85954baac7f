"""Condition expression language used by gates, loops and conditional edges.

Expressions are small boolean formulas over a structured context::

    score >= 70
    phases.draft.word_count > 5000 and not review.blocked
    $.verdict == "pass" || retries < 3
    reviewer.notes == absent

Paths are dotted lookups into nested mappings (integer segments index
lists, ``$.`` is accepted as a prefix). A path that cannot be resolved
evaluates to :data:`ABSENT`, which compares false against everything
except the ``absent`` keyword.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Sequence, Union

from .errors import InvalidExpressionError


class _Absent:
    """Sentinel for a path missing from the context."""

    _instance = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "<absent>"


ABSENT = _Absent()

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?(?![\w.]))
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<op>===|!==|==|!=|>=|<=|>|<)
  | (?P<and>&&)
  | (?P<or>\|\|)
  | (?P<not>!)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<path>\$(?:\.[\w-]+|\[\d+\])*|[A-Za-z_][\w-]*(?:\.[\w-]+|\[\d+\])*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and": "and", "or": "or", "not": "not"}
_LITERALS = {"true": True, "false": False, "null": None}
_OP_ALIASES = {"===": "==", "!==": "!="}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


# ----------------------------------------------------------------------
# Syntax tree
@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class AbsentLiteral:
    pass


@dataclass(frozen=True)
class PathRef:
    segments: tuple[str, ...]


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Operand"
    right: "Operand"


@dataclass(frozen=True)
class Truthy:
    operand: "Operand"


@dataclass(frozen=True)
class Not:
    node: "Node"


@dataclass(frozen=True)
class And:
    nodes: tuple["Node", ...]


@dataclass(frozen=True)
class Or:
    nodes: tuple["Node", ...]


Operand = Union[Literal, AbsentLiteral, PathRef]
Node = Union[Compare, Truthy, Not, And, Or]


def tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise InvalidExpressionError(
                expression, f"unexpected character {expression[pos]!r} at {pos}"
            )
        kind = match.lastgroup
        text = match.group()
        if kind == "path" and text.lower() in _KEYWORDS:
            kind = _KEYWORDS[text.lower()]
        if kind != "ws":
            tokens.append(Token(kind, text, pos))
        pos = match.end()
    return tokens


def split_path(path: str) -> tuple[str, ...]:
    """Split ``$.a.b[0]`` into ``("a", "b", "0")``."""
    if path.startswith("$."):
        path = path[2:]
    elif path == "$":
        return ()
    return tuple(seg for seg in re.split(r"\.|\[|\]", path) if seg)


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0

    def _peek(self) -> Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self, *kinds: str) -> Token | None:
        token = self._peek()
        if token is not None and token.kind in kinds:
            self.index += 1
            return token
        return None

    def _fail(self, reason: str) -> InvalidExpressionError:
        return InvalidExpressionError(self.expression, reason)

    def parse(self) -> Node:
        if not self.tokens:
            raise self._fail("empty expression")
        node = self._or()
        leftover = self._peek()
        if leftover is not None:
            raise self._fail(f"unexpected {leftover.text!r} at {leftover.pos}")
        return node

    def _or(self) -> Node:
        nodes = [self._and()]
        while self._take("or"):
            nodes.append(self._and())
        return nodes[0] if len(nodes) == 1 else Or(tuple(nodes))

    def _and(self) -> Node:
        nodes = [self._not()]
        while self._take("and"):
            nodes.append(self._not())
        return nodes[0] if len(nodes) == 1 else And(tuple(nodes))

    def _not(self) -> Node:
        if self._take("not"):
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        if self._take("lparen"):
            node = self._or()
            if not self._take("rparen"):
                raise self._fail("missing closing parenthesis")
            return node
        left = self._operand()
        op = self._take("op")
        if op is None:
            return Truthy(left)
        right = self._operand()
        return Compare(_OP_ALIASES.get(op.text, op.text), left, right)

    def _operand(self) -> Operand:
        token = self._take("number", "string", "path")
        if token is None:
            found = self._peek()
            where = f"{found.text!r} at {found.pos}" if found else "end of expression"
            raise self._fail(f"expected operand, found {where}")
        if token.kind == "number":
            value = float(token.text) if "." in token.text else int(token.text)
            return Literal(value)
        if token.kind == "string":
            return Literal(re.sub(r"\\(.)", r"\1", token.text[1:-1]))
        lowered = token.text.lower()
        if lowered in _LITERALS:
            return Literal(_LITERALS[lowered])
        if lowered == "absent":
            return AbsentLiteral()
        return PathRef(split_path(token.text))


@lru_cache(maxsize=512)
def parse(expression: str) -> Node:
    """Parse ``expression`` into a syntax tree, raising on malformed input."""
    return _Parser(expression.strip()).parse()


def resolve_path(path: str | Sequence[str], context: Any) -> Any:
    """Look up a dotted path in ``context``; return :data:`ABSENT` when missing."""
    segments = split_path(path) if isinstance(path, str) else tuple(path)
    current = context
    for segment in segments:
        if isinstance(current, Mapping):
            if segment not in current:
                return ABSENT
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.lstrip("-").isdigit():
            idx = int(segment)
            if not -len(current) <= idx < len(current):
                return ABSENT
            current = current[idx]
        else:
            return ABSENT
    return current


def _operand_value(operand: Operand, context: Any) -> Any:
    if isinstance(operand, Literal):
        return operand.value
    if isinstance(operand, AbsentLiteral):
        return ABSENT
    return resolve_path(operand.segments, context)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _compare(node: Compare, context: Any) -> bool:
    left = _operand_value(node.left, context)
    right = _operand_value(node.right, context)

    if left is ABSENT or right is ABSENT:
        explicit = isinstance(node.left, AbsentLiteral) or isinstance(node.right, AbsentLiteral)
        if not explicit:
            return False
        both = left is ABSENT and right is ABSENT
        if node.op == "==":
            return both
        if node.op == "!=":
            return not both
        return False

    if node.op == "==":
        return left == right
    if node.op == "!=":
        return left != right

    comparable = (_is_number(left) and _is_number(right)) or (
        isinstance(left, str) and isinstance(right, str)
    )
    if not comparable:
        return False
    if node.op == ">=":
        return left >= right
    if node.op == "<=":
        return left <= right
    if node.op == ">":
        return left > right
    return left < right


def _evaluate(node: Node, context: Any) -> bool:
    if isinstance(node, Compare):
        return _compare(node, context)
    if isinstance(node, Truthy):
        value = _operand_value(node.operand, context)
        return value is not ABSENT and bool(value)
    if isinstance(node, Not):
        return not _evaluate(node.node, context)
    if isinstance(node, And):
        return all(_evaluate(n, context) for n in node.nodes)
    if isinstance(node, Or):
        return any(_evaluate(n, context) for n in node.nodes)
    raise TypeError(f"Unknown expression node: {node!r}")


def evaluate(expression: str, context: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against ``context``.

    Raises:
        InvalidExpressionError: If the expression is malformed.
    """
    if not isinstance(expression, str):
        raise InvalidExpressionError(repr(expression), "expression must be a string")
    return _evaluate(parse(expression), context)


def validate_expression(expression: str) -> None:
    """Raise :class:`InvalidExpressionError` if ``expression`` does not parse."""
    if not isinstance(expression, str):
        raise InvalidExpressionError(repr(expression), "expression must be a string")
    parse(expression)


__all__ = ["ABSENT", "evaluate", "parse", "resolve_path", "split_path", "validate_expression"]
