"""Sandboxed evaluation of step gating conditions.

Conditions such as ``output.metrics.score > 0.8`` are stored with workflow
definitions, so they are parsed into a small expression tree and interpreted
here instead of being executed as code. The language is limited to:

* literals: numbers, quoted strings, ``true``/``false``/``null``
  (``True``/``False``/``None`` are accepted too)
* field paths rooted at ``output``: ``output.a.b``, ``output.items[0]``,
  ``output["key with spaces"]``
* comparisons: ``==``, ``!=``, ``<``, ``<=``, ``>``, ``>=``
  (``===`` and ``!==`` are read as ``==`` and ``!=``)
* boolean connectives: ``and``/``&&``, ``or``/``||``, ``not``/``!``
* parentheses

A key that is missing from a mapping evaluates to ``null``. Anything else
that cannot be evaluated (unknown names, indexing into ``null``, ordering
``null`` against a number, syntax errors) makes the condition false.
"""

import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Union

from .exceptions import ConditionEvaluationError
from .logging import get_logger

logger = get_logger(__name__)

ROOT_NAME = "output"
PARSE_CACHE_SIZE = 256

_TOKEN_SPEC = [
    ("NUMBER", r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?"),
    ("STRING", r"\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*'"),
    ("OP", r"===|!==|==|!=|<=|>=|&&|\|\||[<>!()\[\].-]"),
    ("NAME", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("SKIP", r"\s+"),
    ("MISMATCH", r"."),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_KEYWORD_LITERALS = {
    "true": True, "True": True,
    "false": False, "False": False,
    "null": None, "None": None,
}
_OPERATOR_ALIASES = {
    "===": "==", "!==": "!=",
    "&&": "and", "||": "or", "!": "not",
}
_COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}
_STRING_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"'}


class Token(NamedTuple):
    kind: str
    value: str
    position: int


class Literal(NamedTuple):
    value: Any


class Path(NamedTuple):
    segments: Tuple[Union[str, int], ...]


class Not(NamedTuple):
    operand: Any


class BoolOp(NamedTuple):
    op: str
    operands: Tuple[Any, ...]


class Compare(NamedTuple):
    op: str
    left: Any
    right: Any


def tokenize(source: str) -> List[Token]:
    """Split a condition into tokens, normalising operator aliases."""
    tokens = []
    for match in _TOKEN_RE.finditer(source):
        kind = match.lastgroup
        value = match.group()
        position = match.start()
        if kind == "SKIP":
            continue
        if kind == "MISMATCH":
            raise ConditionEvaluationError(
                f"Unexpected character {value!r} at position {position}", condition=source
            )
        if kind == "NAME" and value in ("and", "or", "not"):
            kind = "OP"
        if kind == "OP":
            value = _OPERATOR_ALIASES.get(value, value)
        tokens.append(Token(kind, value, position))
    tokens.append(Token("END", "", len(source)))
    return tokens


def _unquote(literal: str) -> str:
    body = literal[1:-1]
    chars = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            index += 1
            chars.append(_STRING_ESCAPES.get(body[index], body[index]))
        else:
            chars.append(char)
        index += 1
    return "".join(chars)


class _Parser:
    """Recursive descent parser producing the expression tree."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def parse(self):
        if self.tokens[0].kind == "END":
            raise self._error("Condition is empty")
        node = self._or_expr()
        if self._peek().kind != "END":
            raise self._error(f"Unexpected token {self._peek().value!r}")
        return node

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, value: str) -> bool:
        token = self._peek()
        if token.kind == "OP" and token.value == value:
            self.index += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            raise self._error(f"Expected {value!r}")

    def _error(self, message: str) -> ConditionEvaluationError:
        token = self._peek()
        return ConditionEvaluationError(
            f"{message} at position {token.position}", condition=self.source
        )

    def _or_expr(self):
        operands = [self._and_expr()]
        while self._accept("or"):
            operands.append(self._and_expr())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _and_expr(self):
        operands = [self._not_expr()]
        while self._accept("and"):
            operands.append(self._not_expr())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _not_expr(self):
        if self._accept("not"):
            return Not(self._not_expr())
        return self._comparison()

    def _comparison(self):
        left = self._operand()
        token = self._peek()
        if token.kind == "OP" and token.value in _COMPARISONS:
            self._advance()
            right = self._operand()
            return Compare(token.value, left, right)
        return left

    def _operand(self):
        token = self._peek()
        if self._accept("("):
            node = self._or_expr()
            self._expect(")")
            return node
        if self._accept("-"):
            number = self._peek()
            if number.kind != "NUMBER":
                raise self._error("Expected a number after '-'")
            self._advance()
            return Literal(-self._number(number.value))
        if token.kind == "NUMBER":
            self._advance()
            return Literal(self._number(token.value))
        if token.kind == "STRING":
            self._advance()
            return Literal(_unquote(token.value))
        if token.kind == "NAME":
            if token.value in _KEYWORD_LITERALS:
                self._advance()
                return Literal(_KEYWORD_LITERALS[token.value])
            if token.value == ROOT_NAME:
                self._advance()
                return self._path()
            raise self._error(f"Unknown name {token.value!r}")
        raise self._error(f"Unexpected token {token.value or 'end of input'!r}")

    def _path(self) -> Path:
        segments: List[Union[str, int]] = []
        while True:
            if self._accept("."):
                name = self._peek()
                if name.kind != "NAME":
                    raise self._error("Expected a field name after '.'")
                self._advance()
                segments.append(name.value)
            elif self._accept("["):
                key = self._peek()
                if key.kind == "NUMBER" and key.value.isdigit():
                    segments.append(int(key.value))
                elif key.kind == "STRING":
                    segments.append(_unquote(key.value))
                else:
                    raise self._error("Expected an integer index or a quoted key")
                self._advance()
                self._expect("]")
            else:
                return Path(tuple(segments))

    @staticmethod
    def _number(text: str) -> Union[int, float]:
        if text.isdigit():
            return int(text)
        return float(text)


def parse_condition(condition: str):
    """Parse a condition into an expression tree.

    Raises:
        ConditionEvaluationError: If the condition is not valid syntax
    """
    return _Parser(condition).parse()


def _resolve(path: Path, output: Any) -> Any:
    value = output
    for segment in path.segments:
        if isinstance(segment, int):
            if not isinstance(value, (list, tuple)):
                raise ConditionEvaluationError(f"Cannot index {type(value).__name__} with [{segment}]")
            value = value[segment] if -len(value) <= segment < len(value) else None
        else:
            if not isinstance(value, dict):
                raise ConditionEvaluationError(
                    f"Cannot read field '{segment}' of {'null' if value is None else type(value).__name__}"
                )
            value = value.get(segment)
    return value


def _interpret(node, output: Any) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Path):
        return _resolve(node, output)
    if isinstance(node, Not):
        return not _truthy(_interpret(node.operand, output))
    if isinstance(node, BoolOp):
        if node.op == "and":
            return all(_truthy(_interpret(operand, output)) for operand in node.operands)
        return any(_truthy(_interpret(operand, output)) for operand in node.operands)
    if isinstance(node, Compare):
        left = _interpret(node.left, output)
        right = _interpret(node.right, output)
        if node.op not in ("==", "!=") and (isinstance(left, bool) or isinstance(right, bool)):
            raise ConditionEvaluationError(f"Cannot order booleans with '{node.op}'")
        try:
            return _COMPARISONS[node.op](left, right)
        except TypeError:
            raise ConditionEvaluationError(
                f"Cannot compare {type(left).__name__} and {type(right).__name__} with '{node.op}'"
            )
    raise ConditionEvaluationError(f"Unsupported expression node {type(node).__name__}")


def _truthy(value: Any) -> bool:
    return bool(value)


@lru_cache(maxsize=PARSE_CACHE_SIZE)
def _cached_parse(condition: str):
    return parse_condition(condition)


class ExpressionEvaluator:
    """Evaluates gating conditions against a step output, failing closed."""

    def __init__(self, on_error: Optional[Callable[[str], None]] = None):
        """
        Args:
            on_error: Called with a message whenever a condition cannot be evaluated
        """
        self._on_error = on_error

    def compile(self, condition: str):
        """Parse a condition, reusing recent parses of the same text."""
        return _cached_parse(condition)

    def check_syntax(self, condition: str) -> Optional[str]:
        """Return a syntax error message, or None if the condition parses."""
        try:
            self.compile(condition)
        except ConditionEvaluationError as e:
            return e.message
        return None

    def evaluate(self, condition: str, output: Any, on_error: Optional[Callable[[str], None]] = None) -> bool:
        """Evaluate a condition. Never raises; unevaluable conditions are false."""
        try:
            return _truthy(_interpret(self.compile(condition), output))
        except ConditionEvaluationError as e:
            message = f"Condition evaluation failed: {e.message}"
        except (IndexError, KeyError, ValueError, RecursionError) as e:
            message = f"Condition evaluation failed: {e}"

        logger.error(f"{message} (condition: {condition!r})")
        callback = on_error or self._on_error
        if callback is not None:
            callback(message)
        return False
