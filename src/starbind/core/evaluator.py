"""
StarBind Core - Expression Evaluator

🧮 Restricted Expression Evaluation:
Computes a binding's output from the current values of its dependencies.
Script and transform expressions run in a small, JavaScript-flavoured
expression language:

- literals: numbers, quoted strings, ``true``/``false``/``null``/``undefined``, ``[a, b]``
- operators: ``?:``, ``||``, ``&&``, ``==``/``!=``/``===``/``!==``,
  ``<``/``<=``/``>``/``>=``, ``+``/``-``, ``*``/``/``/``%``, unary ``!``/``-``/``+``, ``**``
- calls to the helper allow-list in ``starbind.core.helpers`` only

There is no attribute access, indexing or assignment, so an expression can
only see the dependency values it is handed. Everything an expression raises
comes back as ``EvaluationError``.
"""

import math
from functools import lru_cache
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import EvaluationError, InvalidPathSyntax
from .helpers import SCRIPT_CONSTANTS, SCRIPT_HELPERS
from .lexer import Token, TokenKind, tokenize
from .paths import KEYWORDS, BindingMode, ParsedExpression, parse_expression
from .values import UNRESOLVED

DEFAULT_MAX_DEPTH = 64
DEFAULT_MAX_LENGTH = 4096
DEFAULT_CACHE_SIZE = 256

TERNARY_PRECEDENCE = 0
UNARY_PRECEDENCE = 7

BINARY_PRECEDENCE = {
    "||": 1, "or": 1,
    "&&": 2, "and": 2,
    "==": 3, "!=": 3, "===": 3, "!==": 3,
    "<": 4, "<=": 4, ">": 4, ">=": 4,
    "+": 5, "-": 5,
    "*": 6, "/": 6, "%": 6,
    "**": 8,
}

_WORD_OPERATORS = {"and": "&&", "or": "||"}

_KEYWORD_CONSTANTS = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": UNRESOLVED,
}

# AST nodes are plain tuples tagged by their first element:
#   ("const", value) ("name", text) ("list", items) ("call", fn_name, args)
#   ("unary", op, operand) ("binary", op, left, right) ("cond", test, then, otherwise)
Node = Tuple[Any, ...]


class _Parser:
    """Pratt parser over lexer tokens."""

    def __init__(self, text: str, max_depth: int):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0
        self.depth = 0
        self.max_depth = max_depth

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind is not TokenKind.END:
            self.index += 1
        return token

    def error(self, reason: str, token: Optional[Token] = None) -> InvalidPathSyntax:
        token = token or self.current
        return InvalidPathSyntax(self.text, reason, token.position)

    def expect(self, op: str) -> Token:
        if not self.current.is_op(op):
            found = self.current.text or "end of expression"
            raise self.error(f"expected '{op}' but found '{found}'")
        return self.advance()

    def parse(self) -> Node:
        node = self.expression(TERNARY_PRECEDENCE)
        if self.current.kind is not TokenKind.END:
            raise self.error(f"unexpected '{self.current.text}'")
        return node

    def _binary_operator(self, token: Token) -> Optional[str]:
        if token.kind is TokenKind.OP and token.text in BINARY_PRECEDENCE:
            return token.text
        if token.kind is TokenKind.PATH and len(token.hops) == 1 and token.hops[0] in _WORD_OPERATORS:
            return _WORD_OPERATORS[token.hops[0]]
        return None

    def expression(self, min_precedence: int) -> Node:
        self.depth += 1
        if self.depth > self.max_depth:
            raise self.error("expression nested too deeply")
        left = self.unary()
        while True:
            token = self.current
            if token.is_op("?") and min_precedence <= TERNARY_PRECEDENCE:
                self.advance()
                then = self.expression(TERNARY_PRECEDENCE)
                self.expect(":")
                otherwise = self.expression(TERNARY_PRECEDENCE)
                left = ("cond", left, then, otherwise)
                continue
            op = self._binary_operator(token)
            if op is None:
                break
            precedence = BINARY_PRECEDENCE[op]
            if precedence < min_precedence:
                break
            self.advance()
            # "**" is right-associative, everything else binds left.
            right = self.expression(precedence if op == "**" else precedence + 1)
            left = ("binary", op, left, right)
        self.depth -= 1
        return left

    def unary(self) -> Node:
        token = self.current
        if token.is_op("!", "-", "+"):
            self.advance()
            return ("unary", token.text, self.expression(UNARY_PRECEDENCE))
        if token.kind is TokenKind.PATH and token.hops == ("not",):
            self.advance()
            return ("unary", "!", self.expression(UNARY_PRECEDENCE))
        return self.primary()

    def primary(self) -> Node:
        token = self.advance()
        if token.kind in (TokenKind.NUMBER, TokenKind.STRING):
            return ("const", token.value)
        if token.kind is TokenKind.PATH:
            return self._name(token)
        if token.is_op("("):
            node = self.expression(TERNARY_PRECEDENCE)
            self.expect(")")
            return node
        if token.is_op("["):
            return ("list", self._arguments("]"))
        found = token.text or "end of expression"
        raise self.error(f"unexpected '{found}'", token)

    def _name(self, token: Token) -> Node:
        if len(token.hops) == 1:
            word = token.hops[0]
            if self.current.is_op("("):
                if word not in SCRIPT_HELPERS:
                    raise self.error(f"unknown function '{word}'", token)
                self.advance()
                return ("call", word, self._arguments(")"))
            if word in _KEYWORD_CONSTANTS:
                return ("const", _KEYWORD_CONSTANTS[word])
            if word in SCRIPT_CONSTANTS:
                return ("const", SCRIPT_CONSTANTS[word])
            if word in KEYWORDS:
                raise self.error(f"unexpected '{word}'", token)
        return ("name", "->".join(token.hops))

    def _arguments(self, closing: str) -> Tuple[Node, ...]:
        items: List[Node] = []
        if self.current.is_op(closing):
            self.advance()
            return tuple(items)
        while True:
            items.append(self.expression(TERNARY_PRECEDENCE))
            if self.current.is_op(","):
                self.advance()
                continue
            self.expect(closing)
            return tuple(items)


def _collect_names(node: Node, names: set) -> None:
    tag = node[0]
    if tag == "name":
        names.add(node[1])
    elif tag == "list":
        for item in node[1]:
            _collect_names(item, names)
    elif tag == "call":
        for item in node[2]:
            _collect_names(item, names)
    elif tag == "unary":
        _collect_names(node[2], names)
    elif tag == "binary":
        _collect_names(node[2], names)
        _collect_names(node[3], names)
    elif tag == "cond":
        for child in node[1:]:
            _collect_names(child, names)


# --- value semantics -------------------------------------------------------

def _is_nullish(value: Any) -> bool:
    return value is None or value is UNRESOLVED


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any):
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        number = float(text)
        return int(number) if number.is_integer() and "." not in text and "e" not in text.lower() else number
    raise TypeError(f"cannot use {type(value).__name__} as a number")


def _to_text(value: Any) -> str:
    if value is None:
        return "null"
    if value is UNRESOLVED:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join("" if _is_nullish(item) else _to_text(item) for item in value)
    return str(value)


def _loose_equals(left: Any, right: Any) -> bool:
    if _is_nullish(left) or _is_nullish(right):
        return _is_nullish(left) and _is_nullish(right)
    if isinstance(left, str) != isinstance(right, str):
        try:
            return _to_number(left) == _to_number(right)
        except (TypeError, ValueError):
            return False
    return left == right


def _strict_equals(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _ordered(op: str, left: Any, right: Any) -> bool:
    if _is_nullish(left) or _is_nullish(right):
        return False
    if not (isinstance(left, str) and isinstance(right, str)):
        try:
            left, right = _to_number(left), _to_number(right)
        except ValueError:
            # Non-numeric text compares like NaN.
            return False
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if left is UNRESOLVED or right is UNRESOLVED:
        return UNRESOLVED
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return _to_text(left) + _to_text(right)
    a, b = _to_number(left), _to_number(right)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        result = a / b
        return int(result) if isinstance(a, int) and isinstance(b, int) and result.is_integer() else result
    if op == "%":
        result = math.fmod(a, b)
        return int(result) if isinstance(a, int) and isinstance(b, int) else result
    # "**" goes through floats so huge integer powers overflow instead of hanging.
    result = float(a) ** float(b)
    return int(result) if isinstance(a, int) and isinstance(b, int) and b >= 0 and result.is_integer() else result


def _check_result(value: Any) -> Any:
    if value is None or value is UNRESOLVED or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"non-representable number {value}")
        return value
    if isinstance(value, (list, tuple)):
        return [_check_result(item) for item in value]
    raise ValueError(f"non-representable value of type {type(value).__name__}")


class Program:
    """A compiled expression ready to run against a name → value scope."""

    def __init__(self, text: str, root: Node):
        self.text = text
        self.root = root
        names: set = set()
        _collect_names(root, names)
        self.names: FrozenSet[str] = frozenset(names)

    def run(self, scope: Mapping[str, Any]) -> Any:
        """
        Evaluate against ``scope``; unknown names read as ``UNRESOLVED``.

        Raises:
            EvaluationError: on any failure or a non-representable result
        """
        try:
            return _check_result(self._eval(self.root, scope))
        except EvaluationError:
            raise
        except RecursionError:
            raise EvaluationError(self.text, "expression nested too deeply") from None
        except Exception as e:
            raise EvaluationError(self.text, f"{type(e).__name__}: {e}") from e

    def _eval(self, node: Node, scope: Mapping[str, Any]) -> Any:
        tag = node[0]
        if tag == "const":
            return node[1]
        if tag == "name":
            return scope.get(node[1], UNRESOLVED)
        if tag == "list":
            return [self._eval(item, scope) for item in node[1]]
        if tag == "call":
            args = [self._eval(item, scope) for item in node[2]]
            return SCRIPT_HELPERS[node[1]](*args)
        if tag == "unary":
            operand = self._eval(node[2], scope)
            if node[1] == "!":
                return not operand
            if operand is UNRESOLVED:
                return UNRESOLVED
            number = _to_number(operand)
            return -number if node[1] == "-" else number
        if tag == "cond":
            branch = node[2] if self._eval(node[1], scope) else node[3]
            return self._eval(branch, scope)

        op, left_node, right_node = node[1], node[2], node[3]
        left = self._eval(left_node, scope)
        if op == "&&":
            return self._eval(right_node, scope) if left else left
        if op == "||":
            return left if left else self._eval(right_node, scope)
        right = self._eval(right_node, scope)
        if op == "==":
            return _loose_equals(left, right)
        if op == "!=":
            return not _loose_equals(left, right)
        if op == "===":
            return _strict_equals(left, right)
        if op == "!==":
            return not _strict_equals(left, right)
        if op in ("<", "<=", ">", ">="):
            return _ordered(op, left, right)
        return _arithmetic(op, left, right)


# --- mode dispatch ---------------------------------------------------------

def _evaluate_field(evaluator: "ExpressionEvaluator", parsed: ParsedExpression, values: Mapping[str, Any]) -> Any:
    return values.get(parsed.paths[0].text, UNRESOLVED)


def _evaluate_literal(evaluator: "ExpressionEvaluator", parsed: ParsedExpression, values: Mapping[str, Any]) -> Any:
    return parsed.literal


def _evaluate_script(evaluator: "ExpressionEvaluator", parsed: ParsedExpression, values: Mapping[str, Any]) -> Any:
    return evaluator.compile(parsed.text).run(values)


_MODE_EVALUATORS: Dict[BindingMode, Callable[["ExpressionEvaluator", ParsedExpression, Mapping[str, Any]], Any]] = {
    BindingMode.FIELD: _evaluate_field,
    BindingMode.LITERAL: _evaluate_literal,
    BindingMode.SCRIPT: _evaluate_script,
}


class ExpressionEvaluator:
    """
    Pure evaluator for binding expressions.

    Holds only limits and a cache of compiled programs; it never touches the
    store or any binding runtime state.
    """

    def __init__(
        self,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_length: int = DEFAULT_MAX_LENGTH,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ):
        self.max_depth = max_depth
        self.max_length = max_length
        self._compile_cached = lru_cache(maxsize=cache_size)(self._compile)

    def _compile(self, text: str) -> Program:
        if len(text) > self.max_length:
            raise InvalidPathSyntax(text[:40] + "...", f"expression longer than {self.max_length} characters")
        try:
            return Program(text, _Parser(text, self.max_depth).parse())
        except RecursionError:
            raise InvalidPathSyntax(text[:40], "expression nested too deeply") from None

    def compile(self, text: str) -> Program:
        """
        Compile (or fetch from cache) the program for ``text``.

        Raises:
            InvalidPathSyntax: when the text is not a valid expression
        """
        return self._compile_cached(text.strip())

    def clear_cache(self) -> None:
        self._compile_cached.cache_clear()

    def check(self, parsed: ParsedExpression) -> None:
        """Surface syntax errors of a script ahead of the first evaluation."""
        if parsed.mode is BindingMode.SCRIPT:
            self.compile(parsed.text)

    def evaluate_parsed(self, parsed: ParsedExpression, values: Mapping[str, Any]) -> Any:
        """
        Evaluate a parsed expression against dependency values keyed by path text.

        Raises:
            EvaluationError
        """
        try:
            return _MODE_EVALUATORS[parsed.mode](self, parsed, values)
        except InvalidPathSyntax as e:
            raise EvaluationError(parsed.text, e.reason) from e

    def evaluate(self, mode: Any, expression: str, values: Mapping[str, Any]) -> Any:
        """``(mode, expressionText, dependencyValues) -> value``, raising ``EvaluationError``."""
        try:
            parsed = parse_expression(expression, mode)
        except InvalidPathSyntax as e:
            raise EvaluationError(expression, e.reason) from e
        return self.evaluate_parsed(parsed, values)

    def transform(self, parsed: ParsedExpression, value: Any, values: Mapping[str, Any]) -> Any:
        """Run a transform stage with ``value`` bound to its input name."""
        scope = dict(values)
        scope[parsed.input_name or "value"] = value
        return self.evaluate_parsed(parsed, scope)


_default_evaluator = ExpressionEvaluator()


def evaluate(mode: Any, expression: str, values: Optional[Mapping[str, Any]] = None) -> Any:
    """Evaluate with the module's default evaluator."""
    return _default_evaluator.evaluate(mode, expression, values or {})


def compile_expression(text: str) -> Program:
    return _default_evaluator.compile(text)


__all__ = [
    "Program", "ExpressionEvaluator", "evaluate", "compile_expression",
    "DEFAULT_MAX_DEPTH", "DEFAULT_MAX_LENGTH", "DEFAULT_CACHE_SIZE",
]
