"""
StarBind Core - Path Language

🔗 Binding Expression Parsing:
Turns the raw expression text attached to a component property into a
binding mode plus the field paths it depends on.

- Direct field: ``Temperature`` → one path with a single hop
- Indirect field: ``Parent->Parent->Status`` → one path, hops split on ``->``
- Script: anything else; every bare identifier or ``A->B`` run outside string
  literals becomes one dependency
- Literal: a quoted string, number, ``true``/``false``/``null``

Parsing is pure. Malformed path syntax raises ``InvalidPathSyntax``.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, FrozenSet, Iterable, List, Optional, Tuple

from .errors import InvalidPathSyntax
from .lexer import HOP_SEPARATOR, Token, TokenKind, tokenize
from .values import EntityId

# Names the evaluator gives meaning to; they never become dependencies.
KEYWORDS: FrozenSet[str] = frozenset({
    "true", "false", "null", "undefined", "and", "or", "not", "pi",
})

# Extra reserved name available inside transform expressions.
TRANSFORM_INPUT = "value"


class BindingMode(str, Enum):
    """Closed set of binding evaluation modes."""
    FIELD = "field"
    LITERAL = "literal"
    SCRIPT = "script"

    @classmethod
    def coerce(cls, mode: Any) -> Optional["BindingMode"]:
        """Accept enum members, their string values, and the legacy ``twoWay`` mode."""
        if mode is None or isinstance(mode, cls):
            return mode
        text = str(mode).strip()
        if not text:
            return None
        if text == "twoWay":
            return cls.FIELD
        try:
            return cls(text.lower())
        except ValueError:
            raise ValueError(f"Unknown binding mode: {mode}") from None


@dataclass(frozen=True)
class FieldPath:
    """
    Ordered hop names ending in a field name, rooted at an entity.

    Equivalence is structural: two paths are equal iff they have the same
    root and the same hop sequence.
    """
    hops: Tuple[str, ...]
    root: Optional[EntityId] = None

    def __post_init__(self):
        if not self.hops:
            raise ValueError("FieldPath requires at least one hop")

    @classmethod
    def parse(cls, text: str, root: Optional[EntityId] = None) -> "FieldPath":
        return cls(parse_path(text), root)

    @property
    def field(self) -> str:
        return self.hops[-1]

    @property
    def relations(self) -> Tuple[str, ...]:
        return self.hops[:-1]

    @property
    def is_indirect(self) -> bool:
        return len(self.hops) > 1

    @property
    def text(self) -> str:
        return HOP_SEPARATOR.join(self.hops)

    def rooted_at(self, root: EntityId) -> "FieldPath":
        return FieldPath(self.hops, root)

    def __str__(self) -> str:
        if self.root is None:
            return self.text
        return f"{self.root}:{self.text}"


@dataclass(frozen=True)
class ParsedExpression:
    """Result of parsing one expression: its mode and its DependencySet."""
    text: str
    mode: BindingMode
    paths: Tuple[FieldPath, ...] = ()
    literal: Any = None
    reserved: FrozenSet[str] = field(default=frozenset())
    input_name: Optional[str] = None

    @property
    def dependency_names(self) -> Tuple[str, ...]:
        return tuple(path.text for path in self.paths)

    @property
    def is_constant(self) -> bool:
        return not self.paths


def parse_path(text: str) -> Tuple[str, ...]:
    """
    Split ``A->B->C`` into trimmed hop names.

    Raises:
        InvalidPathSyntax: empty segments, stray operators or non-identifiers
    """
    if text is None or not text.strip():
        raise InvalidPathSyntax(text or "", "empty path")
    tokens = tokenize(text)
    if len(tokens) != 2 or tokens[0].kind is not TokenKind.PATH:
        bad = tokens[1] if tokens[0].kind is TokenKind.PATH else tokens[0]
        raise InvalidPathSyntax(text, "expected a field name or an 'A->B' path", bad.position)
    return tokens[0].hops


_NO_LITERAL = object()


def _literal_value(tokens: List[Token]) -> Any:
    if len(tokens) != 2:
        return _NO_LITERAL
    token = tokens[0]
    if token.kind is TokenKind.STRING:
        return token.value
    if token.kind is TokenKind.NUMBER:
        return token.value
    if token.kind is TokenKind.PATH and len(token.hops) == 1:
        word = token.hops[0]
        if word == "true":
            return True
        if word == "false":
            return False
        if word == "null":
            return None
    return _NO_LITERAL


def parse_literal(text: str) -> Tuple[bool, Any]:
    """Return ``(found, value)`` for quoted strings, numbers and ``true``/``false``/``null``."""
    try:
        tokens = tokenize(text.strip())
    except InvalidPathSyntax:
        return False, None
    value = _literal_value(tokens)
    if value is _NO_LITERAL:
        return False, None
    return True, value


def is_literal_expression(text: str) -> bool:
    return parse_literal(text)[0]


def _dependency_paths(tokens: List[Token], reserved: FrozenSet[str]) -> Tuple[FieldPath, ...]:
    seen = {}
    for index, token in enumerate(tokens):
        if token.kind is not TokenKind.PATH:
            continue
        hops = token.hops
        if len(hops) == 1:
            if hops[0] in KEYWORDS or hops[0] in reserved:
                continue
            if tokens[index + 1].is_op("("):
                continue
        if hops not in seen:
            seen[hops] = FieldPath(hops)
    return tuple(seen.values())


def extract_dependencies(text: str, reserved: Iterable[str] = ()) -> Tuple[FieldPath, ...]:
    """
    Scan script text for field references.

    Bare identifiers and ``A->B->C`` runs outside string literals become
    paths; keywords, ``reserved`` names and helper calls (``name(``) do not.
    Order follows first appearance; duplicates collapse.
    """
    return _dependency_paths(tokenize(text), frozenset(reserved))


def infer_mode(text: str) -> BindingMode:
    tokens = tokenize(text)
    if _literal_value(tokens) is not _NO_LITERAL:
        return BindingMode.LITERAL
    if len(tokens) == 2 and tokens[0].kind is TokenKind.PATH and tokens[0].hops[0] not in KEYWORDS:
        return BindingMode.FIELD
    return BindingMode.SCRIPT


def parse_expression(text: str, mode: Any = None, reserved: Iterable[str] = ()) -> ParsedExpression:
    """
    Parse a binding expression into its mode and dependency set.

    Args:
        text: Raw expression text
        mode: Explicit mode; inferred from the text when omitted
        reserved: Extra names that are bound by the caller, not the store

    Returns:
        ParsedExpression

    Raises:
        InvalidPathSyntax: when the text is empty or malformed
    """
    if text is None or not str(text).strip():
        raise InvalidPathSyntax(text or "", "empty expression")
    text = str(text).strip()
    reserved = frozenset(reserved)
    binding_mode = BindingMode.coerce(mode) or infer_mode(text)

    if binding_mode is BindingMode.FIELD:
        return ParsedExpression(text, binding_mode, (FieldPath(parse_path(text)),), reserved=reserved)

    if binding_mode is BindingMode.LITERAL:
        found, value = parse_literal(text)
        # Non-literal text in literal mode is passed through verbatim.
        return ParsedExpression(text, binding_mode, literal=value if found else text, reserved=reserved)

    return ParsedExpression(text, binding_mode, _dependency_paths(tokenize(text), reserved), reserved=reserved)


_ARROW = re.compile(r"^\s*(?:\(\s*([A-Za-z_]\w*)\s*\)|([A-Za-z_]\w*))\s*=>\s*(.+)$", re.DOTALL | re.ASCII)


def parse_transform(text: str) -> ParsedExpression:
    """
    Parse a transform stage applied to the main expression's output.

    The output is bound to ``value``; an arrow form such as ``v => v * 2``
    binds it to the arrow's parameter instead. Any other identifiers are
    dependencies, like in a script.
    """
    if text is None or not str(text).strip():
        raise InvalidPathSyntax(text or "", "empty transform")
    input_name = TRANSFORM_INPUT
    body = str(text).strip()
    arrow = _ARROW.match(body)
    if arrow:
        input_name = arrow.group(1) or arrow.group(2)
        body = arrow.group(3).strip()
    parsed = parse_expression(body, BindingMode.SCRIPT, reserved=(input_name,))
    return replace(parsed, input_name=input_name)


__all__ = [
    "KEYWORDS", "TRANSFORM_INPUT", "BindingMode", "FieldPath", "ParsedExpression",
    "parse_path", "parse_literal", "is_literal_expression",
    "extract_dependencies", "infer_mode", "parse_expression", "parse_transform",
]
