"""
StarBind Core - Expression Lexer

Shared tokenizer for the path language and the expression evaluator.
Indirect paths (``Parent->Parent->Status``) are lexed as a single ``PATH``
token so that dependency extraction and evaluation agree on what a path is.
"""

import string
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple

from .errors import InvalidPathSyntax

HOP_SEPARATOR = "->"

# Longest operators first so "===" wins over "==" and "=".
OPERATORS = (
    "===", "!==", "==", "!=", "<=", ">=", "&&", "||", "**",
    "<", ">", "+", "-", "*", "/", "%", "!", "?", ":",
    "(", ")", "[", "]", ",",
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "0": "\0"}


class TokenKind(Enum):
    NUMBER = "number"
    STRING = "string"
    PATH = "path"
    OP = "op"
    END = "end"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    position: int
    value: Any = None

    @property
    def hops(self) -> Tuple[str, ...]:
        return self.value if self.kind is TokenKind.PATH else ()

    def is_op(self, *ops: str) -> bool:
        return self.kind is TokenKind.OP and self.text in ops


# ASCII only: identifiers are [A-Za-z_][A-Za-z0-9_]*.
_IDENT_START = frozenset(string.ascii_letters + "_")
_IDENT_CHARS = _IDENT_START | frozenset(string.digits)
_DIGITS = frozenset(string.digits)


def _is_ident_start(ch: str) -> bool:
    return ch in _IDENT_START


def _is_ident_char(ch: str) -> bool:
    return ch in _IDENT_CHARS


def _is_digit(ch: str) -> bool:
    return ch in _DIGITS


class Lexer:
    """Turns expression text into a list of tokens, ending with ``END``."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.length = len(text)

    def error(self, reason: str, position: Optional[int] = None) -> InvalidPathSyntax:
        return InvalidPathSyntax(self.text, reason, self.pos if position is None else position)

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        while True:
            self._skip_whitespace()
            if self.pos >= self.length:
                tokens.append(Token(TokenKind.END, "", self.pos))
                return tokens
            ch = self.text[self.pos]
            if ch in "'\"":
                tokens.append(self._string())
            elif _is_digit(ch) or (ch == "." and _is_digit(self._peek(1))):
                tokens.append(self._number())
            elif _is_ident_start(ch):
                tokens.append(self._path())
            elif self.text.startswith(HOP_SEPARATOR, self.pos):
                raise self.error("'->' must follow a field name")
            else:
                tokens.append(self._operator())

    def _peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        return self.text[index] if index < self.length else ""

    def _skip_whitespace(self) -> None:
        while self.pos < self.length and self.text[self.pos].isspace():
            self.pos += 1

    def _string(self) -> Token:
        start = self.pos
        quote = self.text[self.pos]
        self.pos += 1
        chars = []
        while self.pos < self.length:
            ch = self.text[self.pos]
            if ch == "\\":
                escaped = self._peek(1)
                if not escaped:
                    break
                chars.append(_ESCAPES.get(escaped, escaped))
                self.pos += 2
                continue
            if ch == quote:
                self.pos += 1
                return Token(TokenKind.STRING, self.text[start:self.pos], start, "".join(chars))
            chars.append(ch)
            self.pos += 1
        raise self.error("unterminated string literal", start)

    def _number(self) -> Token:
        start = self.pos
        while _is_digit(self._peek()):
            self.pos += 1
        is_float = False
        if self._peek() == "." and _is_digit(self._peek(1)):
            is_float = True
            self.pos += 1
            while _is_digit(self._peek()):
                self.pos += 1
        if self._peek() in ("e", "E") and (_is_digit(self._peek(1)) or (self._peek(1) in ("+", "-") and _is_digit(self._peek(2)))):
            is_float = True
            self.pos += 2
            while _is_digit(self._peek()):
                self.pos += 1
        if _is_ident_start(self._peek()):
            raise self.error("identifier cannot start with a digit", start)
        text = self.text[start:self.pos]
        value = float(text) if is_float else int(text)
        return Token(TokenKind.NUMBER, text, start, value)

    def _identifier(self) -> str:
        start = self.pos
        while self.pos < self.length and _is_ident_char(self.text[self.pos]):
            self.pos += 1
        return self.text[start:self.pos]

    def _path(self) -> Token:
        start = self.pos
        hops = [self._identifier()]
        while True:
            mark = self.pos
            self._skip_whitespace()
            if not self.text.startswith(HOP_SEPARATOR, self.pos):
                self.pos = mark
                break
            separator = self.pos
            self.pos += len(HOP_SEPARATOR)
            self._skip_whitespace()
            if not _is_ident_start(self._peek()):
                raise self.error("empty path segment after '->'", separator)
            hops.append(self._identifier())
        return Token(TokenKind.PATH, self.text[start:self.pos], start, tuple(hops))

    def _operator(self) -> Token:
        for op in OPERATORS:
            if self.text.startswith(op, self.pos):
                token = Token(TokenKind.OP, op, self.pos)
                self.pos += len(op)
                return token
        raise self.error(f"unexpected character {self.text[self.pos]!r}")


def tokenize(text: str) -> List[Token]:
    return Lexer(text).tokenize()


__all__ = ["HOP_SEPARATOR", "TokenKind", "Token", "Lexer", "tokenize"]
