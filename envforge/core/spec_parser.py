"""Lexer and parser for the declarative spec language.

The language is a small attribute-set syntax::

    pkgs.mkShell {
      packages = [ git pkgs.neovim ];
      EDITOR = "${neovim}/bin/nvim";
      shellHook = ''
        echo ready
      '';
    }

Values are strings (``"..."`` or indented ``''...''``), lists, nested
attribute sets, integers and floats, ``true``/``false``/``null`` and
(dotted) identifiers.  ``${ident}`` inside a string interpolates a
package reference.  ``#`` and ``/* */`` start comments.

The parser only builds syntax nodes; meaning is assigned by the evaluator.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_'-]*(?:\.[A-Za-z_][A-Za-z0-9_'-]*)*")
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_PUNCT = {"{": "LBRACE", "}": "RBRACE", "[": "LBRACKET", "]": "RBRACKET", "=": "EQ", ";": "SEMI"}
_KEYWORDS = {"true": True, "false": False, "null": None}
_ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "t": "\t", "r": "\r", "$": "$"}
# Interpolation placeholder used while dedenting indented strings.
_MARK = "\x00"


class SpecSyntaxError(ValueError):
    """Raised when spec source text is malformed.

    Carries the 1-based ``line`` and ``column`` of the offending token.
    """

    def __init__(self, message: str, line: int, column: int) -> None:
        super().__init__(f"{message} (line {line}, column {column})")
        self.line = line
        self.column = column


# ---------------------------------------------------------------------------
# Syntax nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ident:
    name: str
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class StringLit:
    """A string; ``parts`` alternate between literal text and ``Ident``s."""

    parts: tuple[Union[str, Ident], ...]
    line: int = 0
    column: int = 0

    @property
    def is_plain(self) -> bool:
        return all(isinstance(p, str) for p in self.parts)

    @property
    def text(self) -> str:
        return "".join(p for p in self.parts if isinstance(p, str))


@dataclass(frozen=True)
class Literal:
    """A number, boolean or null."""

    value: Union[int, float, bool, None]
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class ListLit:
    items: tuple["Node", ...]
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class AttrSetLit:
    bindings: dict[str, "Node"] = field(default_factory=dict)
    line: int = 0
    column: int = 0


Node = Union[Ident, StringLit, Literal, ListLit, AttrSetLit]


@dataclass(frozen=True)
class Token:
    kind: str
    value: object
    line: int
    column: int


# ---------------------------------------------------------------------------
# Lexer
# ---------------------------------------------------------------------------


class _Lexer:
    def __init__(self, source: str) -> None:
        self.src = source
        self.pos = 0
        self.line = 1
        self.col = 1

    def error(self, message: str) -> SpecSyntaxError:
        return SpecSyntaxError(message, self.line, self.col)

    def _peek(self, offset: int = 0) -> str:
        idx = self.pos + offset
        return self.src[idx] if idx < len(self.src) else ""

    def _advance(self, count: int = 1) -> str:
        text = self.src[self.pos:self.pos + count]
        for ch in text:
            if ch == "\n":
                self.line += 1
                self.col = 1
            else:
                self.col += 1
        self.pos += count
        return text

    def _skip_trivia(self) -> None:
        while self.pos < len(self.src):
            ch = self._peek()
            if ch in " \t\r\n":
                self._advance()
            elif ch == "#":
                while self.pos < len(self.src) and self._peek() != "\n":
                    self._advance()
            elif ch == "/" and self._peek(1) == "*":
                end = self.src.find("*/", self.pos + 2)
                if end < 0:
                    raise self.error("Unterminated block comment")
                self._advance(end + 2 - self.pos)
            else:
                return

    def tokens(self) -> list[Token]:
        if _MARK in self.src:
            idx = self.src.index(_MARK)
            self._advance(idx)
            raise self.error("NUL character in spec source")
        result: list[Token] = []
        while True:
            self._skip_trivia()
            line, col = self.line, self.col
            if self.pos >= len(self.src):
                result.append(Token("EOF", None, line, col))
                return result
            ch = self._peek()
            if ch in _PUNCT:
                self._advance()
                result.append(Token(_PUNCT[ch], ch, line, col))
            elif ch == '"':
                result.append(Token("STRING", self._string(), line, col))
            elif ch == "'" and self._peek(1) == "'":
                result.append(Token("STRING", self._indented_string(), line, col))
            elif (number := _NUMBER.match(self.src, self.pos)) is not None:
                text = self._advance(number.end() - self.pos)
                value: int | float = float(text) if "." in text else int(text)
                result.append(Token("NUMBER", value, line, col))
            elif (ident := _IDENT.match(self.src, self.pos)) is not None:
                text = self._advance(ident.end() - self.pos)
                result.append(Token("IDENT", text, line, col))
            else:
                raise self.error(f"Unexpected character {ch!r}")

    def _interpolation(self) -> Ident:
        """Consume ``${ident}``; the cursor is on ``$``."""
        line, col = self.line, self.col
        self._advance(2)
        end = self.src.find("}", self.pos)
        if end < 0:
            raise SpecSyntaxError("Unterminated interpolation", line, col)
        inner = self.src[self.pos:end].strip()
        if not _IDENT.fullmatch(inner):
            raise SpecSyntaxError(
                f"Interpolation must reference a package identifier, got {inner!r}",
                line,
                col,
            )
        self._advance(end + 1 - self.pos)
        return Ident(inner, line, col)

    def _string(self) -> tuple[Union[str, Ident], ...]:
        line, col = self.line, self.col
        self._advance()  # opening quote
        parts: list[Union[str, Ident]] = []
        buf: list[str] = []
        while True:
            if self.pos >= len(self.src):
                raise SpecSyntaxError("Unterminated string", line, col)
            ch = self._peek()
            if ch == '"':
                self._advance()
                break
            if ch == "\\":
                nxt = self._peek(1)
                if nxt not in _ESCAPES:
                    raise self.error(f"Unknown escape sequence \\{nxt}")
                buf.append(_ESCAPES[nxt])
                self._advance(2)
            elif ch == "$" and self._peek(1) == "{":
                if buf:
                    parts.append("".join(buf))
                    buf = []
                parts.append(self._interpolation())
            else:
                buf.append(self._advance())
        if buf or not parts:
            parts.append("".join(buf))
        return tuple(parts)

    def _indented_string(self) -> tuple[Union[str, Ident], ...]:
        line, col = self.line, self.col
        self._advance(2)  # opening ''
        chunks: list[str] = []
        idents: list[Ident] = []
        while True:
            if self.pos >= len(self.src):
                raise SpecSyntaxError("Unterminated indented string", line, col)
            ch = self._peek()
            if ch == "'" and self._peek(1) == "'":
                after = self._peek(2)
                if after == "'":
                    chunks.append("''")
                    self._advance(3)
                elif after == "$":
                    chunks.append("$")
                    self._advance(3)
                elif after == "\\":
                    esc = self._peek(3)
                    if esc not in _ESCAPES:
                        raise self.error(f"Unknown escape sequence ''\\{esc}")
                    chunks.append(_ESCAPES[esc])
                    self._advance(4)
                else:
                    self._advance(2)
                    break
            elif ch == "$" and self._peek(1) == "{":
                idents.append(self._interpolation())
                chunks.append(_MARK)
            else:
                chunks.append(self._advance())
        return _split_marks(_dedent("".join(chunks)), idents)


def _dedent(text: str) -> str:
    """Strip the common indentation of an indented string.

    A whitespace-only first line is dropped, and a whitespace-only last
    line is emptied so the result ends with a newline.
    """
    lines = text.split("\n")
    if len(lines) > 1 and not lines[0].strip(" \t"):
        lines = lines[1:]
    indents = [
        len(line) - len(line.lstrip(" "))
        for line in lines
        if line.strip(" \t")
    ]
    common = min(indents) if indents else 0
    stripped = [line[common:] if line.strip(" \t") else "" for line in lines]
    return "\n".join(stripped)


def _split_marks(text: str, idents: list[Ident]) -> tuple[Union[str, Ident], ...]:
    pieces = text.split(_MARK)
    parts: list[Union[str, Ident]] = []
    for idx, piece in enumerate(pieces):
        if piece:
            parts.append(piece)
        if idx < len(idents):
            parts.append(idents[idx])
    return tuple(parts) if parts else ("",)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self.tokens = tokens
        self.idx = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.idx]

    def _next(self) -> Token:
        tok = self.tokens[self.idx]
        if tok.kind != "EOF":
            self.idx += 1
        return tok

    def _expect(self, kind: str, what: str) -> Token:
        tok = self.current
        if tok.kind != kind:
            found = "end of input" if tok.kind == "EOF" else repr(tok.value)
            raise SpecSyntaxError(f"Expected {what}, found {found}", tok.line, tok.column)
        return self._next()

    def parse_spec(self) -> AttrSetLit:
        # Optional call prefix: ``mkShell { ... }`` / ``pkgs.mkShell { ... }``
        tok = self.current
        if tok.kind == "IDENT":
            if str(tok.value).split(".")[-1] != "mkShell":
                raise SpecSyntaxError(
                    f"Expected '{{' or mkShell, found {tok.value!r}", tok.line, tok.column
                )
            self._next()
        attrs = self._attrset()
        self._expect("EOF", "end of input")
        return attrs

    def _attrset(self) -> AttrSetLit:
        open_tok = self._expect("LBRACE", "'{'")
        bindings: dict[str, Node] = {}
        while self.current.kind != "RBRACE":
            key_tok = self.current
            if key_tok.kind == "IDENT":
                key = str(key_tok.value)
                if "." in key:
                    raise SpecSyntaxError(
                        f"Nested attribute paths are not supported: {key!r}",
                        key_tok.line,
                        key_tok.column,
                    )
            elif key_tok.kind == "STRING" and all(isinstance(p, str) for p in key_tok.value):
                key = "".join(key_tok.value)
            else:
                found = "end of input" if key_tok.kind == "EOF" else repr(key_tok.value)
                raise SpecSyntaxError(
                    f"Expected attribute name, found {found}", key_tok.line, key_tok.column
                )
            self._next()
            if key in bindings:
                raise SpecSyntaxError(
                    f"Attribute {key!r} is defined more than once", key_tok.line, key_tok.column
                )
            self._expect("EQ", "'='")
            bindings[key] = self._value()
            self._expect("SEMI", "';'")
        self._next()
        return AttrSetLit(bindings, open_tok.line, open_tok.column)

    def _value(self) -> Node:
        tok = self.current
        if tok.kind == "LBRACE":
            return self._attrset()
        if tok.kind == "LBRACKET":
            self._next()
            items: list[Node] = []
            while self.current.kind != "RBRACKET":
                if self.current.kind == "EOF":
                    raise SpecSyntaxError("Unterminated list", tok.line, tok.column)
                items.append(self._value())
            self._next()
            return ListLit(tuple(items), tok.line, tok.column)
        if tok.kind == "STRING":
            self._next()
            return StringLit(tuple(tok.value), tok.line, tok.column)
        if tok.kind == "NUMBER":
            self._next()
            return Literal(tok.value, tok.line, tok.column)
        if tok.kind == "IDENT":
            self._next()
            if tok.value in _KEYWORDS:
                return Literal(_KEYWORDS[tok.value], tok.line, tok.column)
            return Ident(str(tok.value), tok.line, tok.column)
        found = "end of input" if tok.kind == "EOF" else repr(tok.value)
        raise SpecSyntaxError(f"Expected a value, found {found}", tok.line, tok.column)


def parse_spec(source: str) -> AttrSetLit:
    """Parse spec source text into its top-level attribute set.

    Raises ``SpecSyntaxError`` on malformed input.
    """
    return _Parser(_Lexer(source).tokens()).parse_spec()
