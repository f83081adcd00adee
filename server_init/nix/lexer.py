"""Tokenizer for the Nix expression language.

The scanner works on demand: the parser asks for the next token in normal
mode, and switches to string mode right after an opening quote so that
``${ ... }`` interpolations can be parsed as ordinary expressions.
"""

import re
from dataclasses import dataclass
from enum import Enum


class ParseError(ValueError):
    """Raised when a text is not a valid Nix expression.

    Attributes:
        offset: Character offset of the problem.
        line: 1-based line number.
        column: 1-based column number.
    """

    def __init__(self, message: str, text: str, offset: int) -> None:
        self.message = message
        self.offset = offset
        self.line = text.count("\n", 0, offset) + 1
        self.column = offset - (text.rfind("\n", 0, offset) + 1) + 1
        super().__init__(f"{message} at line {self.line}, column {self.column}")


class TokenKind(str, Enum):
    IDENT = "ident"
    KEYWORD = "keyword"
    INT = "int"
    FLOAT = "float"
    PATH = "path"
    SEARCH_PATH = "search_path"
    URI = "uri"
    OP = "op"
    STR_OPEN = "str_open"
    IND_STR_OPEN = "ind_str_open"
    INTERP_OPEN = "interp_open"
    STR_TEXT = "str_text"
    STR_CLOSE = "str_close"
    EOF = "eof"


KEYWORDS = frozenset(
    {"let", "in", "rec", "with", "inherit", "if", "then", "else", "assert"}
)

_PATH_CHAR = r"[a-zA-Z0-9._\-+]"
_PATH = re.compile(rf"{_PATH_CHAR}*(?:/{_PATH_CHAR}+)+")
_HOME_PATH = re.compile(rf"~(?:/{_PATH_CHAR}+)+")
_SEARCH_PATH = re.compile(rf"<{_PATH_CHAR}+(?:/{_PATH_CHAR}+)*>")
_URI = re.compile(r"[a-zA-Z][a-zA-Z0-9+\-.]*:[a-zA-Z0-9%/?:@&=+$,\-_.!~*']+")
_FLOAT = re.compile(r"(?:[1-9][0-9]*\.[0-9]*|0?\.[0-9]+)(?:[Ee][+-]?[0-9]+)?")
_INT = re.compile(r"[0-9]+")
_IDENT = re.compile(r"[a-zA-Z_][a-zA-Z0-9_'\-]*")
_WHITESPACE = re.compile(r"[ \t\r\n]+")

_OPERATORS = (
    "...", "${",
    "//", "++", "==", "!=", "<=", ">=", "&&", "||", "->",
    "{", "}", "[", "]", "(", ")", ";", "=", ":", ",", ".", "?", "@",
    "!", "+", "-", "*", "/", "<", ">",
)

_ESCAPES = {"n": "\n", "r": "\r", "t": "\t"}


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    start: int
    end: int


class Scanner:
    """Position-based tokenizer over a single source text."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def error(self, message: str, offset: int) -> ParseError:
        return ParseError(message, self.text, offset)

    def _skip_trivia(self) -> None:
        text = self.text
        while self.pos < len(text):
            match = _WHITESPACE.match(text, self.pos)
            if match:
                self.pos = match.end()
                continue
            if text.startswith("#", self.pos):
                newline = text.find("\n", self.pos)
                self.pos = len(text) if newline < 0 else newline + 1
                continue
            if text.startswith("/*", self.pos):
                close = text.find("*/", self.pos + 2)
                if close < 0:
                    raise self.error("unterminated comment", self.pos)
                self.pos = close + 2
                continue
            break

    def next_token(self) -> Token:
        """Consume and return the next token in expression mode."""
        self._skip_trivia()
        text, start = self.text, self.pos
        if start >= len(text):
            return Token(TokenKind.EOF, "", start, start)

        if text.startswith("''", start):
            return self._emit(TokenKind.IND_STR_OPEN, start, start + 2)
        if text[start] == '"':
            return self._emit(TokenKind.STR_OPEN, start, start + 1)

        for kind, pattern in (
            (TokenKind.PATH, _PATH),
            (TokenKind.PATH, _HOME_PATH),
            (TokenKind.SEARCH_PATH, _SEARCH_PATH),
            (TokenKind.URI, _URI),
            (TokenKind.FLOAT, _FLOAT),
            (TokenKind.INT, _INT),
        ):
            match = pattern.match(text, start)
            if match:
                return self._emit(kind, start, match.end())

        match = _IDENT.match(text, start)
        if match:
            word = match.group()
            kind = TokenKind.KEYWORD if word in KEYWORDS else TokenKind.IDENT
            return self._emit(kind, start, match.end())

        for op in _OPERATORS:
            if text.startswith(op, start):
                kind = TokenKind.INTERP_OPEN if op == "${" else TokenKind.OP
                return self._emit(kind, start, start + len(op))

        raise self.error(f"unexpected character {text[start]!r}", start)

    def _emit(self, kind: TokenKind, start: int, end: int) -> Token:
        self.pos = end
        return Token(kind, self.text[start:end], start, end)

    def string_fragment(self, indented: bool) -> Token:
        """Consume the next piece of a string body.

        Returns a ``STR_TEXT`` token whose ``text`` is the decoded literal
        content, an ``INTERP_OPEN`` token for ``${``, or ``STR_CLOSE``.
        """
        text, start = self.text, self.pos
        if start >= len(text):
            raise self.error("unterminated string", start)
        if text.startswith("${", start):
            return self._emit(TokenKind.INTERP_OPEN, start, start + 2)
        if indented and text.startswith("''", start) and not text.startswith(
            ("'''", "''$", "''\\"), start
        ):
            return self._emit(TokenKind.STR_CLOSE, start, start + 2)
        if not indented and text[start] == '"':
            return self._emit(TokenKind.STR_CLOSE, start, start + 1)

        decoded = []
        pos = start
        while pos < len(text):
            # "$$" is literal text, so "$${" never opens an interpolation.
            if text.startswith("$$", pos):
                decoded.append("$$")
                pos += 2
                continue
            if text.startswith("${", pos):
                break
            if indented:
                if text.startswith("'''", pos):
                    decoded.append("''")
                    pos += 3
                    continue
                if text.startswith("''$", pos):
                    decoded.append("$")
                    pos += 3
                    continue
                if text.startswith("''\\", pos):
                    if pos + 3 >= len(text):
                        raise self.error("unterminated string", start)
                    char = text[pos + 3]
                    decoded.append(_ESCAPES.get(char, char))
                    pos += 4
                    continue
                if text.startswith("''", pos):
                    break
            else:
                if text[pos] == '"':
                    break
                if text[pos] == "\\":
                    if pos + 1 >= len(text):
                        raise self.error("unterminated string", start)
                    char = text[pos + 1]
                    decoded.append(_ESCAPES.get(char, char))
                    pos += 2
                    continue
            decoded.append(text[pos])
            pos += 1
        else:
            raise self.error("unterminated string", start)

        self.pos = pos
        return Token(TokenKind.STR_TEXT, "".join(decoded), start, pos)


def escape_string(value: str) -> str:
    """Render ``value`` as a double-quoted Nix string literal."""
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("${", "\\${")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


def is_path_literal(value: str) -> bool:
    """True if ``value`` lexes as a single Nix path token."""
    match = _PATH.fullmatch(value)
    return match is not None and "/" in value
