"""Parsed Nix configuration documents.

A ``ConfigDocument`` keeps the exact source text next to a tree of
``Node`` objects. Every node records the character span it was parsed from,
so edits are made by splicing text at node boundaries and re-parsing: bytes
outside the edit, including comments and formatting, are never touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional

from server_init.nix.lexer import ParseError, Scanner, Token, TokenKind


class NodeKind(str, Enum):
    LAMBDA = "lambda"
    PATTERN = "pattern"
    PATTERN_ENTRY = "pattern_entry"
    LET_IN = "let_in"
    WITH = "with"
    ASSERT = "assert"
    IF_ELSE = "if_else"
    ATTR_SET = "attr_set"
    BINDING = "binding"
    INHERIT = "inherit"
    INHERIT_FROM = "inherit_from"
    ATTRPATH = "attrpath"
    LIST = "list"
    SELECT = "select"
    HAS_ATTR = "has_attr"
    APPLY = "apply"
    BINARY = "binary"
    UNARY = "unary"
    PAREN = "paren"
    IDENT = "ident"
    INT = "int"
    FLOAT = "float"
    PATH = "path"
    SEARCH_PATH = "search_path"
    URI = "uri"
    STRING = "string"
    IND_STRING = "ind_string"
    STRING_TEXT = "string_text"
    INTERPOLATION = "interpolation"


@dataclass(frozen=True, eq=False)
class Node:
    """One syntax node.

    Attributes:
        kind: Node kind.
        start: Offset of the first character of the node.
        end: Offset one past the last character of the node.
        children: Child nodes in source order.
        value: Kind-specific payload: identifier name, literal text,
            operator, decoded string text, ``"rec"`` for recursive sets,
            ``"..."`` for open patterns.
    """

    kind: NodeKind
    start: int
    end: int
    children: tuple[Node, ...] = ()
    value: Optional[str] = None

    def structure(self) -> tuple[Any, ...]:
        """Position-free shape of the subtree, for equivalence checks."""
        return (
            self.kind.value,
            self.value,
            tuple(child.structure() for child in self.children),
        )

    def walk(self) -> Iterator[Node]:
        yield self
        for child in self.children:
            yield from child.walk()


# Infix operators: (left binding power, right binding power).
_INFIX = {
    "->": (10, 10),
    "||": (20, 21),
    "&&": (30, 31),
    "==": (40, 41),
    "!=": (40, 41),
    "<": (50, 51),
    ">": (50, 51),
    "<=": (50, 51),
    ">=": (50, 51),
    "//": (60, 60),
    "+": (80, 81),
    "-": (80, 81),
    "*": (90, 91),
    "/": (90, 91),
    "++": (100, 100),
}
_HAS_ATTR_POWER = 110
_NOT_POWER = 70

_SIMPLE_KINDS = {
    TokenKind.INT: NodeKind.INT,
    TokenKind.FLOAT: NodeKind.FLOAT,
    TokenKind.PATH: NodeKind.PATH,
    TokenKind.SEARCH_PATH: NodeKind.SEARCH_PATH,
    TokenKind.URI: NodeKind.URI,
}


class _Parser:
    """Recursive-descent / precedence-climbing parser for one text."""

    def __init__(self, text: str) -> None:
        self.scanner = Scanner(text)

    # ── token helpers ─────────────────────────────────────────────

    def _peek(self, count: int = 1) -> Token:
        saved = self.scanner.pos
        try:
            for _ in range(count):
                token = self.scanner.next_token()
        finally:
            self.scanner.pos = saved
        return token

    def _next(self) -> Token:
        return self.scanner.next_token()

    def _is(self, token: Token, text: str) -> bool:
        return token.kind in (TokenKind.OP, TokenKind.KEYWORD) and token.text == text

    def _expect(self, text: str) -> Token:
        token = self._next()
        if not self._is(token, text):
            raise self._unexpected(token, f"expected {text!r}")
        return token

    def _unexpected(self, token: Token, hint: str = "") -> ParseError:
        found = "end of input" if token.kind is TokenKind.EOF else repr(token.text)
        message = f"unexpected {found}" + (f", {hint}" if hint else "")
        return self.scanner.error(message, token.start)

    # ── entry point ───────────────────────────────────────────────

    def parse(self) -> Node:
        root = self._expr()
        token = self._next()
        if token.kind is not TokenKind.EOF:
            raise self._unexpected(token, "expected end of input")
        return root

    # ── function-level expressions ────────────────────────────────

    def _expr(self) -> Node:
        token = self._peek()
        if token.kind is TokenKind.KEYWORD:
            if token.text == "let":
                return self._let_in()
            if token.text in ("with", "assert"):
                return self._with_or_assert()
            if token.text == "if":
                return self._if_else()
        if self._starts_lambda(token):
            return self._lambda()
        return self._binary(0)

    def _starts_lambda(self, token: Token) -> bool:
        if token.kind is TokenKind.IDENT:
            after = self._peek(2)
            return self._is(after, ":") or self._is(after, "@")
        if self._is(token, "{"):
            second = self._peek(2)
            if self._is(second, "}"):
                third = self._peek(3)
                return self._is(third, ":") or self._is(third, "@")
            if self._is(second, "..."):
                return True
            if second.kind is TokenKind.IDENT:
                third = self._peek(3)
                return any(self._is(third, op) for op in (",", "?", "}"))
        return False

    def _lambda(self) -> Node:
        start = self._peek().start
        params = []
        if self._peek().kind is TokenKind.IDENT:
            params.append(self._ident())
            if self._is(self._peek(), "@"):
                self._next()
                params.append(self._pattern())
        else:
            params.append(self._pattern())
            if self._is(self._peek(), "@"):
                self._next()
                params.append(self._ident())
        self._expect(":")
        body = self._expr()
        return Node(NodeKind.LAMBDA, start, body.end, (*params, body))

    def _pattern(self) -> Node:
        start = self._expect("{").start
        entries = []
        ellipsis = None
        while True:
            token = self._peek()
            if self._is(token, "}"):
                break
            if self._is(token, "..."):
                self._next()
                ellipsis = "..."
            else:
                name = self._next()
                if name.kind is not TokenKind.IDENT:
                    raise self._unexpected(name, "expected a parameter name")
                children: tuple[Node, ...] = ()
                end = name.end
                if self._is(self._peek(), "?"):
                    self._next()
                    default = self._expr()
                    children, end = (default,), default.end
                entries.append(
                    Node(NodeKind.PATTERN_ENTRY, name.start, end, children, name.text)
                )
            if self._is(self._peek(), ","):
                self._next()
            elif not self._is(self._peek(), "}"):
                raise self._unexpected(self._peek(), "expected ',' or '}'")
        end = self._expect("}").end
        return Node(NodeKind.PATTERN, start, end, tuple(entries), ellipsis)

    def _let_in(self) -> Node:
        start = self._expect("let").start
        bindings = []
        while not self._is(self._peek(), "in"):
            bindings.append(self._binding())
        self._expect("in")
        body = self._expr()
        return Node(NodeKind.LET_IN, start, body.end, (*bindings, body))

    def _with_or_assert(self) -> Node:
        keyword = self._next()
        kind = NodeKind.WITH if keyword.text == "with" else NodeKind.ASSERT
        subject = self._expr()
        self._expect(";")
        body = self._expr()
        return Node(kind, keyword.start, body.end, (subject, body))

    def _if_else(self) -> Node:
        start = self._expect("if").start
        condition = self._expr()
        self._expect("then")
        then = self._expr()
        self._expect("else")
        otherwise = self._expr()
        return Node(NodeKind.IF_ELSE, start, otherwise.end, (condition, then, otherwise))

    # ── operators ─────────────────────────────────────────────────

    def _binary(self, min_power: int) -> Node:
        left = self._prefix()
        while True:
            token = self._peek()
            if token.kind is not TokenKind.OP:
                break
            if token.text == "?" and _HAS_ATTR_POWER >= min_power:
                self._next()
                path = self._attrpath()
                left = Node(NodeKind.HAS_ATTR, left.start, path.end, (left, path))
                continue
            powers = _INFIX.get(token.text)
            if powers is None or powers[0] < min_power:
                break
            self._next()
            right = self._binary(powers[1])
            left = Node(NodeKind.BINARY, left.start, right.end, (left, right), token.text)
        return left

    def _prefix(self) -> Node:
        token = self._peek()
        if self._is(token, "!"):
            self._next()
            operand = self._binary(_NOT_POWER)
            return Node(NodeKind.UNARY, token.start, operand.end, (operand,), "!")
        if self._is(token, "-"):
            self._next()
            operand = self._application()
            return Node(NodeKind.UNARY, token.start, operand.end, (operand,), "-")
        if token.kind is TokenKind.KEYWORD and token.text in ("let", "with", "assert", "if"):
            return self._expr()
        if self._starts_lambda(token):
            return self._lambda()
        return self._application()

    def _application(self) -> Node:
        function = self._select()
        while self._starts_operand(self._peek()):
            argument = self._select()
            function = Node(
                NodeKind.APPLY, function.start, argument.end, (function, argument)
            )
        return function

    def _starts_operand(self, token: Token) -> bool:
        if token.kind is TokenKind.IDENT:
            return token.text != "or"
        if token.kind in _SIMPLE_KINDS or token.kind in (
            TokenKind.STR_OPEN,
            TokenKind.IND_STR_OPEN,
        ):
            return True
        if token.kind is TokenKind.KEYWORD:
            return token.text == "rec"
        return token.kind is TokenKind.OP and token.text in ("{", "[", "(")

    def _select(self) -> Node:
        subject = self._primary()
        if not self._is(self._peek(), "."):
            return subject
        self._next()
        path = self._attrpath()
        token = self._peek()
        if token.kind is TokenKind.IDENT and token.text == "or":
            self._next()
            default = self._select()
            return Node(
                NodeKind.SELECT, subject.start, default.end, (subject, path, default), "or"
            )
        return Node(NodeKind.SELECT, subject.start, path.end, (subject, path))

    # ── primaries ─────────────────────────────────────────────────

    def _primary(self) -> Node:
        token = self._peek()
        if token.kind is TokenKind.IDENT:
            return self._ident()
        if token.kind in _SIMPLE_KINDS:
            self._next()
            return Node(_SIMPLE_KINDS[token.kind], token.start, token.end, value=token.text)
        if token.kind in (TokenKind.STR_OPEN, TokenKind.IND_STR_OPEN):
            return self._string()
        if self._is(token, "rec") or self._is(token, "{"):
            return self._attr_set()
        if self._is(token, "["):
            return self._list()
        if self._is(token, "("):
            self._next()
            inner = self._expr()
            end = self._expect(")").end
            return Node(NodeKind.PAREN, token.start, end, (inner,))
        raise self._unexpected(token, "expected an expression")

    def _ident(self) -> Node:
        token = self._next()
        if token.kind is not TokenKind.IDENT:
            raise self._unexpected(token, "expected an identifier")
        return Node(NodeKind.IDENT, token.start, token.end, value=token.text)

    def _string(self) -> Node:
        opener = self._next()
        indented = opener.kind is TokenKind.IND_STR_OPEN
        parts = []
        while True:
            fragment = self.scanner.string_fragment(indented)
            if fragment.kind is TokenKind.STR_CLOSE:
                break
            if fragment.kind is TokenKind.STR_TEXT:
                parts.append(
                    Node(NodeKind.STRING_TEXT, fragment.start, fragment.end, value=fragment.text)
                )
            else:
                parts.append(self._interpolation_body(fragment))
        kind = NodeKind.IND_STRING if indented else NodeKind.STRING
        literal = None
        if all(part.kind is NodeKind.STRING_TEXT for part in parts):
            literal = "".join(part.value or "" for part in parts)
        return Node(kind, opener.start, fragment.end, tuple(parts), literal)

    def _interpolation_body(self, opener: Token) -> Node:
        inner = self._expr()
        end = self._expect("}").end
        return Node(NodeKind.INTERPOLATION, opener.start, end, (inner,))

    def _list(self) -> Node:
        start = self._expect("[").start
        items = []
        while not self._is(self._peek(), "]"):
            if self._peek().kind is TokenKind.EOF:
                raise self._unexpected(self._peek(), "expected ']'")
            items.append(self._select())
        end = self._expect("]").end
        return Node(NodeKind.LIST, start, end, tuple(items))

    def _attr_set(self) -> Node:
        start = self._peek().start
        recursive = None
        if self._is(self._peek(), "rec"):
            self._next()
            recursive = "rec"
        self._expect("{")
        bindings = []
        while not self._is(self._peek(), "}"):
            bindings.append(self._binding())
        end = self._expect("}").end
        return Node(NodeKind.ATTR_SET, start, end, tuple(bindings), recursive)

    # ── bindings ──────────────────────────────────────────────────

    def _binding(self) -> Node:
        token = self._peek()
        if self._is(token, "inherit"):
            return self._inherit()
        path = self._attrpath()
        self._expect("=")
        value = self._expr()
        end = self._expect(";").end
        return Node(NodeKind.BINDING, path.start, end, (path, value))

    def _inherit(self) -> Node:
        start = self._expect("inherit").start
        children = []
        if self._is(self._peek(), "("):
            opener = self._next()
            source = self._expr()
            close = self._expect(")")
            children.append(Node(NodeKind.INHERIT_FROM, opener.start, close.end, (source,)))
        while not self._is(self._peek(), ";"):
            children.append(self._attr_name())
        end = self._expect(";").end
        return Node(NodeKind.INHERIT, start, end, tuple(children))

    def _attrpath(self) -> Node:
        names = [self._attr_name()]
        while self._is(self._peek(), "."):
            self._next()
            names.append(self._attr_name())
        return Node(NodeKind.ATTRPATH, names[0].start, names[-1].end, tuple(names))

    def _attr_name(self) -> Node:
        token = self._peek()
        if token.kind is TokenKind.IDENT:
            return self._ident()
        if token.kind is TokenKind.STR_OPEN:
            return self._string()
        if token.kind is TokenKind.INTERP_OPEN:
            self._next()
            return self._interpolation_body(token)
        raise self._unexpected(token, "expected an attribute name")


def attr_name_text(node: Node) -> Optional[str]:
    """Static text of an attribute name node, or None if it is dynamic."""
    if node.kind is NodeKind.IDENT:
        return node.value
    if node.kind is NodeKind.STRING:
        return node.value
    return None


def binding_path(binding: Node) -> Optional[list[str]]:
    """Static attribute path of a ``BINDING`` node, e.g. ``["hosts", "a"]``."""
    names = [attr_name_text(name) for name in binding.children[0].children]
    if any(name is None for name in names):
        return None
    return names  # type: ignore[return-value]


def defined_names(attr_set: Node) -> list[str]:
    """First-level attribute names defined by bindings and ``inherit``."""
    names = []
    for child in attr_set.children:
        if child.kind is NodeKind.BINDING:
            path = binding_path(child)
            if path:
                names.append(path[0])
        elif child.kind is NodeKind.INHERIT:
            for name in child.children:
                text = attr_name_text(name)
                if text is not None:
                    names.append(text)
    return names


def _line_start(text: str, offset: int) -> int:
    return text.rfind("\n", 0, offset) + 1


def _line_indent(text: str, offset: int) -> str:
    start = _line_start(text, offset)
    end = start
    while end < len(text) and text[end] in " \t":
        end += 1
    return text[start:end]


def _starts_line(text: str, offset: int) -> bool:
    return text[_line_start(text, offset):offset].strip(" \t") == ""


class ConfigDocument:
    """An immutable parsed Nix document.

    Attributes:
        text: The exact source text.
        root: Root expression node.
    """

    __slots__ = ("text", "root")

    def __init__(self, text: str, root: Node) -> None:
        self.text = text
        self.root = root

    @classmethod
    def parse(cls, text: str) -> ConfigDocument:
        """Parse ``text``.

        Raises:
            ParseError: If the text is not a valid Nix expression, or nests
                deeper than the parser can follow.
        """
        try:
            root = _Parser(text).parse()
        except RecursionError:
            raise ParseError("expression nested too deeply", text, 0) from None
        return cls(text, root)

    def serialize(self) -> str:
        return self.text

    def structure(self) -> tuple[Any, ...]:
        return self.root.structure()

    def source(self, node: Node) -> str:
        return self.text[node.start:node.end]

    def body(self) -> Node:
        """Top-level value, looking through function headers, ``let … in``,
        ``with …;`` and ``assert …;`` wrappers."""
        node = self.root
        while True:
            if node.kind in (NodeKind.LAMBDA, NodeKind.LET_IN, NodeKind.WITH, NodeKind.ASSERT):
                node = node.children[-1]
            elif node.kind is NodeKind.PAREN:
                node = node.children[0]
            else:
                return node

    def insert_binding(self, attr_set: Node, binding: str) -> ConfigDocument:
        """Return a new document with ``binding`` appended to ``attr_set``.

        ``binding`` is the text of one binding (``name = value;``), possibly
        spanning several lines written with no indentation of their own; it
        is indented to match the set's existing entries. The set's closing
        brace keeps its own line, or moves to one when the set was written
        inline.

        Raises:
            ValueError: If ``attr_set`` is not an attribute set of this document.
            ParseError: If the result does not parse.
        """
        if attr_set.kind is not NodeKind.ATTR_SET or self.text[attr_set.end - 1] != "}":
            raise ValueError("insert_binding needs an attribute set node")

        text = self.text
        close = attr_set.end - 1
        closing_indent = _line_indent(text, attr_set.start)

        entry_indent = closing_indent + "  "
        for child in attr_set.children:
            if _starts_line(text, child.start):
                entry_indent = _line_indent(text, child.start)
                break

        lines = binding.strip("\n").split("\n")
        block = "\n".join(entry_indent + line if line else line for line in lines)

        if _starts_line(text, close):
            cut = _line_start(text, close)
            new_text = text[:cut] + block + "\n" + text[cut:]
        else:
            cut = close
            while cut > attr_set.start + 1 and text[cut - 1] in " \t":
                cut -= 1
            new_text = text[:cut] + "\n" + block + "\n" + closing_indent + text[close:]

        return ConfigDocument.parse(new_text)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConfigDocument):
            return NotImplemented
        return self.text == other.text

    def __hash__(self) -> int:
        return hash(self.text)

    def __repr__(self) -> str:
        return f"ConfigDocument({len(self.text)} chars, root={self.root.kind.value})"


def parse(text: str) -> ConfigDocument:
    """Parse a Nix text into a ``ConfigDocument``."""
    return ConfigDocument.parse(text)
