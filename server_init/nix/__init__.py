"""Nix configuration documents.

Parses the declarative Nix texts that nodes submit and that the cluster
repository stores, into span-preserving syntax trees that can be edited
without disturbing the surrounding text.
"""

from server_init.nix.document import (
    ConfigDocument,
    Node,
    NodeKind,
    attr_name_text,
    binding_path,
    defined_names,
    parse,
)
from server_init.nix.lexer import ParseError, escape_string, is_path_literal

__all__ = [
    "ConfigDocument",
    "Node",
    "NodeKind",
    "ParseError",
    "attr_name_text",
    "binding_path",
    "defined_names",
    "escape_string",
    "is_path_literal",
    "parse",
]
