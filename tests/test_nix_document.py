"""Tests for the Nix document parser and span-preserving edits."""

import pytest

from server_init.nix import ConfigDocument, NodeKind, ParseError, defined_names, escape_string
from server_init.nix.document import binding_path

from tests.conftest import CLUSTER_NIX, HARDWARE_NIX, OS_NIX


def kinds(doc: ConfigDocument) -> set[NodeKind]:
    return {node.kind for node in doc.root.walk()}


class TestParse:
    """Parsing of realistic and edge-case documents."""

    @pytest.mark.parametrize("text", [CLUSTER_NIX, HARDWARE_NIX, OS_NIX])
    def test_parses_fixture_documents(self, text: str) -> None:
        doc = ConfigDocument.parse(text)
        assert doc.serialize() == text

    def test_function_header_and_body(self) -> None:
        doc = ConfigDocument.parse(OS_NIX)
        assert doc.root.kind is NodeKind.LAMBDA
        pattern = doc.root.children[0]
        assert pattern.kind is NodeKind.PATTERN
        assert pattern.value == "..."
        assert [entry.value for entry in pattern.children] == ["config", "pkgs"]
        assert doc.body().kind is NodeKind.ATTR_SET

    def test_let_in_body(self) -> None:
        doc = ConfigDocument.parse(CLUSTER_NIX)
        assert doc.root.kind is NodeKind.LET_IN
        assert defined_names(doc.body()) == ["hosts", "wireguard.age"]

    def test_dotted_and_quoted_attribute_paths(self) -> None:
        doc = ConfigDocument.parse(HARDWARE_NIX)
        paths = [binding_path(b) for b in doc.body().children if b.kind is NodeKind.BINDING]
        assert ["fileSystems", "/"] in paths
        assert ["boot", "initrd", "availableKernelModules"] in paths

    @pytest.mark.parametrize(
        "text, kind",
        [
            ('"a ${toString 1} b"', NodeKind.INTERPOLATION),
            ("''\n  line ${x}\n  '''quoted'''\n''", NodeKind.IND_STRING),
            ("rec { a = 1; b = a; }", NodeKind.ATTR_SET),
            ("{ inherit (pkgs) hello; inherit lib; }", NodeKind.INHERIT_FROM),
            ("x: y: x + y", NodeKind.LAMBDA),
            ("args@{ a ? 1, ... }: a", NodeKind.PATTERN_ENTRY),
            ("{ ... }@args: args", NodeKind.PATTERN),
            ("if a then b else c", NodeKind.IF_ELSE),
            ("assert x != null; x", NodeKind.ASSERT),
            ("a.b.c or 3", NodeKind.SELECT),
            ("a ? b.c", NodeKind.HAS_ATTR),
            ("!a && -b < 2", NodeKind.UNARY),
            ("[ 1 2.5 ./foo <nixpkgs> https://example.com/x ]", NodeKind.SEARCH_PATH),
            ("{ ${name} = 1; }", NodeKind.INTERPOLATION),
            ("/* block */ a // b # trailing", NodeKind.BINARY),
            ("~/src/x", NodeKind.PATH),
            ("{ }: 1", NodeKind.PATTERN),
        ],
    )
    def test_constructs(self, text: str, kind: NodeKind) -> None:
        assert kind in kinds(ConfigDocument.parse(text))

    def test_operator_precedence(self) -> None:
        doc = ConfigDocument.parse("a + b * c")
        assert doc.root.kind is NodeKind.BINARY
        assert doc.root.value == "+"
        assert doc.root.children[1].value == "*"

    def test_update_operator_is_right_associative(self) -> None:
        doc = ConfigDocument.parse("a // b // c")
        assert doc.root.children[0].kind is NodeKind.IDENT
        assert doc.root.children[1].value == "//"

    def test_application_binds_tighter_than_operators(self) -> None:
        doc = ConfigDocument.parse("f x ++ g y")
        assert doc.root.value == "++"
        assert doc.root.children[0].kind is NodeKind.APPLY

    def test_list_items_are_not_applied(self) -> None:
        doc = ConfigDocument.parse("[ a b c ]")
        assert len(doc.root.children) == 3

    def test_string_escapes_are_decoded(self) -> None:
        doc = ConfigDocument.parse(r'"a\"b\n\${c}"')
        assert doc.root.value == 'a"b\n${c}'

    def test_escape_string_round_trips(self) -> None:
        value = 'ssh-ed25519 AAAA "quoted" ${not-interpolated} \\ end'
        doc = ConfigDocument.parse(escape_string(value))
        assert doc.root.kind is NodeKind.STRING
        assert doc.root.value == value


class TestParseErrors:
    """Invalid texts raise ParseError with a position."""

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "{ a = 1 }",
            "{ a = 1;",
            '"unterminated',
            "''unterminated",
            "/* open comment",
            "let a = 1; b",
            "{ a = 1; } }",
            "[ 1 2",
            "a +",
            "{ config, pkgs }",
            "if a then b",
            "x = 1;",
            "$",
        ],
    )
    def test_invalid(self, text: str) -> None:
        with pytest.raises(ParseError):
            ConfigDocument.parse(text)

    def test_error_position(self) -> None:
        with pytest.raises(ParseError) as info:
            ConfigDocument.parse("{\n  a = 1;\n  b = ;\n}")
        assert info.value.line == 3
        assert info.value.column == 7


class TestStructure:
    """Structural equivalence ignores formatting but not content."""

    def test_formatting_does_not_change_structure(self) -> None:
        a = ConfigDocument.parse("{ a = 1; b = [ x y ]; }")
        b = ConfigDocument.parse("{\n  a = 1; # one\n  b = [\n    x\n    y\n  ];\n}")
        assert a.structure() == b.structure()
        assert a != b

    def test_content_changes_structure(self) -> None:
        a = ConfigDocument.parse("{ a = 1; }")
        b = ConfigDocument.parse("{ a = 2; }")
        assert a.structure() != b.structure()

    def test_reparse_of_serialization_is_equivalent(self) -> None:
        doc = ConfigDocument.parse(OS_NIX)
        assert ConfigDocument.parse(doc.serialize()).structure() == doc.structure()


class TestInsertBinding:
    """Appending bindings to attribute sets."""

    def test_insert_into_multiline_set(self) -> None:
        doc = ConfigDocument.parse("{\n  hosts = {\n    a = 1;\n  };\n}\n")
        hosts = doc.body().children[0].children[1]

        updated = doc.insert_binding(hosts, "b = 2;")

        assert updated.serialize() == "{\n  hosts = {\n    a = 1;\n    b = 2;\n  };\n}\n"

    def test_insert_into_empty_multiline_set(self) -> None:
        doc = ConfigDocument.parse(CLUSTER_NIX)
        hosts = doc.body().children[0].children[1]

        updated = doc.insert_binding(hosts, "x = {\n  y = 1;\n};")

        assert "  hosts = {\n    x = {\n      y = 1;\n    };\n  };\n" in updated.serialize()
        assert updated.serialize().startswith(CLUSTER_NIX.split("  hosts")[0])
        assert updated.serialize().endswith('"wireguard.age".publicKeys = [ admin ];\n}\n')

    def test_insert_into_inline_set(self) -> None:
        doc = ConfigDocument.parse("{\n  hosts = { };\n}\n")
        hosts = doc.body().children[0].children[1]

        updated = doc.insert_binding(hosts, "a = 1;")

        assert updated.serialize() == "{\n  hosts = {\n    a = 1;\n  };\n}\n"

    def test_insert_keeps_other_bytes(self) -> None:
        text = "{\n  # keep me\n  hosts = {\n    a = 1; # and me\n  };\n  other = \"x\";\n}\n"
        doc = ConfigDocument.parse(text)
        hosts = doc.body().children[0].children[1]

        updated = doc.insert_binding(hosts, "b = 2;").serialize()

        assert updated.replace("    b = 2;\n", "") == text

    def test_insert_returns_new_document(self) -> None:
        doc = ConfigDocument.parse("{ hosts = { }; }")
        hosts = doc.body().children[0].children[1]
        before = doc.serialize()

        updated = doc.insert_binding(hosts, "a = 1;")

        assert doc.serialize() == before
        assert defined_names(updated.body().children[0].children[1]) == ["a"]

    def test_insert_requires_attr_set(self) -> None:
        doc = ConfigDocument.parse("{ hosts = [ ]; }")
        with pytest.raises(ValueError):
            doc.insert_binding(doc.body().children[0].children[1], "a = 1;")

    def test_invalid_binding_text_raises_parse_error(self) -> None:
        doc = ConfigDocument.parse("{ hosts = { }; }")
        with pytest.raises(ParseError):
            doc.insert_binding(doc.body().children[0].children[1], "a = ;")


class TestDollarEscapes:
    """``$$`` is literal text inside both string forms."""

    def test_indented_string_with_shell_expansion(self) -> None:
        doc = ConfigDocument.parse("{ script = ''\n  echo $${VAR#prefix}\n''; }")
        value = doc.body().children[0].children[1]
        assert value.kind is NodeKind.IND_STRING
        assert value.value == "\n  echo $${VAR#prefix}\n"
        assert NodeKind.INTERPOLATION not in kinds(doc)

    def test_double_quoted_string(self) -> None:
        doc = ConfigDocument.parse('"$${HOME}"')
        assert doc.root.value == "$${HOME}"
        assert NodeKind.INTERPOLATION not in kinds(doc)

    def test_interpolation_after_dollar_pair(self) -> None:
        doc = ConfigDocument.parse('"$$ ${x}"')
        assert NodeKind.INTERPOLATION in kinds(doc)

    def test_escaped_value_round_trips(self) -> None:
        value = "a $${b} ${c} $$"
        assert ConfigDocument.parse(escape_string(value)).root.value == value


class TestLimits:
    """Inputs the parser refuses instead of crashing on."""

    def test_deep_nesting_is_a_parse_error(self) -> None:
        text = "{ a = " + "(" * 5000 + "1" + ")" * 5000 + "; }"
        with pytest.raises(ParseError, match="nested too deeply"):
            ConfigDocument.parse(text)

    def test_moderate_nesting_still_parses(self) -> None:
        doc = ConfigDocument.parse("[ " * 20 + "1" + " ]" * 20)
        assert doc.root.kind is NodeKind.LIST

    @pytest.mark.parametrize("text", ["[ ./foo/ ]", "./foo/", "~/src/"])
    def test_trailing_slash_paths_are_rejected(self, text: str) -> None:
        with pytest.raises(ParseError):
            ConfigDocument.parse(text)
