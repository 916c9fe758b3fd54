"""
Path language tests: direct and indirect paths, dependency extraction,
mode inference and transform parsing.
"""

import pytest

from starbind.core.errors import InvalidPathSyntax
from starbind.core.paths import (
    BindingMode,
    FieldPath,
    extract_dependencies,
    infer_mode,
    is_literal_expression,
    parse_expression,
    parse_literal,
    parse_path,
    parse_transform,
)


def names(paths):
    return [path.text for path in paths]


class TestFieldPaths:
    """Direct and indirect field references"""

    def test_direct_field(self):
        assert parse_path("Temperature") == ("Temperature",)

    def test_indirect_path_splits_on_separator(self):
        assert parse_path("Parent->Parent->Status") == ("Parent", "Parent", "Status")

    def test_whitespace_around_separator_is_trimmed(self):
        path = FieldPath.parse("  Parent ->  Status ")
        assert path.hops == ("Parent", "Status")
        assert path.text == "Parent->Status"
        assert path.field == "Status"
        assert path.relations == ("Parent",)
        assert path.is_indirect

    @pytest.mark.parametrize("text, position", [
        ("A->", 1),
        ("->A", 0),
        ("A->->B", 1),
    ])
    def test_empty_segments_are_rejected(self, text, position):
        with pytest.raises(InvalidPathSyntax) as info:
            parse_path(text)
        assert info.value.position == position

    def test_empty_path_is_rejected(self):
        with pytest.raises(InvalidPathSyntax):
            parse_path("   ")

    def test_operators_are_not_a_path(self):
        with pytest.raises(InvalidPathSyntax) as info:
            parse_path("A + B")
        assert info.value.position == 2

    def test_identifier_cannot_start_with_digit(self):
        with pytest.raises(InvalidPathSyntax):
            parse_path("2Status")

    @pytest.mark.parametrize("text", ["Température", "Parent->Ünit", "Level\u0663", "\u0661Level"])
    def test_identifiers_are_ascii(self, text):
        with pytest.raises(InvalidPathSyntax):
            parse_path(text)

    def test_equivalence_is_structural(self):
        assert FieldPath(("Parent", "Status"), "E1") == FieldPath.parse("Parent -> Status", "E1")
        assert FieldPath(("Parent", "Status"), "E1") != FieldPath(("Parent", "Status"), "E2")
        assert len({FieldPath(("A",), 1), FieldPath(("A",), 1)}) == 1

    def test_field_path_requires_a_hop(self):
        with pytest.raises(ValueError):
            FieldPath(())

    def test_rooted_at(self):
        path = FieldPath.parse("Parent->Status").rooted_at("E7")
        assert path.root == "E7"
        assert str(path) == "E7:Parent->Status"


class TestDependencyExtraction:
    """Script dependency sets"""

    def test_quoted_literals_are_not_paths(self):
        deps = extract_dependencies("A > 80 ? 'red' : 'green'")
        assert names(deps) == ["A"]

    def test_indirect_runs_and_helper_calls(self):
        deps = extract_dependencies("clamp(Level, 0, 100) + Parent->Temp * pi")
        assert names(deps) == ["Level", "Parent->Temp"]

    def test_keywords_are_not_dependencies(self):
        deps = extract_dependencies("Running and not Faulted or true == null")
        assert names(deps) == ["Running", "Faulted"]

    def test_duplicates_collapse_in_first_appearance_order(self):
        deps = extract_dependencies("B + A + B + Parent -> A")
        assert names(deps) == ["B", "A", "Parent->A"]

    def test_identifiers_inside_double_quotes_are_ignored(self):
        assert names(extract_dependencies('"Pressure: " + Pressure')) == ["Pressure"]

    def test_reserved_names(self):
        assert names(extract_dependencies("value * Scale", reserved=("value",))) == ["Scale"]

    def test_unterminated_string(self):
        with pytest.raises(InvalidPathSyntax):
            extract_dependencies("A + 'abc")

    def test_trailing_separator_in_script(self):
        with pytest.raises(InvalidPathSyntax):
            extract_dependencies("Parent-> + 1")

    def test_non_ascii_digits_are_not_numbers(self):
        with pytest.raises(InvalidPathSyntax):
            extract_dependencies("Level + \u0661")


class TestModes:
    """Mode inference and explicit modes"""

    @pytest.mark.parametrize("text", ["'hello'", '"hi"', "42", "3.5", "true", "false", "null"])
    def test_literals(self, text):
        assert infer_mode(text) is BindingMode.LITERAL
        assert is_literal_expression(text)

    @pytest.mark.parametrize("text", ["Temperature", "Parent->Status", "A -> B -> C"])
    def test_fields(self, text):
        assert infer_mode(text) is BindingMode.FIELD

    @pytest.mark.parametrize("text", ["A + 1", "pi", "-5", "round(Level)", "A > 80 ? 'x' : 'y'"])
    def test_scripts(self, text):
        assert infer_mode(text) is BindingMode.SCRIPT

    def test_parse_literal_values(self):
        assert parse_literal("'on'") == (True, "on")
        assert parse_literal("12") == (True, 12)
        assert parse_literal("null") == (True, None)
        assert parse_literal("Level") == (False, None)

    def test_literal_expression_has_no_dependencies(self):
        parsed = parse_expression("'Online'")
        assert parsed.mode is BindingMode.LITERAL
        assert parsed.literal == "Online"
        assert parsed.paths == ()
        assert parsed.is_constant

    def test_explicit_literal_mode_passes_text_through(self):
        parsed = parse_expression("$5 off", "literal")
        assert parsed.literal == "$5 off"

    def test_field_mode(self):
        parsed = parse_expression("Parent->Status", "field")
        assert parsed.dependency_names == ("Parent->Status",)

    def test_field_mode_rejects_scripts(self):
        with pytest.raises(InvalidPathSyntax):
            parse_expression("A + B", "field")

    def test_script_mode(self):
        parsed = parse_expression("Temperature > 80 ? 'red' : 'green'")
        assert parsed.mode is BindingMode.SCRIPT
        assert parsed.dependency_names == ("Temperature",)

    def test_empty_expression(self):
        with pytest.raises(InvalidPathSyntax):
            parse_expression("  ", "script")

    def test_mode_coercion(self):
        assert BindingMode.coerce("twoWay") is BindingMode.FIELD
        assert BindingMode.coerce("SCRIPT") is BindingMode.SCRIPT
        assert BindingMode.coerce("") is None
        assert BindingMode.coerce(None) is None
        with pytest.raises(ValueError):
            BindingMode.coerce("formula")


class TestTransforms:
    """Transform stage parsing"""

    def test_value_is_the_input(self):
        parsed = parse_transform("value * Scale")
        assert parsed.input_name == "value"
        assert parsed.dependency_names == ("Scale",)

    def test_arrow_function(self):
        parsed = parse_transform("v => v * 2")
        assert parsed.input_name == "v"
        assert parsed.text == "v * 2"
        assert parsed.paths == ()

    def test_parenthesised_arrow(self):
        parsed = parse_transform("(x) => x + Offset")
        assert parsed.input_name == "x"
        assert parsed.dependency_names == ("Offset",)

    def test_empty_transform(self):
        with pytest.raises(InvalidPathSyntax):
            parse_transform("")
