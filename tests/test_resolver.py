"""
Tests for template resolution and expression evaluation.
"""

import pytest

from durableflow.engine.errors import ExpressionError
from durableflow.engine.resolver import (
    build_scope,
    evaluate_condition,
    evaluate_expression,
    find_references,
    get_path,
    resolve_template,
    resolve_value,
)


@pytest.fixture
def scope():
    variables = {
        "lastOutput": {"total": 3},
        "state": {"count": 2, "name": "bob"},
        "fetch": {"status": 200, "body": {"items": [{"id": "a"}, {"id": "b"}]}},
        "node-1": "dashed",
    }
    return build_scope(variables, {"x": 5, "name": "alice", "tags": ["red", "blue"]})


# ============================================================
# Path Lookup
# ============================================================

class TestGetPath:
    """Tests for dotted path lookup."""

    def test_nested_keys(self, scope):
        assert get_path(scope, "fetch.status") == 200
        assert get_path(scope, "state.count") == 2

    def test_list_indexes(self, scope):
        assert get_path(scope, "fetch.body.items[1].id") == "b"
        assert get_path(scope, "input.tags.0") == "red"

    def test_missing_returns_default(self, scope):
        assert get_path(scope, "fetch.body.nothing") is None
        assert get_path(scope, "input.tags[9]", "fallback") == "fallback"

    def test_ids_that_are_not_identifiers(self, scope):
        assert get_path(scope, "variables.node-1") == "dashed"


# ============================================================
# Templates
# ============================================================

class TestTemplates:
    """Tests for {{...}} templates."""

    def test_whole_template_keeps_type(self, scope):
        assert resolve_template("{{input.x}}", scope) == 5
        assert resolve_template("{{ fetch.body.items }}", scope) == [{"id": "a"}, {"id": "b"}]

    def test_interpolation_renders_text(self, scope):
        assert resolve_template("Hello {{input.name}}, x={{input.x}}", scope) == "Hello alice, x=5"

    def test_interpolation_renders_json_for_objects(self, scope):
        assert resolve_template("out: {{lastOutput}}", scope) == 'out: {"total": 3}'

    def test_missing_reference(self, scope):
        assert resolve_template("{{input.nope}}", scope) is None
        assert resolve_template("[{{input.nope}}]", scope) == "[]"

    def test_resolve_value_recurses(self, scope):
        value = {"url": "/items/{{input.x}}", "list": ["{{state.name}}", 1], "flag": True}
        assert resolve_value(value, scope) == {"url": "/items/5", "list": ["bob", 1], "flag": True}

    def test_plain_strings_untouched(self, scope):
        assert resolve_value("no templates here", scope) == "no templates here"

    def test_find_references(self):
        refs = find_references({"a": "{{input.x}}", "b": ["{{ state.count }} and {{lastOutput}}"]})
        assert refs == ["input.x", "state.count", "lastOutput"]


# ============================================================
# Expressions
# ============================================================

class TestExpressions:
    """Tests for sandboxed expressions."""

    def test_arithmetic(self, scope):
        assert evaluate_expression("input.x * 2", scope) == 10
        assert evaluate_expression("state.count + lastOutput.total", scope) == 5

    def test_functions_and_literals(self, scope):
        assert evaluate_expression("len(input.tags)", scope) == 2
        assert evaluate_expression("true", scope) is True
        assert evaluate_expression("null", scope) is None

    def test_non_strings_pass_through(self, scope):
        assert evaluate_expression(42, scope) == 42

    def test_unknown_name(self, scope):
        with pytest.raises(ExpressionError):
            evaluate_expression("missing_name + 1", scope)

    def test_syntax_error(self, scope):
        with pytest.raises(ExpressionError):
            evaluate_expression("1 +", scope)

    def test_no_imports(self, scope):
        with pytest.raises(ExpressionError):
            evaluate_expression("__import__('os')", scope)


class TestConditions:
    """Tests for boolean conditions."""

    def test_comparison(self, scope):
        assert evaluate_condition("input.x > 3", scope) is True
        assert evaluate_condition("input.x > 30", scope) is False

    def test_empty_is_false(self, scope):
        assert evaluate_condition(None, scope) is False
        assert evaluate_condition("   ", scope) is False

    def test_booleans_pass_through(self, scope):
        assert evaluate_condition(True, scope) is True

    def test_template_in_condition(self, scope):
        assert evaluate_condition("{{input.x}} > 3", scope) is True
        assert evaluate_condition("{{state.count}}", scope) is True

    def test_string_comparison(self, scope):
        assert evaluate_condition("state.name == 'bob'", scope) is True
