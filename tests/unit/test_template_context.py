"""Tests for template rendering, context building and parameter trees."""

import pytest

from src.domain.models.params import (
    ExpressionParam,
    LiteralParam,
    MappingParam,
    SequenceParam,
    TemplateParam,
    compile_params,
)
from src.domain.models.session import Session
from src.domain.models.tenant import SessionTypeConfig, TenantConfig
from src.services.template_context import TemplateContextBuilder
from src.services.template_renderer import TemplateRenderer


@pytest.fixture
def tenant():
    return TenantConfig(
        tenant_id="acme",
        display_name="Acme Homes",
        constants={"office_email": "office@acme.example", "greeting": "Hello"},
        default_session_type="intake",
        session_types={"intake": SessionTypeConfig(required_fields=["postal_code", "issue"])},
    )


@pytest.fixture
def builder(tenant):
    return TemplateContextBuilder(tenant)


@pytest.fixture
def session():
    return Session(
        tenant_id="acme",
        session_type="intake",
        session_data={"issue": "leak"},
        variables={"greeting": "Hi there", "nested": {"count": 1}},
    )


class TestTemplateContextBuilder:
    def test_build_is_deterministic(self, builder, session):
        assert builder.build(session) == builder.build(session)

    def test_build_does_not_alias_session_state(self, builder, session):
        context = builder.build(session)
        context["nested"]["count"] = 99
        context["session_data"]["issue"] = "changed"

        assert session.variables["nested"]["count"] == 1
        assert session.session_data["issue"] == "leak"
        assert builder.build(session)["nested"]["count"] == 1

    def test_layer_precedence(self, builder, session):
        context = builder.build(session, extra={"office_email": "override@acme.example"})

        # variables override constants, extra overrides everything
        assert context["greeting"] == "Hi there"
        assert context["office_email"] == "override@acme.example"

    def test_derived_values(self, builder, session):
        context = builder.build(session)

        assert context["ref_code"] == session.ref_code
        assert context["tenant_name"] == "Acme Homes"
        assert context["missing_fields"] == ["postal_code"]
        assert context["thread_length"] == 0

    def test_missing_fields_cleared_when_collected(self, builder, session):
        session.session_data["postal_code"] = "94110"

        assert builder.missing_fields(session) == []

    def test_empty_values_count_as_missing(self, builder, session):
        session.session_data["postal_code"] = ""

        assert builder.missing_fields(session) == ["postal_code"]


class TestTemplateRenderer:
    def test_missing_keys_render_empty(self):
        renderer = TemplateRenderer()

        assert renderer.render("Hi {{ user.name }}!", {}) == "Hi !"

    def test_render_with_context(self):
        renderer = TemplateRenderer()

        assert renderer.render("{{ a }}-{{ b | upper }}", {"a": 1, "b": "x"}) == "1-X"

    def test_syntax_error_returns_fallback(self):
        renderer = TemplateRenderer(fallback="[unavailable]")

        assert renderer.render("{% if %}", {}) == "[unavailable]"

    def test_runtime_error_returns_fallback(self):
        renderer = TemplateRenderer(fallback="")

        assert renderer.render("{{ 1 / 0 }}", {}) == ""

    def test_sandbox_blocks_attribute_escape(self):
        renderer = TemplateRenderer(fallback="blocked")

        assert renderer.render("{{ ''.__class__.__mro__ }}", {}) in ("blocked", "")

    def test_evaluate_keeps_native_types(self):
        renderer = TemplateRenderer()
        context = {"args": {"postal_code": "94110"}, "items": [1, 2]}

        assert renderer.evaluate("args", context) == {"postal_code": "94110"}
        assert renderer.evaluate("items | length", context) == 2

    def test_evaluate_undefined_is_none(self):
        renderer = TemplateRenderer()

        assert renderer.evaluate("missing.deeply.nested", {}) is None

    def test_is_truthy(self):
        renderer = TemplateRenderer()

        assert renderer.is_truthy(None, {}) is True
        assert renderer.is_truthy("not missing_fields", {"missing_fields": []}) is True
        assert renderer.is_truthy("not missing_fields", {"missing_fields": ["x"]}) is False


class TestParamTree:
    def test_compile_shapes(self):
        tree = compile_params(
            {
                "literal": "plain",
                "number": 3,
                "template": "Ref {{ ref_code }}",
                "expression": "{{ session_data }}",
                "list": ["a", "{{ b }}"],
            }
        )

        assert isinstance(tree, MappingParam)
        assert isinstance(tree.children["literal"], LiteralParam)
        assert isinstance(tree.children["number"], LiteralParam)
        assert isinstance(tree.children["template"], TemplateParam)
        assert isinstance(tree.children["expression"], ExpressionParam)
        assert isinstance(tree.children["list"], SequenceParam)

    def test_two_placeholders_are_a_template(self):
        assert isinstance(compile_params("{{ a }} and {{ b }}"), TemplateParam)

    def test_resolution_happens_at_run_time(self):
        renderer = TemplateRenderer()
        tree = compile_params({"to": "{{ email }}", "subject": "Report {{ ref }}"})

        first = tree.resolve(renderer, {"email": "a@x.example", "ref": "R1"})
        second = tree.resolve(renderer, {"email": "b@x.example", "ref": "R2"})

        assert first == {"to": "a@x.example", "subject": "Report R1"}
        assert second == {"to": "b@x.example", "subject": "Report R2"}

    def test_expression_passes_mapping_through(self):
        renderer = TemplateRenderer()
        tree = compile_params({"values": "{{ tool.arguments }}"})

        resolved = tree.resolve(renderer, {"tool": {"arguments": {"issue": "leak"}}})

        assert resolved == {"values": {"issue": "leak"}}

    def test_missing_placeholder_never_raises(self):
        renderer = TemplateRenderer()
        tree = compile_params(["{{ nothing }}", "x{{ nothing }}y"])

        assert tree.resolve(renderer, {}) == ["", "xy"]

    def test_missing_expression_stored_as_empty_string(self):
        renderer = TemplateRenderer()
        tree = compile_params({"values": {"report_summary": "{{ tool.arguments.summary }}"}})

        assert tree.resolve(renderer, {"tool": {"arguments": {}}}) == {
            "values": {"report_summary": ""}
        }
