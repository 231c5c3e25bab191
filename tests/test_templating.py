"""
Tests for custom-route response templates.
"""

import json

from inbox_gateway.templating import render_template, resolve_path


class TestPlaceholders:
    """Test value placeholders."""

    def test_flat_query_key_with_dots(self):
        """hub.challenge is a single flat query key, not a nested path."""
        query = {"hub.mode": "subscribe", "hub.challenge": "12345"}
        assert render_template("{{query.hub.challenge}}", query=query) == "12345"

    def test_nested_body_value(self):
        body = {"order": {"id": 42, "items": [{"sku": "A1"}]}}
        assert render_template("id={{ body.order.id }}", body=body) == "id=42"
        assert render_template("{{body.order.items.0.sku}}", body=body) == "A1"

    def test_header_value(self):
        headers = {"x-request-source": "crm"}
        assert render_template("from {{headers.x-request-source}}", headers=headers) == "from crm"

    def test_unresolved_renders_empty(self):
        assert render_template("[{{query.missing}}]", query={}) == "[]"
        assert render_template("[{{body.a.b}}]", body={"a": 1}) == "[]"
        assert render_template("[{{cookies.x}}]") == "[]"

    def test_non_string_values(self):
        body = {"flag": True, "count": 3, "nested": {"a": 1}}
        assert render_template("{{body.flag}}", body=body) == "true"
        assert render_template("{{body.count}}", body=body) == "3"
        assert json.loads(render_template("{{body.nested}}", body=body)) == {"a": 1}

    def test_literal_text_kept(self):
        assert render_template("plain text", query={"a": "b"}) == "plain text"
        assert render_template("") == ""
        assert render_template(None) == ""

    def test_substituted_values_not_rescanned(self):
        query = {"a": "{{query.b}}", "b": "leak"}
        assert render_template("{{query.a}}", query=query) == "{{query.b}}"


class TestJsonPlaceholder:
    """Test the {{json ...}} form."""

    def test_json_body_round_trip(self):
        body = {"message": "hi", "list": [1, 2, {"x": None}], "unicode": "café"}
        assert json.loads(render_template("{{json body}}", body=body)) == body

    def test_json_of_nested_path(self):
        body = {"payload": {"a": [1, 2]}}
        assert json.loads(render_template("{{ json body.payload }}", body=body)) == {"a": [1, 2]}

    def test_json_of_missing_value_is_empty(self):
        assert render_template("{{json body.nope}}", body={}) == ""

    def test_json_inside_larger_document(self):
        rendered = render_template('{"echo": {{json body}}}', body={"k": "v"})
        assert json.loads(rendered) == {"echo": {"k": "v"}}


class TestResolvePath:
    def test_unknown_scope(self):
        assert resolve_path({"query": {"a": 1}}, "env.a") is None

    def test_whole_scope(self):
        assert resolve_path({"query": {"a": "1"}}, "query") == {"a": "1"}

    def test_list_index_out_of_range(self):
        assert resolve_path({"body": {"items": [1]}}, "body.items.3") is None
