import pytest

from weavr.engine.template import MISSING, has_expressions, parse_path, render, render_string, resolve_path
from weavr.service.errors import TemplateResolutionError

CONTEXT = {
    "trigger": {"body": {"user": "ada", "tags": ["x", "y"]}, "headers": {"x-event": "push"}},
    "steps": {"fetch": {"status": 200, "data": {"items": [{"name": "first"}, {"name": "second"}]}}},
    "env": {"CHANNEL": "general"},
}


def test_parse_path_handles_dots_indexes_and_quoted_keys():
    assert parse_path('steps.fetch.data.items[1].name') == ["steps", "fetch", "data", "items", 1, "name"]
    assert parse_path('trigger.headers["x-event"]') == ["trigger", "headers", "x-event"]


@pytest.mark.parametrize("path", ["a..b", "a[", ".a"])
def test_parse_path_rejects_malformed(path):
    with pytest.raises(ValueError):
        parse_path(path)


def test_resolve_path_returns_missing_for_absent_values():
    assert resolve_path("steps.nope.value", CONTEXT) is MISSING
    assert resolve_path("steps.fetch.data.items[5]", CONTEXT) is MISSING
    assert resolve_path("trigger.body.tags.length", CONTEXT) == 2


def test_whole_value_expression_keeps_type():
    assert render_string("{{ steps.fetch.status }}", CONTEXT) == 200
    assert render_string("{{steps.fetch.data.items}}", CONTEXT) == [{"name": "first"}, {"name": "second"}]


def test_embedded_expressions_render_as_text():
    text = render_string("{{ trigger.body.user }} posted to #{{ env.CHANNEL }}", CONTEXT)

    assert text == "ada posted to #general"


def test_missing_values_render_empty_by_default():
    assert render_string("value=[{{ steps.missing.output }}]", CONTEXT) == "value=[]"
    assert render_string("{{ steps.missing }}", CONTEXT) == ""


def test_strict_mode_raises_on_missing():
    with pytest.raises(TemplateResolutionError):
        render_string("{{ steps.missing.output }}", CONTEXT, strict=True)


def test_render_walks_nested_structures():
    config = {
        "url": "https://api.example.com/users/{{ trigger.body.user }}",
        "headers": {"X-Event": "{{ trigger.headers[\"x-event\"] }}"},
        "items": ["{{ steps.fetch.data.items[0].name }}", 3],
    }

    rendered = render(config, CONTEXT)

    assert rendered == {
        "url": "https://api.example.com/users/ada",
        "headers": {"X-Event": "push"},
        "items": ["first", 3],
    }


def test_containers_and_booleans_are_serialized_in_text():
    context = {"steps": {"a": {"ok": True, "data": {"k": 1}}}}

    assert render_string("ok={{ steps.a.ok }}", context) == "ok=true"
    assert render_string("data={{ steps.a.data }}", context) == 'data={"k": 1}'


def test_has_expressions():
    assert has_expressions({"a": ["{{ x }}"]})
    assert not has_expressions({"a": "plain", "b": 1})


@pytest.mark.parametrize(
    "text",
    ["plain text", "", "ada posted to #general", "json {\"a\": {\"b\": 1}}", "single { braces }"],
)
def test_text_without_expressions_is_unchanged(text):
    assert render_string(text, CONTEXT) == text
    assert render_string(render_string(text, CONTEXT), CONTEXT) == text


@pytest.mark.parametrize(
    "text",
    ["{{ steps.fetch.status", "a }} b {{", "steps.fetch.status }}", "{{ }}", "{{}}", "x {{   }} y"],
)
def test_unbalanced_or_empty_braces_stay_verbatim(text):
    assert render_string(text, CONTEXT) == text
    assert render_string(text, CONTEXT, strict=True) == text


def test_render_passes_plain_strings_through_nested_structures():
    config = {
        "title": "weekly digest",
        "parts": ["intro", {"note": "{{ unfinished", "count": 3}],
        "flag": None,
    }

    assert render(config, CONTEXT) == config
