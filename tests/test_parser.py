import pytest

from weavr.engine.parser import find_cycle, parse_workflow, stringify, validate_workflow
from weavr.service.errors import CyclicDependency, ParseError, UnknownDependency


BASIC = """
name: daily-digest
description: Fetch and summarize
trigger:
  type: cron.schedule
  with:
    expression: "0 9 * * *"
env:
  CHANNEL: general
steps:
  - id: fetch
    action: http.get
    with:
      url: https://example.com/feed
  - id: summarize
    action: ai.complete
    needs: [fetch]
    timeout: 20
    retry:
      attempts: 2
      delay: 50
    with:
      prompt: "Summarize {{ steps.fetch.data }}"
"""


class TestParseWorkflow:
    """Parsing valid documents into workflows."""

    def test_parses_steps_trigger_and_env(self):
        workflow = parse_workflow(BASIC)

        assert workflow.name == "daily-digest"
        assert workflow.step_ids == ("fetch", "summarize")
        assert workflow.trigger.type == "cron.schedule"
        assert workflow.trigger.config == {"expression": "0 9 * * *"}
        assert workflow.env == {"CHANNEL": "general"}

        summarize = workflow.step("summarize")
        assert summarize.needs == ("fetch",)
        assert summarize.timeout == 20.0
        assert summarize.retry.attempts == 2
        assert summarize.retry.delay_ms == 50

    def test_accepts_depends_on_and_config_aliases(self):
        workflow = parse_workflow(
            """
name: aliases
steps:
  - id: a
    action: noop
  - id: b
    action: log
    depends_on: a
    config:
      message: hi
"""
        )

        assert workflow.step("b").needs == ("a",)
        assert workflow.step("b").config == {"message": "hi"}

    def test_trigger_registry_validity_is_not_checked(self):
        workflow = parse_workflow(
            """
name: unloaded-plugin
trigger:
  type: telegram.message
steps:
  - id: a
    action: noop
"""
        )

        assert workflow.trigger.type == "telegram.message"

    def test_memory_blocks_parse(self):
        workflow = parse_workflow(
            """
name: with-memory
memory:
  - id: context
    dedupe: true
    maxChars: 500
    sources:
      - type: text
        id: intro
        text: hello
      - type: step
        step: fetch
        path: data.items
steps:
  - id: fetch
    action: noop
"""
        )

        block = workflow.memory[0]
        assert block.id == "context"
        assert block.dedupe is True
        assert block.max_chars == 500
        assert block.sources[0].key(0) == "intro"
        assert block.sources[1].key(1) == "source2"
        assert block.depends_on_run is True

    def test_stringify_round_trips_structure(self):
        workflow = parse_workflow(BASIC)

        again = parse_workflow(stringify(workflow))

        assert again.step_ids == workflow.step_ids
        assert again.step("summarize").needs == ("fetch",)
        assert again.trigger == workflow.trigger


class TestValidation:
    """Validation rules and their order."""

    def test_missing_name(self):
        with pytest.raises(ParseError, match="name"):
            parse_workflow("steps:\n  - id: a\n    action: noop\n")

    def test_requires_at_least_one_step(self):
        with pytest.raises(ParseError, match="at least one step"):
            parse_workflow("name: empty\nsteps: []\n")

    def test_unknown_dependency(self):
        with pytest.raises(UnknownDependency) as excinfo:
            parse_workflow(
                "name: x\nsteps:\n  - id: a\n    action: noop\n    needs: [ghost]\n"
            )

        assert excinfo.value.step_id == "a"
        assert excinfo.value.missing == "ghost"

    def test_cycle_names_offending_steps(self):
        source = """
name: loop
steps:
  - id: a
    action: noop
    needs: [b]
  - id: b
    action: noop
    needs: [a]
  - id: c
    action: noop
"""
        with pytest.raises(CyclicDependency) as excinfo:
            parse_workflow(source)

        assert set(excinfo.value.cycle) == {"a", "b"}
        assert excinfo.value.status_code == 400

    def test_unknown_dependency_reported_before_cycle(self):
        source = """
name: both
steps:
  - id: a
    action: noop
    needs: [b, missing]
  - id: b
    action: noop
    needs: [a]
"""
        with pytest.raises(UnknownDependency):
            parse_workflow(source)

    def test_empty_trigger_type_rejected(self):
        with pytest.raises(ParseError, match="trigger"):
            parse_workflow("name: t\ntrigger:\n  type: ''\nsteps:\n  - id: a\n    action: noop\n")

    def test_duplicate_step_ids_rejected(self):
        with pytest.raises(ParseError, match="duplicate"):
            parse_workflow(
                "name: d\nsteps:\n  - id: a\n    action: noop\n  - id: a\n    action: noop\n"
            )

    def test_invalid_yaml(self):
        with pytest.raises(ParseError):
            parse_workflow("name: [unterminated")

    def test_validate_workflow_returns_messages(self):
        assert validate_workflow(BASIC) == []
        errors = validate_workflow("name: x\nsteps: []\n")
        assert len(errors) == 1


def test_find_cycle_on_acyclic_graph_is_none():
    workflow = parse_workflow(BASIC)

    assert find_cycle(workflow.steps) is None
