import asyncio

import pytest

from weavr.engine.executor import ExecutorHooks, WorkflowExecutor
from weavr.engine.models import ActionDescriptor, RunStatus, StepStatus
from weavr.engine.parser import parse_workflow
from weavr.engine.registry import Kind, build_registry
from weavr.plugins import core
from weavr.service.errors import WeavrError


def make_registry(**actions):
    registry = build_registry([core.plugin])
    for name, fn in actions.items():
        registry.register(Kind.ACTION, f"test.{name}", ActionDescriptor(name, fn))
    return registry


async def emit_value(ctx):
    return {"value": ctx.config.get("value")}


async def echo(ctx):
    return ctx.config


async def boom(ctx):
    raise RuntimeError("exploded")


CHAIN = """
name: chain
steps:
  - id: a
    action: test.emit
    with:
      value: 42
  - id: b
    action: test.echo
    needs: [a]
    with:
      got: "{{ steps.a.value }}"
      text: "a said {{ steps.a.value }}"
"""


@pytest.mark.asyncio
async def test_dependent_step_sees_upstream_output():
    executor = WorkflowExecutor(make_registry(emit=emit_value, echo=echo))

    run = await executor.execute(parse_workflow(CHAIN))

    assert run.status == RunStatus.COMPLETED
    assert run.steps["a"].status == StepStatus.COMPLETED
    assert run.steps["b"].output == {"got": 42, "text": "a said 42"}
    assert run.steps["a"].completed_at <= run.steps["b"].started_at
    assert run.completed_at is not None


@pytest.mark.asyncio
async def test_partial_failure_skips_dependents_only():
    source = """
name: partial
steps:
  - id: a
    action: test.boom
  - id: b
    action: test.echo
    needs: [a]
  - id: c
    action: test.echo
    needs: [b]
  - id: d
    action: test.echo
    with:
      independent: true
"""
    executor = WorkflowExecutor(make_registry(boom=boom, echo=echo))

    run = await executor.execute(parse_workflow(source))

    assert run.status == RunStatus.FAILED
    assert run.steps["a"].status == StepStatus.FAILED
    assert "exploded" in run.steps["a"].error
    assert run.steps["b"].status == StepStatus.SKIPPED
    assert run.steps["c"].status == StepStatus.SKIPPED
    assert run.steps["d"].status == StepStatus.COMPLETED
    assert "step 'a' failed" in run.error


@pytest.mark.asyncio
async def test_independent_steps_run_concurrently():
    started = asyncio.Event()
    release = asyncio.Event()

    async def first(ctx):
        started.set()
        await asyncio.wait_for(release.wait(), timeout=2)
        return "first"

    async def second(ctx):
        await asyncio.wait_for(started.wait(), timeout=2)
        release.set()
        return "second"

    source = """
name: parallel
steps:
  - id: one
    action: test.first
  - id: two
    action: test.second
"""
    executor = WorkflowExecutor(make_registry(first=first, second=second))

    run = await executor.execute(parse_workflow(source))

    assert run.status == RunStatus.COMPLETED
    assert run.outputs() == {"one": "first", "two": "second"}


@pytest.mark.asyncio
async def test_unknown_action_fails_step():
    executor = WorkflowExecutor(make_registry())

    run = await executor.execute(parse_workflow("name: x\nsteps:\n  - id: a\n    action: nope.nothing\n"))

    assert run.status == RunStatus.FAILED
    assert "not registered" in run.steps["a"].error


@pytest.mark.asyncio
async def test_step_timeout_fails_the_step():
    async def slow(ctx):
        await asyncio.sleep(5)

    source = "name: t\nsteps:\n  - id: a\n    action: test.slow\n    timeout: 0.05\n"
    executor = WorkflowExecutor(make_registry(slow=slow))

    run = await executor.execute(parse_workflow(source))

    assert run.steps["a"].status == StepStatus.FAILED
    assert "timed out" in run.steps["a"].error
    assert run.steps["a"].attempts == 1


@pytest.mark.asyncio
async def test_step_retry_is_opt_in_with_linear_delay():
    calls = []
    sleeps = []

    async def flaky(ctx):
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("not yet")
        return "ok"

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    source = """
name: r
steps:
  - id: a
    action: test.flaky
    retry:
      attempts: 3
      delay: 100
"""
    executor = WorkflowExecutor(make_registry(flaky=flaky), sleep=fake_sleep)

    run = await executor.execute(parse_workflow(source))

    assert run.steps["a"].status == StepStatus.COMPLETED
    assert run.steps["a"].attempts == 3
    assert sleeps == [0.1, 0.2]


@pytest.mark.asyncio
async def test_no_retry_without_step_config():
    calls = []

    async def failing(ctx):
        calls.append(1)
        raise RuntimeError("nope")

    executor = WorkflowExecutor(make_registry(failing=failing))

    await executor.execute(parse_workflow("name: n\nsteps:\n  - id: a\n    action: test.failing\n"))

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_hooks_and_step_log():
    events = []

    async def talky(ctx):
        ctx.log("hello from step")
        return None

    hooks = ExecutorHooks(
        on_step_start=lambda run_id, step_id: events.append(("start", step_id)),
        on_step_complete=lambda run_id, step_id, result: events.append(("done", step_id, result.status)),
        on_run_complete=lambda run: events.append(("run", run.status)),
        on_log=lambda run_id, step_id, message: events.append(("log", step_id, message)),
    )
    executor = WorkflowExecutor(make_registry(talky=talky), hooks=hooks)

    await executor.execute(parse_workflow("name: h\nsteps:\n  - id: a\n    action: test.talky\n"))

    assert events == [
        ("start", "a"),
        ("log", "a", "hello from step"),
        ("done", "a", StepStatus.COMPLETED),
        ("run", RunStatus.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_failing_hook_does_not_fail_run():
    def bad_hook(run_id, step_id):
        raise ValueError("hook broke")

    executor = WorkflowExecutor(make_registry(echo=echo), hooks=ExecutorHooks(on_step_start=bad_hook))

    run = await executor.execute(parse_workflow("name: h\nsteps:\n  - id: a\n    action: test.echo\n"))

    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_history_is_bounded_and_newest_first():
    executor = WorkflowExecutor(make_registry(echo=echo), history_size=2)
    workflow = parse_workflow("name: h\nsteps:\n  - id: a\n    action: test.echo\n")

    runs = [await executor.execute(workflow) for _ in range(3)]

    listed = executor.list_runs()
    assert [run.id for run in listed] == [runs[2].id, runs[1].id]
    assert executor.get_run(runs[0].id) is None
    assert executor.list_runs(limit=1)[0].id == runs[2].id


@pytest.mark.asyncio
async def test_duplicate_run_id_rejected():
    executor = WorkflowExecutor(make_registry(echo=echo))
    workflow = parse_workflow("name: h\nsteps:\n  - id: a\n    action: test.echo\n")
    await executor.execute(workflow, run_id="fixed")

    with pytest.raises(WeavrError) as excinfo:
        await executor.execute(workflow, run_id="fixed")

    assert excinfo.value.status_code == 409


@pytest.mark.asyncio
async def test_env_and_trigger_are_visible_to_templates():
    source = """
name: ctx
env:
  GREETING: hi
steps:
  - id: a
    action: test.echo
    with:
      message: "{{ env.GREETING }} {{ trigger.body.user }}"
"""
    executor = WorkflowExecutor(make_registry(echo=echo))

    run = await executor.execute(parse_workflow(source), {"body": {"user": "ada"}})

    assert run.steps["a"].output == {"message": "hi ada"}


@pytest.mark.asyncio
async def test_condition_action_evaluates_run_context():
    source = """
name: cond
steps:
  - id: a
    action: test.emit
    with:
      value: 5
  - id: check
    action: condition
    needs: [a]
    with:
      expression: "steps.a.value > 3 and len(env) == 0"
  - id: gate
    action: condition
    needs: [a]
    with:
      expression: "steps.a.value > 10"
      fail: true
  - id: after_gate
    action: noop
    needs: [gate]
"""
    executor = WorkflowExecutor(make_registry(emit=emit_value))

    run = await executor.execute(parse_workflow(source))

    assert run.steps["check"].output == {"result": True, "expression": "steps.a.value > 3 and len(env) == 0"}
    assert run.steps["gate"].status == StepStatus.FAILED
    assert run.steps["after_gate"].status == StepStatus.SKIPPED
