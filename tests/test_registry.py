import pytest

from weavr.engine.models import ActionDescriptor, TriggerDescriptor, TriggerMode
from weavr.engine.registry import Kind, Plugin, Registry, build_registry
from weavr.plugins.builtin import builtin_plugins
from weavr.service.errors import DuplicateRegistration, NotFoundError


async def _noop(ctx):
    return None


def test_register_and_lookup():
    registry = Registry()
    descriptor = ActionDescriptor("ping", _noop)

    registry.register(Kind.ACTION, "test.ping", descriptor)

    assert registry.lookup(Kind.ACTION, "test.ping") is descriptor
    assert registry.contains("action", "test.ping")


def test_duplicate_registration_rejected():
    registry = Registry()
    registry.register(Kind.ACTION, "test.ping", ActionDescriptor("ping", _noop))

    with pytest.raises(DuplicateRegistration):
        registry.register(Kind.ACTION, "test.ping", ActionDescriptor("ping", _noop))


def test_same_id_allowed_across_kinds():
    registry = Registry()
    registry.register(Kind.ACTION, "x.y", ActionDescriptor("y", _noop))
    registry.register(Kind.TRIGGER, "x.y", TriggerDescriptor("y", TriggerMode.MANUAL))

    assert registry.contains(Kind.TRIGGER, "x.y")


def test_lookup_missing_raises_not_found():
    with pytest.raises(NotFoundError):
        Registry().lookup(Kind.ACTION, "nope.nothing")


def test_bare_names_resolve_to_core():
    registry = build_registry(builtin_plugins())

    assert registry.lookup(Kind.ACTION, "log") is registry.lookup(Kind.ACTION, "core.log")


def test_list_is_restartable_and_sorted():
    registry = Registry()
    for name in ("b", "a", "c"):
        registry.register(Kind.ACTION, f"p.{name}", ActionDescriptor(name, _noop))

    listing = registry.list(Kind.ACTION)

    first = [key for key, _ in listing]
    second = [key for key, _ in listing]
    assert first == second == ["p.a", "p.b", "p.c"]
    assert len(listing) == 3


def test_register_plugin_namespaces_ids():
    registry = Registry()
    plugin = Plugin(
        name="demo",
        actions=(ActionDescriptor("run", _noop),),
        triggers=(TriggerDescriptor("event", TriggerMode.PUSH),),
    )

    registry.register_plugin(plugin)

    assert registry.contains(Kind.ACTION, "demo.run")
    assert registry.contains(Kind.TRIGGER, "demo.event")
    assert registry.plugins == (plugin,)
    with pytest.raises(DuplicateRegistration):
        registry.register_plugin(plugin)


def test_builtin_plugins_register_expected_ids():
    registry = build_registry(builtin_plugins())
    actions = {key for key, _ in registry.list(Kind.ACTION)}
    triggers = {key for key, _ in registry.list(Kind.TRIGGER)}

    assert {
        "core.noop",
        "core.condition",
        "http.request",
        "cron.next",
        "filesystem.read",
        "shell.exec",
        "json.get",
        "ai.complete",
        "ai.agent",
    } <= actions
    assert {"cron.schedule", "http.webhook", "filesystem.watch", "core.manual"} <= triggers
