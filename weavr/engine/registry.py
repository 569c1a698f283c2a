from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, Tuple, Union

from weavr.engine.models import ActionDescriptor, TriggerDescriptor
from weavr.logging import get_logger
from weavr.service.errors import DuplicateRegistration, NotFoundError

logger = get_logger(__name__)

Descriptor = Union[ActionDescriptor, TriggerDescriptor]

# Bare action names that resolve to the core plugin
CORE_PLUGIN = "core"


class Kind(str, Enum):
    ACTION = "action"
    TRIGGER = "trigger"


@dataclass(frozen=True)
class Plugin:
    """Immutable bundle of descriptors returned by a plugin constructor."""

    name: str
    version: str = "1.0.0"
    description: str = ""
    actions: Tuple[ActionDescriptor, ...] = ()
    triggers: Tuple[TriggerDescriptor, ...] = ()


PluginFactory = Callable[[], Plugin]


class _Listing:
    """Restartable view over one kind's descriptors; each iteration starts fresh."""

    def __init__(self, entries: Dict[str, Descriptor]) -> None:
        self._entries = entries

    def __iter__(self) -> Iterator[Tuple[str, Descriptor]]:
        for key in sorted(self._entries):
            yield key, self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class Registry:
    """Lookup table of action and trigger descriptors by namespaced id.

    Populated once at startup by :func:`build_registry`; reads after that take
    no lock.
    """

    def __init__(self) -> None:
        self._entries: Dict[Kind, Dict[str, Descriptor]] = {kind: {} for kind in Kind}
        self._plugins: Dict[str, Plugin] = {}

    def register(self, kind: Kind | str, id: str, descriptor: Descriptor) -> None:
        kind = Kind(kind)
        table = self._entries[kind]
        if id in table:
            raise DuplicateRegistration(
                f"{kind.value} '{id}' is already registered",
                detail={"kind": kind.value, "id": id},
            )
        table[id] = descriptor

    def lookup(self, kind: Kind | str, id: str) -> Descriptor:
        kind = Kind(kind)
        table = self._entries[kind]
        if id in table:
            return table[id]
        if "." not in id:
            aliased = f"{CORE_PLUGIN}.{id}"
            if aliased in table:
                return table[aliased]
        raise NotFoundError(
            f"{kind.value} '{id}' is not registered",
            detail={"kind": kind.value, "id": id},
        )

    def contains(self, kind: Kind | str, id: str) -> bool:
        try:
            self.lookup(kind, id)
        except NotFoundError:
            return False
        return True

    def list(self, kind: Kind | str) -> _Listing:
        return _Listing(self._entries[Kind(kind)])

    def register_plugin(self, plugin: Plugin) -> None:
        if plugin.name in self._plugins:
            raise DuplicateRegistration(
                f"plugin '{plugin.name}' is already registered",
                detail={"plugin": plugin.name},
            )
        for action in plugin.actions:
            self.register(Kind.ACTION, f"{plugin.name}.{action.name}", action)
        for trigger in plugin.triggers:
            self.register(Kind.TRIGGER, f"{plugin.name}.{trigger.name}", trigger)
        self._plugins[plugin.name] = plugin
        logger.info(
            "plugin_registered",
            plugin=plugin.name,
            version=plugin.version,
            actions=len(plugin.actions),
            triggers=len(plugin.triggers),
        )

    @property
    def plugins(self) -> Tuple[Plugin, ...]:
        return tuple(self._plugins.values())


def build_registry(factories: Iterable[PluginFactory]) -> Registry:
    """Build a registry by calling each plugin constructor in order."""
    registry = Registry()
    for factory in factories:
        registry.register_plugin(factory())
    return registry
