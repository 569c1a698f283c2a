"""``{{ path.to.value }}`` interpolation over a run context.

Paths are dot separated with optional bracket indexing, e.g.
``steps.fetch.data.items[0].name`` or ``trigger.headers["x-event"]``. A value
that is exactly one expression keeps the resolved type; anything else is
rendered as text. Missing paths render as an empty string unless ``strict``
is set.
"""
from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any, List, Union

from weavr.service.errors import TemplateResolutionError

EXPRESSION = re.compile(r"\{\{\s*([^{}\s][^{}]*?)\s*\}\}")

_SEGMENT = re.compile(
    r"""
    (?P<dot>\.)?
    (?:
        (?P<key>[^.\[\]\s]+)
      | \[\s*(?P<index>-?\d+)\s*\]
      | \[\s*(?P<quote>['"])(?P<qkey>.*?)(?P=quote)\s*\]
    )
    """,
    re.VERBOSE,
)


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

PathPart = Union[str, int]


def parse_path(path: str) -> List[PathPart]:
    """Split a path into keys and integer indexes.

    Raises ``ValueError`` on malformed input such as ``a..b`` or ``a[``.
    """
    path = path.strip()
    parts: List[PathPart] = []
    pos = 0
    while pos < len(path):
        match = _SEGMENT.match(path, pos)
        if match is None:
            raise ValueError(f"malformed path '{path}'")
        has_dot = match.group("dot") is not None
        if match.group("key") is not None:
            if (pos > 0) != has_dot:
                raise ValueError(f"malformed path '{path}'")
            parts.append(match.group("key"))
        else:
            if has_dot:
                raise ValueError(f"malformed path '{path}'")
            if match.group("index") is not None:
                parts.append(int(match.group("index")))
            else:
                parts.append(match.group("qkey"))
        pos = match.end()
    if not parts:
        raise ValueError("empty path")
    return parts


def _step(current: Any, part: PathPart) -> Any:
    if isinstance(current, Mapping):
        if part in current:
            return current[part]
        if isinstance(part, int) and str(part) in current:
            return current[str(part)]
        return MISSING
    if isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
        if isinstance(part, str):
            if part == "length":
                return len(current)
            if not part.lstrip("-").isdigit():
                return MISSING
            part = int(part)
        try:
            return current[part]
        except IndexError:
            return MISSING
    if isinstance(current, str) and part == "length":
        return len(current)
    return MISSING


def resolve_path(path: str | List[PathPart], context: Any) -> Any:
    """Evaluate ``path`` against ``context``; returns ``MISSING`` if absent."""
    try:
        parts = parse_path(path) if isinstance(path, str) else path
    except ValueError:
        return MISSING
    current: Any = context
    for part in parts:
        if current is None or current is MISSING:
            return MISSING
        current = _step(current, part)
    return current


def to_text(value: Any) -> str:
    if value is None or value is MISSING:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def _resolve_expression(expr: str, context: Mapping[str, Any], strict: bool) -> Any:
    value = resolve_path(expr, context)
    if value is MISSING and strict:
        raise TemplateResolutionError(
            f"unresolved template path '{expr.strip()}'", detail={"path": expr.strip()}
        )
    return value


def render_string(text: str, context: Mapping[str, Any], *, strict: bool = False) -> Any:
    if "{{" not in text:
        return text
    whole = EXPRESSION.fullmatch(text)
    if whole is not None:
        value = _resolve_expression(whole.group(1), context, strict)
        return "" if value is MISSING else value

    def _substitute(match: re.Match) -> str:
        return to_text(_resolve_expression(match.group(1), context, strict))

    return EXPRESSION.sub(_substitute, text)


def render(value: Any, context: Mapping[str, Any], *, strict: bool = False) -> Any:
    """Resolve every template expression inside ``value``.

    Strings, lists, tuples and mappings are walked recursively; other values
    are returned unchanged.
    """
    if isinstance(value, str):
        return render_string(value, context, strict=strict)
    if isinstance(value, Mapping):
        return {key: render(item, context, strict=strict) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render(item, context, strict=strict) for item in value]
    return value


def has_expressions(value: Any) -> bool:
    if isinstance(value, str):
        return EXPRESSION.search(value) is not None
    if isinstance(value, Mapping):
        return any(has_expressions(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(has_expressions(item) for item in value)
    return False
