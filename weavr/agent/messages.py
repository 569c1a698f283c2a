"""Provider-neutral transcript model for the agent tool loop.

Every message holds a list of content blocks; providers convert to and from
their wire format at the call boundary only.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolCallBlock:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    call_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ToolCallBlock, ToolResultBlock]


@dataclass
class Message:
    role: Role
    content: List[ContentBlock] = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=Role.USER, content=[TextBlock(text)])

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_calls(self) -> List[ToolCallBlock]:
        return [block for block in self.content if isinstance(block, ToolCallBlock)]


@dataclass(frozen=True)
class ToolSpec:
    """A tool offered to the model; ``parameters`` is a JSON Schema object."""

    name: str
    description: str
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass
class CompletionResult:
    message: Message
    stop_reason: Optional[str] = None
    model: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)
