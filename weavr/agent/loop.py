"""Bounded LLM + tool execution loop used by the ``ai.agent`` action."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from weavr.agent.messages import Message, Role, ToolResultBlock
from weavr.agent.providers import DEFAULT_MAX_TOKENS, LLMProvider
from weavr.agent.tools import ToolDispatcher
from weavr.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 10


@dataclass
class AgentResult:
    success: bool
    text: str
    iterations: int
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    tool_failures: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    messages: List[Message] = field(default_factory=list, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "text": self.text,
            "iterations": self.iterations,
            "toolCalls": self.tool_calls,
            "toolFailures": self.tool_failures,
            "error": self.error,
            "usage": self.usage,
        }


class AgentToolLoop:
    """Alternates model calls with tool execution until the model answers in text.

    Each iteration is one model call. A response without tool calls ends the
    loop successfully; hitting ``max_iterations`` ends it unsuccessfully with
    whatever text the model produced last.
    """

    def __init__(
        self,
        provider: LLMProvider,
        dispatcher: ToolDispatcher,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        system: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: Optional[float] = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.provider = provider
        self.dispatcher = dispatcher
        self.max_iterations = max_iterations
        self.system = system
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def run(self, prompt: Union[str, Sequence[Message]]) -> AgentResult:
        transcript: List[Message] = [Message.user(prompt)] if isinstance(prompt, str) else list(prompt)
        tools = self.dispatcher.specs()
        calls: List[Dict[str, Any]] = []
        failures: Counter = Counter()
        usage: Counter = Counter()
        last_text = ""

        for iteration in range(1, self.max_iterations + 1):
            completion = await self.provider.complete(
                transcript,
                tools=tools,
                system=self.system,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
            usage.update({k: int(v or 0) for k, v in completion.usage.items()})
            reply = completion.message
            transcript.append(reply)
            if reply.text:
                last_text = reply.text
            requested = reply.tool_calls
            logger.debug(
                "agent_iteration",
                iteration=iteration,
                provider=self.provider.name,
                tool_calls=len(requested),
                stop_reason=completion.stop_reason,
            )
            if not requested:
                return self._finish(True, last_text, iteration, calls, failures, usage, transcript)

            results = []
            for call in requested:
                outcome = await self.dispatcher.dispatch(call)
                if outcome.failed:
                    failures[call.name] += 1
                calls.append(
                    {
                        "iteration": iteration,
                        "name": call.name,
                        "arguments": call.arguments,
                        "isError": outcome.is_error,
                        "flagged": outcome.flagged,
                    }
                )
                results.append(ToolResultBlock(call.id, outcome.content, outcome.is_error))
            transcript.append(Message(role=Role.USER, content=results))

        logger.warning("agent_max_iterations_reached", max_iterations=self.max_iterations)
        return self._finish(
            False,
            last_text,
            self.max_iterations,
            calls,
            failures,
            usage,
            transcript,
            error=f"stopped after {self.max_iterations} iterations without a final answer",
        )

    def _finish(
        self,
        success: bool,
        text: str,
        iterations: int,
        calls: List[Dict[str, Any]],
        failures: Counter,
        usage: Counter,
        transcript: List[Message],
        error: Optional[str] = None,
    ) -> AgentResult:
        logger.info(
            "agent_loop_finished",
            success=success,
            iterations=iterations,
            tool_calls=len(calls),
            tool_failures=sum(failures.values()),
        )
        return AgentResult(
            success=success,
            text=text,
            iterations=iterations,
            tool_calls=calls,
            tool_failures=dict(failures),
            error=error,
            usage=dict(usage),
            messages=transcript,
        )
