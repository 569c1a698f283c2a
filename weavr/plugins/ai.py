"""AI completion and tool-using agent actions.

Both actions read provider credentials from ``ActionContext.config_provider``
and fail with ``NoCredentials`` before any network call when none are set.
"""
from __future__ import annotations

import contextlib
import functools
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from weavr.agent.loop import DEFAULT_MAX_ITERATIONS, AgentToolLoop
from weavr.agent.messages import Message
from weavr.agent.providers import DEFAULT_MAX_TOKENS, create_provider
from weavr.agent.tool_server import ToolServerManager
from weavr.agent.tools import ToolDispatcher
from weavr.config import ConfigProvider, StaticConfigProvider
from weavr.engine.models import ActionContext, ActionDescriptor
from weavr.engine.registry import Plugin
from weavr.service.errors import ActionExecutionError
from weavr.service.http_retry import DEFAULT_RETRY_POLICY, RetryPolicy, build_http_client


def _prompt(ctx: ActionContext) -> str:
    prompt = ctx.config.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ActionExecutionError("ai action requires a 'prompt'")
    memory = ctx.config.get("memory")
    if isinstance(memory, str) and memory in ctx.memory:
        # prepend an assembled memory block by id
        return f"{ctx.memory[memory]}\n\n{prompt}"
    return prompt


def _config_provider(ctx: ActionContext) -> ConfigProvider:
    return ctx.config_provider or StaticConfigProvider()


@contextlib.asynccontextmanager
async def _client(ctx: ActionContext) -> AsyncIterator[httpx.AsyncClient]:
    if ctx.http_client is not None:
        yield ctx.http_client
        return
    async with build_http_client() as client:
        yield client


async def complete(ctx: ActionContext, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> Dict[str, Any]:
    prompt = _prompt(ctx)
    async with _client(ctx) as client:
        provider = create_provider(
            _config_provider(ctx).ai(), client, model=ctx.config.get("model"), policy=policy
        )
        ctx.log(f"using {provider.name} ({provider.model})")
        result = await provider.complete(
            [Message.user(prompt)],
            system=ctx.config.get("system"),
            max_tokens=int(ctx.config.get("maxTokens", DEFAULT_MAX_TOKENS)),
            temperature=ctx.config.get("temperature"),
        )
    return {
        "text": result.message.text,
        "model": result.model or provider.model,
        "provider": provider.name,
        "usage": result.usage,
    }


class AgentAction:
    """``ai.agent``: runs the bounded tool loop with the configured tools."""

    def __init__(
        self,
        *,
        tool_servers: Optional[ToolServerManager] = None,
        workspace: Optional[Path] = None,
        shell_timeout: float = 30.0,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> None:
        self.tool_servers = tool_servers
        self.policy = policy
        self.workspace = workspace
        self.shell_timeout = shell_timeout
        self.max_iterations = max_iterations

    async def __call__(self, ctx: ActionContext) -> Dict[str, Any]:
        prompt = _prompt(ctx)
        config_provider = _config_provider(ctx)
        async with _client(ctx) as client:
            provider = create_provider(
                config_provider.ai(), client, model=ctx.config.get("model"), policy=self.policy
            )
            dispatcher = ToolDispatcher(
                http_client=client,
                config_provider=config_provider,
                workspace=self.workspace,
                shell_timeout=self.shell_timeout,
                tool_servers=self.tool_servers,
                enabled=ctx.config.get("tools"),
                policy=self.policy,
            )
            loop = AgentToolLoop(
                provider,
                dispatcher,
                max_iterations=int(ctx.config.get("maxIterations", self.max_iterations)),
                system=ctx.config.get("system"),
                max_tokens=int(ctx.config.get("maxTokens", DEFAULT_MAX_TOKENS)),
                temperature=ctx.config.get("temperature"),
            )
            ctx.log(f"agent using {provider.name} ({provider.model}) with {len(dispatcher.specs())} tools")
            result = await loop.run(prompt)
        if not result.success and ctx.config.get("requireAnswer"):
            raise ActionExecutionError(result.error or "agent did not produce an answer")
        return result.to_dict()


def plugin(
    *,
    tool_servers: Optional[ToolServerManager] = None,
    workspace: Optional[Path] = None,
    shell_timeout: float = 30.0,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> Plugin:
    agent = AgentAction(
        tool_servers=tool_servers,
        workspace=workspace,
        shell_timeout=shell_timeout,
        max_iterations=max_iterations,
        policy=policy,
    )
    return Plugin(
        name="ai",
        version="1.0.0",
        description="LLM completions and tool-using agents",
        actions=(
            ActionDescriptor(
                "complete", functools.partial(complete, policy=policy), "Generate a completion from a prompt"
            ),
            ActionDescriptor("agent", agent, "Answer a prompt using tools in a bounded loop"),
        ),
    )
