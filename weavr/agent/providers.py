from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from weavr.agent.messages import (
    CompletionResult,
    Message,
    Role,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
    ToolSpec,
)
from weavr.config import AIConfig, AIProviderName
from weavr.logging import get_logger
from weavr.service.errors import ActionExecutionError, NoCredentials
from weavr.service.http_retry import DEFAULT_RETRY_POLICY, RetryPolicy, request_with_retry

logger = get_logger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4o"
OLLAMA_BASE_URL = "http://localhost:11434/v1"
DEFAULT_OLLAMA_MODEL = "llama3.2"
DEFAULT_MAX_TOKENS = 4096


class LLMProvider(Protocol):
    """Chat model that accepts a neutral transcript plus tool declarations."""

    name: str
    model: str

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[ToolSpec] = (),
        system: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: Optional[float] = None,
    ) -> CompletionResult: ...


def _raise_for_status(provider: str, response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    body = response.text[:300]
    raise ActionExecutionError(
        f"{provider} API error: {response.status_code} {body}",
        detail={"provider": provider, "status": response.status_code},
    )


# =========================================================================
# Anthropic Messages API
# =========================================================================


def to_anthropic_messages(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    wire: List[Dict[str, Any]] = []
    for message in messages:
        blocks: List[Dict[str, Any]] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                if block.text:
                    blocks.append({"type": "text", "text": block.text})
            elif isinstance(block, ToolCallBlock):
                blocks.append(
                    {"type": "tool_use", "id": block.id, "name": block.name, "input": block.arguments}
                )
            elif isinstance(block, ToolResultBlock):
                blocks.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": block.call_id,
                        "content": block.content,
                        "is_error": block.is_error,
                    }
                )
        wire.append({"role": message.role.value, "content": blocks})
    return wire


def from_anthropic_response(data: Dict[str, Any]) -> CompletionResult:
    content: List[Any] = []
    for block in data.get("content") or []:
        kind = block.get("type")
        if kind == "text":
            content.append(TextBlock(block.get("text", "")))
        elif kind == "tool_use":
            content.append(
                ToolCallBlock(id=block["id"], name=block["name"], arguments=block.get("input") or {})
            )
    usage = data.get("usage") or {}
    return CompletionResult(
        message=Message(role=Role.ASSISTANT, content=content),
        stop_reason=data.get("stop_reason"),
        model=data.get("model"),
        usage={
            "input_tokens": usage.get("input_tokens", 0),
            "output_tokens": usage.get("output_tokens", 0),
        },
    )


class AnthropicProvider:
    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient,
        *,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> None:
        self.api_key = api_key
        self.model = model or DEFAULT_ANTHROPIC_MODEL
        self.url = f"{base_url.rstrip('/')}/v1/messages" if base_url else ANTHROPIC_API_URL
        self._client = client
        self._policy = policy

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[ToolSpec] = (),
        system: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: Optional[float] = None,
    ) -> CompletionResult:
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": to_anthropic_messages(messages),
        }
        if system:
            body["system"] = system
        if temperature is not None:
            body["temperature"] = temperature
        if tools:
            body["tools"] = [
                {"name": tool.name, "description": tool.description, "input_schema": tool.parameters}
                for tool in tools
            ]
        response = await request_with_retry(
            self._client,
            "POST",
            self.url,
            policy=self._policy,
            json=body,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )
        _raise_for_status(self.name, response)
        return from_anthropic_response(response.json())


# =========================================================================
# OpenAI Chat Completions (and compatible servers)
# =========================================================================


def to_openai_messages(messages: Sequence[Message], system: Optional[str] = None) -> List[Dict[str, Any]]:
    wire: List[Dict[str, Any]] = []
    if system:
        wire.append({"role": "system", "content": system})
    for message in messages:
        text = message.text
        if message.role == Role.ASSISTANT:
            entry: Dict[str, Any] = {"role": "assistant", "content": text or None}
            calls = message.tool_calls
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in calls
                ]
            wire.append(entry)
            continue
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                wire.append({"role": "tool", "tool_call_id": block.call_id, "content": block.content})
        if text:
            wire.append({"role": "user", "content": text})
    return wire


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def from_openai_response(data: Dict[str, Any]) -> CompletionResult:
    choices = data.get("choices") or []
    if not choices:
        logger.warning("completion_returned_no_choices", model=data.get("model"))
        return CompletionResult(message=Message(role=Role.ASSISTANT), model=data.get("model"))
    choice = choices[0]
    wire = choice.get("message") or {}
    content: List[Any] = []
    if wire.get("content"):
        content.append(TextBlock(wire["content"]))
    for call in wire.get("tool_calls") or []:
        function = call.get("function") or {}
        content.append(
            ToolCallBlock(
                id=call.get("id") or f"call_{len(content)}",
                name=function.get("name", ""),
                arguments=_parse_arguments(function.get("arguments")),
            )
        )
    usage = data.get("usage") or {}
    return CompletionResult(
        message=Message(role=Role.ASSISTANT, content=content),
        stop_reason=choice.get("finish_reason"),
        model=data.get("model"),
        usage={
            "input_tokens": usage.get("prompt_tokens", 0),
            "output_tokens": usage.get("completion_tokens", 0),
        },
    )


class OpenAIProvider:
    name = "openai"
    default_model = DEFAULT_OPENAI_MODEL
    default_base_url = OPENAI_BASE_URL

    def __init__(
        self,
        api_key: Optional[str],
        client: httpx.AsyncClient,
        *,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> None:
        self.api_key = api_key
        self.model = model or self.default_model
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self._client = client
        self._policy = policy

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[ToolSpec] = (),
        system: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: Optional[float] = None,
    ) -> CompletionResult:
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": to_openai_messages(messages, system),
        }
        if temperature is not None:
            body["temperature"] = temperature
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in tools
            ]
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        response = await request_with_retry(
            self._client,
            "POST",
            f"{self.base_url}/chat/completions",
            policy=self._policy,
            json=body,
            headers=headers,
        )
        _raise_for_status(self.name, response)
        return from_openai_response(response.json())


class OllamaProvider(OpenAIProvider):
    """Local Ollama server through its OpenAI-compatible endpoint."""

    name = "ollama"
    default_model = DEFAULT_OLLAMA_MODEL
    default_base_url = OLLAMA_BASE_URL


def create_provider(
    config: AIConfig,
    client: httpx.AsyncClient,
    *,
    model: Optional[str] = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> LLMProvider:
    """Build the provider named by ``config``; raises ``NoCredentials`` when unusable."""
    provider = config.provider
    chosen_model = model or config.model
    if provider == AIProviderName.OLLAMA:
        return OllamaProvider(None, client, model=chosen_model, base_url=config.base_url, policy=policy)
    if not provider or not config.api_key:
        raise NoCredentials(
            "No AI provider credential configured. Set ai.provider/ai.apiKey in the config "
            "file or ANTHROPIC_API_KEY / OPENAI_API_KEY."
        )
    if provider == AIProviderName.ANTHROPIC:
        return AnthropicProvider(
            config.api_key, client, model=chosen_model, base_url=config.base_url, policy=policy
        )
    return OpenAIProvider(config.api_key, client, model=chosen_model, base_url=config.base_url, policy=policy)
