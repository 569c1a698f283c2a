"""Tools the agent loop can call, and the heuristics that vet their output."""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from weavr.agent.messages import ToolCallBlock, ToolSpec
from weavr.agent.tool_server import ToolServerManager
from weavr.config import ConfigProvider, WebSearchConfig
from weavr.logging import get_logger
from weavr.service.errors import WeavrError
from weavr.service.fs import PathTraversalError, safe_join, truncate_text
from weavr.service.http_retry import DEFAULT_RETRY_POLICY, RetryPolicy
from weavr.service.shell import run_shell
from weavr.service.web import fetch_page_text, format_search_results, web_search

logger = get_logger(__name__)

MAX_TOOL_OUTPUT_CHARS = 20_000
MIN_USEFUL_OUTPUT_CHARS = 10

FAILURE_MARKERS = ("error:", "failed:", "[error]", "exception:")
ERROR_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"traceback \(most recent call last\)",
        r"command not found",
        r"permission denied",
        r"no such file or directory",
        r"rate limit(ed)? exceeded",
        r"\b(401|403) (unauthorized|forbidden)\b",
        r"connection (refused|reset)",
        r"timed out",
    )
]
# Tools whose terse output ("ok", "3") is expected
SHORT_OUTPUT_TOOLS = {"write_file"}


BUILTIN_TOOL_SPECS = {
    "web_search": ToolSpec(
        name="web_search",
        description="Search the web and return the top results with titles, URLs and snippets.",
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
                "max_results": {"type": "integer", "description": "Number of results (default 5)"},
            },
            "required": ["query"],
        },
    ),
    "web_fetch": ToolSpec(
        name="web_fetch",
        description="Fetch a web page and return its readable text.",
        parameters={
            "type": "object",
            "properties": {"url": {"type": "string", "description": "Absolute http(s) URL"}},
            "required": ["url"],
        },
    ),
    "shell_exec": ToolSpec(
        name="shell_exec",
        description="Run a shell command in the agent workspace and return exit code, stdout and stderr.",
        parameters={
            "type": "object",
            "properties": {"command": {"type": "string"}},
            "required": ["command"],
        },
    ),
    "read_file": ToolSpec(
        name="read_file",
        description="Read a text file from the agent workspace.",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Path relative to the workspace"}},
            "required": ["path"],
        },
    ),
    "write_file": ToolSpec(
        name="write_file",
        description="Write a text file in the agent workspace, creating parent directories.",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
            "required": ["path", "content"],
        },
    ),
}


@dataclass
class ToolOutcome:
    call_id: str
    name: str
    content: str
    is_error: bool = False
    flagged: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.is_error or self.flagged is not None


def validate_tool_result(name: str, content: str, is_error: bool = False) -> Optional[str]:
    """Return the reason a tool result looks like a failure, or ``None``."""
    if is_error:
        return "tool reported an error"
    stripped = content.strip()
    lowered = stripped.lower()
    if lowered.startswith(FAILURE_MARKERS):
        return "explicit failure marker"
    if name not in SHORT_OUTPUT_TOOLS and len(stripped) < MIN_USEFUL_OUTPUT_CHARS:
        return "suspiciously short output"
    for pattern in ERROR_PATTERNS:
        if pattern.search(stripped):
            return f"matched error pattern '{pattern.pattern}'"
    return None


def annotate(content: str, reason: str) -> str:
    return f"{content}\n\n[tool result flagged: {reason}; verify before relying on it]"


ToolHandler = Callable[[Dict[str, Any]], Awaitable[str]]


class ToolDispatcher:
    """Executes tool calls by name: built-ins first, then tool server tools."""

    def __init__(
        self,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        config_provider: Optional[ConfigProvider] = None,
        workspace: Optional[Path] = None,
        shell_timeout: float = 30.0,
        tool_servers: Optional[ToolServerManager] = None,
        enabled: Optional[Iterable[str]] = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> None:
        self.http_client = http_client
        self.config_provider = config_provider
        self.workspace = Path(workspace).expanduser() if workspace else None
        self.shell_timeout = shell_timeout
        self.tool_servers = tool_servers
        self.policy = policy
        self._handlers: Dict[str, ToolHandler] = {
            "web_search": self._web_search,
            "web_fetch": self._web_fetch,
            "shell_exec": self._shell_exec,
            "read_file": self._read_file,
            "write_file": self._write_file,
        }
        wanted = set(enabled) if enabled is not None else None
        self._enabled = [name for name in self._handlers if wanted is None or name in wanted]

    def specs(self) -> List[ToolSpec]:
        specs = [BUILTIN_TOOL_SPECS[name] for name in self._enabled]
        if self.tool_servers is not None:
            specs.extend(self.tool_servers.tool_specs())
        return specs

    async def dispatch(self, call: ToolCallBlock) -> ToolOutcome:
        try:
            if call.name in self._enabled:
                content = await self._handlers[call.name](call.arguments)
                is_error = False
            elif self.tool_servers is not None and self.tool_servers.owns(call.name):
                content, is_error = await self.tool_servers.call(call.name, call.arguments)
            else:
                content, is_error = f"Unknown tool: {call.name}", True
        except (WeavrError, httpx.HTTPError, OSError, ValueError, KeyError) as exc:
            content, is_error = f"Error: {exc}", True
        content = truncate_text(content, MAX_TOOL_OUTPUT_CHARS)
        reason = validate_tool_result(call.name, content, is_error)
        if reason:
            logger.info("tool_result_flagged", tool=call.name, reason=reason)
            content = annotate(content, reason)
        return ToolOutcome(call_id=call.id, name=call.name, content=content, is_error=is_error, flagged=reason)

    def _client(self) -> httpx.AsyncClient:
        if self.http_client is None:
            raise ValueError("no HTTP client available to the agent")
        return self.http_client

    def _workspace_path(self, relative: str) -> Path:
        if self.workspace is None:
            raise ValueError("file tools need a workspace directory")
        try:
            return safe_join(self.workspace, relative)
        except PathTraversalError as exc:
            raise ValueError(f"path '{relative}' is outside the workspace") from exc

    async def _web_search(self, args: Dict[str, Any]) -> str:
        config = self.config_provider.web_search() if self.config_provider else WebSearchConfig()
        results = await web_search(
            self._client(), config, str(args["query"]), max_results=args.get("max_results"), policy=self.policy
        )
        return format_search_results(results)

    async def _web_fetch(self, args: Dict[str, Any]) -> str:
        url = str(args["url"])
        if not url.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return await fetch_page_text(self._client(), url, policy=self.policy)

    async def _shell_exec(self, args: Dict[str, Any]) -> str:
        cwd = None
        if self.workspace is not None:
            self.workspace.mkdir(parents=True, exist_ok=True)
            cwd = str(self.workspace)
        result = await run_shell(str(args["command"]), cwd=cwd, timeout=self.shell_timeout)
        return f"exit code: {result.exit_code}\nstdout:\n{result.stdout}\nstderr:\n{result.stderr}"

    async def _read_file(self, args: Dict[str, Any]) -> str:
        path = self._workspace_path(str(args["path"]))
        return await asyncio.to_thread(path.read_text, encoding="utf-8")

    async def _write_file(self, args: Dict[str, Any]) -> str:
        path = self._workspace_path(str(args["path"]))
        content = str(args.get("content", ""))

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        return f"wrote {len(content)} characters to {args['path']}"
