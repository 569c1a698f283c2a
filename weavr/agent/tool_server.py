"""Stdio JSON-RPC tool servers (MCP-style ``initialize`` / ``tools/list`` / ``tools/call``).

Each server is a child process speaking newline-delimited JSON-RPC 2.0 on
stdin/stdout. Its tools are offered to the agent as ``<server>__<tool>``.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from weavr.agent.messages import ToolSpec
from weavr.logging import get_logger
from weavr.service.errors import ToolServerError

logger = get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "weavr-agent", "version": "1.0.0"}
TOOL_NAME_SEPARATOR = "__"


class ToolServerConfig(BaseModel):
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: float = Field(30.0, gt=0, description="Seconds allowed for startup and each request")

    model_config = ConfigDict(extra="ignore")


def _result_text(result: Dict[str, Any]) -> str:
    parts = []
    for item in result.get("content") or []:
        if item.get("type") == "text" and item.get("text"):
            parts.append(item["text"])
        elif item.get("type") in {"image", "resource"}:
            parts.append(f"[{item.get('type')} {item.get('mimeType', '')}]".strip())
    return "\n".join(parts)


class StdioToolServer:
    """Client side of one tool server process."""

    def __init__(self, name: str, config: ToolServerConfig) -> None:
        self.name = name
        self.config = config
        self.server_info: Dict[str, Any] = {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._write_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        args = [os.path.expandvars(arg) for arg in self.config.args]
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.config.env},
                cwd=self.config.cwd,
            )
        except OSError as exc:
            raise ToolServerError(
                f"failed to start tool server '{self.name}': {exc}", detail={"server": self.name}
            ) from exc
        self._reader = asyncio.create_task(self._read_loop(), name=f"tool-server:{self.name}")
        try:
            result = await self.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"roots": {"listChanged": True}},
                    "clientInfo": CLIENT_INFO,
                },
            )
        except ToolServerError:
            await self.close()
            raise
        self.server_info = result.get("serverInfo") or {}
        await self._send({"jsonrpc": "2.0", "method": "notifications/initialized", "params": {}})
        logger.info(
            "tool_server_connected",
            server=self.name,
            server_name=self.server_info.get("name"),
            server_version=self.server_info.get("version"),
        )

    async def _send(self, message: Dict[str, Any]) -> None:
        if not self.connected or self._process.stdin is None:
            raise ToolServerError(f"tool server '{self.name}' is not connected", detail={"server": self.name})
        async with self._write_lock:
            self._process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await self._process.stdin.drain()

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})
            return await asyncio.wait_for(future, timeout=self.config.timeout)
        except asyncio.TimeoutError as exc:
            raise ToolServerError(
                f"tool server '{self.name}' timed out on {method}",
                detail={"server": self.name, "method": method},
            ) from exc
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            line = await stdout.readline()
            if not line:
                break
            try:
                message = json.loads(line)
            except ValueError:
                # servers may print debug output on stdout
                continue
            if not isinstance(message, dict) or message.get("id") is None:
                continue
            future = self._pending.get(message["id"])
            if future is None or future.done():
                continue
            if message.get("error"):
                error = message["error"]
                future.set_exception(
                    ToolServerError(
                        f"tool server '{self.name}' error: {error.get('message')} (code: {error.get('code')})",
                        detail={"server": self.name, "code": error.get("code")},
                    )
                )
            else:
                future.set_result(message.get("result") or {})
        for future in self._pending.values():
            if not future.done():
                future.set_exception(
                    ToolServerError(f"tool server '{self.name}' closed the connection", detail={"server": self.name})
                )

    async def list_tools(self) -> List[Dict[str, Any]]:
        result = await self.request("tools/list", {})
        return list(result.get("tools") or [])

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Tuple[str, bool]:
        result = await self.request("tools/call", {"name": name, "arguments": arguments})
        return _result_text(result), bool(result.get("isError"))

    async def close(self) -> None:
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        logger.info("tool_server_closed", server=self.name)


class ToolServerManager:
    """Registry of connected tool servers and the tools they expose."""

    def __init__(self) -> None:
        self._servers: Dict[str, StdioToolServer] = {}
        self._tools: Dict[str, Tuple[str, str, ToolSpec]] = {}

    async def connect(self, name: str, config: ToolServerConfig) -> List[ToolSpec]:
        if TOOL_NAME_SEPARATOR in name:
            raise ToolServerError(f"tool server name '{name}' may not contain '{TOOL_NAME_SEPARATOR}'")
        if name in self._servers:
            await self.disconnect(name)
        server = StdioToolServer(name, config)
        await server.start()
        self._servers[name] = server
        return await self.refresh_tools(name)

    def attach(self, name: str, server: Any, tools: List[Dict[str, Any]]) -> List[ToolSpec]:
        """Register an already-running server object (anything with ``call_tool``)."""
        self._servers[name] = server
        return self._index(name, tools)

    async def refresh_tools(self, name: str) -> List[ToolSpec]:
        server = self._servers[name]
        return self._index(name, await server.list_tools())

    def _index(self, name: str, tools: List[Dict[str, Any]]) -> List[ToolSpec]:
        for key in [key for key, (server, _, _) in self._tools.items() if server == name]:
            del self._tools[key]
        specs = []
        for tool in tools:
            qualified = f"{name}{TOOL_NAME_SEPARATOR}{tool['name']}"
            spec = ToolSpec(
                name=qualified,
                description=tool.get("description") or f"{tool['name']} (from {name})",
                parameters=tool.get("inputSchema") or {"type": "object", "properties": {}},
            )
            self._tools[qualified] = (name, tool["name"], spec)
            specs.append(spec)
        logger.info("tool_server_tools_indexed", server=name, tools=len(specs))
        return specs

    def tool_specs(self) -> List[ToolSpec]:
        return [spec for _, _, spec in self._tools.values()]

    def owns(self, qualified_name: str) -> bool:
        return qualified_name in self._tools

    async def call(self, qualified_name: str, arguments: Dict[str, Any]) -> Tuple[str, bool]:
        entry = self._tools.get(qualified_name)
        if entry is None:
            return f"Unknown tool: {qualified_name}", True
        server_name, tool_name, _ = entry
        server = self._servers.get(server_name)
        if server is None:
            return f"Tool server '{server_name}' not connected", True
        return await server.call_tool(tool_name, arguments)

    async def disconnect(self, name: str) -> None:
        server = self._servers.pop(name, None)
        for key in [key for key, (owner, _, _) in self._tools.items() if owner == name]:
            del self._tools[key]
        if server is not None and hasattr(server, "close"):
            await server.close()

    async def close_all(self) -> None:
        for name in list(self._servers):
            await self.disconnect(name)

    async def load_from_config(self, path: str | Path) -> List[str]:
        """Connect every server under ``mcp.servers`` in the YAML config file."""
        path = Path(path)
        if not path.exists():
            return []
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("tool_server_config_unreadable", path=str(path), error=str(exc))
            return []
        servers = ((raw.get("mcp") or {}).get("servers") or {}) if isinstance(raw, dict) else {}
        connected = []
        for name, entry in servers.items():
            try:
                await self.connect(name, ToolServerConfig(**(entry or {})))
                connected.append(name)
            except (ValidationError, ToolServerError) as exc:
                logger.error("tool_server_connect_failed", server=name, error=str(exc))
        return connected
