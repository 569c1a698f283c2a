from __future__ import annotations

from typing import Any, Dict

from weavr.engine.models import ActionContext, ActionDescriptor
from weavr.engine.registry import Plugin
from weavr.service.errors import ActionExecutionError
from weavr.service.shell import run_shell

DEFAULT_TIMEOUT_MS = 30_000


async def exec_command(ctx: ActionContext) -> Dict[str, Any]:
    command = ctx.config.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ActionExecutionError("shell.exec requires a 'command'")
    timeout = float(ctx.config.get("timeout", DEFAULT_TIMEOUT_MS)) / 1000
    ctx.log(f"executing: {command}")
    result = await run_shell(
        command,
        cwd=ctx.config.get("cwd"),
        timeout=timeout,
        env={str(k): str(v) for k, v in (ctx.config.get("env") or {}).items()},
    )
    if not result.ok and not ctx.config.get("ignoreErrors", False):
        raise ActionExecutionError(
            f"command exited with code {result.exit_code}: {result.stderr.strip()[:200]}",
            detail={"exitCode": result.exit_code},
        )
    return result.to_dict()


def plugin() -> Plugin:
    return Plugin(
        name="shell",
        version="1.0.0",
        description="Run shell commands",
        actions=(ActionDescriptor("exec", exec_command, "Run a shell command and capture its output"),),
    )
