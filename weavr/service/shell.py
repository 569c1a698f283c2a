from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from weavr.logging import get_logger
from weavr.service.errors import ActionExecutionError

logger = get_logger(__name__)

MAX_OUTPUT_CHARS = 100_000


@dataclass
class ShellResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "command": self.command,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")[:MAX_OUTPUT_CHARS]


async def run_shell(
    command: str,
    *,
    cwd: Optional[str] = None,
    timeout: float = 30.0,
    env: Optional[Mapping[str, str]] = None,
) -> ShellResult:
    """Run ``command`` through the system shell, killing it after ``timeout`` seconds."""
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env={**os.environ, **(env or {})},
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        logger.warning("shell_command_timeout", timeout=timeout)
        raise ActionExecutionError(
            f"command timed out after {timeout}s", detail={"command": command[:200]}
        ) from exc
    result = ShellResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
    )
    logger.debug("shell_command_finished", exit_code=result.exit_code)
    return result
