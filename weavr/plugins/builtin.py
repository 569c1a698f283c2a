from __future__ import annotations

import functools
from pathlib import Path
from typing import List, Optional

from weavr.agent.tool_server import ToolServerManager
from weavr.engine.registry import PluginFactory
from weavr.plugins import ai, core, cron, filesystem, http, json_utils, shell
from weavr.service.http_retry import DEFAULT_RETRY_POLICY, RetryPolicy


def builtin_plugins(
    *,
    tool_servers: Optional[ToolServerManager] = None,
    workspace: Optional[Path] = None,
    shell_timeout: float = 30.0,
    agent_max_iterations: int = 10,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> List[PluginFactory]:
    """Factories for every plugin shipped with weavr, core first."""
    return [
        core.plugin,
        functools.partial(http.plugin, policy=policy),
        cron.plugin,
        filesystem.plugin,
        shell.plugin,
        json_utils.plugin,
        functools.partial(
            ai.plugin,
            tool_servers=tool_servers,
            workspace=workspace,
            shell_timeout=shell_timeout,
            max_iterations=agent_max_iterations,
            policy=policy,
        ),
    ]
