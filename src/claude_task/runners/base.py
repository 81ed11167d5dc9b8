"""Shared types for execution backends."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol, Union

from ..errors import ClaudeTaskError
from .output import OutputChunk

MCP_CONFIG_TARGET = "/home/node/task.mcp.json"


class BackendProvisionError(ClaudeTaskError):
    """Raised when the backend cannot create the container, job, volume or secret."""


class BackendExecutionError(ClaudeTaskError):
    """Raised when the agent finished with a non-zero exit status."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output

    def __str__(self) -> str:
        base = super().__str__()
        if self.output:
            return f"{base}\n{self.output}"
        return base


class WatchTimeout(ClaudeTaskError):
    """Raised when a Kubernetes job does not reach a terminal state in time."""


@dataclass(frozen=True, slots=True)
class PortMapping:
    host: int
    container: int

    @classmethod
    def parse(cls, value: str) -> "PortMapping":
        host, sep, container = value.partition(":")
        if not sep:
            raise ValueError(f"Port mapping '{value}' must have the form HOST:CONTAINER")
        try:
            mapping = cls(host=int(host), container=int(container))
        except ValueError as exc:
            raise ValueError(f"Port mapping '{value}' must use numeric ports") from exc
        for port in (mapping.host, mapping.container):
            if not 0 < port < 65536:
                raise ValueError(f"Port {port} in '{value}' is out of range")
        return mapping


@dataclass(frozen=True, slots=True)
class RunOptions:
    """How the agent is invoked, independent of the backend."""

    prompt: str
    permission_tool: str | None = None
    skip_permissions: bool = False
    debug: bool = False
    mcp_config: Path | None = None
    async_mode: bool = False
    oauth_token: str | None = None


@dataclass(frozen=True, slots=True)
class TaskConfig:
    """Everything a backend needs to launch one task; fixed once execution starts."""

    task_id: str
    workspace_path: Path | None = None
    branch: str | None = None
    repo_url: str | None = None
    ports: tuple[PortMapping, ...] = ()
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SyncTaskResult:
    task_id: str
    output: str
    stderr: str = ""
    setup_output: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "mode": "sync",
            "task_id": self.task_id,
            "exit_code": self.exit_code,
            "output": self.output,
            "stderr": self.stderr,
            "setup_output": self.setup_output,
        }


@dataclass(slots=True)
class AsyncTaskResult:
    task_id: str
    unit_id: str
    namespace: str | None = None
    hints: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "mode": "async",
            "task_id": self.task_id,
            "unit_id": self.unit_id,
            "namespace": self.namespace,
            "hints": self.hints,
        }


TaskResult = Union[SyncTaskResult, AsyncTaskResult]
OutputCallback = Callable[[OutputChunk], None]


def agent_flags(options: RunOptions, mcp_config_target: str | None = None) -> list[str]:
    """Flags passed to the ``claude`` CLI, without the prompt."""

    flags: list[str] = []
    if options.skip_permissions:
        flags.append("--dangerously-skip-permissions")
    elif options.permission_tool:
        flags.extend(["--permission-prompt-tool", options.permission_tool])
    if options.debug:
        flags.append("--debug")
    if options.mcp_config is not None and mcp_config_target:
        flags.extend(["--mcp-config", mcp_config_target])
    return flags


def build_agent_command(options: RunOptions, mcp_config_target: str | None = MCP_CONFIG_TARGET) -> str:
    """Shell command line that runs the agent with ``options``."""

    parts = ["claude", *agent_flags(options, mcp_config_target), "-p", options.prompt]
    return " ".join(shlex.quote(part) for part in parts)


class TaskRunner(Protocol):
    """Capability every execution backend provides."""

    async def run(self, task: TaskConfig, options: RunOptions) -> TaskResult:
        ...

    async def credentials_store_exists(self) -> bool:
        ...

    async def install_credentials(self, home_dir: Path) -> None:
        ...


__all__ = [
    "AsyncTaskResult",
    "BackendExecutionError",
    "BackendProvisionError",
    "MCP_CONFIG_TARGET",
    "OutputCallback",
    "PortMapping",
    "RunOptions",
    "SyncTaskResult",
    "TaskConfig",
    "TaskResult",
    "TaskRunner",
    "WatchTimeout",
    "agent_flags",
    "build_agent_command",
]
