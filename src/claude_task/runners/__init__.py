"""Execution backends for running the agent."""

from .base import (
    AsyncTaskResult,
    BackendExecutionError,
    BackendProvisionError,
    PortMapping,
    RunOptions,
    SyncTaskResult,
    TaskConfig,
    TaskResult,
    TaskRunner,
    WatchTimeout,
    build_agent_command,
)
from .output import OutputChunk, OutputDemultiplexer, Phase, Stream

__all__ = [
    "AsyncTaskResult",
    "BackendExecutionError",
    "BackendProvisionError",
    "OutputChunk",
    "OutputDemultiplexer",
    "Phase",
    "PortMapping",
    "RunOptions",
    "Stream",
    "SyncTaskResult",
    "TaskConfig",
    "TaskResult",
    "TaskRunner",
    "WatchTimeout",
    "build_agent_command",
]
