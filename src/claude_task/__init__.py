"""Run Claude coding tasks in isolated Docker containers or Kubernetes jobs."""

__version__ = "0.3.0"

from .orchestrator import TaskOrchestrator, TaskRequest, run_task, sync_credentials_if_needed  # noqa: E402

__all__ = [
    "TaskOrchestrator",
    "TaskRequest",
    "__version__",
    "run_task",
    "sync_credentials_if_needed",
]
