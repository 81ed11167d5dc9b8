"""FastMCP server bootstrap for claude-task."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from fastmcp import Context, FastMCP

from . import __version__
from .config import ClaudeTaskSettings, load_settings
from .errors import ClaudeTaskError
from .orchestrator import TaskOrchestrator
from .sync import CredentialSyncManager
from .tools import register_tools
from .worktree import WorktreeManager


def configure_logging(level: str) -> None:
    """Configure root logging; records go to stderr so stdout stays free for MCP traffic."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: ClaudeTaskSettings | None = None,
    orchestrator_factory: Callable[[], TaskOrchestrator] | None = None,
    worktrees: WorktreeManager | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the task tools and a status resource."""

    settings = settings or load_settings()
    worktrees = worktrees or WorktreeManager(settings.paths.worktree_base_dir)

    server = FastMCP(
        name="claude-task",
        version=__version__,
        instructions=(
            "claude-task runs Claude coding tasks in isolated Docker containers or "
            "Kubernetes jobs. Use run_task to execute a prompt and the worktree tools "
            "to inspect and clean up task branches."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        orchestrator_factory=orchestrator_factory,
        worktrees=worktrees,
    )

    @server.resource(
        "resource://claude-task/status",
        name="claude_task_status",
        title="claude-task Status",
        description="Execution environment, credential freshness and worktree summary.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        sync_manager = CredentialSyncManager(settings.paths.task_base_home_dir, "status")
        last_sync = sync_manager.read_last_sync()
        last_validated = sync_manager.read_last_validated()

        worktree_error: str | None = None
        try:
            records = worktrees.list_worktrees(settings.paths.branch_prefix, with_status=False)
            worktree_summary = [
                {"branch": record.branch, "path": str(record.path)} for record in records
            ]
        except ClaudeTaskError as exc:
            worktree_summary = []
            worktree_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "execution_environment": settings.execution_environment.value,
            "credentials": {
                "oauth_token": bool(settings.oauth_token),
                "fresh": sync_manager.credentials_are_fresh(),
                "last_sync": last_sync.model_dump() if last_sync else None,
                "last_validated": last_validated.model_dump() if last_validated else None,
            },
            "worktrees": {
                "count": len(worktree_summary),
                "items": worktree_summary[-10:],
                "error": worktree_error,
            },
            "tasks": {
                "count": len(handles.task_history),
                "recent": handles.task_history[-5:],
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "tool_handles", handles)
    setattr(server, "claude_task_settings", settings)
    return server


def main(config_path: Path | None = None) -> None:
    """Entry point for running the claude-task MCP server over stdio."""

    settings = load_settings(config_path)
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching claude-task MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "execution_environment": settings.execution_environment.value,
        },
    )
    server.run()


if __name__ == "__main__":
    main()
