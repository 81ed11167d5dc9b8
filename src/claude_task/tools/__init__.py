"""Tool registration for the claude-task MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from fastmcp import Context, FastMCP

from ..config import ClaudeTaskSettings, ExecutionEnvironment
from ..orchestrator import TaskOrchestrator, TaskRequest
from ..worktree import WorktreeManager


@dataclass(slots=True)
class ToolHandles:
    run_task: Any
    create_worktree: Any
    list_worktrees: Any
    remove_worktree: Any
    clean_worktrees: Any
    sync_credentials: Any
    init_volumes: Any
    task_history: list[dict[str, Any]]


def register_tools(
    server: FastMCP,
    *,
    settings: ClaudeTaskSettings,
    orchestrator_factory: Callable[[], TaskOrchestrator] | None = None,
    worktrees: WorktreeManager | None = None,
) -> ToolHandles:
    """Register claude-task's MCP tools on the server."""

    make_orchestrator = orchestrator_factory or (lambda: TaskOrchestrator(settings))
    worktree_manager = worktrees or WorktreeManager(settings.paths.worktree_base_dir)
    branch_prefix = settings.paths.branch_prefix
    task_history: list[dict[str, Any]] = []

    async def _run_task(
        prompt: str,
        task_id: str | None = None,
        workspace_dir: str | None = None,
        approval_tool_permission: str | None = None,
        mcp_config: str | None = None,
        debug: bool = False,
        async_mode: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run the agent on a prompt in an isolated container or job."""

        request = TaskRequest(
            prompt=prompt,
            task_id=task_id,
            workspace_dir=Path(workspace_dir) if workspace_dir else None,
            approval_tool_permission=approval_tool_permission,
            mcp_config=Path(mcp_config) if mcp_config else None,
            debug=debug,
            async_mode=async_mode,
        )
        result = await make_orchestrator().run_task(request)
        payload = result.to_dict()
        task_history.append({"task_id": payload["task_id"], "mode": payload["mode"]})

        _emit_log(
            context,
            "info",
            "Task finished" if payload["mode"] == "sync" else "Task submitted",
            extra={"task_id": payload["task_id"], "mode": payload["mode"]},
        )
        return payload

    def _create_worktree(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Create a git worktree and branch for a task."""

        path, branch = worktree_manager.create(task_id, branch_prefix)
        _emit_log(context, "info", "Created worktree", extra={"task_id": task_id, "branch": branch})
        return {"task_id": task_id, "path": str(path), "branch": branch}

    def _list_worktrees(context: Context | None = None) -> list[dict[str, Any]]:
        """List task worktrees with their clean/dirty status."""

        records = worktree_manager.list_worktrees(branch_prefix)
        _emit_log(context, "debug", "Listed worktrees", extra={"count": len(records)})
        return [record.to_dict() for record in records]

    def _remove_worktree(
        task_id: str,
        delete_branch: bool | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Remove the worktree for a task, optionally deleting its branch."""

        auto_delete = settings.worktree.auto_clean_on_remove if delete_branch is None else delete_branch
        removed = worktree_manager.remove(task_id, branch_prefix, auto_delete)
        _emit_log(context, "info", "Remove worktree", extra={"task_id": task_id, "removed": removed})
        return {"task_id": task_id, "removed": removed}

    def _clean_worktrees(force: bool = False, context: Context | None = None) -> dict[str, Any]:
        """Remove all clean task worktrees, or every one of them with force."""

        report = worktree_manager.clean(branch_prefix, force=force)
        _emit_log(
            context,
            "info",
            "Cleaned worktrees",
            extra={"cleaned": len(report.cleaned), "skipped": len(report.skipped)},
        )
        return report.to_dict()

    async def _sync_credentials(force: bool = False, context: Context | None = None) -> dict[str, Any]:
        """Refresh the agent credentials if they are stale, or always with force."""

        orchestrator = make_orchestrator()
        refreshed = await orchestrator.ensure_credentials_fresh(
            orchestrator.sync_manager_for("mcp-sync"), force=force
        )
        _emit_log(context, "info", "Credential sync", extra={"refreshed": refreshed})
        return {"refreshed": refreshed}

    def _init_volumes(context: Context | None = None) -> dict[str, Any]:
        """Create the shared cache volumes used by Docker tasks."""

        if settings.execution_environment is not ExecutionEnvironment.DOCKER:
            raise RuntimeError("Volumes are only used by the docker execution environment")
        runner = make_orchestrator().runner
        runner.ensure_cache_volumes()
        volumes = runner.list_volumes()
        _emit_log(context, "info", "Initialised volumes", extra={"count": len(volumes)})
        return {"volumes": volumes}

    tool_run = server.tool(
        name="run_task",
        description=(
            "Run a Claude coding task in an isolated Docker container or Kubernetes job. "
            "Creates a git worktree unless a workspace directory is given. Returns the agent "
            "output, or a handle when async_mode is set."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Without an approval tool the agent runs with permissions skipped",
            }
        },
    )(_run_task)

    tool_create = server.tool(
        name="create_worktree",
        description="Create a git worktree on a new task branch.",
    )(_create_worktree)

    tool_list = server.tool(
        name="list_worktrees",
        description="List task worktrees with uncommitted, unpushed and merge status.",
    )(_list_worktrees)

    tool_remove = server.tool(
        name="remove_worktree",
        description="Remove the worktree for a task id and optionally delete its branch.",
    )(_remove_worktree)

    tool_clean = server.tool(
        name="clean_worktrees",
        description="Remove all clean task worktrees. With force, removes unclean ones as well.",
    )(_clean_worktrees)

    tool_sync = server.tool(
        name="sync_credentials",
        description="Refresh the agent credentials in the task home and backend store when stale.",
    )(_sync_credentials)

    tool_volumes = server.tool(
        name="init_volumes",
        description="Create the Docker cache volumes shared by tasks and list project volumes.",
    )(_init_volumes)

    return ToolHandles(
        run_task=tool_run,
        create_worktree=tool_create,
        list_worktrees=tool_list,
        remove_worktree=tool_remove,
        clean_worktrees=tool_clean,
        sync_credentials=tool_sync,
        init_volumes=tool_volumes,
        task_history=task_history,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    logger = logging.getLogger("claude_task.tools")
    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
