"""End-to-end task execution: workspace, credentials, backend and retry policy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .config import ClaudeTaskSettings, ExecutionEnvironment
from .credentials import CredentialAccess, prepare_task_home, select_credential_access
from .errors import ClaudeTaskError
from .permission import ApprovalToolPermission
from .runners import (
    BackendExecutionError,
    PortMapping,
    RunOptions,
    SyncTaskResult,
    TaskConfig,
    TaskResult,
    TaskRunner,
)
from .runners.base import OutputCallback
from .sync import CredentialSyncManager, is_credential_error
from .worktree import WorktreeManager, find_repo_root, generate_short_id, get_remote_url

logger = logging.getLogger(__name__)


class WorkspaceError(ClaudeTaskError):
    """Raised when the task workspace cannot be resolved."""


@dataclass(slots=True)
class TaskRequest:
    prompt: str
    task_id: str | None = None
    workspace_dir: Path | None = None
    use_current_dir: bool = False
    approval_tool_permission: str | None = None
    mcp_config: Path | None = None
    debug: bool = False
    async_mode: bool = False
    ports: list[str] = field(default_factory=list)


def build_runner(settings: ClaudeTaskSettings, *, on_output: OutputCallback | None = None) -> TaskRunner:
    """Construct the backend selected by ``settings.execution_environment``."""

    if settings.execution_environment is ExecutionEnvironment.KUBERNETES:
        from .runners.kubernetes import KubernetesJobRunner

        return KubernetesJobRunner(settings.kubernetes, on_output=on_output)

    from .runners.docker import DockerTaskRunner

    return DockerTaskRunner(settings.docker, on_output=on_output)


def default_sync_manager_factory(settings: ClaudeTaskSettings) -> Callable[[str], CredentialSyncManager]:
    credentials = settings.credentials

    def factory(task_id: str) -> CredentialSyncManager:
        return CredentialSyncManager(
            settings.paths.task_base_home_dir,
            task_id,
            retry_delay=credentials.lock_retry_delay_seconds,
            max_attempts=credentials.lock_max_attempts,
            freshness_window=credentials.freshness_window_seconds,
            stale_lock_age=credentials.stale_lock_seconds,
        )

    return factory


class TaskOrchestrator:
    """Runs one task: resolve workspace, ensure fresh credentials, execute, retry once on auth failure."""

    def __init__(
        self,
        settings: ClaudeTaskSettings,
        *,
        runner: TaskRunner | None = None,
        worktrees: WorktreeManager | None = None,
        credential_access: CredentialAccess | None = None,
        sync_manager_factory: Callable[[str], CredentialSyncManager] | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or build_runner(settings, on_output=on_output)
        self.worktrees = worktrees or WorktreeManager(settings.paths.worktree_base_dir)
        self._credential_access = credential_access
        self._sync_manager_factory = sync_manager_factory or default_sync_manager_factory(settings)

    @property
    def credential_access(self) -> CredentialAccess:
        if self._credential_access is None:
            credentials = self.settings.credentials
            self._credential_access = select_credential_access(
                credentials.keychain_service, credentials.keychain_account
            )
        return self._credential_access

    @property
    def is_kubernetes(self) -> bool:
        return self.settings.execution_environment is ExecutionEnvironment.KUBERNETES

    # Credentials

    def sync_manager_for(self, task_id: str) -> CredentialSyncManager:
        return self._sync_manager_factory(task_id)

    def _prepare_home(self) -> str:
        user_config = self.settings.claude_user_config
        return prepare_task_home(
            self.settings.paths.task_base_home_dir,
            self.credential_access,
            user_config.config_path,
            user_config.user_memory_path,
        )

    async def setup_credentials(self) -> str:
        """Populate the task home and install it into the backend; returns the raw credentials."""

        content = await asyncio.to_thread(self._prepare_home)
        await self.runner.install_credentials(self.settings.paths.task_base_home_dir)
        return content

    async def ensure_credentials_fresh(self, sync_manager: CredentialSyncManager, *, force: bool = False) -> bool:
        if self.settings.oauth_token:
            logger.info("Using OAuth token authentication; skipping credential sync")
            return False

        if not await self.runner.credentials_store_exists():
            logger.info("Credential store missing; running first-time setup")
            return await sync_manager.sync_if_needed(self.setup_credentials, force=True)

        return await sync_manager.sync_if_needed(self.setup_credentials, force=force)

    # Workspace

    def _resolve_workspace(self, request: TaskRequest, task_id: str) -> tuple[Path | None, str | None, str | None]:
        """Return (workspace path, branch, repository URL) for the task."""

        if self.is_kubernetes:
            repo_url = self.settings.repo_url
            if repo_url is None:
                repo_url = get_remote_url(find_repo_root(request.workspace_dir))
            if repo_url is None:
                raise WorkspaceError("Could not determine a repository URL to clone in the cluster")
            branch = self.worktrees.branch_for(task_id, self.settings.paths.branch_prefix)
            return None, branch, repo_url

        if request.workspace_dir is not None:
            workspace = Path(request.workspace_dir).expanduser()
            if not workspace.is_dir():
                raise WorkspaceError(f"Workspace directory does not exist: {workspace}")
            return workspace.resolve(), None, None

        if request.use_current_dir:
            return Path.cwd(), None, None

        path, branch = self.worktrees.create(task_id, self.settings.paths.branch_prefix)
        return path, branch, None

    def _run_options(self, request: TaskRequest) -> RunOptions:
        permission_tool: str | None = None
        if request.approval_tool_permission:
            permission_tool = ApprovalToolPermission.parse(request.approval_tool_permission).tool_name
        else:
            logger.warning("No approval tool configured; the agent will run with --dangerously-skip-permissions")

        mcp_config = request.mcp_config
        if mcp_config is not None and not self.is_kubernetes:
            mcp_config = Path(mcp_config).expanduser()
            if not mcp_config.is_file():
                raise WorkspaceError(f"MCP config file does not exist: {mcp_config}")

        return RunOptions(
            prompt=request.prompt,
            permission_tool=permission_tool,
            skip_permissions=permission_tool is None,
            debug=request.debug,
            mcp_config=mcp_config,
            async_mode=request.async_mode,
            oauth_token=self.settings.oauth_token,
        )

    # Execution

    async def _execute(self, task: TaskConfig, options: RunOptions) -> TaskResult:
        result = await self.runner.run(task, options)
        if isinstance(result, SyncTaskResult) and result.exit_code != 0:
            raise BackendExecutionError(
                f"Task {task.task_id} exited with code {result.exit_code}",
                exit_code=result.exit_code,
                output=(result.output + result.stderr)[-4000:],
            )
        return result

    async def run_task(self, request: TaskRequest) -> TaskResult:
        options = self._run_options(request)
        ports = tuple(PortMapping.parse(value) for value in request.ports)
        task_id = request.task_id or generate_short_id()

        workspace, branch, repo_url = await asyncio.to_thread(self._resolve_workspace, request, task_id)
        if workspace is not None:
            logger.info("Resolved workspace", extra={"task_id": task_id, "workspace": str(workspace)})

        task = TaskConfig(
            task_id=task_id,
            workspace_path=workspace,
            branch=branch,
            repo_url=repo_url,
            ports=ports,
        )
        sync_manager = self.sync_manager_for(task_id)
        await self.ensure_credentials_fresh(sync_manager)

        try:
            result = await self._execute(task, options)
        except BackendExecutionError as exc:
            if self.settings.oauth_token or not is_credential_error(exc.output):
                raise
            logger.warning(
                "Task failed with a credential error; forcing resync and retrying once",
                extra={"task_id": task_id},
            )
            await self.ensure_credentials_fresh(sync_manager, force=True)
            result = await self._execute(task, options)

        if isinstance(result, SyncTaskResult) and not self.settings.oauth_token:
            sync_manager.update_validation_timestamp()
        return result


async def run_task(settings: ClaudeTaskSettings, request: TaskRequest, **kwargs) -> TaskResult:
    """Run a single task with a freshly built orchestrator."""

    return await TaskOrchestrator(settings, **kwargs).run_task(request)


async def sync_credentials_if_needed(
    settings: ClaudeTaskSettings,
    task_id: str = "manual-sync",
    *,
    force: bool = False,
    **kwargs,
) -> bool:
    """Bring credentials up to date without running a task."""

    orchestrator = TaskOrchestrator(settings, **kwargs)
    sync_manager = orchestrator.sync_manager_for(task_id)
    return await orchestrator.ensure_credentials_fresh(sync_manager, force=force)


__all__ = [
    "TaskOrchestrator",
    "TaskRequest",
    "WorkspaceError",
    "build_runner",
    "run_task",
    "sync_credentials_if_needed",
]
