"""Docker execution backend."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import Mount

from ..config import DockerSettings
from .base import (
    MCP_CONFIG_TARGET,
    AsyncTaskResult,
    BackendExecutionError,
    BackendProvisionError,
    OutputCallback,
    RunOptions,
    SyncTaskResult,
    TaskConfig,
    TaskResult,
    build_agent_command,
)
from .output import OutputDemultiplexer, Stream

logger = logging.getLogger(__name__)

PROJECT_LABEL = {"project": "claude-task"}
OUTPUT_TAIL_LINES = 40


def _tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(text.rstrip("\n").splitlines()[-lines:])


class DockerTaskRunner:
    """Runs the agent in a local container with the credential volume mounted read-only."""

    def __init__(
        self,
        settings: DockerSettings,
        *,
        client_factory: Callable[[], Any] | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or docker.from_env
        self._client: Any | None = None
        self._on_output = on_output

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except DockerException as exc:
                raise BackendProvisionError(f"Cannot connect to the Docker daemon: {exc}") from exc
        return self._client

    def container_name(self, task_id: str) -> str:
        return f"{self._settings.container_name_prefix}{task_id}"

    # Volumes

    def _ensure_volume(self, name: str, **kwargs: Any) -> None:
        try:
            self.client.volumes.create(name=name, labels=dict(PROJECT_LABEL), **kwargs)
            logger.info("Created volume", extra={"volume": name})
        except APIError as exc:
            if "already exists" in str(exc).lower():
                logger.info("Volume already exists", extra={"volume": name})
                return
            raise BackendProvisionError(f"Failed to create volume {name}: {exc}") from exc

    def ensure_cache_volumes(self) -> None:
        volumes = self._settings.volumes
        for name in (volumes.npm_cache, volumes.node_cache):
            self._ensure_volume(name)

    def home_volume_exists(self) -> bool:
        try:
            self.client.volumes.get(self._settings.volumes.home)
        except NotFound:
            return False
        except APIError as exc:
            raise BackendProvisionError(f"Failed to inspect volume: {exc}") from exc
        return True

    def create_home_volume(self, home_dir: Path) -> None:
        """(Re)create the home volume as a read-only bind of ``home_dir``."""

        name = self._settings.volumes.home
        try:
            self.client.volumes.get(name).remove(force=True)
            logger.debug("Removed previous home volume", extra={"volume": name})
        except NotFound:
            pass
        except APIError as exc:
            logger.warning("Could not remove previous home volume", extra={"volume": name, "error": str(exc)})

        self._ensure_volume(
            name,
            driver="local",
            driver_opts={"type": "bind", "device": str(Path(home_dir).resolve()), "o": "bind,ro"},
        )

    def list_volumes(self) -> list[dict[str, Any]]:
        volumes = self.client.volumes.list(filters={"label": "project=claude-task"})
        return [
            {
                "name": volume.name,
                "mountpoint": volume.attrs.get("Mountpoint"),
                "created_at": volume.attrs.get("CreatedAt"),
            }
            for volume in volumes
        ]

    def remove_volumes(self) -> list[str]:
        removed: list[str] = []
        for volume in self.client.volumes.list(filters={"label": "project=claude-task"}):
            try:
                volume.remove(force=True)
            except APIError as exc:
                raise BackendProvisionError(f"Failed to remove volume {volume.name}: {exc}") from exc
            removed.append(volume.name)
        return removed

    # TaskRunner

    async def credentials_store_exists(self) -> bool:
        return await asyncio.to_thread(self.home_volume_exists)

    async def install_credentials(self, home_dir: Path) -> None:
        await asyncio.to_thread(self.create_home_volume, home_dir)

    async def run(self, task: TaskConfig, options: RunOptions) -> TaskResult:
        return await asyncio.to_thread(self._run_blocking, task, options)

    def _mounts(self, task: TaskConfig, options: RunOptions) -> list[Mount]:
        volumes = self._settings.volumes
        mounts = [
            Mount(target="/home/base", source=volumes.home, type="volume", read_only=True),
            Mount(target="/home/node/.npm", source=volumes.npm_cache, type="volume"),
            Mount(target="/home/node/.cache", source=volumes.node_cache, type="volume"),
        ]
        if task.workspace_path is not None:
            workspace = Path(task.workspace_path).resolve()
            mounts.append(Mount(target="/workspace", source=str(workspace), type="bind"))
            tasks_mcp = workspace / "tasks.mcp.json"
            if tasks_mcp.exists():
                mounts.append(
                    Mount(target="/workspace/.mcp.json", source=str(tasks_mcp), type="bind", read_only=True)
                )
        if options.mcp_config is not None:
            mounts.append(
                Mount(
                    target=MCP_CONFIG_TARGET,
                    source=str(Path(options.mcp_config).resolve()),
                    type="bind",
                    read_only=True,
                )
            )
        return mounts

    def _command(self, options: RunOptions) -> list[str]:
        script = f"cp -r /home/base/. /home/node/ 2>/dev/null || true && {build_agent_command(options)}"
        return ["sh", "-c", script]

    def _environment(self, task: TaskConfig, options: RunOptions) -> dict[str, str]:
        env = dict(self._settings.environment_variables)
        env.update(task.environment)
        env["TASK_ID"] = task.task_id
        if options.debug:
            env["DEBUG_MODE"] = "true"
        if options.oauth_token:
            env["CLAUDE_CODE_OAUTH_TOKEN"] = options.oauth_token
        return env

    def _remove_existing(self, name: str) -> None:
        try:
            existing = self.client.containers.get(name)
        except NotFound:
            return
        logger.info("Removing existing container", extra={"container": name})
        existing.remove(force=True)

    @staticmethod
    def _discard(container: Any, name: str) -> None:
        try:
            container.remove(force=True)
        except APIError as exc:
            logger.warning("Failed to remove container", extra={"container": name, "error": str(exc)})

    def _run_blocking(self, task: TaskConfig, options: RunOptions) -> TaskResult:
        self.ensure_cache_volumes()
        name = self.container_name(task.task_id)
        self._remove_existing(name)

        create_kwargs: dict[str, Any] = {
            "image": self._settings.image_name,
            "command": self._command(options),
            "name": name,
            "environment": self._environment(task, options),
            "mounts": self._mounts(task, options),
            "working_dir": "/workspace",
            "labels": {**PROJECT_LABEL, "task-id": task.task_id},
        }
        if task.ports:
            create_kwargs["ports"] = {f"{port.container}/tcp": port.host for port in task.ports}
        if options.async_mode:
            create_kwargs["auto_remove"] = True

        try:
            container = self.client.containers.create(**create_kwargs)
        except ImageNotFound as exc:
            raise BackendProvisionError(
                f"Image {self._settings.image_name} not found; build it before running tasks"
            ) from exc
        except APIError as exc:
            raise BackendProvisionError(f"Failed to create container {name}: {exc}") from exc
        try:
            container.start()
        except APIError as exc:
            self._discard(container, name)
            raise BackendProvisionError(f"Failed to start container {name}: {exc}") from exc

        logger.info("Started container", extra={"container": name, "task_id": task.task_id})

        if options.async_mode:
            return AsyncTaskResult(
                task_id=task.task_id,
                unit_id=name,
                hints=[
                    f"docker logs -f {name}",
                    f"docker stop {name}",
                ],
            )

        demux = OutputDemultiplexer(self._on_output)
        try:
            for stdout, stderr in container.attach(stdout=True, stderr=True, stream=True, logs=True, demux=True):
                if stdout:
                    demux.feed(stdout, Stream.STDOUT)
                if stderr:
                    demux.feed(stderr, Stream.STDERR)
            demux.finish()
            exit_code = int(container.wait().get("StatusCode", 1))
        finally:
            self._discard(container, name)

        result = SyncTaskResult(
            task_id=task.task_id,
            output=demux.agent_output,
            stderr=demux.agent_stderr,
            setup_output=demux.setup_output,
            exit_code=exit_code,
        )
        if exit_code != 0:
            tail = _tail(result.output + result.stderr) or _tail(result.setup_output)
            raise BackendExecutionError(
                f"Task {task.task_id} exited with code {exit_code}",
                exit_code=exit_code,
                output=tail,
            )
        return result


__all__ = ["DockerTaskRunner"]
