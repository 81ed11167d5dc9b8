from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from claude_task.config import DockerSettings
from claude_task.runners import (
    AsyncTaskResult,
    BackendExecutionError,
    BackendProvisionError,
    OutputChunk,
    Phase,
    PortMapping,
    RunOptions,
    SyncTaskResult,
    TaskConfig,
)
from claude_task.runners.docker import DockerTaskRunner
from claude_task.runners.output import START_MARKER


class StubVolume:
    def __init__(self, name: str, owner: "StubVolumes") -> None:
        self.name = name
        self.attrs = {"Mountpoint": f"/var/lib/docker/volumes/{name}", "CreatedAt": "2025-01-01"}
        self._owner = owner

    def remove(self, force: bool = False) -> None:
        self._owner.items.pop(self.name, None)


class StubVolumes:
    def __init__(self) -> None:
        self.items: dict[str, StubVolume] = {}
        self.create_calls: list[dict[str, Any]] = []

    def create(self, name: str, **kwargs: Any) -> StubVolume:
        self.create_calls.append({"name": name, **kwargs})
        if name in self.items:
            raise APIError(f"volume {name} already exists")
        volume = StubVolume(name, self)
        self.items[name] = volume
        return volume

    def get(self, name: str) -> StubVolume:
        if name not in self.items:
            raise NotFound(f"no such volume: {name}")
        return self.items[name]

    def list(self, filters: dict[str, str] | None = None) -> list[StubVolume]:
        return list(self.items.values())


class StubContainer:
    def __init__(self, name: str, frames: list[tuple[bytes | None, bytes | None]], status_code: int) -> None:
        self.name = name
        self.frames = frames
        self.status_code = status_code
        self.started = False
        self.removed = False
        self.start_error: Exception | None = None

    def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    def attach(self, **kwargs: Any):
        assert kwargs["demux"] is True
        return iter(self.frames)

    def wait(self) -> dict[str, int]:
        return {"StatusCode": self.status_code}

    def remove(self, force: bool = False) -> None:
        self.removed = True


class StubContainers:
    def __init__(self, frames=None, status_code: int = 0) -> None:
        self.existing: dict[str, StubContainer] = {}
        self.created: list[dict[str, Any]] = []
        self.frames = frames or []
        self.status_code = status_code
        self.missing_image = False
        self.start_error: Exception | None = None

    def get(self, name: str) -> StubContainer:
        if name not in self.existing:
            raise NotFound(f"no such container: {name}")
        return self.existing[name]

    def create(self, **kwargs: Any) -> StubContainer:
        if self.missing_image:
            raise ImageNotFound("image not found")
        self.created.append(kwargs)
        container = StubContainer(kwargs["name"], self.frames, self.status_code)
        container.start_error = self.start_error
        self.last = container
        return container


class StubClient:
    def __init__(self, frames=None, status_code: int = 0) -> None:
        self.volumes = StubVolumes()
        self.containers = StubContainers(frames, status_code)


def make_runner(client: StubClient, chunks: list[OutputChunk] | None = None) -> DockerTaskRunner:
    on_output = chunks.append if chunks is not None else None
    return DockerTaskRunner(DockerSettings(), client_factory=lambda: client, on_output=on_output)


def test_sync_run_mounts_volumes_and_returns_agent_output(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    (workspace / "tasks.mcp.json").write_text("{}", encoding="utf-8")
    mcp_config = tmp_path / "mcp.json"
    mcp_config.write_text("{}", encoding="utf-8")

    frames = [
        (b"copying home\n", None),
        (f"{START_MARKER}\n".encode(), None),
        (b"All done\n", b"some warning\n"),
    ]
    client = StubClient(frames)
    chunks: list[OutputChunk] = []
    runner = make_runner(client, chunks)
    task = TaskConfig(task_id="demo", workspace_path=workspace, ports=(PortMapping(8080, 3000),))
    options = RunOptions(prompt="fix the bug", skip_permissions=True, mcp_config=mcp_config, oauth_token="tok")

    result = asyncio.run(runner.run(task, options))

    assert isinstance(result, SyncTaskResult)
    assert result.output == "All done\n"
    assert result.stderr == "some warning\n"
    assert result.setup_output == "copying home\n"
    assert [chunk.phase for chunk in chunks] == [Phase.SETUP, Phase.AGENT, Phase.AGENT]

    kwargs = client.containers.created[0]
    assert kwargs["name"] == "claude-task-demo"
    assert kwargs["image"] == "claude-task:dev"
    assert kwargs["working_dir"] == "/workspace"
    assert kwargs["ports"] == {"3000/tcp": 8080}
    assert "auto_remove" not in kwargs
    assert kwargs["environment"]["TASK_ID"] == "demo"
    assert kwargs["environment"]["CLAUDE_CODE_OAUTH_TOKEN"] == "tok"
    assert kwargs["environment"]["NODE_OPTIONS"] == "--max-old-space-size=4096"

    mounts = {mount["Target"]: mount for mount in kwargs["mounts"]}
    assert mounts["/home/base"]["Source"] == "claude-task-home"
    assert mounts["/home/base"]["ReadOnly"] is True
    assert mounts["/workspace"]["Source"] == str(workspace.resolve())
    assert mounts["/workspace/.mcp.json"]["ReadOnly"] is True
    assert mounts["/home/node/task.mcp.json"]["Source"] == str(mcp_config.resolve())
    assert "/home/node/.npm" in mounts and "/home/node/.cache" in mounts

    shell, flag, script = kwargs["command"]
    assert (shell, flag) == ("sh", "-c")
    assert script.startswith("cp -r /home/base/. /home/node/")
    assert "claude --dangerously-skip-permissions --mcp-config /home/node/task.mcp.json -p 'fix the bug'" in script

    assert client.containers.last.started
    assert client.containers.last.removed
    assert {"claude-task-npm-cache", "claude-task-node-cache"} <= set(client.volumes.items)


def test_existing_container_is_replaced(tmp_path: Path) -> None:
    client = StubClient([(b"ok\n", None)])
    stale = StubContainer("claude-task-demo", [], 0)
    client.containers.existing["claude-task-demo"] = stale
    runner = make_runner(client)

    asyncio.run(runner.run(TaskConfig(task_id="demo", workspace_path=tmp_path), RunOptions(prompt="hi")))

    assert stale.removed


def test_non_zero_exit_raises_with_output_tail(tmp_path: Path) -> None:
    frames = [(f"{START_MARKER}\n".encode(), None), (b"Error: 401 Unauthorized\n", None)]
    client = StubClient(frames, status_code=1)
    runner = make_runner(client)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(runner.run(TaskConfig(task_id="demo", workspace_path=tmp_path), RunOptions(prompt="hi")))

    assert excinfo.value.exit_code == 1
    assert "401 Unauthorized" in str(excinfo.value)
    assert client.containers.last.removed


def test_async_mode_returns_handle_without_attaching(tmp_path: Path) -> None:
    client = StubClient()
    runner = make_runner(client)

    result = asyncio.run(
        runner.run(TaskConfig(task_id="bg", workspace_path=tmp_path), RunOptions(prompt="hi", async_mode=True))
    )

    assert isinstance(result, AsyncTaskResult)
    assert result.unit_id == "claude-task-bg"
    assert result.hints == ["docker logs -f claude-task-bg", "docker stop claude-task-bg"]
    assert client.containers.created[0]["auto_remove"] is True
    assert not client.containers.last.removed


def test_missing_image_is_a_provision_error(tmp_path: Path) -> None:
    client = StubClient()
    client.containers.missing_image = True
    runner = make_runner(client)

    with pytest.raises(BackendProvisionError, match="not found"):
        asyncio.run(runner.run(TaskConfig(task_id="x", workspace_path=tmp_path), RunOptions(prompt="hi")))


def test_container_that_fails_to_start_is_removed(tmp_path: Path) -> None:
    client = StubClient()
    client.containers.start_error = APIError("port is already allocated")
    runner = make_runner(client)

    with pytest.raises(BackendProvisionError, match="port is already allocated"):
        asyncio.run(runner.run(TaskConfig(task_id="x", workspace_path=tmp_path), RunOptions(prompt="hi")))
    assert client.containers.last.removed
    assert not client.containers.last.started


def test_home_volume_lifecycle(tmp_path: Path) -> None:
    client = StubClient()
    runner = make_runner(client)

    assert asyncio.run(runner.credentials_store_exists()) is False
    asyncio.run(runner.install_credentials(tmp_path))
    assert asyncio.run(runner.credentials_store_exists()) is True

    asyncio.run(runner.install_credentials(tmp_path))
    home_calls = [call for call in client.volumes.create_calls if call["name"] == "claude-task-home"]
    assert len(home_calls) == 2
    assert home_calls[-1]["driver_opts"] == {"type": "bind", "device": str(tmp_path.resolve()), "o": "bind,ro"}

    runner.ensure_cache_volumes()
    runner.ensure_cache_volumes()
    assert sorted(volume["name"] for volume in runner.list_volumes()) == [
        "claude-task-home",
        "claude-task-node-cache",
        "claude-task-npm-cache",
    ]
    assert sorted(runner.remove_volumes()) == [
        "claude-task-home",
        "claude-task-node-cache",
        "claude-task-npm-cache",
    ]
    assert runner.list_volumes() == []
