from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from claude_task import __version__, cli
from claude_task.runners import AsyncTaskResult, SyncTaskResult


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CLAUDE_CODE_OAUTH_TOKEN", raising=False)
    return tmp_path


def base_args(tmp_path: Path) -> list[str]:
    return [
        "--config-path",
        str(tmp_path / "config.json"),
        "--worktree-base-dir",
        str(tmp_path / "worktrees"),
        "--task-base-home-dir",
        str(tmp_path / "home"),
    ]


class RecordingOrchestrator:
    instances: list["RecordingOrchestrator"] = []
    result: Any = None

    def __init__(self, settings, on_output=None) -> None:
        self.settings = settings
        self.on_output = on_output
        self.requests: list[Any] = []
        RecordingOrchestrator.instances.append(self)

    async def run_task(self, request):
        self.requests.append(request)
        return RecordingOrchestrator.result


def test_parser_accepts_aliases_and_globals(tmp_path: Path) -> None:
    parser = cli.build_parser()
    args = parser.parse_args(
        ["-b", "bot/", "-d", "r", "do it", "--workspace-dir", "-p", "8080:3000", "-p", "9000:9000", "--async"]
    )
    assert args.branch_prefix == "bot/"
    assert args.debug is True
    assert args.prompt == "do it"
    assert args.workspace_dir == ""
    assert args.port == ["8080:3000", "9000:9000"]
    assert args.async_mode is True
    assert args.func is cli.cmd_run

    args = parser.parse_args(["wt", "rm", "demo", "--delete-branch"])
    assert args.func is cli.cmd_worktree_remove
    assert args.task_id == "demo"


def test_version_and_missing_command(capsys) -> None:
    assert cli.main(["version"]) == 0
    assert capsys.readouterr().out.strip() == f"claude-task {__version__}"
    assert cli.main([]) == 1


def test_config_init_then_show(tmp_path: Path, capsys) -> None:
    config_path = tmp_path / "cfg" / "config.json"
    assert cli.main(["--config-path", str(config_path), "config", "init"]) == 0
    assert json.loads(config_path.read_text(encoding="utf-8"))["paths"]["branchPrefix"] == "claude-task/"
    capsys.readouterr()

    assert cli.main(["--config-path", str(config_path), "-b", "bot/", "config", "show"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["paths"]["branch_prefix"] == "bot/"
    assert "oauth_token" not in shown


def test_run_uses_current_directory_and_prints_async_hints(tmp_path: Path, monkeypatch, capsys) -> None:
    RecordingOrchestrator.instances = []
    RecordingOrchestrator.result = AsyncTaskResult(task_id="bg", unit_id="claude-task-bg", hints=["docker stop x"])
    monkeypatch.setattr(cli, "TaskOrchestrator", RecordingOrchestrator)

    code = cli.main([*base_args(tmp_path), "run", "hello", "--workspace-dir", "-y", "--async", "--task-id", "bg"])

    assert code == 0
    request = RecordingOrchestrator.instances[0].requests[0]
    assert request.use_current_dir is True
    assert request.workspace_dir is None
    assert request.async_mode is True
    assert request.task_id == "bg"
    out = capsys.readouterr().out
    assert "claude-task-bg" in out
    assert "docker stop x" in out


def test_run_json_output_and_kubernetes_flag(tmp_path: Path, monkeypatch, capsys) -> None:
    RecordingOrchestrator.instances = []
    RecordingOrchestrator.result = SyncTaskResult(task_id="t1", output="done\n")
    monkeypatch.setattr(cli, "TaskOrchestrator", RecordingOrchestrator)

    code = cli.main(
        [*base_args(tmp_path), "run", "hello", "--kubernetes", "-a", "mcp__approvals__ok", "--json"]
    )

    assert code == 0
    orchestrator = RecordingOrchestrator.instances[0]
    assert orchestrator.settings.execution_environment.value == "kubernetes"
    assert orchestrator.settings.paths.worktree_base_dir == tmp_path / "worktrees"
    assert orchestrator.requests[0].approval_tool_permission == "mcp__approvals__ok"
    assert json.loads(capsys.readouterr().out)["output"] == "done\n"


def test_run_without_approval_tool_can_be_declined(tmp_path: Path, monkeypatch, capsys) -> None:
    RecordingOrchestrator.instances = []
    monkeypatch.setattr(cli, "TaskOrchestrator", RecordingOrchestrator)
    monkeypatch.setattr("builtins.input", lambda _prompt: "n")

    assert cli.main([*base_args(tmp_path), "run", "hello"]) == 1
    assert RecordingOrchestrator.instances == []
    assert "Aborted." in capsys.readouterr().out


def test_errors_are_reported_with_exit_code(tmp_path: Path, capsys) -> None:
    assert cli.main([*base_args(tmp_path), "worktree", "list"]) == 1
    assert "Not inside a git repository" in capsys.readouterr().err


def test_worktree_commands(git_repo: Path, tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(git_repo)
    args = base_args(tmp_path)

    assert cli.main([*args, "worktree", "create", "demo"]) == 0
    assert "claude-task/demo" in capsys.readouterr().out

    assert cli.main([*args, "wt", "list", "--json"]) == 0
    listed = json.loads(capsys.readouterr().out)
    assert [item["branch"] for item in listed] == ["claude-task/demo"]

    assert cli.main([*args, "worktree", "clean", "-y"]) == 0
    assert "Removed demo" in capsys.readouterr().out

    assert cli.main([*args, "worktree", "remove", "demo"]) == 1


def test_echo_output_routes_agent_chunks(capsys) -> None:
    from claude_task.runners import OutputChunk, Phase, Stream

    quiet = cli.echo_output(debug=False)
    quiet(OutputChunk(Phase.SETUP, Stream.STDOUT, "setup line\n"))
    quiet(OutputChunk(Phase.AGENT, Stream.STDOUT, "agent line\n"))
    quiet(OutputChunk(Phase.AGENT, Stream.STDERR, "agent warning\n"))

    captured = capsys.readouterr()
    assert captured.out == "agent line\n"
    assert captured.err == "agent warning\n"

    cli.echo_output(debug=True)(OutputChunk(Phase.SETUP, Stream.STDOUT, "setup line\n"))
    assert capsys.readouterr().err == "setup line\n"
