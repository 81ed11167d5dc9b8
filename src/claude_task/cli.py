"""Command line interface for claude-task."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import ClaudeTaskSettings, ExecutionEnvironment, load_settings, save_settings
from .errors import ClaudeTaskError
from .orchestrator import TaskOrchestrator, TaskRequest
from .runners import AsyncTaskResult, OutputChunk, Phase, Stream
from .server import configure_logging
from .worktree import WorktreeManager

logger = logging.getLogger("claude_task.cli")


def load_cli_settings(args: argparse.Namespace) -> ClaudeTaskSettings:
    overrides = {}
    if getattr(args, "debug", False):
        overrides["log_level"] = "DEBUG"
    if getattr(args, "kubernetes", False):
        overrides["execution_environment"] = ExecutionEnvironment.KUBERNETES
    settings = load_settings(args.config_path, **overrides)
    if args.worktree_base_dir is not None:
        settings.paths.worktree_base_dir = args.worktree_base_dir.expanduser()
    if args.branch_prefix is not None:
        settings.paths.branch_prefix = args.branch_prefix
    if args.task_base_home_dir is not None:
        settings.paths.task_base_home_dir = args.task_base_home_dir.expanduser()
    return settings


def echo_output(debug: bool):
    def on_chunk(chunk: OutputChunk) -> None:
        if chunk.phase is Phase.AGENT:
            target = sys.stdout if chunk.stream is Stream.STDOUT else sys.stderr
        elif debug:
            target = sys.stderr
        else:
            return
        target.write(chunk.text)
        target.flush()

    return on_chunk


def confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def cmd_run(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    request = TaskRequest(
        prompt=args.prompt,
        task_id=args.task_id,
        workspace_dir=Path(args.workspace_dir) if args.workspace_dir else None,
        use_current_dir=args.workspace_dir == "",
        approval_tool_permission=args.approval_tool_permission,
        mcp_config=args.mcp_config,
        debug=args.debug,
        async_mode=args.async_mode,
        ports=args.port or [],
    )
    if request.approval_tool_permission is None and not confirm(
        "No approval tool given; the agent will skip all permission prompts. Continue?", args.yes
    ):
        print("Aborted.")
        return 1

    orchestrator = TaskOrchestrator(settings, on_output=echo_output(args.debug))
    result = asyncio.run(orchestrator.run_task(request))
    if isinstance(result, AsyncTaskResult):
        print(f"Task {result.task_id} started as {result.unit_id}")
        for hint in result.hints:
            print(f"  {hint}")
    elif args.json:
        print(json.dumps(result.to_dict(), indent=2))
    return 0


def cmd_setup(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    orchestrator = TaskOrchestrator(settings)
    sync_manager = orchestrator.sync_manager_for("setup")
    asyncio.run(sync_manager.sync_if_needed(orchestrator.setup_credentials, force=True))
    print(f"Credentials installed from {settings.paths.task_base_home_dir}")
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    orchestrator = TaskOrchestrator(settings)
    refreshed = asyncio.run(
        orchestrator.ensure_credentials_fresh(orchestrator.sync_manager_for("cli-sync"), force=args.force)
    )
    print("Credentials refreshed" if refreshed else "Credentials already fresh")
    return 0


def _worktrees(settings: ClaudeTaskSettings) -> WorktreeManager:
    return WorktreeManager(settings.paths.worktree_base_dir)


def cmd_worktree_create(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    path, branch = _worktrees(settings).create(args.task_id, settings.paths.branch_prefix)
    print(f"Created worktree {path} on branch {branch}")
    return 0


def cmd_worktree_list(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    records = _worktrees(settings).list_worktrees(settings.paths.branch_prefix)
    if args.json:
        print(json.dumps([record.to_dict() for record in records], indent=2))
        return 0
    if not records:
        print("No task worktrees found.")
        return 0
    for record in records:
        state = "clean" if record.is_clean() else ", ".join(record.status_details())
        print(f"{record.branch}  {record.path}  [{state}]")
    return 0


def cmd_worktree_remove(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    delete_branch = args.delete_branch or settings.worktree.auto_clean_on_remove
    removed = _worktrees(settings).remove(args.task_id, settings.paths.branch_prefix, delete_branch)
    if not removed:
        print(f"No worktree found for task {args.task_id}")
        return 1
    print(f"Removed worktree for task {args.task_id}")
    return 0


def cmd_worktree_clean(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    manager = _worktrees(settings)
    if args.force and not confirm("Remove ALL task worktrees, including unclean ones?", args.yes):
        print("Aborted.")
        return 1
    report = manager.clean(settings.paths.branch_prefix, force=args.force)
    for task_id in report.cleaned:
        print(f"Removed {task_id}")
    for task_id, reasons in report.skipped:
        print(f"Kept {task_id}: {', '.join(reasons)}")
    for task_id, error in report.failed:
        print(f"Failed {task_id}: {error}")
    return 1 if report.failed else 0


def _docker_runner(settings: ClaudeTaskSettings):
    from .runners.docker import DockerTaskRunner

    return DockerTaskRunner(settings.docker)


def cmd_docker_init(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    runner = _docker_runner(settings)
    runner.ensure_cache_volumes()
    print("Docker cache volumes ready")
    return 0


def cmd_docker_list(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    volumes = _docker_runner(settings).list_volumes()
    if not volumes:
        print("No claude-task volumes found.")
    for volume in volumes:
        print(f"{volume['name']}  {volume.get('mountpoint') or ''}")
    return 0


def cmd_docker_clean(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    if not confirm("Remove all claude-task Docker volumes?", args.yes):
        print("Aborted.")
        return 1
    for name in _docker_runner(settings).remove_volumes():
        print(f"Removed volume {name}")
    return 0


def cmd_clean(args: argparse.Namespace) -> int:
    """Remove task worktrees and the Docker volumes in one go."""

    args.force = getattr(args, "force", False)
    status = cmd_worktree_clean(args)
    settings = load_cli_settings(args)
    if settings.execution_environment is ExecutionEnvironment.DOCKER:
        if confirm("Also remove claude-task Docker volumes?", args.yes):
            for name in _docker_runner(settings).remove_volumes():
                print(f"Removed volume {name}")
    return status


def cmd_config_init(args: argparse.Namespace) -> int:
    path = save_settings(ClaudeTaskSettings(), args.config_path)
    print(f"Wrote default configuration to {path}")
    return 0


def cmd_config_show(args: argparse.Namespace) -> int:
    settings = load_cli_settings(args)
    print(settings.model_dump_json(indent=2, exclude={"oauth_token"}))
    return 0


def cmd_mcp(args: argparse.Namespace) -> int:
    from .server import main as serve

    serve(args.config_path)
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    print(f"claude-task {__version__}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="claude-task", description="Claude task management CLI")
    parser.add_argument("--worktree-base-dir", type=Path, default=None)
    parser.add_argument("-b", "--branch-prefix", default=None)
    parser.add_argument("--task-base-home-dir", type=Path, default=None)
    parser.add_argument("-d", "--debug", action="store_true", help="Verbose logging and setup output")
    parser.add_argument("--config-path", type=Path, default=None, help="Path to config file")
    sub = parser.add_subparsers(dest="command")

    p_run = sub.add_parser("run", aliases=["r"], help="Run a task in an isolated environment")
    p_run.add_argument("prompt")
    p_run.add_argument("--task-id")
    p_run.add_argument(
        "--workspace-dir",
        nargs="?",
        const="",
        default=None,
        help="Use DIR as the workspace; without DIR, use the current directory",
    )
    p_run.add_argument("-a", "--approval-tool-permission", metavar="PERMISSION")
    p_run.add_argument("-c", "--mcp-config", type=Path, metavar="MCP_CONFIG_FILEPATH")
    p_run.add_argument("-y", "--yes", action="store_true", help="Skip confirmation prompts")
    p_run.add_argument("--async", dest="async_mode", action="store_true", help="Return immediately")
    p_run.add_argument("--kubernetes", action="store_true", help="Run as a Kubernetes job")
    p_run.add_argument("-p", "--port", action="append", metavar="HOST:CONTAINER")
    p_run.add_argument("--json", action="store_true", help="Print the result as JSON")
    p_run.set_defaults(func=cmd_run)

    p_setup = sub.add_parser("setup", aliases=["s"], help="Extract credentials and install them")
    p_setup.add_argument("--kubernetes", action="store_true")
    p_setup.set_defaults(func=cmd_setup)

    p_sync = sub.add_parser("sync", help="Refresh credentials if stale")
    p_sync.add_argument("--force", action="store_true")
    p_sync.add_argument("--kubernetes", action="store_true")
    p_sync.set_defaults(func=cmd_sync)

    p_wt = sub.add_parser("worktree", aliases=["wt"], help="Manage task worktrees")
    wt_sub = p_wt.add_subparsers(dest="worktree_command")
    p_wt_create = wt_sub.add_parser("create", aliases=["c"])
    p_wt_create.add_argument("task_id")
    p_wt_create.set_defaults(func=cmd_worktree_create)
    p_wt_list = wt_sub.add_parser("list", aliases=["l"])
    p_wt_list.add_argument("--json", action="store_true")
    p_wt_list.set_defaults(func=cmd_worktree_list)
    p_wt_remove = wt_sub.add_parser("remove", aliases=["rm"])
    p_wt_remove.add_argument("task_id")
    p_wt_remove.add_argument("--delete-branch", action="store_true")
    p_wt_remove.set_defaults(func=cmd_worktree_remove)
    p_wt_clean = wt_sub.add_parser("clean", aliases=["cl"])
    p_wt_clean.add_argument("-y", "--yes", action="store_true")
    p_wt_clean.add_argument("-f", "--force", action="store_true")
    p_wt_clean.set_defaults(func=cmd_worktree_clean)

    p_docker = sub.add_parser("docker", aliases=["d"], help="Manage Docker volumes")
    docker_sub = p_docker.add_subparsers(dest="docker_command")
    docker_sub.add_parser("init", aliases=["i"]).set_defaults(func=cmd_docker_init)
    docker_sub.add_parser("list", aliases=["l"]).set_defaults(func=cmd_docker_list)
    p_docker_clean = docker_sub.add_parser("clean", aliases=["c"])
    p_docker_clean.add_argument("-y", "--yes", action="store_true")
    p_docker_clean.set_defaults(func=cmd_docker_clean)

    p_clean = sub.add_parser("clean", aliases=["c"], help="Remove clean worktrees and Docker volumes")
    p_clean.add_argument("-y", "--yes", action="store_true")
    p_clean.add_argument("-f", "--force", action="store_true")
    p_clean.set_defaults(func=cmd_clean)

    p_config = sub.add_parser("config", help="Manage the configuration file")
    config_sub = p_config.add_subparsers(dest="config_command")
    config_sub.add_parser("init").set_defaults(func=cmd_config_init)
    config_sub.add_parser("show").set_defaults(func=cmd_config_show)

    sub.add_parser("mcp", help="Serve the MCP tools over stdio").set_defaults(func=cmd_mcp)
    sub.add_parser("version", aliases=["v"]).set_defaults(func=cmd_version)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    configure_logging("DEBUG" if args.debug else "INFO")
    try:
        return args.func(args)
    except (ClaudeTaskError, ValueError) as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        cause = exc.__cause__
        while cause is not None:
            print(f"  caused by: {cause}", file=sys.stderr)
            cause = cause.__cause__
        return 1
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
