"""Thin synchronous wrapper around the git and gh executables."""

from __future__ import annotations

import logging
import random
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from ..errors import ClaudeTaskError

logger = logging.getLogger(__name__)

_BRANCH_UNSAFE = re.compile(r"[^a-zA-Z0-9\-_]")

ADJECTIVES = (
    "brave", "calm", "clever", "eager", "fancy", "gentle", "happy", "jolly",
    "kind", "lively", "mighty", "nimble", "proud", "quick", "quiet", "rapid",
    "shiny", "silly", "swift", "witty",
)
NOUNS = (
    "badger", "beaver", "comet", "eagle", "falcon", "fox", "heron", "koala",
    "lynx", "meteor", "otter", "panda", "planet", "raven", "river", "rocket",
    "salmon", "tiger", "walrus", "zebra",
)


class RepoNotFound(ClaudeTaskError):
    """Raised when no enclosing git repository can be located."""


class GitCommandError(ClaudeTaskError):
    """Raised when a git invocation that must succeed exits non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        self.args_ = tuple(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"`{' '.join(args)}` failed with exit code {returncode}: {stderr.strip()}")


@dataclass(slots=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_git(args: Sequence[str], cwd: Path, *, check: bool = False) -> GitResult:
    return _run(["git", *args], cwd, check=check)


def run_gh(args: Sequence[str], cwd: Path) -> GitResult | None:
    """Run the GitHub CLI if installed; None when it is not on PATH."""

    if shutil.which("gh") is None:
        return None
    return _run(["gh", *args], cwd, check=False)


def _run(cmd: list[str], cwd: Path, *, check: bool) -> GitResult:
    try:
        completed = subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitCommandError(cmd, 127, str(exc)) from exc
    result = GitResult(
        args=tuple(cmd),
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )
    if check and not result.ok:
        raise GitCommandError(cmd, result.returncode, result.stderr)
    return result


def sanitize_branch_name(name: str) -> str:
    return _BRANCH_UNSAFE.sub("-", name)


def find_repo_root(start: Path | None = None) -> Path:
    """Walk upward from ``start`` until a directory containing ``.git`` is found."""

    current = Path(start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    raise RepoNotFound(f"Not inside a git repository: {current}")


def generate_short_id() -> str:
    return f"{random.choice(ADJECTIVES)}-{random.choice(NOUNS)}-{random.randint(1000, 9999)}"


def get_remote_url(repo_path: Path) -> str | None:
    result = run_git(["config", "--get", "remote.origin.url"], repo_path)
    url = result.stdout.strip()
    return url if result.ok and url else None


def get_repo_name(repo_path: Path) -> str:
    """Return ``org/repo`` from the origin URL, or the directory name."""

    url = get_remote_url(repo_path)
    if url:
        trimmed = url.removesuffix(".git").rstrip("/")
        parts = re.split(r"[/:]", trimmed)
        if len(parts) >= 2 and parts[-2] and parts[-1]:
            return f"{parts[-2]}/{parts[-1]}"
    return Path(repo_path).resolve().name


__all__ = [
    "GitCommandError",
    "GitResult",
    "RepoNotFound",
    "find_repo_root",
    "generate_short_id",
    "get_remote_url",
    "get_repo_name",
    "run_gh",
    "run_git",
    "sanitize_branch_name",
]
