"""Creation, listing, removal and bulk cleanup of task worktrees."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from .git import GitCommandError, find_repo_root, run_git, sanitize_branch_name
from .status import WorktreeRecord, safe_compute_status

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupReport:
    cleaned: list[str] = field(default_factory=list)
    skipped: list[tuple[str, list[str]]] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "cleaned": self.cleaned,
            "skipped": [{"task_id": task_id, "reasons": reasons} for task_id, reasons in self.skipped],
            "failed": [{"task_id": task_id, "error": error} for task_id, error in self.failed],
        }


def resolve_worktree_base_dir(base_dir: Path) -> Path:
    """Expand ``~``, anchor relative paths at the cwd and create the directory."""

    resolved = Path(base_dir).expanduser()
    if not resolved.is_absolute():
        resolved = Path.cwd() / resolved
    resolved.mkdir(parents=True, exist_ok=True)
    return resolved.resolve()


def parse_worktree_porcelain(output: str) -> list[WorktreeRecord]:
    """Parse ``git worktree list --porcelain`` output into bare records."""

    records: list[WorktreeRecord] = []
    current: dict[str, str] | None = None

    def flush() -> None:
        if current is not None and "path" in current:
            records.append(
                WorktreeRecord(
                    path=Path(current["path"]),
                    branch=current.get("branch", ""),
                    head=current.get("head"),
                )
            )

    for line in output.splitlines():
        if line.startswith("worktree "):
            flush()
            current = {"path": line[len("worktree "):]}
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "bare":
            current["branch"] = "(bare)"
        elif line == "detached":
            current["branch"] = "(detached)"
    flush()
    return records


class WorktreeManager:
    """Manages isolated git worktrees for tasks under a shared base directory."""

    def __init__(self, base_dir: Path, *, start_path: Path | None = None) -> None:
        self._base_dir_setting = Path(base_dir)
        self._start_path = start_path

    @property
    def repo_root(self) -> Path:
        return find_repo_root(self._start_path)

    @property
    def base_dir(self) -> Path:
        return resolve_worktree_base_dir(self._base_dir_setting)

    def branch_for(self, task_id: str, branch_prefix: str) -> str:
        return f"{branch_prefix}{sanitize_branch_name(task_id)}"

    def create(self, task_id: str, branch_prefix: str) -> tuple[Path, str]:
        """Create a new branch and worktree for ``task_id``.

        The directory name carries a nanosecond timestamp, so repeated
        creation for the same id never collides on disk.
        """

        repo_root = self.repo_root
        sanitized = sanitize_branch_name(task_id)
        branch = f"{branch_prefix}{sanitized}"
        path = self.base_dir / f"{sanitized}_{time.time_ns():x}"

        logger.info("Creating worktree", extra={"task_id": task_id, "branch": branch, "path": str(path)})
        run_git(["worktree", "add", "-b", branch, str(path)], repo_root, check=True)
        return path, branch

    def list_worktrees(self, branch_prefix: str, *, with_status: bool = True) -> list[WorktreeRecord]:
        repo_root = self.repo_root
        base_dir = self.base_dir
        result = run_git(["worktree", "list", "--porcelain"], repo_root, check=True)

        matching: list[WorktreeRecord] = []
        for record in parse_worktree_porcelain(result.stdout):
            resolved = record.path.resolve()
            if resolved == repo_root.resolve():
                continue
            if not (
                record.branch.startswith(branch_prefix)
                or record.branch in {"(bare)", "(detached)"}
            ):
                continue
            if not resolved.is_relative_to(base_dir):
                continue
            matching.append(safe_compute_status(record) if with_status else record)
        return matching

    def find(self, task_id: str, branch_prefix: str) -> WorktreeRecord | None:
        branch = self.branch_for(task_id, branch_prefix)
        for record in self.list_worktrees(branch_prefix, with_status=False):
            if record.branch == branch:
                return record
        return None

    def compute_status(self, path: Path) -> WorktreeRecord:
        """Status for the worktree at ``path``; failures are recorded, not raised."""

        branch = run_git(["rev-parse", "--abbrev-ref", "HEAD"], Path(path))
        head = run_git(["rev-parse", "HEAD"], Path(path))
        record = WorktreeRecord(
            path=Path(path),
            branch=branch.stdout.strip() if branch.ok else "",
            head=head.stdout.strip() if head.ok else None,
        )
        return safe_compute_status(record)

    def remove(self, task_id: str, branch_prefix: str, auto_delete_branch: bool = False) -> bool:
        """Remove the worktree for ``task_id``; False when there is none."""

        record = self.find(task_id, branch_prefix)
        if record is None:
            logger.info("No worktree found for task", extra={"task_id": task_id})
            return False
        self._remove_record(record, auto_delete_branch)
        return True

    def _remove_record(self, record: WorktreeRecord, auto_delete_branch: bool) -> None:
        repo_root = self.repo_root
        logger.info("Removing worktree", extra={"path": str(record.path), "branch": record.branch})
        run_git(["worktree", "remove", str(record.path), "--force"], repo_root, check=True)

        if auto_delete_branch and record.branch not in {"", "(bare)", "(detached)"}:
            deleted = run_git(["branch", "-D", record.branch], repo_root)
            if not deleted.ok:
                logger.warning(
                    "Failed to delete branch",
                    extra={"branch": record.branch, "stderr": deleted.stderr.strip()},
                )

    def clean(
        self,
        branch_prefix: str,
        *,
        force: bool = False,
        auto_delete_branch: bool = True,
    ) -> CleanupReport:
        """Remove every clean task worktree, or all of them with ``force``."""

        report = CleanupReport()
        for record in self.list_worktrees(branch_prefix):
            task_id = record.branch.removeprefix(branch_prefix) or record.path.name
            if not force and not record.is_clean():
                report.skipped.append((task_id, record.status_details()))
                continue
            try:
                self._remove_record(record, auto_delete_branch)
            except (GitCommandError, OSError) as exc:
                report.failed.append((task_id, str(exc)))
                logger.warning("Failed to remove worktree", extra={"task_id": task_id, "error": str(exc)})
                continue
            report.cleaned.append(task_id)
        return report


__all__ = ["CleanupReport", "WorktreeManager", "parse_worktree_porcelain", "resolve_worktree_base_dir"]
