"""Worktree status inspection and merge detection."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .git import GitCommandError, run_gh, run_git

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorktreeRecord:
    """A worktree as reported by git, enriched with its computed status."""

    path: Path
    branch: str
    head: str | None = None
    changed_files: list[str] = field(default_factory=list)
    untracked_files: list[str] = field(default_factory=list)
    unpushed_commits: list[str] = field(default_factory=list)
    ahead: int = 0
    behind: int = 0
    has_no_remote: bool = False
    remote_branch: str | None = None
    is_likely_merged: bool = False
    merge_info: str | None = None
    status_error: str | None = None

    @property
    def has_uncommitted_changes(self) -> bool:
        return bool(self.changed_files or self.untracked_files)

    def is_clean(self) -> bool:
        if self.status_error is not None:
            return False
        if self.has_uncommitted_changes:
            return False
        if self.unpushed_commits and not self.is_likely_merged:
            return False
        if self.has_no_remote and not self.is_likely_merged:
            return False
        return True

    def status_details(self) -> list[str]:
        """Human-readable reasons the worktree is not clean."""

        if self.status_error is not None:
            return [f"status unavailable: {self.status_error}"]
        details: list[str] = []
        if self.changed_files:
            details.append(f"{len(self.changed_files)} uncommitted change(s)")
        if self.untracked_files:
            details.append(f"{len(self.untracked_files)} untracked file(s)")
        if self.unpushed_commits and not self.is_likely_merged:
            details.append(f"{len(self.unpushed_commits)} unpushed commit(s)")
        if self.has_no_remote and not self.is_likely_merged:
            details.append("no remote tracking branch")
        if self.is_likely_merged and self.merge_info:
            details.append(self.merge_info)
        return details

    def to_dict(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "branch": self.branch,
            "head": self.head,
            "clean": self.is_clean(),
            "changed_files": self.changed_files,
            "untracked_files": self.untracked_files,
            "unpushed_commits": self.unpushed_commits,
            "ahead": self.ahead,
            "behind": self.behind,
            "has_no_remote": self.has_no_remote,
            "remote_branch": self.remote_branch,
            "is_likely_merged": self.is_likely_merged,
            "merge_info": self.merge_info,
            "status_error": self.status_error,
        }


def compute_status(record: WorktreeRecord) -> WorktreeRecord:
    """Populate ``record`` in place from git state in its directory."""

    path = record.path
    status = run_git(["status", "--porcelain"], path, check=True)
    record.changed_files = []
    record.untracked_files = []
    for line in status.stdout.splitlines():
        if not line.strip():
            continue
        entry = line[3:]
        if line.startswith("??"):
            record.untracked_files.append(entry)
        else:
            record.changed_files.append(entry)

    counts = run_git(["rev-list", "--count", "--left-right", "@{u}...HEAD"], path)
    if counts.ok:
        parts = counts.stdout.split()
        if len(parts) == 2:
            record.behind, record.ahead = int(parts[0]), int(parts[1])
        record.has_no_remote = False
        upstream = run_git(["rev-parse", "--abbrev-ref", "@{u}"], path)
        record.remote_branch = upstream.stdout.strip() if upstream.ok else None
        log = run_git(["log", "--oneline", "@{u}..HEAD"], path)
        record.unpushed_commits = [line for line in log.stdout.splitlines() if line.strip()]
    else:
        record.has_no_remote = True
        record.remote_branch = None
        record.unpushed_commits = []

    if record.unpushed_commits or record.has_no_remote:
        record.is_likely_merged, record.merge_info = check_if_branch_merged(record.branch, path)
    return record


def _find_main_branch(path: Path) -> str | None:
    for candidate in ("main", "master"):
        if run_git(["rev-parse", "--verify", "--quiet", candidate], path).ok:
            return candidate
    return None


def check_if_branch_merged(branch: str, path: Path) -> tuple[bool, str | None]:
    """Heuristically decide whether ``branch`` has landed on the main branch.

    Checks run in order and the first positive one wins: a regular merge, no
    diff against the merge base, a squash commit mentioning the branch, every
    changed file already identical on main, and finally a merged pull request
    reported by ``gh``.
    """

    main = _find_main_branch(path)
    if main is None:
        return False, None

    merged = run_git(["branch", "--merged", main], path)
    if merged.ok:
        names = {line.strip().lstrip("*+ ").strip() for line in merged.stdout.splitlines()}
        if branch in names:
            return True, "merged"

    base_result = run_git(["merge-base", main, branch], path)
    if base_result.ok:
        base = base_result.stdout.strip()
        if run_git(["diff", "--quiet", f"{base}..{branch}"], path).ok:
            return True, "no changes"

        count_result = run_git(["rev-list", "--count", f"{base}..{branch}"], path)
        commit_count = int(count_result.stdout.strip() or 0) if count_result.ok else 0

        if commit_count > 0:
            grep = run_git(
                ["log", "--oneline", "-E", "--grep", f"{branch}|#[0-9]+", f"{base}..{main}"],
                path,
            )
            if grep.ok and grep.stdout.strip():
                return True, "likely squash-merged"

        if commit_count > 1:
            changed = run_git(["diff", "--name-only", f"{base}..{branch}"], path)
            files = [line for line in changed.stdout.splitlines() if line.strip()]
            if changed.ok and files and all(
                run_git(["diff", "--quiet", main, branch, "--", name], path).ok for name in files
            ):
                return True, "likely squash-merged"

    pr_list = run_gh(
        ["pr", "list", "--state", "merged", "--head", branch, "--json", "number,title"],
        path,
    )
    if pr_list is not None and pr_list.ok:
        try:
            prs = json.loads(pr_list.stdout or "[]")
        except json.JSONDecodeError:
            logger.debug("Unparsable gh output", extra={"branch": branch})
            prs = []
        if prs:
            return True, "PR merged"

    return False, None


def safe_compute_status(record: WorktreeRecord) -> WorktreeRecord:
    """Like :func:`compute_status`, recording failures on the record instead of raising."""

    try:
        return compute_status(record)
    except (GitCommandError, OSError, ValueError) as exc:
        record.status_error = str(exc)
        logger.warning("Failed to compute worktree status", extra={"path": str(record.path), "error": str(exc)})
        return record


__all__ = ["WorktreeRecord", "check_if_branch_merged", "compute_status", "safe_compute_status"]
