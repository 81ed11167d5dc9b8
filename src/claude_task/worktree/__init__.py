"""Git worktree lifecycle management for tasks."""

from .git import (
    GitCommandError,
    RepoNotFound,
    find_repo_root,
    generate_short_id,
    get_remote_url,
    get_repo_name,
    sanitize_branch_name,
)
from .manager import CleanupReport, WorktreeManager, resolve_worktree_base_dir
from .status import WorktreeRecord, check_if_branch_merged

__all__ = [
    "CleanupReport",
    "GitCommandError",
    "RepoNotFound",
    "WorktreeManager",
    "WorktreeRecord",
    "check_if_branch_merged",
    "find_repo_root",
    "generate_short_id",
    "get_remote_url",
    "get_repo_name",
    "resolve_worktree_base_dir",
    "sanitize_branch_name",
]
