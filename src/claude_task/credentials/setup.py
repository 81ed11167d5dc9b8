"""Preparation of the task home directory that backs the credential volume."""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ClaudeTaskError
from .access import CredentialAccess

logger = logging.getLogger(__name__)

DEFAULT_MEMORY = """# Task environment

You are running inside an isolated claude-task container.
The repository is checked out at /workspace on a dedicated branch.
Commit your work on that branch when you are done.
"""


class CredentialSetupError(ClaudeTaskError):
    """Raised when the task home directory cannot be populated."""


class FilteredClaudeConfig(BaseModel):
    """The subset of ``~/.claude.json`` the agent needs inside the container."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    oauth_account: dict[str, Any] | None = Field(default=None, alias="oauthAccount")
    user_id: str | None = Field(default=None, alias="userID")
    has_completed_onboarding: bool | None = Field(default=None, alias="hasCompletedOnboarding")
    mcp_servers: dict[str, Any] | None = Field(default=None, alias="mcpServers")


def read_filtered_claude_config(config_path: Path) -> FilteredClaudeConfig:
    path = Path(config_path).expanduser()
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise CredentialSetupError(f"Failed to read claude config {path}: {exc}") from exc
    try:
        return FilteredClaudeConfig.model_validate(document)
    except ValidationError as exc:
        raise CredentialSetupError(f"Unexpected structure in claude config {path}: {exc}") from exc


def prepare_task_home(
    home_dir: Path,
    access: CredentialAccess,
    user_config_path: Path,
    user_memory_path: Path,
) -> str:
    """Write credentials, filtered config and memory file into ``home_dir``.

    Returns the raw credential content so callers can fingerprint it.
    """

    home_dir = Path(home_dir).expanduser()
    claude_dir = home_dir / ".claude"
    claude_dir.mkdir(parents=True, exist_ok=True)

    credentials = access.extract_credentials()
    credentials_path = claude_dir / ".credentials.json"
    credentials_path.write_text(credentials, encoding="utf-8")
    credentials_path.chmod(0o600)
    logger.info("Wrote agent credentials", extra={"path": str(credentials_path)})

    filtered = read_filtered_claude_config(user_config_path)
    config_path = home_dir / ".claude.json"
    config_path.write_text(
        filtered.model_dump_json(by_alias=True, exclude_none=True, indent=2),
        encoding="utf-8",
    )
    logger.info("Wrote filtered claude config", extra={"path": str(config_path)})

    memory_target = claude_dir / "CLAUDE.md"
    memory_source = Path(user_memory_path).expanduser()
    if memory_source.exists():
        shutil.copyfile(memory_source, memory_target)
    else:
        logger.info("User memory not found, using default", extra={"path": str(memory_source)})
        memory_target.write_text(DEFAULT_MEMORY, encoding="utf-8")

    return credentials


__all__ = [
    "CredentialSetupError",
    "FilteredClaudeConfig",
    "prepare_task_home",
    "read_filtered_claude_config",
]
