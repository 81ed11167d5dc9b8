"""Configuration management for claude-task."""

from __future__ import annotations

import json
import re
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ClaudeTaskError

DEFAULT_CONFIG_PATH = Path("~/.claude-task/config.json")


class ConfigError(ClaudeTaskError):
    """Raised when the configuration file cannot be read or validated."""


class ExecutionEnvironment(str, Enum):
    DOCKER = "docker"
    KUBERNETES = "kubernetes"


class _Section(BaseModel):
    """Nested config section accepting camelCase or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class PathSettings(_Section):
    worktree_base_dir: Path = Path("~/.claude-task/worktrees")
    task_base_home_dir: Path = Path("~/.claude-task/home")
    branch_prefix: str = "claude-task/"


class DockerVolumes(_Section):
    home: str = "claude-task-home"
    npm_cache: str = "claude-task-npm-cache"
    node_cache: str = "claude-task-node-cache"


class DockerSettings(_Section):
    image_name: str = "claude-task:dev"
    volumes: DockerVolumes = Field(default_factory=DockerVolumes)
    container_name_prefix: str = "claude-task-"
    environment_variables: dict[str, str] = Field(
        default_factory=lambda: {
            "NODE_OPTIONS": "--max-old-space-size=4096",
            "CLAUDE_CONFIG_DIR": "/home/node/.claude",
        }
    )


class KubernetesSettings(_Section):
    context: str | None = None
    namespace: str = "claude-task"
    image: str = "ghcr.io/onegrep/claude-task:latest"
    image_pull_secret: str | None = None
    git_secret_name: str = "git-credentials"
    git_secret_key: str = "token"
    credentials_secret_name: str = "claude-credentials"
    job_timeout_seconds: int = 600

    @field_validator("job_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: int) -> int:
        if value < 1:
            raise ValueError("kubernetes.jobTimeoutSeconds must be >= 1")
        return value


class ClaudeUserSettings(_Section):
    config_path: Path = Path("~/.claude.json")
    user_memory_path: Path = Path("~/.claude/CLAUDE.md")


class WorktreeSettings(_Section):
    auto_clean_on_remove: bool = False


class CredentialSettings(_Section):
    keychain_service: str = "Claude Code-credentials"
    keychain_account: str | None = None
    freshness_window_seconds: int = 300
    stale_lock_seconds: int = 60
    lock_retry_delay_seconds: float = 10.0
    lock_max_attempts: int = 6


class ClaudeTaskSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and an optional JSON file."""

    model_config = SettingsConfigDict(
        env_prefix="CLAUDE_TASK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    execution_environment: ExecutionEnvironment = ExecutionEnvironment.DOCKER
    oauth_token: str | None = Field(default=None, validation_alias="CLAUDE_CODE_OAUTH_TOKEN")
    repo_url: str | None = None
    log_level: str = "INFO"
    paths: PathSettings = Field(default_factory=PathSettings)
    docker: DockerSettings = Field(default_factory=DockerSettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    claude_user_config: ClaudeUserSettings = Field(default_factory=ClaudeUserSettings)
    worktree: WorktreeSettings = Field(default_factory=WorktreeSettings)
    credentials: CredentialSettings = Field(default_factory=CredentialSettings)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("logLevel must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized

    @field_validator("oauth_token")
    @classmethod
    def _blank_token_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def credential_metadata_dir(self) -> Path:
        return self.paths.task_base_home_dir / ".credential_metadata"


def _to_snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _expand_paths(settings: ClaudeTaskSettings) -> ClaudeTaskSettings:
    settings.paths.worktree_base_dir = settings.paths.worktree_base_dir.expanduser()
    settings.paths.task_base_home_dir = settings.paths.task_base_home_dir.expanduser()
    settings.claude_user_config.config_path = settings.claude_user_config.config_path.expanduser()
    settings.claude_user_config.user_memory_path = (
        settings.claude_user_config.user_memory_path.expanduser()
    )
    return settings


def load_settings(config_path: Path | None = None, **overrides: Any) -> ClaudeTaskSettings:
    """Build a settings instance from the JSON config file, environment and overrides.

    The file is optional. Values present in the file take precedence over the
    environment, and keyword overrides (CLI flags) win over both.
    """

    path = (config_path or DEFAULT_CONFIG_PATH).expanduser()
    document: dict[str, Any] = {}
    if path.exists():
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
        if not isinstance(document, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

    document = {_to_snake(key): value for key, value in document.items() if key != "version"}
    document.update({key: value for key, value in overrides.items() if value is not None})

    try:
        settings = ClaudeTaskSettings(**document)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc
    return _expand_paths(settings)


def save_settings(settings: ClaudeTaskSettings, config_path: Path | None = None) -> Path:
    """Write settings as camelCase JSON, creating the parent directory."""

    path = (config_path or DEFAULT_CONFIG_PATH).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    dumped = settings.model_dump(mode="json", by_alias=True, exclude={"oauth_token"})
    payload = {"version": "0.1.0", **{to_camel(key): value for key, value in dumped.items()}}
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    return path


__all__ = [
    "ClaudeTaskSettings",
    "ConfigError",
    "ExecutionEnvironment",
    "load_settings",
    "save_settings",
]
