from __future__ import annotations

import json
from pathlib import Path

import pytest

from claude_task.config import (
    ClaudeTaskSettings,
    ConfigError,
    ExecutionEnvironment,
    load_settings,
    save_settings,
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for key in ("CLAUDE_CODE_OAUTH_TOKEN", "CLAUDE_TASK_LOG_LEVEL", "CLAUDE_TASK_EXECUTION_ENVIRONMENT"):
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_config_file(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "missing.json")

    assert settings.execution_environment is ExecutionEnvironment.DOCKER
    assert settings.paths.branch_prefix == "claude-task/"
    assert settings.paths.worktree_base_dir == Path("~/.claude-task/worktrees").expanduser()
    assert settings.docker.volumes.home == "claude-task-home"
    assert settings.kubernetes.job_timeout_seconds == 600
    assert settings.credential_metadata_dir.name == ".credential_metadata"


def test_load_camel_case_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "version": "0.1.0",
                "executionEnvironment": "kubernetes",
                "paths": {"branchPrefix": "bot/", "worktreeBaseDir": str(tmp_path / "wt")},
                "docker": {"imageName": "custom:1", "volumes": {"npmCache": "npm"}},
                "kubernetes": {"namespace": "agents", "imagePullSecret": "regcred"},
                "claudeUserConfig": {"configPath": str(tmp_path / "claude.json")},
                "worktree": {"autoCleanOnRemove": True},
            }
        ),
        encoding="utf-8",
    )

    settings = load_settings(config_path)

    assert settings.execution_environment is ExecutionEnvironment.KUBERNETES
    assert settings.paths.branch_prefix == "bot/"
    assert settings.paths.worktree_base_dir == tmp_path / "wt"
    assert settings.docker.image_name == "custom:1"
    assert settings.docker.volumes.npm_cache == "npm"
    assert settings.docker.volumes.home == "claude-task-home"
    assert settings.kubernetes.namespace == "agents"
    assert settings.kubernetes.image_pull_secret == "regcred"
    assert settings.claude_user_config.config_path == tmp_path / "claude.json"
    assert settings.worktree.auto_clean_on_remove is True


def test_environment_and_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CLAUDE_TASK_LOG_LEVEL", "debug")
    monkeypatch.setenv("CLAUDE_CODE_OAUTH_TOKEN", "tok-123")
    monkeypatch.setenv("CLAUDE_TASK_KUBERNETES__NAMESPACE", "from-env")

    settings = load_settings(tmp_path / "missing.json")
    assert settings.log_level == "DEBUG"
    assert settings.oauth_token == "tok-123"
    assert settings.kubernetes.namespace == "from-env"

    overridden = load_settings(tmp_path / "missing.json", execution_environment="kubernetes", log_level=None)
    assert overridden.execution_environment is ExecutionEnvironment.KUBERNETES
    assert overridden.log_level == "DEBUG"


def test_blank_oauth_token_is_ignored(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CLAUDE_CODE_OAUTH_TOKEN", "   ")
    assert load_settings(tmp_path / "missing.json").oauth_token is None


def test_save_then_load_keeps_values(tmp_path: Path) -> None:
    settings = ClaudeTaskSettings()
    settings.paths.branch_prefix = "saved/"
    settings.kubernetes.namespace = "saved-ns"
    settings.oauth_token = "secret"
    config_path = tmp_path / "nested" / "config.json"

    assert save_settings(settings, config_path) == config_path
    document = json.loads(config_path.read_text(encoding="utf-8"))
    assert document["version"] == "0.1.0"
    assert document["paths"]["branchPrefix"] == "saved/"
    assert "oauthToken" not in document and "oauth_token" not in document

    loaded = load_settings(config_path)
    assert loaded.paths.branch_prefix == "saved/"
    assert loaded.kubernetes.namespace == "saved-ns"


def test_invalid_values_raise_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"logLevel": "LOUD"}), encoding="utf-8")
    with pytest.raises(ConfigError, match="logLevel"):
        load_settings(config_path)

    config_path.write_text(json.dumps({"kubernetes": {"jobTimeoutSeconds": 0}}), encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(config_path)

    config_path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ConfigError, match="JSON object"):
        load_settings(config_path)

    config_path.write_text("{broken", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(config_path)
