"""Tests for workspace configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from pyworkspace.config import (
    LoggingConfig,
    StorageConfig,
    WorkspaceConfig,
    load_config,
)
from pyworkspace.core.errors import ConfigValidationError
from pyworkspace.core.models import RuntimeType
from pyworkspace.core.storage import StorageBackend

SAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "config" / "workspace.toml"


def test_defaults() -> None:
    config = WorkspaceConfig()

    assert config.runtime.backend is RuntimeType.AUTO
    assert config.storage.backend is StorageBackend.MEMORY
    assert config.packages.index_url == "https://pypi.org"
    assert config.packages.default_packages == []
    assert config.state.session_id == "default"
    assert config.state.auto_save is False
    assert config.output.max_entries == 1000
    assert config.logging.level == "INFO"


def test_from_file(tmp_path: Path) -> None:
    path = tmp_path / "workspace.toml"
    path.write_text(
        """
[runtime]
backend = "native"

[runtime.policy]
timeout_seconds = 5.0

[storage]
backend = "http"
base_url = "https://workspaces.example.com"
auth_token = "secret"

[packages]
installer = "pip"
default_packages = ["attrs==23.2.0"]

[state]
session_id = "notebook"
auto_save = true
auto_save_interval_seconds = 15

[output]
max_entries = 50
""",
        encoding="utf-8",
    )

    config = WorkspaceConfig.from_file(path)

    assert config.runtime.backend is RuntimeType.NATIVE
    assert config.runtime.policy.timeout_seconds == 5.0
    assert config.storage.backend is StorageBackend.HTTP
    assert config.storage.auth_token == "secret"
    assert config.packages.installer == "pip"
    assert config.packages.default_packages == ["attrs==23.2.0"]
    assert config.state.session_id == "notebook"
    assert config.state.auto_save_interval_seconds == 15
    assert config.output.max_entries == 50


def test_sample_config_loads() -> None:
    config = WorkspaceConfig.from_file(SAMPLE_CONFIG)

    assert config.runtime.backend is RuntimeType.AUTO
    assert config.storage.backend is StorageBackend.MEMORY
    assert config.runtime.policy.env["PYTHONHASHSEED"] == "0"


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        WorkspaceConfig.from_file(tmp_path / "absent.toml")


def test_load_config_returns_defaults_when_absent(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")
    assert config == WorkspaceConfig()


def test_invalid_toml_raises_config_error(tmp_path: Path) -> None:
    path = tmp_path / "broken.toml"
    path.write_text("[runtime\nbackend = ", encoding="utf-8")

    with pytest.raises(ConfigValidationError, match="Invalid TOML"):
        WorkspaceConfig.from_file(path)


@pytest.mark.parametrize(
    "data",
    [
        {"runtime": {"backend": "jvm"}},
        {"storage": {"timeout_seconds": 0}},
        {"packages": {"installer": "conda"}},
        {"state": {"session_id": ""}},
        {"output": {"max_entries": 0}},
        {"logging": {"level": "LOUD"}},
    ],
)
def test_invalid_values_raise_config_error(data: dict) -> None:
    with pytest.raises(ConfigValidationError):
        WorkspaceConfig.model_validate(data)


def test_invalid_policy_in_file_raises_config_error(tmp_path: Path) -> None:
    path = tmp_path / "workspace.toml"
    path.write_text("[runtime.policy]\nfuel_budget = -1\n", encoding="utf-8")

    with pytest.raises(ConfigValidationError):
        WorkspaceConfig.from_file(path)


def test_constructor_wraps_validation_errors() -> None:
    with pytest.raises(ConfigValidationError, match="Invalid workspace configuration"):
        WorkspaceConfig(output={"max_entries": -3})


def test_storage_config_http() -> None:
    config = StorageConfig(backend="http", base_url="http://localhost:8080/")
    assert config.backend is StorageBackend.HTTP


def test_logging_config_apply() -> None:
    LoggingConfig(level="DEBUG", structured=True).apply()
