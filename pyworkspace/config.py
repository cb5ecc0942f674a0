"""
Workspace configuration.

Configuration models for the runtime, durable storage, package installation,
state persistence, output log and logging, loadable from TOML.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from pyworkspace.core.errors import ConfigValidationError
from pyworkspace.core.logging import configure_structlog
from pyworkspace.core.models import ExecutionPolicy, RuntimeType
from pyworkspace.core.storage import StorageBackend

DEFAULT_CONFIG_PATH = "config/workspace.toml"


class RuntimeConfig(BaseModel):
    """Interpreter backend selection and execution limits."""

    backend: RuntimeType = RuntimeType.AUTO
    wasm_binary_path: str | None = None
    python_executable: str | None = None
    mount_prefix: str = "pyworkspace-"
    policy: ExecutionPolicy = Field(default_factory=ExecutionPolicy)


class StorageConfig(BaseModel):
    """Durable backing store location."""

    backend: StorageBackend = StorageBackend.MEMORY
    base_url: str = "http://localhost:3000"
    auth_token: str | None = None
    timeout_seconds: float = Field(default=10.0, gt=0)


class PackagesConfig(BaseModel):
    """Package installation and index lookups."""

    index_url: str = "https://pypi.org"
    installer: Literal["auto", "uv", "pip"] = "auto"
    default_packages: list[str] = Field(default_factory=list)
    only_binary: bool | None = None
    search_timeout_seconds: float = Field(default=10.0, gt=0)


class StateConfig(BaseModel):
    """Snapshot slot and auto-save."""

    session_id: str = Field(default="default", min_length=1)
    auto_save: bool = False
    auto_save_interval_seconds: float = Field(default=30.0, gt=0)


class OutputConfig(BaseModel):
    max_entries: int = Field(default=1000, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    structured: bool = False

    def apply(self) -> None:
        """Configure structlog rendering and filtering from these settings."""
        configure_structlog(self.level, use_json=self.structured)


class WorkspaceConfig(BaseModel):
    """Root configuration model."""

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    packages: PackagesConfig = Field(default_factory=PackagesConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigValidationError(f"Invalid workspace configuration: {e}") from e

    @classmethod
    def model_validate(cls, obj: Any, *, strict: bool | None = None, context: dict[str, Any] | None = None) -> "WorkspaceConfig":
        try:
            return super().model_validate(obj, strict=strict, context=context)  # type: ignore[arg-type]
        except ValidationError as e:
            raise ConfigValidationError(f"Invalid workspace configuration: {e}") from e

    @classmethod
    def from_file(cls, path: Path | str) -> WorkspaceConfig:
        """Load configuration from TOML file."""
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigValidationError(f"Invalid TOML in {config_path}: {e}") from e

        return cls.model_validate(data)


def load_config(path: Path | str = DEFAULT_CONFIG_PATH) -> WorkspaceConfig:
    """Load configuration, falling back to defaults when the file is absent.

    Args:
        path: Path to the workspace TOML file

    Returns:
        Validated WorkspaceConfig

    Raises:
        ConfigValidationError: If the file exists but holds invalid values
    """
    if not Path(path).exists():
        return WorkspaceConfig()
    return WorkspaceConfig.from_file(path)
