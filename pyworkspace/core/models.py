"""Pydantic models for workspace configuration, records and results.

Provides validated data models for execution policies, runtime status,
virtual file records, packages, execution results, output entries and the
versioned workspace snapshot document, with automatic field validation and
JSON serialization support.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pyworkspace.core.errors import ConfigValidationError, SnapshotFormatError

SNAPSHOT_FORMAT = "pyworkspace.snapshot"
SNAPSHOT_VERSION = 1


class RuntimeType(str, Enum):
    """Supported interpreter backends.

    AUTO: WASM when a CPython WASI binary is available, native otherwise
    WASM: CPython compiled to WebAssembly, executed through wasmtime
    NATIVE: Host CPython launched as an isolated child process
    """
    AUTO = "auto"
    WASM = "wasm"
    NATIVE = "native"


class RuntimeStatus(str, Enum):
    """Lifecycle status of the runtime controller and the session facade."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


class FileKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


class OutputStream(str, Enum):
    """Origin of an output log entry."""
    STDOUT = "stdout"
    STDERR = "stderr"
    INFO = "info"


class InstallStatus(str, Enum):
    DOWNLOADING = "downloading"
    INSTALLING = "installing"
    COMPLETE = "complete"
    ERROR = "error"


class ExecutionPolicy(BaseModel):
    """Type-safe configuration model for interpreter execution limits.

    Defines resource budgets (fuel, memory), output limits, a wall-clock
    timeout and the environment exposed to guest code. All fields have safe
    defaults and are validated at construction time.

    Attributes:
        fuel_budget: WASM instruction limit per submission (wasm backend)
        memory_bytes: Linear memory cap in bytes (wasm backend)
        stdout_max_bytes: Maximum stdout capture size
        stderr_max_bytes: Maximum stderr capture size
        timeout_seconds: Wall-clock limit per submission (native backend)
        env: Environment variables exposed to the guest (whitelist pattern)
    """

    fuel_budget: int = Field(
        default=4_000_000_000,
        gt=0,
        description="WASM instruction limit for deterministic interruption"
    )

    memory_bytes: int = Field(
        default=256_000_000,
        gt=0,
        description="Linear memory cap in bytes"
    )

    stdout_max_bytes: int = Field(
        default=2_000_000,
        gt=0,
        description="Maximum stdout capture size"
    )

    stderr_max_bytes: int = Field(
        default=1_000_000,
        gt=0,
        description="Maximum stderr capture size"
    )

    timeout_seconds: float | None = Field(
        default=60.0,
        description="Wall-clock timeout per submission (None = no timeout)"
    )

    env: dict[str, str] = Field(
        default_factory=lambda: {
            "PYTHONUTF8": "1",
            "LC_ALL": "C.UTF-8",
            "PYTHONIOENCODING": "utf-8",
            "PYTHONHASHSEED": "0",
        },
        description="Environment variables exposed to guest code"
    )

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigValidationError(f"Invalid execution policy: {e}") from e

    @classmethod
    def model_validate(cls, obj: Any, *, strict: bool | None = None, context: dict[str, Any] | None = None) -> "ExecutionPolicy":
        try:
            return super().model_validate(obj, strict=strict, context=context)  # type: ignore[arg-type]
        except ValidationError as e:
            raise ConfigValidationError(f"Invalid execution policy: {e}") from e

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float | None) -> float | None:
        """Ensure timeout is positive if provided."""
        if v is not None and v <= 0:
            raise ValueError("Timeout must be positive")
        return v


class WorkspaceInfo(BaseModel):
    """Identity of the workspace a session is bound to."""

    workspace_id: str = Field(min_length=1)
    owner: str | None = None


class FileInfo(BaseModel):
    """A file or directory in the workspace tree.

    Attributes:
        name: Final path component
        path: Workspace-root-relative path using forward slashes ("" is the root)
        kind: File or directory
        size: Size in bytes as reported by the mount
        modified: Last modification time (UTC)
        content: Optional text content, only populated on explicit request
    """

    name: str
    path: str
    kind: FileKind
    size: int = Field(default=0, ge=0)
    modified: datetime
    content: str | None = None

    @property
    def is_directory(self) -> bool:
        return self.kind is FileKind.DIRECTORY


class FileSystemStats(BaseModel):
    total_files: int = 0
    total_size: int = 0
    directories: int = 0
    last_modified: datetime | None = None


class FileChanges(BaseModel):
    """Delta between two scans of the interpreter mount."""

    created: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.created or self.modified or self.deleted)


class PackageInfo(BaseModel):
    """An installed (or installable) Python distribution."""

    name: str
    version: str = ""
    installed: bool = True
    summary: str = ""
    author: str = ""
    homepage: str = ""
    license: str = ""


class PackageSearchResult(BaseModel):
    """Candidate returned by a package index lookup."""

    name: str
    version: str = ""
    description: str = ""
    author: str = ""
    homepage: str = ""
    keywords: list[str] = Field(default_factory=list)


class InstallationProgress(BaseModel):
    package: str
    status: InstallStatus
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""


class ExecutionResult(BaseModel):
    """Type-safe outcome of a single code submission.

    Guest failures (exceptions, syntax errors, traps) are reported here with
    success=False and a description in error; they never raise.

    Attributes:
        success: Whether execution completed without errors
        result: Best-effort serialized value of the final expression
        stdout: Captured stdout (may be truncated per policy)
        stderr: Captured stderr (may be truncated per policy)
        error: "ExceptionType: message" description on failure
        duration_ms: Wall-clock execution time in milliseconds
        files_created: New paths in the workspace (relative)
        files_modified: Modified paths in the workspace (relative)
        files_deleted: Removed paths in the workspace (relative)
        metadata: Backend-specific details (fuel_consumed, trap_reason, truncation flags)
    """

    success: bool = Field(
        description="Whether execution completed without errors"
    )

    result: Any = Field(
        default=None,
        description="Serialized value of the final expression, if any"
    )

    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    duration_ms: float = Field(
        default=0.0,
        description="Wall-clock execution time in milliseconds"
    )

    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    files_deleted: list[str] = Field(default_factory=list)

    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific execution metadata (e.g., backend, fuel_consumed, trap_reason)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "success": True,
                    "result": 42,
                    "stdout": "hi\n",
                    "stderr": "",
                    "error": None,
                    "duration_ms": 35.2,
                    "files_created": ["out.txt"],
                    "files_modified": [],
                    "files_deleted": [],
                    "metadata": {"backend": "native", "exit_code": 0}
                }
            ]
        }
    }


class OutputEntry(BaseModel):
    """A single line (or chunk) of the session output log."""

    text: str
    stream: OutputStream = OutputStream.STDOUT

    def render(self) -> str:
        """Render the entry for display, marking stderr and info entries."""
        text = self.text.rstrip("\n")
        if self.stream is OutputStream.STDERR:
            return f"ERROR: {text}"
        if self.stream is OutputStream.INFO:
            return f"INFO: {text}"
        return text


class OutputSinks(BaseModel):
    """Caller-supplied callbacks invoked once per output chunk."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    stdout: Callable[[str], None] | None = None
    stderr: Callable[[str], None] | None = None


class SessionState(BaseModel):
    """Observable state of a workspace session, delivered to state listeners."""

    status: RuntimeStatus = RuntimeStatus.UNINITIALIZED
    is_initialized: bool = False
    is_loading: bool = False
    error: str | None = None


class Blob(BaseModel):
    """Binary upload/download object (name, bytes, content type)."""

    name: str
    data: bytes = b""
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)

    def text(self, encoding: str = "utf-8") -> str:
        return self.data.decode(encoding)


class SnapshotFile(BaseModel):
    path: str
    kind: FileKind = FileKind.FILE
    content: str = ""
    encoding: Literal["utf-8", "base64"] = "utf-8"


class SnapshotPackage(BaseModel):
    name: str
    version: str = ""


class SnapshotEnvironment(BaseModel):
    python_version: str = ""
    backend: str = ""
    working_directory: str = "/workspace"
    variables: dict[str, str] = Field(default_factory=dict)


class WorkspaceSnapshot(BaseModel):
    """Versioned, self-describing serialization of a workspace.

    Captures files, installed packages, environment and JSON-serializable
    interpreter globals. Produced by export/save and consumed by import/load.
    """

    format: Literal["pyworkspace.snapshot"] = SNAPSHOT_FORMAT
    version: int = SNAPSHOT_VERSION
    workspace_id: str
    session_id: str = "default"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    files: list[SnapshotFile] = Field(default_factory=list)
    packages: list[SnapshotPackage] = Field(default_factory=list)
    environment: SnapshotEnvironment = Field(default_factory=SnapshotEnvironment)
    globals: dict[str, Any] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: int) -> int:
        """Reject snapshots written by a newer format revision."""
        if v < 1 or v > SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported snapshot version {v}")
        return v

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes | dict[str, Any]) -> WorkspaceSnapshot:
        """Parse a snapshot document.

        Args:
            raw: JSON text, or an already-decoded mapping

        Returns:
            Validated WorkspaceSnapshot

        Raises:
            SnapshotFormatError: If the input is not valid JSON, is not a
                snapshot document, or uses an unsupported version
        """
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except json.JSONDecodeError as e:
            raise SnapshotFormatError(f"Snapshot is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise SnapshotFormatError("Snapshot must be a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise SnapshotFormatError(f"Invalid snapshot: {e}") from e
