"""Exception classes for workspace errors and contract violations.

Provides a small hierarchy rooted at WorkspaceError so callers can catch
everything raised by the workspace runtime, while still distinguishing caller
misuse (contract violations) from infrastructure failures (persistence,
interpreter host) and malformed data crossing a boundary (payloads,
snapshots, configuration).

Guest program failures (exceptions raised by user code) are never raised as
exceptions: they are reported inside ExecutionResult.
"""

from __future__ import annotations


class WorkspaceError(Exception):
    """Base class for every error raised by the workspace runtime."""

    pass


class ConfigValidationError(WorkspaceError):
    """Raised when workspace configuration is invalid.

    Wraps Pydantic ValidationError with a domain-specific name, for both
    WorkspaceConfig sections and ExecutionPolicy values.
    """

    pass


class ContractViolationError(WorkspaceError):
    """Raised when an operation is invoked before its precondition holds.

    Signals caller misuse. Always surfaced as an immediate rejection and never
    converted into a status value.
    """

    pass


class RuntimeNotInitializedError(ContractViolationError):
    """Raised when execution, file or package operations run before the runtime is ready."""

    def __init__(self, message: str = "Python runtime not initialized") -> None:
        super().__init__(message)


class ExecutionInProgressError(ContractViolationError):
    """Raised when run_python is called while another execution is still in flight."""

    def __init__(
        self, message: str = "Another Python execution is already in progress"
    ) -> None:
        super().__init__(message)


class RuntimeInitializationError(WorkspaceError):
    """Raised when the interpreter cannot be brought up.

    The runtime returns to the ERROR status with a description of the cause,
    so a later initialize() call may retry.
    """

    pass


class SessionInitializationError(WorkspaceError):
    """Raised when the session controller fails one of its startup steps."""

    pass


class RuntimeBackendError(WorkspaceError):
    """Raised when the interpreter host itself fails.

    Covers a missing WASM binary or Python executable, and driver crashes that
    leave no result payload behind. User code errors never raise this.
    """

    pass


class GuestOperationError(WorkspaceError):
    """Raised when a generated helper program fails inside the interpreter.

    Attributes:
        error_type: Exception class name reported by the guest
    """

    def __init__(self, message: str, error_type: str | None = None) -> None:
        super().__init__(message)
        self.error_type = error_type


class PersistenceError(WorkspaceError):
    """Raised when the durable backing store cannot complete an operation.

    Write paths log and swallow this error; read-dependent paths
    (load_from_database, load_state) and explicit saves propagate it.

    Attributes:
        operation: Store operation name (e.g. "list_files", "update_file")
        path: Workspace-relative path involved, if any
        status: HTTP status code, if the failure came from a response
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        path: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.path = path
        self.status = status


class PayloadValidationError(WorkspaceError):
    """Raised when a payload produced inside the interpreter fails schema validation."""

    pass


class SnapshotFormatError(WorkspaceError):
    """Raised when a snapshot string is malformed or has an unsupported version."""

    pass


class InvalidPathError(WorkspaceError, ValueError):
    """Raised when a path escapes the workspace root."""

    pass
