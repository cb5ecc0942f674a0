"""Structured logging for workspace runtime, storage and session events.

Provides WorkspaceLogger class that uses structlog for structured event
emission (runtime.initialize.*, execution.*, fs.*, persistence.failed,
package.*, state.*, session.status). Configures structlog with console
rendering by default but allows custom configuration.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from pyworkspace.core.models import ExecutionResult, FileChanges, SessionState


def configure_structlog(level: int | str = logging.INFO, use_json: bool = False) -> None:
    """Configure structlog with sensible defaults for workspace logging.

    Args:
        level: Minimum log level, as a number or a name such as "DEBUG"
        use_json: If True, use JSON renderer; otherwise use console renderer
    """
    if isinstance(level, str):
        level = logging.getLevelNamesMapping()[level.upper()]

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if use_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class WorkspaceLogger:
    """Wrapper for structured logging of workspace events.

    Accepts either structlog or standard logging.Logger instances and normalizes
    emission so callers do not need to care which backend is in use.
    """

    _PATH_TRUNCATION_SUFFIX = "...[truncated]"
    _MAX_PATH_LENGTH = 140
    _MAX_LOGGED_PATHS = 50

    def __init__(self, logger: Any = None) -> None:
        """Initialize WorkspaceLogger with optional custom logger.

        Args:
            logger: Optional structlog BoundLogger, logging.Logger, or string name.
                    If None, a default structlog logger named 'pyworkspace' is created.
                    If string, creates a structlog logger with that name.
        """
        if logger is None:
            self._logger = structlog.get_logger("pyworkspace")
        elif isinstance(logger, str):
            self._logger = structlog.get_logger(logger)
        else:
            self._logger = logger

    @property
    def logger(self) -> Any:
        """Expose the underlying logger instance (structlog or logging.Logger)."""
        return self._logger

    def _emit(self, level: int, message: str, **fields: Any) -> None:
        """Emit a log record regardless of logger backend."""
        extra = dict(fields)
        extra.setdefault("log_message", message)
        # Event key is always present for downstream processors
        extra.setdefault("event", message.split(".", 1)[-1] if "." in message else message)
        extra.setdefault("event_type", extra.get("event"))

        if isinstance(self._logger, logging.Logger):
            self._logger.log(level, message, extra=extra)
            return

        method_name = logging.getLevelName(level).lower()
        log_method = getattr(self._logger, method_name, None)
        if not callable(log_method):
            log_method = self._logger.info

        log_kwargs = dict(extra)
        event_value = log_kwargs.pop("event", None)
        event_arg = event_value if event_value is not None else message
        log_method(event_arg, **log_kwargs)

    def _truncate_path(self, path: str) -> str:
        """Truncate long file paths to keep logs concise."""
        if len(path) <= self._MAX_PATH_LENGTH:
            return path
        keep = self._MAX_PATH_LENGTH - len(self._PATH_TRUNCATION_SUFFIX)
        return f"{path[:keep]}{self._PATH_TRUNCATION_SUFFIX}"

    def _paths(self, paths: list[str]) -> list[str]:
        return [self._truncate_path(p) for p in paths[: self._MAX_LOGGED_PATHS]]

    def log_runtime_initialize_start(self, backend: str) -> None:
        self._emit(
            logging.INFO,
            "pyworkspace.runtime.initialize.start",
            event="runtime.initialize.start",
            backend=backend,
        )

    def log_runtime_initialize_complete(
        self, backend: str, python_version: str, duration_ms: float
    ) -> None:
        """Log a successful interpreter bring-up.

        Args:
            backend: Backend name ("wasm" or "native")
            python_version: Version string reported by the guest interpreter
            duration_ms: Wall-clock bring-up time in milliseconds
        """
        self._emit(
            logging.INFO,
            "pyworkspace.runtime.initialize.complete",
            event="runtime.initialize.complete",
            backend=backend,
            python_version=python_version,
            duration_ms=duration_ms,
        )

    def log_runtime_initialize_failed(self, backend: str, error: str) -> None:
        self._emit(
            logging.ERROR,
            "pyworkspace.runtime.initialize.failed",
            event="runtime.initialize.failed",
            backend=backend,
            error=error,
        )

    def log_runtime_cleanup(self, backend: str, mount_path: str | None) -> None:
        self._emit(
            logging.INFO,
            "pyworkspace.runtime.cleanup",
            event="runtime.cleanup",
            backend=backend,
            mount_path=mount_path,
        )

    def log_execution_start(self, backend: str, source_bytes: int, internal: bool = False) -> None:
        """Log the start of a code submission.

        Internal helper programs are logged at DEBUG level so that user
        submissions stay visible in INFO-level output.

        Args:
            backend: Backend name ("wasm" or "native")
            source_bytes: Size of the submitted source in bytes
            internal: True for generated helper programs
        """
        self._emit(
            logging.DEBUG if internal else logging.INFO,
            "pyworkspace.execution.start",
            event="execution.start",
            backend=backend,
            source_bytes=source_bytes,
            internal=internal,
        )

    def log_execution_complete(
        self, result: ExecutionResult, backend: str, internal: bool = False
    ) -> None:
        """Log the completion of a code submission with result metrics.

        Args:
            result: ExecutionResult containing execution metrics and outputs
            backend: Backend name ("wasm" or "native")
            internal: True for generated helper programs
        """
        log_kwargs: dict[str, Any] = {
            "event": "execution.complete",
            "backend": backend,
            "internal": internal,
            "success": result.success,
            "duration_ms": result.duration_ms,
            "stdout_bytes": len(result.stdout),
            "stderr_bytes": len(result.stderr),
            "files_created_count": len(result.files_created),
            "files_modified_count": len(result.files_modified),
            "files_deleted_count": len(result.files_deleted),
        }
        if result.error is not None:
            log_kwargs["error"] = result.error

        for key in ("fuel_consumed", "trap_reason", "stdout_truncated", "stderr_truncated"):
            value = result.metadata.get(key)
            if value is not None:
                log_kwargs[key] = value

        self._emit(
            logging.DEBUG if internal else logging.INFO,
            "pyworkspace.execution.complete",
            **log_kwargs,
        )

    def log_file_operation(self, operation: str, workspace_id: str, path: str, **kwargs: Any) -> None:
        """Log a workspace file operation.

        Emits an INFO-level structured log event for file operations
        (create, write, delete, move, copy, mkdir, upload, load).

        Args:
            operation: Operation name
            workspace_id: Workspace identifier
            path: Workspace-relative path
            **kwargs: Operation-specific metadata (file_size, destination, file_count)
        """
        event = f"fs.file.{operation}"
        self._emit(
            logging.INFO,
            f"pyworkspace.{event}",
            event=event,
            workspace_id=workspace_id,
            path=self._truncate_path(path),
            **kwargs,
        )

    def log_sync(self, changes: FileChanges, workspace_id: str | None = None) -> None:
        self._emit(
            logging.DEBUG if changes.is_empty else logging.INFO,
            "pyworkspace.fs.sync",
            event="fs.sync",
            workspace_id=workspace_id,
            created=self._paths(changes.created),
            modified=self._paths(changes.modified),
            deleted=self._paths(changes.deleted),
        )

    def log_persistence_failure(
        self, operation: str, workspace_id: str, error: str, path: str | None = None
    ) -> None:
        """Log a backing store failure that was swallowed on a write path.

        Emits a WARNING-level structured log event; the in-memory mount stays
        authoritative and the caller is not rejected.

        Args:
            operation: Store operation name (e.g. "create_file", "delete_file")
            workspace_id: Workspace identifier
            error: Description of the failure
            path: Workspace-relative path involved, if any
        """
        self._emit(
            logging.WARNING,
            "pyworkspace.persistence.failed",
            event="persistence.failed",
            operation=operation,
            workspace_id=workspace_id,
            path=self._truncate_path(path) if path else None,
            error=error,
        )

    def log_package_event(
        self, action: str, package: str, success: bool, detail: str | None = None
    ) -> None:
        """Log a package install or uninstall.

        Failures are emitted at WARNING level with the installer detail.

        Args:
            action: "install" or "uninstall"
            package: Requirement or distribution name
            success: Whether the operation succeeded
            detail: Installer output or error description
        """
        event = f"package.{action}"
        fields: dict[str, Any] = {"package": package, "success": success}
        if detail:
            fields["detail"] = detail[-2000:]
        self._emit(
            logging.INFO if success else logging.WARNING,
            f"pyworkspace.{event}",
            event=event,
            **fields,
        )

    def log_state_event(
        self, action: str, workspace_id: str, session_id: str, level: int = logging.INFO, **kwargs: Any
    ) -> None:
        event = f"state.{action}"
        self._emit(
            level,
            f"pyworkspace.{event}",
            event=event,
            workspace_id=workspace_id,
            session_id=session_id,
            **kwargs,
        )

    def log_session_status(self, workspace_id: str, state: SessionState) -> None:
        self._emit(
            logging.ERROR if state.error else logging.INFO,
            "pyworkspace.session.status",
            event="session.status",
            workspace_id=workspace_id,
            status=state.status.value,
            is_initialized=state.is_initialized,
            is_loading=state.is_loading,
            error=state.error,
        )

    def log_warning(self, event: str, **fields: Any) -> None:
        self._emit(logging.WARNING, f"pyworkspace.{event}", event=event, **fields)
