"""Tests for pyworkspace.core.logging module.

Verifies WorkspaceLogger functionality with structlog including
structured event logging, key-value pairs, and event emission.
"""

from __future__ import annotations

import logging
from typing import Any

import pytest
import structlog

from pyworkspace.core.logging import WorkspaceLogger, configure_structlog
from pyworkspace.core.models import ExecutionResult, FileChanges, RuntimeStatus, SessionState


class StructlogCapture:
    """Helper to capture structlog events."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        """Capture event dict (structlog processor signature)."""
        self.events.append(event_dict.copy())
        return event_dict


@pytest.fixture
def log_capture() -> StructlogCapture:
    return StructlogCapture()


@pytest.fixture
def custom_logger(log_capture: StructlogCapture) -> Any:
    """Fixture providing a structlog logger with capture processor."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            log_capture,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    return structlog.get_logger("test_workspace")


@pytest.fixture
def std_logger() -> logging.Logger:
    logger = logging.getLogger("pyworkspace-test-logger")
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    return logger


def test_configure_structlog_console_renderer() -> None:
    configure_structlog(use_json=False)
    assert structlog.get_logger() is not None


def test_configure_structlog_accepts_level_names() -> None:
    configure_structlog("warning", use_json=True)
    assert structlog.get_logger() is not None


def test_workspace_logger_wraps_provided_logger(custom_logger: Any) -> None:
    workspace_logger = WorkspaceLogger(logger=custom_logger)
    assert workspace_logger.logger is custom_logger


def test_workspace_logger_creates_default_logger() -> None:
    assert WorkspaceLogger().logger is not None


def test_workspace_logger_accepts_standard_logging_logger(
    std_logger: logging.Logger, caplog: pytest.LogCaptureFixture
) -> None:
    workspace_logger = WorkspaceLogger(logger=std_logger)

    with caplog.at_level(logging.INFO, logger=std_logger.name):
        workspace_logger.log_file_operation("create", "ws-1", "src/main.py", file_size=12)

    assert len(caplog.records) == 1
    record = caplog.records[0]
    assert record.event == "fs.file.create"
    assert record.workspace_id == "ws-1"
    assert record.file_size == 12
    assert record.log_message == "pyworkspace.fs.file.create"


def test_log_execution_start_structure(custom_logger: Any, log_capture: StructlogCapture) -> None:
    WorkspaceLogger(logger=custom_logger).log_execution_start("native", source_bytes=42)

    assert len(log_capture.events) == 1
    event = log_capture.events[0]
    assert event["level"] == "info"
    assert event["event"] == "execution.start"
    assert event["log_message"] == "pyworkspace.execution.start"
    assert event["backend"] == "native"
    assert event["source_bytes"] == 42
    assert event["internal"] is False


def test_internal_executions_logged_at_debug(custom_logger: Any, log_capture: StructlogCapture) -> None:
    workspace_logger = WorkspaceLogger(logger=custom_logger)

    workspace_logger.log_execution_start("native", source_bytes=10, internal=True)
    workspace_logger.log_execution_complete(ExecutionResult(success=True), "native", internal=True)

    assert [e["level"] for e in log_capture.events] == ["debug", "debug"]


def test_log_execution_complete_structure(custom_logger: Any, log_capture: StructlogCapture) -> None:
    result = ExecutionResult(
        success=False,
        stdout="partial\n",
        stderr="ZeroDivisionError: division by zero\n",
        error="ZeroDivisionError: division by zero",
        duration_ms=12.5,
        files_created=["out.txt"],
        metadata={"backend": "wasm", "fuel_consumed": 125_000, "trap_reason": None},
    )

    WorkspaceLogger(logger=custom_logger).log_execution_complete(result, "wasm")

    event = log_capture.events[0]
    assert event["event"] == "execution.complete"
    assert event["success"] is False
    assert event["error"] == "ZeroDivisionError: division by zero"
    assert event["stdout_bytes"] == len("partial\n")
    assert event["files_created_count"] == 1
    assert event["fuel_consumed"] == 125_000
    assert "trap_reason" not in event


def test_log_persistence_failure_is_warning(custom_logger: Any, log_capture: StructlogCapture) -> None:
    WorkspaceLogger(logger=custom_logger).log_persistence_failure(
        "update_file", "ws-1", "update_file failed with HTTP 503", path="a.txt"
    )

    event = log_capture.events[0]
    assert event["level"] == "warning"
    assert event["event"] == "persistence.failed"
    assert event["operation"] == "update_file"
    assert event["path"] == "a.txt"
    assert "503" in event["error"]


def test_log_sync_truncates_long_paths(custom_logger: Any, log_capture: StructlogCapture) -> None:
    long_name = "nested/" + ("a" * 180) + ".txt"

    WorkspaceLogger(logger=custom_logger).log_sync(FileChanges(created=[long_name]), workspace_id="ws-1")

    event = log_capture.events[0]
    assert event["event"] == "fs.sync"
    truncated_path = event["created"][0]
    assert truncated_path.endswith(WorkspaceLogger._PATH_TRUNCATION_SUFFIX)
    assert len(truncated_path) <= WorkspaceLogger._MAX_PATH_LENGTH


def test_empty_sync_logged_at_debug(custom_logger: Any, log_capture: StructlogCapture) -> None:
    WorkspaceLogger(logger=custom_logger).log_sync(FileChanges())
    assert log_capture.events[0]["level"] == "debug"


def test_log_package_event_failure(custom_logger: Any, log_capture: StructlogCapture) -> None:
    WorkspaceLogger(logger=custom_logger).log_package_event(
        "install", "nosuchpkg", False, "No matching distribution"
    )

    event = log_capture.events[0]
    assert event["level"] == "warning"
    assert event["event"] == "package.install"
    assert event["success"] is False
    assert event["detail"] == "No matching distribution"


def test_log_session_status_error_level(custom_logger: Any, log_capture: StructlogCapture) -> None:
    workspace_logger = WorkspaceLogger(logger=custom_logger)

    workspace_logger.log_session_status("ws-1", SessionState(status=RuntimeStatus.READY, is_initialized=True))
    workspace_logger.log_session_status("ws-1", SessionState(status=RuntimeStatus.ERROR, error="boom"))

    ready, failed = log_capture.events
    assert ready["level"] == "info"
    assert ready["status"] == "ready"
    assert failed["level"] == "error"
    assert failed["error"] == "boom"


def test_log_state_event_extra_fields(custom_logger: Any, log_capture: StructlogCapture) -> None:
    WorkspaceLogger(logger=custom_logger).log_state_event(
        "save", "ws-1", "default", file_count=3, package_count=1
    )

    event = log_capture.events[0]
    assert event["event"] == "state.save"
    assert event["session_id"] == "default"
    assert event["file_count"] == 3
