"""Core workspace abstractions and models.

This module provides the foundational types and interfaces shared by the
runtime, filesystem, package and state subsystems: Pydantic models for
results and snapshots, the interpreter backend abstraction, durable storage
clients, guest payload schemas and error types.
"""

from __future__ import annotations

from .base import InterpreterBackend, MountLayout
from .errors import (
    ConfigValidationError,
    ExecutionInProgressError,
    InvalidPathError,
    PersistenceError,
    RuntimeNotInitializedError,
    WorkspaceError,
)
from .models import ExecutionPolicy, ExecutionResult, RuntimeStatus, RuntimeType, WorkspaceSnapshot
from .storage import BackingStore, HttpBackingStore, MemoryBackingStore

__all__ = [
    "BackingStore",
    "ConfigValidationError",
    "ExecutionInProgressError",
    "ExecutionPolicy",
    "ExecutionResult",
    "HttpBackingStore",
    "InterpreterBackend",
    "InvalidPathError",
    "MemoryBackingStore",
    "MountLayout",
    "PersistenceError",
    "RuntimeNotInitializedError",
    "RuntimeStatus",
    "RuntimeType",
    "WorkspaceError",
    "WorkspaceSnapshot",
]
