"""pyworkspace: a Python workspace runtime.

An embedded interpreter (CPython on WebAssembly, or the host CPython), a
workspace-scoped filesystem bridged to durable storage, a package manager and
snapshot persistence, unified behind WorkspaceSession.

Example:
    >>> from pyworkspace import create_session
    >>> session = await create_session("demo")
    >>> await session.create_file("test.py", "print('hi')")
    >>> result = await session.run_python("print('hi')")
    >>> result.stdout
    'hi\\n'
"""

from __future__ import annotations

from pyworkspace.config import WorkspaceConfig, load_config
from pyworkspace.core.errors import (
    ConfigValidationError,
    ContractViolationError,
    ExecutionInProgressError,
    GuestOperationError,
    InvalidPathError,
    PayloadValidationError,
    PersistenceError,
    RuntimeBackendError,
    RuntimeInitializationError,
    RuntimeNotInitializedError,
    SessionInitializationError,
    SnapshotFormatError,
    WorkspaceError,
)
from pyworkspace.core.logging import WorkspaceLogger, configure_structlog
from pyworkspace.core.models import (
    Blob,
    ExecutionPolicy,
    ExecutionResult,
    FileChanges,
    FileInfo,
    FileKind,
    InstallationProgress,
    OutputEntry,
    OutputSinks,
    OutputStream,
    PackageInfo,
    RuntimeStatus,
    RuntimeType,
    SessionState,
    WorkspaceSnapshot,
)
from pyworkspace.core.storage import BackingStore, HttpBackingStore, MemoryBackingStore
from pyworkspace.factory import create_backend, create_session, create_store
from pyworkspace.session import WorkspaceSession

__version__ = "0.1.0"

__all__ = [
    "BackingStore",
    "Blob",
    "ConfigValidationError",
    "ContractViolationError",
    "ExecutionInProgressError",
    "ExecutionPolicy",
    "ExecutionResult",
    "FileChanges",
    "FileInfo",
    "FileKind",
    "GuestOperationError",
    "HttpBackingStore",
    "InstallationProgress",
    "InvalidPathError",
    "MemoryBackingStore",
    "OutputEntry",
    "OutputSinks",
    "OutputStream",
    "PackageInfo",
    "PayloadValidationError",
    "PersistenceError",
    "RuntimeBackendError",
    "RuntimeInitializationError",
    "RuntimeNotInitializedError",
    "RuntimeStatus",
    "RuntimeType",
    "SessionInitializationError",
    "SessionState",
    "SnapshotFormatError",
    "WorkspaceConfig",
    "WorkspaceError",
    "WorkspaceLogger",
    "WorkspaceSession",
    "WorkspaceSnapshot",
    "__version__",
    "configure_structlog",
    "create_backend",
    "create_session",
    "create_store",
    "load_config",
]
