"""Factory functions for backends, stores, installers and sessions.

Maps configuration sections to concrete implementations: RuntimeType to an
InterpreterBackend, StorageBackend to a BackingStore, PackagesConfig to a
PackageInstaller, and provides create_session() for auto-initialized sessions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pyworkspace.config import PackagesConfig, RuntimeConfig, StorageConfig, WorkspaceConfig
from pyworkspace.core.logging import WorkspaceLogger
from pyworkspace.core.models import RuntimeType
from pyworkspace.core.storage import BackingStore, HttpBackingStore, MemoryBackingStore, StorageBackend
from pyworkspace.packages import ToolInstaller
from pyworkspace.runtime_paths import find_python_wasm
from pyworkspace.runtimes.native import NativeBackend
from pyworkspace.runtimes.wasm import WasmBackend

if TYPE_CHECKING:
    from pyworkspace.core.base import InterpreterBackend
    from pyworkspace.session import WorkspaceSession


def create_backend(config: RuntimeConfig | None = None, logger: WorkspaceLogger | None = None) -> InterpreterBackend:
    """Create the interpreter backend selected by configuration.

    AUTO resolves to WASM when a CPython WASI binary can be located and to
    the host interpreter otherwise.

    Args:
        config: Runtime configuration. If None, uses defaults.
        logger: Optional WorkspaceLogger passed to the backend

    Returns:
        WasmBackend or NativeBackend
    """
    config = config or RuntimeConfig()
    backend = config.backend
    if backend is RuntimeType.AUTO:
        backend = RuntimeType.WASM if find_python_wasm(config.wasm_binary_path) else RuntimeType.NATIVE

    if backend is RuntimeType.WASM:
        return WasmBackend(config.policy, logger, wasm_binary_path=config.wasm_binary_path)
    return NativeBackend(config.policy, logger, python_executable=config.python_executable)


def create_store(config: StorageConfig | None = None) -> BackingStore:
    config = config or StorageConfig()
    if config.backend is StorageBackend.HTTP:
        return HttpBackingStore(
            config.base_url, auth_token=config.auth_token, timeout_seconds=config.timeout_seconds
        )
    return MemoryBackingStore()


def create_installer(
    config: PackagesConfig | None = None,
    runtime: RuntimeConfig | None = None,
    backend: InterpreterBackend | None = None,
) -> ToolInstaller:
    """Create the host-side installer for a backend.

    The WASM backend only accepts pure-Python wheels, so only_binary defaults
    to True there unless configured explicitly. The target Python version is
    filled in by PackageManager.initialize() once the interpreter is up.
    """
    config = config or PackagesConfig()
    is_wasm = backend is not None and backend.name == "wasm"
    only_binary = config.only_binary if config.only_binary is not None else is_wasm
    return ToolInstaller(
        tool=config.installer,
        python_executable=(runtime.python_executable if runtime and not is_wasm else None),
        index_url=config.index_url,
        only_binary=only_binary,
    )


async def create_session(
    workspace_id: str,
    config: WorkspaceConfig | None = None,
    *,
    auto_initialize: bool = True,
    apply_logging: bool = False,
    **kwargs: Any,
) -> WorkspaceSession:
    """Create a workspace session, initializing it unless told otherwise.

    Args:
        workspace_id: Workspace identifier
        config: Optional WorkspaceConfig
        auto_initialize: Await initialize() before returning
        apply_logging: Configure structlog from config.logging first
        **kwargs: Passed to WorkspaceSession (store, backend, installer, owner, sinks, logger)

    Returns:
        WorkspaceSession, ready when auto_initialize is True

    Raises:
        SessionInitializationError: If auto-initialization fails
    """
    from pyworkspace.session import WorkspaceSession

    config = config or WorkspaceConfig()
    if apply_logging:
        config.logging.apply()

    session = WorkspaceSession(workspace_id, config, **kwargs)
    if auto_initialize:
        await session.initialize()
    return session
