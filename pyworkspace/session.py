"""Session controller: the single facade over a workspace's subsystems.

WorkspaceSession wires the runtime controller, filesystem bridge, package
manager and state manager together, initializes them in dependency order,
merges their status into one observable SessionState, keeps a bounded output
log and delegates every public operation.

Initialization order is strict:
1. RuntimeController.initialize()
2. FileSystemBridge.load_from_database()
3. PackageManager.initialize()
4. StateManager.initialize()

Concurrent initialize() calls collapse into the single in-flight attempt.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Callable
from typing import Any

from pyworkspace.config import WorkspaceConfig
from pyworkspace.core.base import InterpreterBackend
from pyworkspace.core.errors import RuntimeNotInitializedError, SessionInitializationError
from pyworkspace.core.logging import WorkspaceLogger
from pyworkspace.core.models import (
    Blob,
    ExecutionResult,
    FileChanges,
    FileInfo,
    FileSystemStats,
    InstallationProgress,
    OutputEntry,
    OutputSinks,
    OutputStream,
    PackageInfo,
    PackageSearchResult,
    RuntimeStatus,
    SessionState,
    WorkspaceInfo,
    WorkspaceSnapshot,
)
from pyworkspace.core.storage import BackingStore
from pyworkspace.filesystem import FileSystemBridge
from pyworkspace.packages import PackageInstaller, PackageManager
from pyworkspace.runtime import RuntimeController
from pyworkspace.state import StateManager

StateListener = Callable[[SessionState], None]


class WorkspaceSession:
    """Facade over one workspace's interpreter, files, packages and state.

    Attributes:
        workspace: Identity of the bound workspace
        config: WorkspaceConfig the subsystems were built from
        runtime: RuntimeController owning the interpreter
        filesystem: FileSystemBridge for workspace files
        package_manager: PackageManager for site-packages
        state_manager: StateManager for snapshots
        logger: WorkspaceLogger for structured event logging
    """

    def __init__(
        self,
        workspace_id: str,
        config: WorkspaceConfig | None = None,
        *,
        store: BackingStore | None = None,
        backend: InterpreterBackend | None = None,
        installer: PackageInstaller | None = None,
        owner: str | None = None,
        sinks: OutputSinks | None = None,
        logger: WorkspaceLogger | None = None,
    ) -> None:
        """Build the subsystems without starting anything.

        Args:
            workspace_id: Workspace identifier
            config: Configuration; defaults to WorkspaceConfig()
            store: Backing store; built from config.storage when None (and
                then closed by cleanup())
            backend: Interpreter backend; built from config.runtime when None
            installer: Package installer; built from config.packages when None
            owner: Owning principal recorded on the workspace
            sinks: Optional stdout/stderr callbacks invoked per output chunk
            logger: Optional WorkspaceLogger; defaults to structlog 'pyworkspace'
        """
        from pyworkspace.factory import create_backend, create_installer, create_store

        self.workspace = WorkspaceInfo(workspace_id=workspace_id, owner=owner)
        self.config = config or WorkspaceConfig()
        self.logger = logger or WorkspaceLogger()

        self._owns_store = store is None
        self.store = store or create_store(self.config.storage)
        backend = backend or create_backend(self.config.runtime, self.logger)

        self.runtime = RuntimeController(backend, self.logger, self.config.runtime.mount_prefix)
        self.filesystem = FileSystemBridge(self.runtime, workspace_id, self.store, self.logger)
        self.package_manager = PackageManager(
            self.runtime,
            installer=installer or create_installer(self.config.packages, self.config.runtime, backend),
            index_url=self.config.packages.index_url,
            default_packages=self.config.packages.default_packages,
            http_timeout_seconds=self.config.packages.search_timeout_seconds,
            logger=self.logger,
        )
        self.state_manager = StateManager(
            workspace_id,
            self.runtime,
            self.filesystem,
            self.package_manager,
            self.store,
            session_id=self.config.state.session_id,
            auto_save_interval=(
                self.config.state.auto_save_interval_seconds if self.config.state.auto_save else None
            ),
            logger=self.logger,
        )

        self._sinks = sinks
        self._output: deque[OutputEntry] = deque(maxlen=self.config.output.max_entries)
        self._listeners: list[StateListener] = []
        self._state = SessionState()
        self._init_task: asyncio.Task[None] | None = None
        self.runtime.subscribe(self._on_runtime_output)

    @property
    def workspace_id(self) -> str:
        return self.workspace.workspace_id

    @property
    def state(self) -> SessionState:
        return self._state.model_copy()

    @property
    def status(self) -> RuntimeStatus:
        return self._state.status

    @property
    def is_initialized(self) -> bool:
        return self._state.is_initialized

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def error(self) -> str | None:
        return self._state.error

    @property
    def output(self) -> list[OutputEntry]:
        return list(self._output)

    @property
    def installed_packages(self) -> list[PackageInfo]:
        return self.package_manager.installed

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called with a SessionState on every transition.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, **changes: Any) -> None:
        self._state = self._state.model_copy(update=changes)
        self.logger.log_session_status(self.workspace_id, self._state)
        for listener in list(self._listeners):
            try:
                listener(self._state.model_copy())
            except Exception as e:
                self.logger.log_warning("session.listener_failed", error=f"{type(e).__name__}: {e}")

    def _require_ready(self) -> None:
        if not self._state.is_initialized or not self.runtime.is_ready:
            raise RuntimeNotInitializedError()

    async def initialize(self) -> None:
        """Bring every subsystem up in dependency order.

        Raises:
            SessionInitializationError: If any step fails; the error is also
                exposed through ``error`` and state listeners, and a later call
                may retry
        """
        if self._state.is_initialized:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def _initialize(self) -> None:
        self._set_state(status=RuntimeStatus.INITIALIZING, is_loading=True, error=None)
        try:
            await self.runtime.initialize(self._sinks)
            await self.filesystem.load_from_database()
            await self.package_manager.initialize()
            await self.state_manager.initialize()
        except asyncio.CancelledError:
            self._set_state(status=RuntimeStatus.UNINITIALIZED, is_loading=False)
            raise
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            self.state_manager.stop_auto_save()
            await self.filesystem.flush()
            await self.runtime.cleanup()
            self._set_state(
                status=RuntimeStatus.ERROR, is_initialized=False, is_loading=False, error=message
            )
            raise SessionInitializationError(
                f"Failed to initialize workspace {self.workspace_id}: {message}"
            ) from e

        self.add_output("Python workspace initialized successfully!", OutputStream.INFO)
        self._set_state(status=RuntimeStatus.READY, is_initialized=True, is_loading=False, error=None)

    async def __aenter__(self) -> WorkspaceSession:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.cleanup()

    def _on_runtime_output(self, entry: OutputEntry) -> None:
        self._output.append(entry)

    def add_output(self, text: str, stream: OutputStream = OutputStream.STDOUT) -> None:
        self._output.append(OutputEntry(text=text, stream=stream))

    def render_output(self) -> list[str]:
        """Rendered log lines, stderr marked with "ERROR: " and info with "INFO: "."""
        return [entry.render() for entry in self._output]

    def clear_output(self) -> None:
        self._output.clear()

    async def run_python(self, source: str) -> ExecutionResult:
        """Execute user code.

        Raises:
            RuntimeNotInitializedError: If the session is not initialized
            ExecutionInProgressError: If another submission is in flight
        """
        self._require_ready()
        result = await self.runtime.run_python(source)
        self.state_manager.mark_dirty()
        if result.result is not None:
            self.add_output(str(result.result), OutputStream.STDOUT)
        return result

    # File operations

    async def create_file(self, path: str, content: str | bytes = "") -> str:
        self._require_ready()
        rel = await self.filesystem.create_file(path, content)
        self.state_manager.mark_dirty()
        return rel

    async def read_file(self, path: str) -> str:
        self._require_ready()
        return await self.filesystem.read_file(path)

    async def write_file(self, path: str, content: str | bytes) -> str:
        self._require_ready()
        rel = await self.filesystem.write_file(path, content)
        self.state_manager.mark_dirty()
        return rel

    async def delete_file(self, path: str) -> FileChanges:
        self._require_ready()
        changes = await self.filesystem.delete(path)
        self.state_manager.mark_dirty()
        return changes

    async def move_file(self, source: str, destination: str) -> FileChanges:
        self._require_ready()
        changes = await self.filesystem.move(source, destination)
        self.state_manager.mark_dirty()
        return changes

    async def copy_file(self, source: str, destination: str) -> FileChanges:
        self._require_ready()
        changes = await self.filesystem.copy(source, destination)
        self.state_manager.mark_dirty()
        return changes

    async def create_directory(self, path: str) -> FileChanges:
        self._require_ready()
        changes = await self.filesystem.create_directory(path)
        self.state_manager.mark_dirty()
        return changes

    async def list_directory(self, path: str = "") -> list[FileInfo]:
        self._require_ready()
        return await self.filesystem.list_directory(path)

    async def get_file_info(self, path: str) -> FileInfo | None:
        self._require_ready()
        return await self.filesystem.get_info(path)

    async def search_files(self, term: str, by_content: bool = False) -> list[FileInfo]:
        self._require_ready()
        return await self.filesystem.search(term, by_content)

    async def get_file_stats(self) -> FileSystemStats:
        self._require_ready()
        return await self.filesystem.get_stats()

    async def upload_file(self, blob: Blob, target_path: str | None = None) -> str:
        self._require_ready()
        rel = await self.filesystem.upload_file(blob, target_path)
        self.state_manager.mark_dirty()
        return rel

    async def download_file(self, path: str) -> Blob:
        self._require_ready()
        return await self.filesystem.download_file(path)

    async def sync_file_system(self) -> FileChanges:
        """Propagate changes made by user code to durable storage."""
        self._require_ready()
        changes = await self.filesystem.sync()
        if not changes.is_empty:
            self.state_manager.mark_dirty()
        return changes

    # Package operations

    async def install_package(
        self,
        name: str,
        version: str | None = None,
        on_progress: Callable[[InstallationProgress], None] | None = None,
    ) -> bool:
        self._require_ready()
        installed = await self.package_manager.install_package(name, version, on_progress)
        self.state_manager.mark_dirty()
        if installed:
            self.add_output(f"Installed {name}", OutputStream.INFO)
        return installed

    async def uninstall_package(self, name: str) -> bool:
        self._require_ready()
        removed = await self.package_manager.uninstall_package(name)
        self.state_manager.mark_dirty()
        return removed

    async def search_packages(self, query: str) -> list[PackageSearchResult]:
        return await self.package_manager.search_packages(query)

    async def refresh_packages(self) -> list[PackageInfo]:
        self._require_ready()
        return await self.package_manager.get_installed_packages()

    # State operations

    def mark_state_dirty(self) -> None:
        self.state_manager.mark_dirty()

    async def save_workspace(self) -> WorkspaceSnapshot:
        """Persist a snapshot and flush pending file propagations.

        Raises:
            PersistenceError: If the snapshot cannot be stored
        """
        self._require_ready()
        snapshot = await self.state_manager.save_state()
        await self.filesystem.flush()
        return snapshot

    async def load_workspace(self) -> WorkspaceSnapshot | None:
        self._require_ready()
        return await self.state_manager.load_state()

    async def export_workspace(self) -> str:
        self._require_ready()
        return await self.state_manager.export_state()

    async def import_workspace(self, blob: str) -> WorkspaceSnapshot:
        self._require_ready()
        return await self.state_manager.import_state(blob)

    async def cleanup(self) -> None:
        """Persist dirty state, flush propagations and tear the runtime down.

        Idempotent and safe on a session that was never initialized.
        """
        task = self._init_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, SessionInitializationError):
                await task
        self._init_task = None

        if self._state.is_initialized:
            await self.state_manager.cleanup()
        else:
            self.state_manager.stop_auto_save()
        await self.filesystem.flush()
        await self.runtime.cleanup()
        if self._owns_store:
            await self.store.close()

        self._output.clear()
        if self._state != SessionState():
            self._set_state(
                status=RuntimeStatus.UNINITIALIZED, is_initialized=False, is_loading=False, error=None
            )
