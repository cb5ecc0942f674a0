"""Runtime controller owning the embedded interpreter and its file mount.

The controller brings an interpreter backend up against a private mount
layout, executes submissions through the guest driver and maps the driver's
result document into ExecutionResult. It also exposes direct accessors on the
mount (read/write/exists) and the mount index used to compute file-change
deltas between syncs.

Execution workflow (per submission):
1. Snapshot the workspace (user submissions only)
2. Write source and job documents into the control directory
3. Run the driver through the backend, streaming output to subscribers
4. Read and validate result.json
5. Compute file changes and map everything into ExecutionResult
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections.abc import Callable
from importlib import resources
from pathlib import Path
from typing import Any

from pyworkspace.core.base import GuestPaths, GuestRun, InterpreterBackend, MountLayout
from pyworkspace.core.errors import (
    ExecutionInProgressError,
    InvalidPathError,
    PayloadValidationError,
    RuntimeInitializationError,
    RuntimeNotInitializedError,
)
from pyworkspace.core.logging import WorkspaceLogger
from pyworkspace.core.models import (
    ExecutionResult,
    FileChanges,
    FileKind,
    OutputEntry,
    OutputSinks,
    OutputStream,
    RuntimeStatus,
)
from pyworkspace.core.schemas import GuestResultPayload, parse_payload

OutputListener = Callable[[OutputEntry], None]
IndexEntry = tuple[FileKind, int, int]

_PROBE_SOURCE = "import sys\nsys.version.split()[0]\n"


def scan_mount(root: Path) -> dict[str, IndexEntry]:
    """Walk a mount directory and record kind, size and mtime per relative path."""
    index: dict[str, IndexEntry] = {}
    if not root.exists():
        return index
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in dirnames:
            path = base / name
            try:
                st = path.stat()
            except OSError:
                continue
            index[path.relative_to(root).as_posix()] = (FileKind.DIRECTORY, 0, st.st_mtime_ns)
        for name in filenames:
            path = base / name
            try:
                st = path.stat()
            except OSError:
                continue
            index[path.relative_to(root).as_posix()] = (FileKind.FILE, st.st_size, st.st_mtime_ns)
    return index


def detect_file_changes(before: dict[str, IndexEntry], after: dict[str, IndexEntry]) -> FileChanges:
    """Compare two mount scans.

    Directories count as created or deleted but never as modified, since their
    mtime changes whenever a child does.
    """
    created = sorted(p for p in after if p not in before)
    deleted = sorted(p for p in before if p not in after)
    modified = sorted(
        p
        for p, entry in after.items()
        if p in before
        and entry[0] is FileKind.FILE
        and (before[p][0] is not FileKind.FILE or before[p][1:] != entry[1:])
    )
    return FileChanges(created=created, modified=modified, deleted=deleted)


class RuntimeController:
    """Owns one interpreter instance and its mount.

    Attributes:
        backend: InterpreterBackend running the guest driver
        logger: WorkspaceLogger for structured event logging
        status: Current RuntimeStatus
        error: Description of the last initialization failure, if any
    """

    def __init__(
        self,
        backend: InterpreterBackend,
        logger: WorkspaceLogger | None = None,
        mount_prefix: str = "pyworkspace-",
    ) -> None:
        self.backend = backend
        self.logger = logger or backend.logger or WorkspaceLogger()
        self.mount_prefix = mount_prefix

        self.status = RuntimeStatus.UNINITIALIZED
        self.error: str | None = None
        self.python_version: str | None = None
        self.environment: dict[str, str] = {}

        self._layout: MountLayout | None = None
        self._index: dict[str, IndexEntry] = {}
        self._init_task: asyncio.Task[None] | None = None
        self._exec_lock = asyncio.Lock()
        self._user_execution_active = False
        self._sinks: OutputSinks | None = None
        self._listeners: list[OutputListener] = []

    @property
    def is_ready(self) -> bool:
        return self.status is RuntimeStatus.READY

    @property
    def is_busy(self) -> bool:
        """True while a user submission is in flight."""
        return self._user_execution_active

    @property
    def layout(self) -> MountLayout:
        """Host mount layout of the running interpreter.

        Raises:
            RuntimeNotInitializedError: If the runtime is not ready
        """
        self._require_ready()
        assert self._layout is not None
        return self._layout

    @property
    def guest_paths(self) -> GuestPaths:
        return self.backend.guest_paths(self.layout)

    def _require_ready(self) -> None:
        if self.status is not RuntimeStatus.READY or self._layout is None:
            raise RuntimeNotInitializedError()

    def subscribe(self, listener: OutputListener) -> Callable[[], None]:
        """Register an output listener receiving one OutputEntry per chunk.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _dispatch_output(self, text: str, stream: OutputStream) -> None:
        sinks = self._sinks
        if sinks is not None:
            callback = sinks.stdout if stream is OutputStream.STDOUT else sinks.stderr
            if callback is not None:
                callback(text)
        entry = OutputEntry(text=text, stream=stream)
        for listener in list(self._listeners):
            listener(entry)

    async def initialize(self, sinks: OutputSinks | None = None) -> None:
        """Bring the interpreter up.

        Concurrent calls share one in-flight bring-up; calls after success
        return immediately.

        Args:
            sinks: Optional stdout/stderr callbacks invoked per output chunk

        Raises:
            RuntimeInitializationError: If the interpreter cannot be brought up
        """
        if self.status is RuntimeStatus.READY:
            return
        if sinks is not None:
            self._sinks = sinks
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._bring_up())
        task = self._init_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def _bring_up(self) -> None:
        self.status = RuntimeStatus.INITIALIZING
        self.error = None
        self.logger.log_runtime_initialize_start(self.backend.name)
        started = time.perf_counter()
        layout: MountLayout | None = None

        try:
            layout = MountLayout.create(self.mount_prefix)
            driver_source = resources.files("pyworkspace.runtimes").joinpath("driver.py").read_text("utf-8")
            (layout.control / "driver.py").write_text(driver_source, encoding="utf-8")

            await self.backend.start()
            self._layout = layout

            probe = await self._execute(_PROBE_SOURCE, persist_globals=False, user=False)
            if not probe.success:
                raise RuntimeInitializationError(f"Interpreter probe failed: {probe.error}")
            self.python_version = str(probe.result)
            self._index = scan_mount(layout.workspace)
        except asyncio.CancelledError:
            self._layout = None
            if layout is not None:
                layout.release()
            self.status = RuntimeStatus.UNINITIALIZED
            raise
        except Exception as e:
            self._layout = None
            if layout is not None:
                layout.release()
            await self.backend.stop()
            self.status = RuntimeStatus.ERROR
            self.error = f"{type(e).__name__}: {e}"
            self.logger.log_runtime_initialize_failed(self.backend.name, self.error)
            if isinstance(e, RuntimeInitializationError):
                raise
            raise RuntimeInitializationError(f"Failed to initialize Python runtime: {e}") from e

        self.status = RuntimeStatus.READY
        self.logger.log_runtime_initialize_complete(
            self.backend.name, self.python_version or "", (time.perf_counter() - started) * 1000
        )

    async def run_python(self, source: str) -> ExecutionResult:
        """Execute a user submission.

        Interpreter globals persist between calls (JSON-serializable values
        only). Guest failures are reported inside the result, never raised.

        Args:
            source: Python source code

        Returns:
            ExecutionResult with output, value, error and file changes

        Raises:
            RuntimeNotInitializedError: If the runtime is not ready
            ExecutionInProgressError: If another user submission is in flight
        """
        self._require_ready()
        if self._user_execution_active:
            raise ExecutionInProgressError()
        self._user_execution_active = True
        try:
            async with self._exec_lock:
                return await self._execute(source, persist_globals=True, user=True)
        finally:
            self._user_execution_active = False

    async def run_script(self, source: str) -> ExecutionResult:
        """Execute a generated helper program.

        Helpers do not see or modify user globals, their output is not
        delivered to sinks, and they queue FIFO behind in-flight executions.

        Raises:
            RuntimeNotInitializedError: If the runtime is not ready
        """
        self._require_ready()
        async with self._exec_lock:
            self._require_ready()
            return await self._execute(source, persist_globals=False, user=False)

    async def _execute(self, source: str, *, persist_globals: bool, user: bool) -> ExecutionResult:
        layout = self._layout
        if layout is None:
            raise RuntimeNotInitializedError()
        guest = self.backend.guest_paths(layout)

        before = scan_mount(layout.workspace) if user else None
        source_name = "source.py"
        (layout.control / source_name).write_text(source, encoding="utf-8")
        result_path = layout.control / "result.json"
        result_path.unlink(missing_ok=True)

        job = {
            "workspace": guest.workspace,
            "site_packages": guest.site_packages,
            "source_file": f"{guest.control}/{source_name}",
            "result_file": f"{guest.control}/result.json",
            "globals_file": f"{guest.control}/globals.json" if persist_globals else None,
            "filename": "<workspace>",
            "user_paths": user,
            "env": self.environment,
        }
        (layout.control / "job.json").write_text(json.dumps(job), encoding="utf-8")

        self.logger.log_execution_start(self.backend.name, len(source.encode("utf-8")), internal=not user)
        started = time.perf_counter()
        run = await self.backend.run(
            layout, env=self.environment, on_output=self._dispatch_output if user else None
        )
        duration_ms = (time.perf_counter() - started) * 1000

        result = self._map_result(run, result_path, duration_ms)
        if before is not None:
            changes = detect_file_changes(before, scan_mount(layout.workspace))
            result.files_created = changes.created
            result.files_modified = changes.modified
            result.files_deleted = changes.deleted

        self.logger.log_execution_complete(result, self.backend.name, internal=not user)
        return result

    def _map_result(self, run: GuestRun, result_path: Path, duration_ms: float) -> ExecutionResult:
        metadata: dict[str, Any] = {
            "backend": self.backend.name,
            "exit_code": run.exit_code,
            **run.metadata,
        }
        if run.trap_reason is not None:
            metadata["trap_reason"] = run.trap_reason
        if run.stdout_truncated:
            metadata["stdout_truncated"] = True
        if run.stderr_truncated:
            metadata["stderr_truncated"] = True

        payload: GuestResultPayload | None = None
        try:
            payload = parse_payload(
                GuestResultPayload, json.loads(result_path.read_text(encoding="utf-8"))
            )
        except FileNotFoundError:
            payload = None
        except (json.JSONDecodeError, PayloadValidationError) as e:
            metadata["payload_error"] = str(e)

        if payload is None:
            if run.trapped:
                error = f"Execution trapped: {run.trap_message or run.trap_reason}"
            else:
                error = f"Interpreter exited with code {run.exit_code} without producing a result"
            return ExecutionResult(
                success=False,
                stdout=run.stdout,
                stderr=run.stderr,
                error=error,
                duration_ms=duration_ms,
                metadata=metadata,
            )

        if payload.value_repr is not None:
            metadata["result_repr"] = payload.value_repr
        if payload.error_type is not None:
            metadata["error_type"] = payload.error_type
        value = payload.value if payload.value is not None else payload.value_repr
        success = payload.success and not run.trapped
        error = payload.error
        if run.trapped and error is None:
            error = f"Execution trapped: {run.trap_message or run.trap_reason}"

        return ExecutionResult(
            success=success,
            result=value,
            stdout=run.stdout,
            stderr=run.stderr,
            error=error,
            duration_ms=duration_ms,
            metadata=metadata,
        )

    def _resolve(self, path: str) -> Path:
        workspace = self.layout.workspace
        target = (workspace / path.lstrip("/")).resolve()
        if not target.is_relative_to(workspace.resolve()):
            raise InvalidPathError(f"Path escapes workspace: {path}")
        return target

    def read_file(self, path: str) -> str:
        """Read a text file directly from the mount.

        Raises:
            FileNotFoundError: If the file does not exist
            IsADirectoryError: If the path is a directory
        """
        return self._resolve(path).read_bytes().decode("utf-8")

    def read_bytes(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def write_file(self, path: str, content: str | bytes) -> None:
        """Write a file into the mount, creating parent directories.

        The write is recorded in the mount index so the next sync does not
        report it again.
        """
        target = self._resolve(path)
        workspace = self.layout.workspace
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8", newline="")

        parent = target.parent
        while parent != workspace and parent.is_relative_to(workspace):
            rel = parent.relative_to(workspace).as_posix()
            if rel not in self._index:
                self._index[rel] = (FileKind.DIRECTORY, 0, parent.stat().st_mtime_ns)
            parent = parent.parent
        st = target.stat()
        self._index[target.relative_to(workspace).as_posix()] = (FileKind.FILE, st.st_size, st.st_mtime_ns)

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def is_directory(self, path: str) -> bool:
        return self._resolve(path).is_dir()

    async def sync_file_system(self) -> FileChanges:
        """Rescan the mount and return the delta since the last index."""
        self._require_ready()
        current = scan_mount(self.layout.workspace)
        changes = detect_file_changes(self._index, current)
        self._index = current
        self.logger.log_sync(changes)
        return changes

    def get_globals(self) -> dict[str, Any]:
        """Persisted user globals (JSON-serializable values only)."""
        path = self.layout.control / "globals.json"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        return data if isinstance(data, dict) else {}

    def set_globals(self, values: dict[str, Any]) -> None:
        (self.layout.control / "globals.json").write_text(json.dumps(values), encoding="utf-8")

    def set_environment(self, variables: dict[str, str]) -> None:
        self.environment = dict(variables)

    async def cleanup(self) -> None:
        """Release the interpreter and the mount.

        Safe to call repeatedly and from a partially-initialized state.
        """
        task = self._init_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, RuntimeInitializationError):
                pass
        self._init_task = None

        layout = self._layout
        self._layout = None
        await self.backend.stop()
        if layout is not None:
            layout.release()
            self.logger.log_runtime_cleanup(self.backend.name, str(layout.root))

        self._index = {}
        self._sinks = None
        self.python_version = None
        self.status = RuntimeStatus.UNINITIALIZED
        self.error = None
