"""Workspace snapshot persistence, export/import and dirty tracking.

A snapshot captures the files in the mount, the installed package set, the
guest environment and the JSON-serializable interpreter globals (see
WorkspaceSnapshot). Snapshots are saved to and loaded from the backing store,
or exported/imported as portable JSON strings.

Dirty tracking is a single in-memory flag. A save clears it only when no
mutation was marked while the save was in flight.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from pyworkspace.core.errors import PersistenceError, WorkspaceError
from pyworkspace.core.logging import WorkspaceLogger
from pyworkspace.core.models import (
    FileKind,
    SnapshotEnvironment,
    SnapshotFile,
    SnapshotPackage,
    WorkspaceSnapshot,
)
from pyworkspace.core.storage import BackingStore, decode_content, encode_content
from pyworkspace.filesystem import FileSystemBridge
from pyworkspace.guest_code import normalize_distribution_name
from pyworkspace.packages import PackageManager
from pyworkspace.runtime import RuntimeController


class StateManager:
    """Serializes and restores complete workspace snapshots.

    Attributes:
        workspace_id: Workspace identifier
        session_id: Snapshot slot within the workspace
        runtime: RuntimeController owning the interpreter
        filesystem: FileSystemBridge used to read and restore files
        packages: PackageManager used to read and reinstall packages
        store: BackingStore holding saved snapshots
        logger: WorkspaceLogger for structured event logging
    """

    def __init__(
        self,
        workspace_id: str,
        runtime: RuntimeController,
        filesystem: FileSystemBridge,
        packages: PackageManager,
        store: BackingStore,
        session_id: str = "default",
        auto_save_interval: float | None = None,
        logger: WorkspaceLogger | None = None,
    ) -> None:
        self.workspace_id = workspace_id
        self.session_id = session_id
        self.runtime = runtime
        self.filesystem = filesystem
        self.packages = packages
        self.store = store
        self.auto_save_interval = auto_save_interval
        self.logger = logger or runtime.logger

        self._generation = 0
        self._saved_generation = 0
        self._auto_save_task: asyncio.Task[None] | None = None

    @property
    def is_dirty(self) -> bool:
        return self._generation != self._saved_generation

    def mark_dirty(self) -> None:
        self._generation += 1

    def _mark_clean(self, generation: int | None = None) -> None:
        self._saved_generation = self._generation if generation is None else generation

    async def initialize(self) -> None:
        """Reset dirty tracking and best-effort restore the last snapshot.

        Only packages, environment and globals are restored here; files are
        owned by the durable file manifest. A missing or unreadable snapshot
        is logged and ignored.
        """
        self._mark_clean()
        try:
            await self.load_state(restore_files=False)
        except WorkspaceError as e:
            self.logger.log_state_event(
                "load", self.workspace_id, self.session_id, level=logging.WARNING, error=str(e)
            )
        self._mark_clean()
        if self.auto_save_interval:
            self.start_auto_save(self.auto_save_interval)

    async def get_current_state(self) -> WorkspaceSnapshot:
        """Build a snapshot from the live mount, package set and globals."""
        files: list[SnapshotFile] = []
        for entry in await self.filesystem.list_tree():
            if entry.kind is FileKind.DIRECTORY:
                files.append(SnapshotFile(path=entry.path, kind=FileKind.DIRECTORY))
                continue
            content, encoding = encode_content(self.runtime.read_bytes(entry.path))
            files.append(SnapshotFile(path=entry.path, content=content, encoding=encoding))

        packages = [
            SnapshotPackage(name=p.name, version=p.version)
            for p in await self.packages.get_installed_packages()
        ]
        environment = SnapshotEnvironment(
            python_version=self.runtime.python_version or "",
            backend=self.runtime.backend.name,
            working_directory="/workspace",
            variables=dict(self.runtime.environment),
        )
        return WorkspaceSnapshot(
            workspace_id=self.workspace_id,
            session_id=self.session_id,
            files=files,
            packages=packages,
            environment=environment,
            globals=self.runtime.get_globals(),
        )

    async def save_state(self) -> WorkspaceSnapshot:
        """Persist the current snapshot to the backing store.

        The dirty flag is cleared only on success.

        Raises:
            PersistenceError: If the store rejects or cannot be reached
        """
        generation = self._generation
        snapshot = await self.get_current_state()
        await self.store.save_snapshot(self.workspace_id, self.session_id, snapshot.to_json())
        self._mark_clean(generation)
        self.logger.log_state_event(
            "save",
            self.workspace_id,
            self.session_id,
            file_count=len(snapshot.files),
            package_count=len(snapshot.packages),
        )
        return snapshot

    async def load_state(self, restore_files: bool = True) -> WorkspaceSnapshot | None:
        """Fetch the last saved snapshot and apply it.

        Returns:
            The applied snapshot, or None when nothing has been saved

        Raises:
            PersistenceError: If the store cannot be reached
            SnapshotFormatError: If the saved document is malformed
        """
        raw = await self.store.load_snapshot(self.workspace_id, self.session_id)
        if raw is None:
            return None
        snapshot = WorkspaceSnapshot.from_json(raw)
        await self.apply_snapshot(snapshot, restore_files=restore_files)
        self.logger.log_state_event(
            "load", self.workspace_id, self.session_id, restore_files=restore_files
        )
        return snapshot

    async def export_state(self) -> str:
        """Portable snapshot string. No storage I/O is performed."""
        return (await self.get_current_state()).to_json()

    async def import_state(self, blob: str) -> WorkspaceSnapshot:
        """Apply a snapshot string produced by export_state and mark the workspace dirty.

        Raises:
            SnapshotFormatError: If the string is not a valid snapshot
        """
        snapshot = WorkspaceSnapshot.from_json(blob)
        await self.apply_snapshot(snapshot)
        self.mark_dirty()
        self.logger.log_state_event(
            "import", self.workspace_id, self.session_id, source_workspace=snapshot.workspace_id
        )
        return snapshot

    async def apply_snapshot(self, snapshot: WorkspaceSnapshot, restore_files: bool = True) -> None:
        """Overwrite the live workspace with a snapshot.

        With restore_files, the mount and the installed package set are fully
        replaced: paths and distributions absent from the snapshot are removed.
        Missing packages are reinstalled (failures are logged) and globals and
        environment variables are restored.
        """
        self.runtime.set_environment(snapshot.environment.variables)

        if restore_files:
            await self._restore_files(snapshot.files)
            await self._remove_extra_packages(snapshot.packages)

        installed = {normalize_distribution_name(p.name) for p in self.packages.installed}
        for package in snapshot.packages:
            if normalize_distribution_name(package.name) in installed:
                continue
            if not await self.packages.install_package(package.name, package.version or None):
                self.logger.log_state_event(
                    "restore_package",
                    self.workspace_id,
                    self.session_id,
                    level=logging.WARNING,
                    package=package.name,
                    version=package.version,
                )

        self.runtime.set_globals(snapshot.globals)

    async def _remove_extra_packages(self, packages: list[SnapshotPackage]) -> None:
        wanted = {normalize_distribution_name(p.name) for p in packages}
        for package in self.packages.installed:
            if normalize_distribution_name(package.name) in wanted:
                continue
            if not await self.packages.uninstall_package(package.name):
                self.logger.log_state_event(
                    "remove_package",
                    self.workspace_id,
                    self.session_id,
                    level=logging.WARNING,
                    package=package.name,
                )

    async def _restore_files(self, files: list[SnapshotFile]) -> None:
        wanted: set[str] = set()
        for item in files:
            parts = item.path.split("/")
            wanted.update("/".join(parts[:i]) for i in range(1, len(parts) + 1))

        removed: list[str] = []
        for entry in await self.filesystem.list_tree():
            if entry.path in wanted:
                continue
            if any(entry.path.startswith(prefix + "/") for prefix in removed):
                continue
            await self.filesystem.delete(entry.path)
            removed.append(entry.path)

        for item in files:
            if item.kind is FileKind.DIRECTORY:
                if not self.runtime.is_directory(item.path):
                    await self.filesystem.create_directory(item.path)
                continue
            await self.filesystem.write_file(item.path, decode_content(item.content, item.encoding))

    def start_auto_save(self, interval: float) -> None:
        """Save dirty state every interval seconds until stopped."""
        self.stop_auto_save()
        self.auto_save_interval = interval
        self._auto_save_task = asyncio.create_task(self._auto_save_loop(interval))

    def stop_auto_save(self) -> None:
        task = self._auto_save_task
        self._auto_save_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _auto_save_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if not self.is_dirty:
                continue
            try:
                await self.save_state()
            except WorkspaceError as e:
                self.logger.log_state_event(
                    "auto_save", self.workspace_id, self.session_id, level=logging.WARNING, error=str(e)
                )

    async def cleanup(self) -> None:
        """Stop auto-save and make a best-effort save of dirty state."""
        task = self._auto_save_task
        self.stop_auto_save()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if not self.is_dirty or not self.runtime.is_ready:
            return
        try:
            await self.save_state()
        except WorkspaceError as e:
            level = logging.WARNING if isinstance(e, PersistenceError) else logging.ERROR
            self.logger.log_state_event(
                "save", self.workspace_id, self.session_id, level=level, error=str(e)
            )
