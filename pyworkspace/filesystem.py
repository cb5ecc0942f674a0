"""Virtual filesystem bridge between the interpreter mount and durable storage.

All paths are workspace-rooted: "foo", "/foo", "./foo", "/workspace/foo" and
"workspace/foo" all address the same file. Writes land in the mount
immediately and are propagated to the backing store in the background, in
submission order; propagation failures are logged and never reach the caller.
Structural operations (delete, move, copy, mkdir) run inside the interpreter
and are followed by a sync whose delta is propagated the same way.
"""

from __future__ import annotations

import asyncio
import mimetypes
import posixpath
from collections.abc import Awaitable, Callable

from pyworkspace import guest_code
from pyworkspace.core.errors import GuestOperationError, InvalidPathError, PersistenceError
from pyworkspace.core.logging import WorkspaceLogger
from pyworkspace.core.models import Blob, FileChanges, FileInfo, FileKind, FileSystemStats
from pyworkspace.core.schemas import (
    InfoPayload,
    ListingPayload,
    OperationPayload,
    StatsPayload,
    parse_payload,
)
from pyworkspace.core.storage import BackingStore, decode_content, encode_content
from pyworkspace.runtime import RuntimeController

WORKSPACE_ROOT = "/workspace"

_GUEST_ERRORS: dict[str, type[OSError]] = {
    "FileNotFoundError": FileNotFoundError,
    "FileExistsError": FileExistsError,
    "IsADirectoryError": IsADirectoryError,
    "NotADirectoryError": NotADirectoryError,
    "PermissionError": PermissionError,
}


def normalize_path(path: str) -> str:
    """Map any accepted spelling of a workspace path to its root-relative form.

    Args:
        path: Path as supplied by a caller

    Returns:
        Normalized path without leading slash ("" for the root)

    Raises:
        InvalidPathError: If the path escapes the workspace root
    """
    parts = [p for p in path.replace("\\", "/").strip().split("/") if p not in ("", ".")]
    if parts and parts[0] == WORKSPACE_ROOT.lstrip("/"):
        parts = parts[1:]

    resolved: list[str] = []
    for part in parts:
        if part == "..":
            if not resolved:
                raise InvalidPathError(f"Path escapes workspace: {path}")
            resolved.pop()
        else:
            resolved.append(part)
    return "/".join(resolved)


class FileSystemBridge:
    """Workspace-rooted file operations reconciled with a backing store.

    Attributes:
        runtime: RuntimeController owning the mount
        workspace_id: Workspace whose durable manifest this bridge maintains
        store: BackingStore receiving write-behind propagation
        logger: WorkspaceLogger for structured event logging
    """

    def __init__(
        self,
        runtime: RuntimeController,
        workspace_id: str,
        store: BackingStore,
        logger: WorkspaceLogger | None = None,
    ) -> None:
        self.runtime = runtime
        self.workspace_id = workspace_id
        self.store = store
        self.logger = logger or runtime.logger

        self._propagation_lock = asyncio.Lock()
        self._pending: set[asyncio.Task[None]] = set()

    normalize_path = staticmethod(normalize_path)

    def _require_path(self, path: str) -> str:
        rel = normalize_path(path)
        if not rel:
            raise InvalidPathError("Operation requires a path below the workspace root")
        return rel

    @property
    def pending_count(self) -> int:
        """Number of propagations not yet applied to the store."""
        return len(self._pending)

    def _propagate(self, operation: str, path: str, action: Callable[[], Awaitable[None]]) -> None:
        task = asyncio.create_task(self._apply(operation, path, action))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _apply(self, operation: str, path: str, action: Callable[[], Awaitable[None]]) -> None:
        async with self._propagation_lock:
            try:
                await action()
            except PersistenceError as e:
                self.logger.log_persistence_failure(operation, self.workspace_id, str(e), path)
            except Exception as e:
                self.logger.log_persistence_failure(
                    operation, self.workspace_id, f"{type(e).__name__}: {e}", path
                )

    async def flush(self) -> None:
        """Wait until every pending propagation has been applied (or logged)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _propagate_write(self, operation: str, rel: str, content: str | bytes) -> None:
        encoded, encoding = encode_content(content)
        if operation == "create":
            self._propagate(
                "create_file",
                rel,
                lambda: self.store.create_file(self.workspace_id, rel, encoded, encoding),
            )
        else:
            self._propagate(
                "update_file",
                rel,
                lambda: self.store.update_file(self.workspace_id, rel, encoded, encoding),
            )

    async def create_file(self, path: str, content: str | bytes = "") -> str:
        """Create a file in the mount and propagate it to storage.

        Returns:
            Normalized path of the created file
        """
        rel = self._require_path(path)
        self.runtime.write_file(rel, content)
        self.logger.log_file_operation("create", self.workspace_id, rel, file_size=len(content))
        self._propagate_write("create", rel, content)
        return rel

    async def write_file(self, path: str, content: str | bytes) -> str:
        """Overwrite a file in the mount and propagate the update to storage.

        Returns:
            Normalized path of the written file
        """
        rel = self._require_path(path)
        self.runtime.write_file(rel, content)
        self.logger.log_file_operation("write", self.workspace_id, rel, file_size=len(content))
        self._propagate_write("update", rel, content)
        return rel

    async def read_file(self, path: str) -> str:
        """Read a text file from the mount. No network call is made.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        return self.runtime.read_file(self._require_path(path))

    async def read_bytes(self, path: str) -> bytes:
        return self.runtime.read_bytes(self._require_path(path))

    async def exists(self, path: str) -> bool:
        return self.runtime.exists(normalize_path(path))

    async def _run_helper(self, source: str) -> object:
        result = await self.runtime.run_script(source)
        if result.success:
            return result.result
        error_type = result.metadata.get("error_type")
        message = (result.error or "Helper program failed").split(": ", 1)[-1]
        exc_type = _GUEST_ERRORS.get(error_type or "")
        if exc_type is not None:
            raise exc_type(message)
        raise GuestOperationError(result.error or "Helper program failed", error_type)

    async def delete(self, path: str) -> FileChanges:
        """Remove a file or directory tree.

        Raises:
            FileNotFoundError: If the path does not exist
        """
        rel = self._require_path(path)
        parse_payload(OperationPayload, await self._run_helper(guest_code.delete(rel)))
        self.logger.log_file_operation("delete", self.workspace_id, rel)
        return await self.sync()

    async def move(self, source: str, destination: str) -> FileChanges:
        """Rename or move a file or directory.

        Raises:
            FileNotFoundError: If the source does not exist
        """
        src = self._require_path(source)
        dst = self._require_path(destination)
        parse_payload(OperationPayload, await self._run_helper(guest_code.move(src, dst)))
        self.logger.log_file_operation("move", self.workspace_id, src, destination=dst)
        return await self.sync()

    async def copy(self, source: str, destination: str) -> FileChanges:
        """Duplicate a file or directory tree.

        Raises:
            FileNotFoundError: If the source does not exist
            FileExistsError: If a directory destination already exists
        """
        src = self._require_path(source)
        dst = self._require_path(destination)
        parse_payload(OperationPayload, await self._run_helper(guest_code.copy(src, dst)))
        self.logger.log_file_operation("copy", self.workspace_id, src, destination=dst)
        return await self.sync()

    async def create_directory(self, path: str) -> FileChanges:
        rel = self._require_path(path)
        parse_payload(OperationPayload, await self._run_helper(guest_code.make_directories([rel])))
        self.logger.log_file_operation("mkdir", self.workspace_id, rel)
        return await self.sync()

    async def list_directory(self, path: str = "") -> list[FileInfo]:
        """List a directory, directories first. A missing path lists as empty."""
        rel = normalize_path(path)
        payload = parse_payload(ListingPayload, await self._run_helper(guest_code.list_directory(rel)))
        return payload.to_file_infos()

    async def list_tree(self) -> list[FileInfo]:
        """Every file and directory in the workspace, parents before children."""
        payload = parse_payload(ListingPayload, await self._run_helper(guest_code.list_tree()))
        return payload.to_file_infos()

    async def get_info(self, path: str) -> FileInfo | None:
        rel = normalize_path(path)
        payload = parse_payload(InfoPayload, await self._run_helper(guest_code.file_info(rel)))
        return payload.entry.to_file_info() if payload.entry is not None else None

    async def search(self, term: str, by_content: bool = False) -> list[FileInfo]:
        """Find entries whose name (or text content) matches term.

        Args:
            term: Case-insensitive regular expression; matched literally when invalid
            by_content: Also search inside UTF-8 text files

        Returns:
            Matching entries in tree order
        """
        payload = parse_payload(
            ListingPayload, await self._run_helper(guest_code.search(term, by_content))
        )
        return payload.to_file_infos()

    async def get_stats(self) -> FileSystemStats:
        payload = parse_payload(StatsPayload, await self._run_helper(guest_code.stats()))
        return payload.to_stats()

    async def upload_file(self, blob: Blob, target_path: str | None = None) -> str:
        """Store an uploaded blob, by default under its own name at the root.

        Returns:
            Normalized path of the stored file
        """
        rel = self._require_path(target_path or blob.name)
        self.runtime.write_file(rel, blob.data)
        self.logger.log_file_operation(
            "upload", self.workspace_id, rel, file_size=blob.size, content_type=blob.content_type
        )
        self._propagate_write("create", rel, blob.data)
        return rel

    async def download_file(self, path: str) -> Blob:
        rel = self._require_path(path)
        data = self.runtime.read_bytes(rel)
        content_type = mimetypes.guess_type(rel)[0] or "application/octet-stream"
        return Blob(name=posixpath.basename(rel), data=data, content_type=content_type)

    async def sync(self) -> FileChanges:
        """Rescan the mount and propagate the delta to storage.

        Deletions are propagated before creations so that a move lands as
        delete-then-create.
        """
        changes = await self.runtime.sync_file_system()
        for rel in changes.deleted:
            self._propagate(
                "delete_file", rel, lambda rel=rel: self.store.delete_file(self.workspace_id, rel)
            )
        for rel in changes.created + changes.modified:
            if self.runtime.is_directory(rel):
                self._propagate(
                    "create_file",
                    rel,
                    lambda rel=rel: self.store.create_file(self.workspace_id, rel, is_directory=True),
                )
                continue
            try:
                content = self.runtime.read_bytes(rel)
            except FileNotFoundError:
                continue
            self._propagate_write("update", rel, content)
        return changes

    async def load_from_database(self) -> int:
        """Rehydrate the mount from the durable manifest.

        Fetches the manifest once, recreates directories first and then files,
        and resets the mount index so replayed files are not propagated back.

        Returns:
            Number of manifest entries replayed

        Raises:
            PersistenceError: If the store is unreachable
        """
        entries = await self.store.list_files(self.workspace_id)
        directories = sorted(
            normalize_path(e.path) for e in entries if e.kind is FileKind.DIRECTORY
        )
        directories = [d for d in directories if d]
        if directories:
            await self._run_helper(guest_code.make_directories(directories))

        files = 0
        for entry in entries:
            if entry.kind is FileKind.DIRECTORY:
                continue
            rel = normalize_path(entry.path)
            if not rel:
                continue
            self.runtime.write_file(rel, decode_content(entry.content, entry.encoding))
            files += 1

        await self.runtime.sync_file_system()
        self.logger.log_file_operation(
            "load", self.workspace_id, "", file_count=files, directory_count=len(directories)
        )
        return files + len(directories)
