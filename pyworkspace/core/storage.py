"""Pluggable durable storage for workspace files and snapshots.

Provides the BackingStore contract used by the filesystem bridge and the state
manager, with an HTTP implementation (aiohttp REST client against the
workspace API) and an in-process implementation for offline use and tests.

The interpreter mount is authoritative during a live session; a backing store
is the durable write-behind copy that survives interpreter restarts.
"""

from __future__ import annotations

import asyncio
import base64
import json
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from urllib.parse import quote

import aiohttp
from pydantic import BaseModel, Field, ValidationError

from pyworkspace.core.errors import PersistenceError
from pyworkspace.core.models import FileKind

Encoding = Literal["utf-8", "base64"]


class StorageBackend(str, Enum):
    """Supported backing store types.

    HTTP: Workspace REST API reached over aiohttp
    MEMORY: In-process storage (for testing and offline sessions)
    """
    HTTP = "http"
    MEMORY = "memory"


class StoredFile(BaseModel):
    """One entry of the durable file manifest."""

    path: str
    kind: FileKind = FileKind.FILE
    content: str = ""
    encoding: Encoding = "utf-8"
    size: int = Field(default=0, ge=0)
    modified: datetime | None = None


def encode_content(data: str | bytes) -> tuple[str, Encoding]:
    """Encode file content for transport.

    Text, and bytes that decode as UTF-8, travel verbatim; anything else is
    base64-encoded.

    Args:
        data: File content

    Returns:
        Tuple of (content string, encoding)
    """
    if isinstance(data, str):
        return data, "utf-8"
    try:
        return data.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        return base64.b64encode(data).decode("ascii"), "base64"


def decode_content(content: str, encoding: str) -> str | bytes:
    """Inverse of encode_content."""
    if encoding == "base64":
        return base64.b64decode(content)
    return content


def _is_within(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


class BackingStore(ABC):
    """Abstract base class for durable workspace storage.

    Both create_file and update_file are upserts; they differ only in which
    verb is tried first. Every failure to reach or satisfy the store is raised
    as PersistenceError so callers can decide between logging and propagating.
    """

    @abstractmethod
    async def list_files(self, workspace_id: str) -> list[StoredFile]:
        """Fetch the full file manifest of a workspace.

        Args:
            workspace_id: Workspace identifier

        Returns:
            Every stored file and directory, with content

        Raises:
            PersistenceError: If the store is unreachable or rejects the request
        """
        pass

    @abstractmethod
    async def create_file(
        self,
        workspace_id: str,
        path: str,
        content: str = "",
        encoding: Encoding = "utf-8",
        is_directory: bool = False,
    ) -> None:
        """Record a new file or directory, updating it if it already exists.

        Raises:
            PersistenceError: If the store is unreachable or rejects the request
        """
        pass

    @abstractmethod
    async def update_file(
        self, workspace_id: str, path: str, content: str, encoding: Encoding = "utf-8"
    ) -> None:
        """Update a file's content, creating it if it does not exist.

        Raises:
            PersistenceError: If the store is unreachable or rejects the request
        """
        pass

    @abstractmethod
    async def delete_file(self, workspace_id: str, path: str) -> None:
        """Delete a file, or a directory together with everything beneath it.

        Deleting a missing path is not an error.

        Raises:
            PersistenceError: If the store is unreachable or rejects the request
        """
        pass

    @abstractmethod
    async def load_snapshot(self, workspace_id: str, session_id: str) -> str | None:
        """Fetch the last saved snapshot document, or None if there is none.

        Raises:
            PersistenceError: If the store is unreachable or rejects the request
        """
        pass

    @abstractmethod
    async def save_snapshot(self, workspace_id: str, session_id: str, snapshot: str) -> None:
        """Persist a snapshot document, replacing the previous one.

        Raises:
            PersistenceError: If the store is unreachable or rejects the request
        """
        pass

    async def close(self) -> None:
        """Release network resources. Safe to call repeatedly."""
        return None


class MemoryBackingStore(BackingStore):
    """In-process backing store.

    Keeps manifests and snapshots in dictionaries keyed by workspace id.
    Every mutation is appended to ``operations`` as (operation, path) so
    callers can observe propagation order.
    """

    def __init__(self) -> None:
        self._files: dict[str, dict[str, StoredFile]] = {}
        self._snapshots: dict[tuple[str, str], str] = {}
        self.operations: list[tuple[str, str]] = []

    def _workspace(self, workspace_id: str) -> dict[str, StoredFile]:
        return self._files.setdefault(workspace_id, {})

    def _ensure_parents(self, files: dict[str, StoredFile], path: str) -> None:
        parts = path.split("/")[:-1]
        for i in range(1, len(parts) + 1):
            parent = "/".join(parts[:i])
            if parent not in files:
                files[parent] = StoredFile(
                    path=parent, kind=FileKind.DIRECTORY, modified=datetime.now(UTC)
                )

    def _put(self, workspace_id: str, path: str, content: str, encoding: Encoding, kind: FileKind) -> None:
        files = self._workspace(workspace_id)
        self._ensure_parents(files, path)
        size = len(decode_content(content, encoding)) if kind is FileKind.FILE else 0
        files[path] = StoredFile(
            path=path,
            kind=kind,
            content=content if kind is FileKind.FILE else "",
            encoding=encoding,
            size=size,
            modified=datetime.now(UTC),
        )

    async def list_files(self, workspace_id: str) -> list[StoredFile]:
        files = self._workspace(workspace_id)
        return [files[path].model_copy() for path in sorted(files)]

    async def create_file(
        self,
        workspace_id: str,
        path: str,
        content: str = "",
        encoding: Encoding = "utf-8",
        is_directory: bool = False,
    ) -> None:
        self.operations.append(("create", path))
        kind = FileKind.DIRECTORY if is_directory else FileKind.FILE
        self._put(workspace_id, path, content, encoding, kind)

    async def update_file(
        self, workspace_id: str, path: str, content: str, encoding: Encoding = "utf-8"
    ) -> None:
        self.operations.append(("update", path))
        self._put(workspace_id, path, content, encoding, FileKind.FILE)

    async def delete_file(self, workspace_id: str, path: str) -> None:
        self.operations.append(("delete", path))
        files = self._workspace(workspace_id)
        for key in [k for k in files if _is_within(k, path)]:
            del files[key]

    async def load_snapshot(self, workspace_id: str, session_id: str) -> str | None:
        return self._snapshots.get((workspace_id, session_id))

    async def save_snapshot(self, workspace_id: str, session_id: str, snapshot: str) -> None:
        self.operations.append(("save_snapshot", session_id))
        self._snapshots[(workspace_id, session_id)] = snapshot

    def get_file(self, workspace_id: str, path: str) -> StoredFile | None:
        """Synchronous lookup of a stored entry."""
        return self._workspace(workspace_id).get(path)


class HttpBackingStore(BackingStore):
    """Backing store speaking the workspace REST API over aiohttp.

    Endpoints are rooted at ``{base_url}/api/workspaces/{id}/pyodide``:
    ``files`` (GET manifest, POST create), ``files/{path}`` (PUT update,
    DELETE) and ``state`` (GET by sessionId, POST save).
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout_seconds: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the HTTP store.

        Args:
            base_url: Root URL of the workspace API
            auth_token: Optional bearer token sent with every request
            timeout_seconds: Total timeout per request
            session: Optional caller-owned aiohttp session (not closed by close())
        """
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    def _base(self, workspace_id: str) -> str:
        return f"{self.base_url}/api/workspaces/{quote(workspace_id, safe='')}/pyodide"

    def _file_url(self, workspace_id: str, path: str) -> str:
        return f"{self._base(workspace_id)}/files/{quote(path, safe='/')}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Accept": "application/json"}
            if self.auth_token:
                headers["Authorization"] = f"Bearer {self.auth_token}"
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        path: str | None = None,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        allowed: tuple[int, ...] = (),
    ) -> tuple[int, Any]:
        """Send one request and decode the JSON body.

        Args:
            method: HTTP verb
            url: Absolute request URL
            operation: Store operation name used in error reports
            path: Workspace-relative path used in error reports
            json_body: Optional JSON request body
            params: Optional query parameters
            allowed: Non-2xx statuses returned to the caller instead of raising

        Returns:
            Tuple of (status, decoded body or None)

        Raises:
            PersistenceError: On connection failure, timeout, or an unexpected status
        """
        session = self._get_session()
        try:
            async with session.request(method, url, json=json_body, params=params) as response:
                status = response.status
                body: Any = None
                if response.content_type == "application/json":
                    body = await response.json()
                if 200 <= status < 300 or status in allowed:
                    return status, body
                detail = body.get("error") if isinstance(body, dict) else None
                raise PersistenceError(
                    f"{operation} failed with HTTP {status}" + (f": {detail}" if detail else ""),
                    operation=operation,
                    path=path,
                    status=status,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PersistenceError(
                f"{operation} failed: {e.__class__.__name__}: {e}",
                operation=operation,
                path=path,
            ) from e

    async def list_files(self, workspace_id: str) -> list[StoredFile]:
        _, body = await self._request("GET", f"{self._base(workspace_id)}/files", "list_files")
        if not isinstance(body, dict) or not isinstance(body.get("files"), list):
            raise PersistenceError("list_files returned an unexpected body", operation="list_files")

        files: list[StoredFile] = []
        for item in body["files"]:
            try:
                files.append(
                    StoredFile(
                        path=str(item["path"]).strip("/"),
                        kind=FileKind(item.get("type", "file")),
                        content=item.get("content") or "",
                        encoding=item.get("encoding") or "utf-8",
                        size=item.get("size") or 0,
                        modified=item.get("modified") or item.get("updatedAt"),
                    )
                )
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                raise PersistenceError(
                    f"list_files returned a malformed entry: {e}", operation="list_files"
                ) from e
        return files

    async def create_file(
        self,
        workspace_id: str,
        path: str,
        content: str = "",
        encoding: Encoding = "utf-8",
        is_directory: bool = False,
    ) -> None:
        status, _ = await self._request(
            "POST",
            f"{self._base(workspace_id)}/files",
            "create_file",
            path,
            json_body={
                "path": path,
                "content": content,
                "encoding": encoding,
                "isDirectory": is_directory,
            },
            allowed=(409,),
        )
        if status == 409 and not is_directory:
            await self._put(workspace_id, path, content, encoding)

    async def _put(self, workspace_id: str, path: str, content: str, encoding: Encoding) -> int:
        status, _ = await self._request(
            "PUT",
            self._file_url(workspace_id, path),
            "update_file",
            path,
            json_body={"content": content, "encoding": encoding},
            allowed=(404,),
        )
        return status

    async def update_file(
        self, workspace_id: str, path: str, content: str, encoding: Encoding = "utf-8"
    ) -> None:
        if await self._put(workspace_id, path, content, encoding) == 404:
            await self._request(
                "POST",
                f"{self._base(workspace_id)}/files",
                "create_file",
                path,
                json_body={"path": path, "content": content, "encoding": encoding, "isDirectory": False},
            )

    async def delete_file(self, workspace_id: str, path: str) -> None:
        await self._request(
            "DELETE", self._file_url(workspace_id, path), "delete_file", path, allowed=(404,)
        )

    async def load_snapshot(self, workspace_id: str, session_id: str) -> str | None:
        status, body = await self._request(
            "GET",
            f"{self._base(workspace_id)}/state",
            "load_snapshot",
            params={"sessionId": session_id},
            allowed=(404,),
        )
        if status == 404 or not isinstance(body, dict) or body.get("state") is None:
            return None
        state = body["state"]
        return state if isinstance(state, str) else json.dumps(state)

    async def save_snapshot(self, workspace_id: str, session_id: str, snapshot: str) -> None:
        await self._request(
            "POST",
            f"{self._base(workspace_id)}/state",
            "save_snapshot",
            json_body={"sessionId": session_id, "snapshot": json.loads(snapshot)},
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
