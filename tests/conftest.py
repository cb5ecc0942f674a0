"""Shared pytest fixtures for all tests.

Everything runs against the native backend (host CPython in a child process)
and the in-memory backing store, so no WASM binary or network is required.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from pyworkspace.config import RuntimeConfig, WorkspaceConfig
from pyworkspace.core.errors import PersistenceError
from pyworkspace.core.models import RuntimeType
from pyworkspace.core.storage import BackingStore, Encoding, MemoryBackingStore, StoredFile
from pyworkspace.factory import create_session
from pyworkspace.filesystem import FileSystemBridge
from pyworkspace.packages import PackageInstaller
from pyworkspace.runtime import RuntimeController
from pyworkspace.runtimes.native import NativeBackend
from pyworkspace.session import WorkspaceSession

WORKSPACE_ID = "ws-test"


class FakeInstaller(PackageInstaller):
    """Installer writing a minimal dist-info (METADATA + RECORD) and one module.

    Versions come from ``versions`` (default "1.0.0"); names listed in
    ``failing`` are reported as failed installs.
    """

    def __init__(
        self,
        versions: dict[str, str] | None = None,
        requires: dict[str, list[str]] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.versions = versions or {}
        self.requires = requires or {}
        self.failing = failing or set()
        self.calls: list[str] = []

    async def install(self, requirement: str, target: Path) -> tuple[bool, str]:
        self.calls.append(requirement)
        name, _, pinned = requirement.partition("==")
        if name in self.failing:
            return False, f"ERROR: No matching distribution found for {requirement}"

        version = pinned or self.versions.get(name, "1.0.0")
        module = name.replace("-", "_").lower()
        dist_info = f"{module}-{version}.dist-info"

        (target / module).mkdir(parents=True, exist_ok=True)
        (target / module / "__init__.py").write_text(f"__version__ = {version!r}\n", encoding="utf-8")
        (target / dist_info).mkdir(parents=True, exist_ok=True)

        metadata = [
            "Metadata-Version: 2.1",
            f"Name: {name}",
            f"Version: {version}",
            f"Summary: Fake {name} distribution",
            "Author: Test Author",
            "License: MIT",
        ]
        metadata += [f"Requires-Dist: {req}" for req in self.requires.get(name, [])]
        (target / dist_info / "METADATA").write_text("\n".join(metadata) + "\n", encoding="utf-8")

        record = [
            f"{module}/__init__.py,,",
            f"{dist_info}/METADATA,,",
            f"{dist_info}/RECORD,,",
        ]
        (target / dist_info / "RECORD").write_text("\n".join(record) + "\n", encoding="utf-8")
        return True, f"Successfully installed {name}-{version}"


class UnreachableStore(BackingStore):
    """Backing store whose every operation fails as if the server were down."""

    def __init__(self) -> None:
        self.attempts: list[str] = []

    def _fail(self, operation: str, path: str | None = None) -> PersistenceError:
        self.attempts.append(operation)
        return PersistenceError(
            f"{operation} failed: ClientConnectorError: connection refused",
            operation=operation,
            path=path,
        )

    async def list_files(self, workspace_id: str) -> list[StoredFile]:
        raise self._fail("list_files")

    async def create_file(
        self,
        workspace_id: str,
        path: str,
        content: str = "",
        encoding: Encoding = "utf-8",
        is_directory: bool = False,
    ) -> None:
        raise self._fail("create_file", path)

    async def update_file(
        self, workspace_id: str, path: str, content: str, encoding: Encoding = "utf-8"
    ) -> None:
        raise self._fail("update_file", path)

    async def delete_file(self, workspace_id: str, path: str) -> None:
        raise self._fail("delete_file", path)

    async def load_snapshot(self, workspace_id: str, session_id: str) -> str | None:
        raise self._fail("load_snapshot")

    async def save_snapshot(self, workspace_id: str, session_id: str, snapshot: str) -> None:
        raise self._fail("save_snapshot")


class WriteFailingStore(MemoryBackingStore):
    """Memory store that serves reads but rejects every write."""

    async def create_file(self, workspace_id, path, content="", encoding="utf-8", is_directory=False):
        raise PersistenceError("create_file failed with HTTP 503", operation="create_file", path=path, status=503)

    async def update_file(self, workspace_id, path, content, encoding="utf-8"):
        raise PersistenceError("update_file failed with HTTP 503", operation="update_file", path=path, status=503)


class CountingBackend(NativeBackend):
    """Native backend counting how many times it was started."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.start_calls = 0

    async def start(self) -> None:
        self.start_calls += 1
        await super().start()


def native_config(**sections) -> WorkspaceConfig:
    """WorkspaceConfig pinned to the native backend."""
    return WorkspaceConfig(runtime=RuntimeConfig(backend=RuntimeType.NATIVE), **sections)


@pytest.fixture
def store() -> MemoryBackingStore:
    return MemoryBackingStore()


@pytest.fixture
def installer() -> FakeInstaller:
    return FakeInstaller(versions={"attrs": "23.2.0"}, requires={"attrs": ["six>=1.0", 'pytest; extra == "tests"']})


@pytest_asyncio.fixture
async def runtime() -> AsyncIterator[RuntimeController]:
    """Initialized runtime controller on the native backend."""
    controller = RuntimeController(NativeBackend())
    await controller.initialize()
    yield controller
    await controller.cleanup()


@pytest_asyncio.fixture
async def bridge(runtime: RuntimeController, store: MemoryBackingStore) -> AsyncIterator[FileSystemBridge]:
    fs = FileSystemBridge(runtime, WORKSPACE_ID, store)
    yield fs
    await fs.flush()


@pytest_asyncio.fixture
async def session(store: MemoryBackingStore, installer: FakeInstaller) -> AsyncIterator[WorkspaceSession]:
    """Initialized session backed by the memory store."""
    ws = await create_session(WORKSPACE_ID, native_config(), store=store, installer=installer)
    yield ws
    await ws.cleanup()
