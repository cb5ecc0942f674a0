"""Abstract base class for interpreter backends.

Provides InterpreterBackend ABC that defines the contract for every way of
running the guest driver (CPython on WASM, host CPython in a child process),
plus the mount layout shared by the runtime controller and the backends.
Each backend must implement guest_paths(), start() and run(); everything above
the backend (globals persistence, result payloads, file-change detection) is
backend-independent.
"""

from __future__ import annotations

import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pyworkspace.core.logging import WorkspaceLogger
    from pyworkspace.core.models import ExecutionPolicy, OutputStream

OutputCallback = Callable[[str, "OutputStream"], None]


@dataclass
class MountLayout:
    """Host directories backing one interpreter instance.

    Attributes:
        root: Private temporary directory owning everything below
        workspace: Files visible to user code as /workspace
        site_packages: Installed distributions, placed on the guest sys.path
        control: Driver program, submitted source, job and result documents
    """

    root: Path

    @property
    def workspace(self) -> Path:
        return self.root / "workspace"

    @property
    def site_packages(self) -> Path:
        return self.root / "site-packages"

    @property
    def control(self) -> Path:
        return self.root / "control"

    @classmethod
    def create(cls, prefix: str = "pyworkspace-") -> MountLayout:
        layout = cls(root=Path(tempfile.mkdtemp(prefix=prefix)))
        for directory in (layout.workspace, layout.site_packages, layout.control):
            directory.mkdir(parents=True, exist_ok=True)
        return layout

    def release(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


@dataclass(frozen=True)
class GuestPaths:
    """The mount layout as seen from inside the interpreter."""

    workspace: str
    site_packages: str
    control: str


@dataclass
class GuestRun:
    """Raw outcome of one driver run, before result-payload mapping.

    Attributes:
        stdout: Captured standard output (capped to policy limit)
        stderr: Captured standard error (capped to policy limit)
        exit_code: Guest process exit code (None if it never exited normally)
        trapped: Whether execution was interrupted (WASM trap or timeout)
        trap_reason: Classified reason ("out_of_fuel", "memory_limit", "timeout", ...)
        trap_message: Raw trap description
        stdout_truncated: Whether stdout exceeded the cap
        stderr_truncated: Whether stderr exceeded the cap
        metadata: Backend-specific metrics (fuel_consumed, memory pages, pid)
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = 0
    trapped: bool = False
    trap_reason: str | None = None
    trap_message: str | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


class InterpreterBackend(ABC):
    """Abstract base class for interpreter backends.

    A backend knows how to launch the guest driver against a MountLayout and
    report what happened. It does not interpret the driver's result document;
    that is the runtime controller's job.

    Attributes:
        name: Short backend identifier used in logs and snapshots
        policy: ExecutionPolicy containing resource limits and guest environment
        logger: WorkspaceLogger for structured event logging
    """

    name: str = "abstract"

    def __init__(self, policy: ExecutionPolicy | None = None, logger: WorkspaceLogger | None = None) -> None:
        """Initialize the backend with a policy and logger.

        Args:
            policy: ExecutionPolicy with validated resource limits.
                    If None, uses the default ExecutionPolicy() values.
            logger: Optional WorkspaceLogger for structured events.
                    If None, creates default logger named 'pyworkspace'.
        """
        from pyworkspace.core.logging import WorkspaceLogger
        from pyworkspace.core.models import ExecutionPolicy

        self.policy = policy or ExecutionPolicy()
        self.logger = logger or WorkspaceLogger()

    @abstractmethod
    def guest_paths(self, layout: MountLayout) -> GuestPaths:
        """Map a host layout to the paths the guest driver must use."""
        pass

    @abstractmethod
    async def start(self) -> None:
        """Prepare the backend for runs (locate and load the interpreter).

        Raises:
            RuntimeBackendError: If the interpreter cannot be found or loaded
        """
        pass

    @abstractmethod
    async def run(
        self,
        layout: MountLayout,
        env: dict[str, str] | None = None,
        on_output: OutputCallback | None = None,
    ) -> GuestRun:
        """Run the driver installed in layout.control once.

        Args:
            layout: Mount layout holding driver, job and source files
            env: Extra environment variables layered over the policy env
            on_output: Optional callback invoked per output chunk

        Returns:
            GuestRun with captured output and trap details

        Raises:
            RuntimeBackendError: If the interpreter host itself fails
        """
        pass

    async def stop(self) -> None:
        """Release resources acquired by start(). Safe to call repeatedly."""
        return None
