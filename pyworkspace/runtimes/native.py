"""Host CPython interpreter backend.

Launches the guest driver with the host interpreter in isolated mode
(``python -I -B``) as a child process per submission, with the mount workspace
as working directory. Output is streamed to the output callback line by line
(overlong lines in buffer-sized pieces) while the process runs; a wall-clock
timeout kills runaway submissions.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import shutil
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING

from pyworkspace.core.base import GuestPaths, GuestRun, InterpreterBackend, MountLayout, OutputCallback
from pyworkspace.core.errors import RuntimeBackendError
from pyworkspace.core.models import OutputStream

if TYPE_CHECKING:
    from pyworkspace.core.logging import WorkspaceLogger
    from pyworkspace.core.models import ExecutionPolicy


_LINE_LIMIT = 4 * 1024 * 1024


class _StreamCapture:
    """Accumulates one output stream up to a byte cap."""

    def __init__(self, cap: int) -> None:
        self.cap = cap
        self.chunks: list[str] = []
        self.size = 0
        self.truncated = False
        # Reads may split a multi-byte character
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def add(self, data: bytes) -> str | None:
        remaining = self.cap - self.size
        if remaining <= 0:
            self.truncated = True
            return None
        if len(data) > remaining:
            data = data[:remaining]
            self.truncated = True
        self.size += len(data)
        text = self._decoder.decode(data, final=self.truncated)
        if not text:
            return None
        self.chunks.append(text)
        return text

    def finish(self) -> str | None:
        text = self._decoder.decode(b"", final=True)
        if not text:
            return None
        self.chunks.append(text)
        return text

    @property
    def text(self) -> str:
        return "".join(self.chunks)


class NativeBackend(InterpreterBackend):
    """Interpreter backend using the host CPython in a child process."""

    name = "native"

    def __init__(
        self,
        policy: ExecutionPolicy | None = None,
        logger: WorkspaceLogger | None = None,
        python_executable: str | None = None,
    ) -> None:
        super().__init__(policy, logger)
        self.python_executable = python_executable or sys.executable
        self._processes: set[asyncio.subprocess.Process] = set()

    def guest_paths(self, layout: MountLayout) -> GuestPaths:
        return GuestPaths(
            workspace=str(layout.workspace),
            site_packages=str(layout.site_packages),
            control=str(layout.control),
        )

    async def start(self) -> None:
        executable = shutil.which(self.python_executable) or self.python_executable
        if not Path(executable).is_file():
            raise RuntimeBackendError(f"Python executable not found: {self.python_executable}")
        self.python_executable = executable

    def _environment(self, env: dict[str, str] | None) -> dict[str, str]:
        base = {"PATH": os.environ.get("PATH", "")}
        if sys.platform == "win32":
            base["SYSTEMROOT"] = os.environ.get("SYSTEMROOT", "")
        return {**base, **self.policy.env, **(env or {})}

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        capture: _StreamCapture,
        kind: OutputStream,
        on_output: OutputCallback | None,
    ) -> None:
        while True:
            try:
                data = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                data = e.partial
            except asyncio.LimitOverrunError as e:
                # Overlong line: deliver what is buffered and keep reading
                data = await stream.read(e.consumed)
            if not data:
                text = capture.finish()
                if text and on_output is not None:
                    on_output(text, kind)
                return
            text = capture.add(data)
            if text and on_output is not None:
                on_output(text, kind)

    async def run(
        self,
        layout: MountLayout,
        env: dict[str, str] | None = None,
        on_output: OutputCallback | None = None,
    ) -> GuestRun:
        driver = layout.control / "driver.py"
        try:
            process = await asyncio.create_subprocess_exec(
                self.python_executable,
                "-I",
                "-B",
                "-u",
                str(driver),
                str(layout.control),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(layout.workspace),
                env=self._environment(env),
                limit=_LINE_LIMIT,
            )
        except OSError as e:
            raise RuntimeBackendError(f"Failed to launch {self.python_executable}: {e}") from e

        self._processes.add(process)
        stdout = _StreamCapture(self.policy.stdout_max_bytes)
        stderr = _StreamCapture(self.policy.stderr_max_bytes)
        pumps = asyncio.gather(
            self._pump(process.stdout, stdout, OutputStream.STDOUT, on_output),  # type: ignore[arg-type]
            self._pump(process.stderr, stderr, OutputStream.STDERR, on_output),  # type: ignore[arg-type]
        )

        trapped = False
        trap_reason: str | None = None
        trap_message: str | None = None
        started = time.perf_counter()
        try:
            await asyncio.wait_for(asyncio.shield(pumps), timeout=self.policy.timeout_seconds)
            await process.wait()
        except asyncio.TimeoutError:
            trapped = True
            trap_reason = "timeout"
            trap_message = f"Execution exceeded {self.policy.timeout_seconds} seconds"
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            await pumps
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            self._processes.discard(process)

        stderr_text = stderr.text
        if trapped:
            notice = f"Execution trapped: {trap_message}"
            stderr_text = f"{stderr_text.rstrip()}\n{notice}".strip()
            if on_output is not None:
                on_output(notice + "\n", OutputStream.STDERR)

        return GuestRun(
            stdout=stdout.text,
            stderr=stderr_text,
            exit_code=None if trapped else process.returncode,
            trapped=trapped,
            trap_reason=trap_reason,
            trap_message=trap_message,
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
            metadata={"pid": process.pid, "wall_ms": (time.perf_counter() - started) * 1000},
        )

    async def stop(self) -> None:
        for process in list(self._processes):
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
        self._processes.clear()
