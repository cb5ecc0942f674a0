"""CPython-on-WASM interpreter backend.

Runs the guest driver inside CPython compiled to WASI through wasmtime. The
mount is exposed through three capability preopens (/workspace,
/site-packages, /control); nothing else on the host is visible to guest code.
Blocking wasmtime calls run in a worker thread so the event loop stays free.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from pyworkspace.core.base import GuestPaths, GuestRun, InterpreterBackend, MountLayout, OutputCallback
from pyworkspace.core.errors import RuntimeBackendError
from pyworkspace.core.models import OutputStream
from pyworkspace.host import load_python_module, run_guest_python
from pyworkspace.runtime_paths import get_python_wasm_path

if TYPE_CHECKING:
    from wasmtime import Engine, Module

    from pyworkspace.core.logging import WorkspaceLogger
    from pyworkspace.core.models import ExecutionPolicy

GUEST_PATHS = GuestPaths(workspace="/workspace", site_packages="/site-packages", control="/control")


class WasmBackend(InterpreterBackend):
    """Interpreter backend executing CPython WASI under wasmtime.

    Output is captured per run and delivered to the output callback after the
    run finishes, one chunk per line.
    """

    name = "wasm"

    def __init__(
        self,
        policy: ExecutionPolicy | None = None,
        logger: WorkspaceLogger | None = None,
        wasm_binary_path: str | None = None,
    ) -> None:
        super().__init__(policy, logger)
        self.wasm_binary_path = wasm_binary_path
        self._engine: Engine | None = None
        self._module: Module | None = None

    def guest_paths(self, layout: MountLayout) -> GuestPaths:
        return GUEST_PATHS

    async def start(self) -> None:
        if self._module is not None:
            return
        try:
            wasm_path = get_python_wasm_path(self.wasm_binary_path)
        except FileNotFoundError as e:
            raise RuntimeBackendError(str(e)) from e
        try:
            self._engine, self._module = await asyncio.to_thread(load_python_module, str(wasm_path))
        except Exception as e:
            raise RuntimeBackendError(f"Failed to load WASM interpreter {wasm_path}: {e}") from e

    async def run(
        self,
        layout: MountLayout,
        env: dict[str, str] | None = None,
        on_output: OutputCallback | None = None,
    ) -> GuestRun:
        if self._engine is None or self._module is None:
            raise RuntimeBackendError("WASM backend not started")

        preopens = [
            (str(layout.workspace), GUEST_PATHS.workspace),
            (str(layout.site_packages), GUEST_PATHS.site_packages),
            (str(layout.control), GUEST_PATHS.control),
        ]
        argv = ["python", "-I", "-B", f"{GUEST_PATHS.control}/driver.py", GUEST_PATHS.control]

        try:
            run = await asyncio.to_thread(
                run_guest_python, self._engine, self._module, preopens, argv, self.policy, env
            )
        except RuntimeBackendError:
            raise
        except Exception as e:
            raise RuntimeBackendError(f"WASM execution failed: {e}") from e

        if on_output is not None:
            for line in run.stdout.splitlines(keepends=True):
                on_output(line, OutputStream.STDOUT)
            for line in run.stderr.splitlines(keepends=True):
                on_output(line, OutputStream.STDERR)

        if run.trapped:
            self.logger.log_warning(
                f"security.{run.trap_reason or 'trap'}",
                backend=self.name,
                trap_message=run.trap_message,
                fuel_budget=self.policy.fuel_budget,
                memory_bytes=self.policy.memory_bytes,
            )
        return run

    async def stop(self) -> None:
        self._engine = None
        self._module = None
