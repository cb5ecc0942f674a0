"""Tests for the CPython-on-WASM backend and its host helpers.

The integration tests need a CPython WASI binary (bin/python.wasm or
PYWORKSPACE_PYTHON_WASM) and are skipped when none is available.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from pyworkspace.core.base import MountLayout
from pyworkspace.core.errors import RuntimeBackendError, RuntimeInitializationError
from pyworkspace.core.models import ExecutionPolicy, RuntimeStatus
from pyworkspace.host import _classify_trap, _enforce_cap, read_capped
from pyworkspace.runtime import RuntimeController
from pyworkspace.runtime_paths import PYTHON_WASM_ENV, find_python_wasm, get_python_wasm_path
from pyworkspace.runtimes.wasm import GUEST_PATHS, WasmBackend

requires_wasm = pytest.mark.skipif(find_python_wasm() is None, reason="CPython WASI binary not available")


class TestHostHelpers:
    @pytest.mark.parametrize(
        "message,expected",
        [
            (None, None),
            ("wasm trap: all fuel consumed by WebAssembly", "out_of_fuel"),
            ("memory allocation of 1048576 bytes failed: Memory limit exceeded", "memory_limit"),
            ("wasm trap: integer divide by zero", "trap"),
        ],
    )
    def test_classify_trap(self, message: str | None, expected: str | None) -> None:
        assert _classify_trap(message) == expected

    def test_enforce_cap_within_limit(self) -> None:
        assert _enforce_cap("short", 10, False) == ("short", False)
        assert _enforce_cap("short", 10, True) == ("short", True)

    def test_enforce_cap_counts_bytes(self) -> None:
        text, truncated = _enforce_cap("ééééé", 4, False)

        assert text == "éé"
        assert truncated is True

    def test_read_capped(self, tmp_path: Path) -> None:
        log = tmp_path / "stdout.log"
        log.write_bytes(b"0123456789")

        assert read_capped(str(log), 4) == ("0123", True)
        assert read_capped(str(log), 10) == ("0123456789", False)
        assert read_capped(str(tmp_path / "missing.log"), 4) == ("", False)


class TestBinaryResolution:
    def test_explicit_override(self, tmp_path: Path) -> None:
        binary = tmp_path / "python.wasm"
        binary.write_bytes(b"\0asm")

        assert get_python_wasm_path(binary) == binary

    def test_environment_variable(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        binary = tmp_path / "custom.wasm"
        binary.write_bytes(b"\0asm")
        monkeypatch.setenv(PYTHON_WASM_ENV, str(binary))

        assert get_python_wasm_path() == binary

    def test_missing_override(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            get_python_wasm_path(tmp_path / "absent.wasm")
        assert find_python_wasm(tmp_path / "absent.wasm") is None


class TestWasmBackendUnit:
    def test_guest_paths_are_fixed(self, tmp_path: Path) -> None:
        layout = MountLayout(tmp_path)

        assert WasmBackend().guest_paths(layout) == GUEST_PATHS
        assert GUEST_PATHS.workspace == "/workspace"

    @pytest.mark.asyncio
    async def test_start_without_binary(self, tmp_path: Path) -> None:
        backend = WasmBackend(wasm_binary_path=str(tmp_path / "absent.wasm"))

        with pytest.raises(RuntimeBackendError, match="not found"):
            await backend.start()

    @pytest.mark.asyncio
    async def test_run_before_start(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeBackendError, match="not started"):
            await WasmBackend().run(MountLayout(tmp_path))

    @pytest.mark.asyncio
    async def test_controller_reports_missing_binary(self, tmp_path: Path) -> None:
        controller = RuntimeController(WasmBackend(wasm_binary_path=str(tmp_path / "absent.wasm")))

        with pytest.raises(RuntimeInitializationError):
            await controller.initialize()

        assert controller.status is RuntimeStatus.ERROR
        assert "absent.wasm" in controller.error
        await controller.cleanup()


@pytest.mark.wasm
@requires_wasm
class TestWasmBackendIntegration:
    @pytest.mark.asyncio
    async def test_execution_and_files(self) -> None:
        controller = RuntimeController(WasmBackend())
        await controller.initialize()
        try:
            result = await controller.run_python(
                "with open('hello.txt', 'w') as f:\n    f.write('from wasm')\nprint('ok')\n40 + 2"
            )

            assert result.success, result.stderr
            assert result.stdout == "ok\n"
            assert result.result == 42
            assert result.files_created == ["hello.txt"]
            assert result.metadata["fuel_consumed"] > 0
            assert controller.read_file("hello.txt") == "from wasm"
        finally:
            await controller.cleanup()

    @pytest.mark.asyncio
    async def test_host_filesystem_not_visible(self) -> None:
        controller = RuntimeController(WasmBackend())
        await controller.initialize()
        try:
            result = await controller.run_python("import os\nos.path.exists('/etc/passwd')")
            assert result.result is False
        finally:
            await controller.cleanup()

    @pytest.mark.asyncio
    async def test_fuel_exhaustion_traps(self) -> None:
        controller = RuntimeController(WasmBackend(ExecutionPolicy()))
        await controller.initialize()
        try:
            result = await controller.run_python("while True:\n    pass")

            assert not result.success
            assert result.metadata["trap_reason"] == "out_of_fuel"
        finally:
            await controller.cleanup()
