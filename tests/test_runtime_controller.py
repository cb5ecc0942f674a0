"""Tests for RuntimeController on the native backend.

Covers bring-up, execution semantics shared by every backend (last-expression
value, persisted globals, error reporting, top-level await), the overlap
policy, output streaming, mount accessors and teardown.
"""

from __future__ import annotations

import asyncio
import platform
import sys
from pathlib import Path

import pytest

from pyworkspace.core.errors import (
    ExecutionInProgressError,
    InvalidPathError,
    RuntimeInitializationError,
    RuntimeNotInitializedError,
)
from pyworkspace.core.models import ExecutionPolicy, OutputEntry, OutputSinks, RuntimeStatus
from pyworkspace.runtime import RuntimeController, detect_file_changes, scan_mount
from pyworkspace.runtimes.native import NativeBackend

from conftest import CountingBackend


class TestInitialization:
    @pytest.mark.asyncio
    async def test_initialize_reports_interpreter_version(self, runtime: RuntimeController) -> None:
        assert runtime.status is RuntimeStatus.READY
        assert runtime.is_ready
        assert runtime.python_version == platform.python_version()
        assert runtime.layout.workspace.is_dir()
        assert (runtime.layout.control / "driver.py").is_file()

    @pytest.mark.asyncio
    async def test_concurrent_initialize_brings_up_once(self) -> None:
        backend = CountingBackend()
        controller = RuntimeController(backend)
        try:
            await asyncio.gather(controller.initialize(), controller.initialize(), controller.initialize())

            assert backend.start_calls == 1
            assert controller.is_ready

            await controller.initialize()
            assert backend.start_calls == 1
        finally:
            await controller.cleanup()

    @pytest.mark.asyncio
    async def test_failed_initialize_sets_error_and_allows_retry(self) -> None:
        backend = NativeBackend(python_executable="/nonexistent/bin/python3")
        controller = RuntimeController(backend)

        with pytest.raises(RuntimeInitializationError):
            await controller.initialize()

        assert controller.status is RuntimeStatus.ERROR
        assert "not found" in (controller.error or "")
        with pytest.raises(RuntimeNotInitializedError):
            _ = controller.layout

        backend.python_executable = sys.executable
        try:
            await controller.initialize()
            assert controller.is_ready
            assert controller.error is None
        finally:
            await controller.cleanup()

    @pytest.mark.asyncio
    async def test_run_python_before_initialize_rejected(self) -> None:
        controller = RuntimeController(NativeBackend())

        with pytest.raises(RuntimeNotInitializedError):
            await controller.run_python("1 + 1")
        with pytest.raises(RuntimeNotInitializedError):
            await controller.run_script("1 + 1")

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent_and_releases_mount(self) -> None:
        controller = RuntimeController(NativeBackend())
        await controller.initialize()
        root = controller.layout.root

        await controller.cleanup()
        await controller.cleanup()

        assert not root.exists()
        assert controller.status is RuntimeStatus.UNINITIALIZED
        with pytest.raises(RuntimeNotInitializedError):
            await controller.run_python("1")

    @pytest.mark.asyncio
    async def test_cleanup_safe_when_never_initialized(self) -> None:
        controller = RuntimeController(NativeBackend())
        await controller.cleanup()
        assert controller.status is RuntimeStatus.UNINITIALIZED


class TestExecution:
    @pytest.mark.asyncio
    async def test_stdout_captured(self, runtime: RuntimeController) -> None:
        result = await runtime.run_python("print('hi')")

        assert result.success
        assert result.stdout == "hi\n"
        assert result.result is None
        assert result.error is None
        assert result.metadata["backend"] == "native"
        assert result.metadata["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_last_expression_is_the_result(self, runtime: RuntimeController) -> None:
        result = await runtime.run_python("x = 21\nx * 2")

        assert result.success
        assert result.result == 42
        assert result.metadata["result_repr"] == "42"

    @pytest.mark.asyncio
    async def test_non_serializable_result_falls_back_to_repr(self, runtime: RuntimeController) -> None:
        result = await runtime.run_python("object()")

        assert result.success
        assert isinstance(result.result, str)
        assert result.result.startswith("<object object at")

    @pytest.mark.asyncio
    async def test_globals_persist_between_calls(self, runtime: RuntimeController) -> None:
        await runtime.run_python("counter = 1\nlabel = 'first'\nimport os")
        result = await runtime.run_python("counter += 1\ncounter")

        assert result.result == 2
        assert runtime.get_globals() == {"counter": 2, "label": "first"}

    @pytest.mark.asyncio
    async def test_set_globals_visible_to_guest(self, runtime: RuntimeController) -> None:
        runtime.set_globals({"restored": [1, 2, 3]})

        result = await runtime.run_python("sum(restored)")

        assert result.result == 6

    @pytest.mark.asyncio
    async def test_exception_reported_in_result(self, runtime: RuntimeController) -> None:
        result = await runtime.run_python("print('before')\n1 / 0")

        assert not result.success
        assert result.stdout == "before\n"
        assert result.error == "ZeroDivisionError: division by zero"
        assert result.metadata["error_type"] == "ZeroDivisionError"
        assert "ZeroDivisionError" in result.stderr
        assert "driver.py" not in result.stderr

    @pytest.mark.asyncio
    async def test_syntax_error_reported_in_result(self, runtime: RuntimeController) -> None:
        result = await runtime.run_python("def broken(:\n    pass")

        assert not result.success
        assert result.error.startswith("SyntaxError")

    @pytest.mark.asyncio
    async def test_system_exit(self, runtime: RuntimeController) -> None:
        failed = await runtime.run_python("import sys\nsys.exit(3)")
        clean = await runtime.run_python("raise SystemExit(0)")

        assert not failed.success
        assert failed.error == "SystemExit: 3"
        assert clean.success

    @pytest.mark.asyncio
    async def test_top_level_await(self, runtime: RuntimeController) -> None:
        result = await runtime.run_python("import asyncio\nawait asyncio.sleep(0)\n'done'")

        assert result.success
        assert result.result == "done"

    @pytest.mark.asyncio
    async def test_environment_variables_exposed(self, runtime: RuntimeController) -> None:
        runtime.set_environment({"WORKSPACE_MODE": "test"})

        result = await runtime.run_python("import os\nos.environ['WORKSPACE_MODE']")

        assert result.result == "test"

    @pytest.mark.asyncio
    async def test_working_directory_is_workspace(self, runtime: RuntimeController) -> None:
        result = await runtime.run_python("import os\nos.getcwd()")
        assert Path(result.result).resolve() == runtime.layout.workspace.resolve()

    @pytest.mark.asyncio
    async def test_file_changes_reported(self, runtime: RuntimeController) -> None:
        runtime.write_file("existing.txt", "old")

        result = await runtime.run_python(
            "with open('new.txt', 'w') as f:\n"
            "    f.write('x')\n"
            "with open('existing.txt', 'w') as f:\n"
            "    f.write('changed content')\n"
        )

        assert result.files_created == ["new.txt"]
        assert result.files_modified == ["existing.txt"]
        assert result.files_deleted == []

    @pytest.mark.asyncio
    async def test_timeout_traps_runaway_code(self) -> None:
        controller = RuntimeController(NativeBackend(ExecutionPolicy(timeout_seconds=1.0)))
        await controller.initialize()
        try:
            result = await controller.run_python("import time\ntime.sleep(30)")
        finally:
            await controller.cleanup()

        assert not result.success
        assert result.metadata["trap_reason"] == "timeout"
        assert "Execution trapped" in result.error
        assert "Execution trapped" in result.stderr

    @pytest.mark.asyncio
    async def test_stdout_truncated_to_policy_cap(self) -> None:
        controller = RuntimeController(NativeBackend(ExecutionPolicy(stdout_max_bytes=100)))
        await controller.initialize()
        try:
            result = await controller.run_python("for i in range(100):\n    print('line', i)")
        finally:
            await controller.cleanup()

        assert result.success
        assert len(result.stdout.encode()) <= 100
        assert result.metadata["stdout_truncated"] is True

    @pytest.mark.asyncio
    async def test_line_longer_than_stream_buffer(self, runtime: RuntimeController) -> None:
        result = await runtime.run_python("import sys\nsys.stdout.write('x' * 5_000_000)\n'done'")

        assert result.success
        assert result.result == "done"
        assert result.stdout == "x" * ExecutionPolicy().stdout_max_bytes
        assert result.metadata["stdout_truncated"] is True

    @pytest.mark.asyncio
    async def test_multibyte_output_preserved(self, runtime: RuntimeController) -> None:
        result = await runtime.run_python("import sys\nsys.stdout.buffer.write('é'.encode() * 3_000_000)")

        assert result.success
        assert set(result.stdout) <= {"é", "�"}
        assert result.stdout.rstrip("�") == "é" * (ExecutionPolicy().stdout_max_bytes // 2)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_overlapping_user_execution_rejected(self, runtime: RuntimeController) -> None:
        first = asyncio.create_task(runtime.run_python("import time\ntime.sleep(0.5)\n'first'"))
        await asyncio.sleep(0)
        assert runtime.is_busy

        with pytest.raises(ExecutionInProgressError):
            await runtime.run_python("'second'")

        assert (await first).result == "first"
        assert not runtime.is_busy

    @pytest.mark.asyncio
    async def test_internal_scripts_queue_behind_user_execution(self, runtime: RuntimeController) -> None:
        first = asyncio.create_task(runtime.run_python("import time\ntime.sleep(0.3)\nmarker = 1"))
        await asyncio.sleep(0)

        helper = await runtime.run_script("1 + 1")

        assert first.done()
        assert helper.result == 2
        assert (await first).success

    @pytest.mark.asyncio
    async def test_internal_scripts_do_not_touch_globals(self, runtime: RuntimeController) -> None:
        await runtime.run_python("kept = 'yes'")
        await runtime.run_script("kept = 'overwritten'\nextra = 1")

        assert runtime.get_globals() == {"kept": "yes"}


class TestOutputStreaming:
    @pytest.mark.asyncio
    async def test_sinks_and_listeners_receive_chunks(self) -> None:
        stdout: list[str] = []
        stderr: list[str] = []
        entries: list[OutputEntry] = []
        controller = RuntimeController(NativeBackend())
        controller.subscribe(entries.append)
        await controller.initialize(OutputSinks(stdout=stdout.append, stderr=stderr.append))
        try:
            await controller.run_python("import sys\nprint('out')\nprint('err', file=sys.stderr)")
            await controller.run_script("print('helper output')")
        finally:
            await controller.cleanup()

        assert stdout == ["out\n"]
        assert stderr == ["err\n"]
        assert sorted((e.stream.value, e.text) for e in entries) == [
            ("stderr", "err\n"),
            ("stdout", "out\n"),
        ]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, runtime: RuntimeController) -> None:
        entries: list[OutputEntry] = []
        unsubscribe = runtime.subscribe(entries.append)
        unsubscribe()

        await runtime.run_python("print('x')")

        assert entries == []


class TestMountAccessors:
    @pytest.mark.asyncio
    async def test_write_read_exists(self, runtime: RuntimeController) -> None:
        runtime.write_file("nested/dir/file.txt", "content")

        assert runtime.exists("nested/dir/file.txt")
        assert runtime.is_directory("nested/dir")
        assert runtime.read_file("nested/dir/file.txt") == "content"
        assert runtime.read_bytes("nested/dir/file.txt") == b"content"

    @pytest.mark.asyncio
    async def test_read_missing_raises(self, runtime: RuntimeController) -> None:
        with pytest.raises(FileNotFoundError):
            runtime.read_file("missing.txt")

    @pytest.mark.asyncio
    async def test_escape_rejected(self, runtime: RuntimeController) -> None:
        with pytest.raises(InvalidPathError):
            runtime.read_file("../control/job.json")

    @pytest.mark.asyncio
    async def test_written_files_not_reported_by_sync(self, runtime: RuntimeController) -> None:
        runtime.write_file("a/b.txt", "x")

        changes = await runtime.sync_file_system()

        assert changes.is_empty

    @pytest.mark.asyncio
    async def test_sync_reports_guest_changes_once(self, runtime: RuntimeController) -> None:
        runtime.write_file("old.txt", "x")
        await runtime.run_python(
            "import os\nos.makedirs('out', exist_ok=True)\n"
            "open('out/result.txt', 'w').write('done')\nos.remove('old.txt')"
        )

        changes = await runtime.sync_file_system()
        again = await runtime.sync_file_system()

        assert changes.created == ["out", "out/result.txt"]
        assert changes.deleted == ["old.txt"]
        assert again.is_empty


def test_detect_file_changes_ignores_directory_mtime(tmp_path) -> None:
    (tmp_path / "dir").mkdir()
    before = scan_mount(tmp_path)
    (tmp_path / "dir" / "child.txt").write_text("x")
    after = scan_mount(tmp_path)

    changes = detect_file_changes(before, after)

    assert changes.created == ["dir/child.txt"]
    assert changes.modified == []
