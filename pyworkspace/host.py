"""WASM host layer for running the workspace interpreter.

This module runs CPython compiled to WASM (WASI build) through Wasmtime. It
implements the isolation of the wasm backend through:
- WASM memory safety and sandboxing
- WASI capability-based filesystem isolation (only the mount is preopened)
- Deterministic execution limits via fuel budgeting
- Memory caps to prevent resource exhaustion

Compilation of the interpreter module is expensive, so it is done once per
runtime (load_python_module) and every submission instantiates a fresh Store.
"""

from __future__ import annotations

import os
import shutil
import tempfile

from wasmtime import (
    Config,
    Engine,
    ExitTrap,
    Linker,
    Module,
    Store,
    Trap,
    WasiConfig,
)

from .core.base import GuestRun
from .core.errors import RuntimeBackendError
from .core.models import ExecutionPolicy


def load_python_module(wasm_path: str) -> tuple[Engine, Module]:
    """Compile the CPython WASM binary with fuel metering enabled.

    Args:
        wasm_path: Path to the CPython WASI binary

    Returns:
        Tuple of (engine, compiled module) reusable across runs

    Raises:
        FileNotFoundError: If wasm_path does not exist
        wasmtime.WasmtimeError: If the module fails to compile
    """
    if not os.path.exists(wasm_path):
        raise FileNotFoundError(f"WASM binary not found: {wasm_path}")

    cfg = Config()
    cfg.consume_fuel = True
    engine = Engine(cfg)
    module = Module.from_file(engine, wasm_path)
    return engine, module


def run_guest_python(
    engine: Engine,
    module: Module,
    preopens: list[tuple[str, str]],
    argv: list[str],
    policy: ExecutionPolicy | None = None,
    env: dict[str, str] | None = None,
) -> GuestRun:
    """Execute the guest interpreter once with security constraints.

    The guest process sees only the preopened directories and is limited by
    fuel budget (instruction count) and memory caps. Output is captured to
    temporary log files and read back with the policy caps applied.

    Args:
        engine: Engine returned by load_python_module
        module: Compiled CPython module
        preopens: (host_dir, guest_path) pairs mounted read-write
        argv: Guest process command-line arguments
        policy: ExecutionPolicy to enforce. If None, uses defaults.
        env: Extra environment variables layered over policy.env

    Returns:
        GuestRun containing captured outputs, trap details and fuel metrics

    Raises:
        RuntimeBackendError: If memory limits cannot be enforced
        wasmtime.WasmtimeError: If the module fails to link
    """
    policy = policy or ExecutionPolicy()

    linker = Linker(engine)
    linker.define_wasi()

    tmp = tempfile.mkdtemp(prefix="pyworkspace-wasm-")
    out_log = os.path.join(tmp, "stdout.log")
    err_log = os.path.join(tmp, "stderr.log")

    try:
        wasi = WasiConfig()
        for host_dir, guest_path in preopens:
            wasi.preopen_dir(os.path.abspath(host_dir), guest_path)

        wasi.argv = tuple(argv)
        wasi.env = [(k, v) for k, v in {**policy.env, **(env or {})}.items()]
        wasi.stdout_file = out_log
        wasi.stderr_file = err_log

        store = Store(engine)
        store.set_wasi(wasi)

        fuel_budget = int(policy.fuel_budget)
        store.set_fuel(fuel_budget)

        try:
            store.set_limits(memory_size=int(policy.memory_bytes))
        except Exception as e:
            raise RuntimeBackendError(
                f"Failed to enforce memory limit of {policy.memory_bytes} bytes"
            ) from e

        instance = linker.instantiate(store, module)
        start = instance.exports(store)["_start"]
        memory = instance.exports(store)["memory"]

        trapped = False
        trap_reason: str | None = None
        trap_message: str | None = None
        exit_code: int | None = None

        try:
            start(store)  # type: ignore[operator]
            exit_code = 0
        except ExitTrap as trap:
            # Normal WASI proc_exit
            exit_code = trap.code
            if trap.code != 0:
                trap_message = str(trap)
                trap_reason = "proc_exit"
        except Trap as trap:
            trapped = True
            trap_message = str(trap)
            trap_reason = _classify_trap(trap_message)
            exit_code = None

        try:
            fuel_consumed: int | None = fuel_budget - store.get_fuel()
        except Exception:
            fuel_consumed = None

        stdout, stdout_truncated = read_capped(out_log, int(policy.stdout_max_bytes))
        stderr, stderr_truncated = read_capped(err_log, int(policy.stderr_max_bytes))

        if trap_reason == "out_of_fuel":
            # OutOfFuel stays visible even if the guest wrote nothing
            trap_notice = "Execution trapped: OutOfFuel"
            if trap_notice not in stderr:
                stderr = f"{stderr.rstrip()}\n{trap_notice}".strip()
        elif trapped and trap_message:
            trap_notice = f"Execution trapped: {trap_message}"
            if trap_notice not in stderr:
                stderr = f"{stderr.rstrip()}\n{trap_notice}".strip()

        # Re-apply caps after appending trap notices
        stdout, stdout_truncated = _enforce_cap(
            stdout, int(policy.stdout_max_bytes), stdout_truncated
        )
        stderr, stderr_truncated = _enforce_cap(
            stderr, int(policy.stderr_max_bytes), stderr_truncated
        )

        metadata = {
            "fuel_consumed": fuel_consumed,
            "mem_pages": memory.size(store),  # type: ignore[union-attr,call-arg]
            "mem_len": memory.data_len(store),  # type: ignore[union-attr,call-arg]
        }
    finally:
        shutil.rmtree(tmp, ignore_errors=True)

    return GuestRun(
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
        trapped=trapped,
        trap_reason=trap_reason,
        trap_message=trap_message,
        stdout_truncated=stdout_truncated,
        stderr_truncated=stderr_truncated,
        metadata=metadata,
    )


def read_capped(path: str, cap: int) -> tuple[str, bool]:
    """Read file up to cap bytes to prevent DoS from unbounded output."""
    try:
        with open(path, "rb") as f:
            data = f.read(cap + 1)
        truncated = len(data) > cap
        return data[:cap].decode("utf-8", errors="replace"), truncated
    except FileNotFoundError:
        return "", False


def _classify_trap(message: str | None) -> str | None:
    """Classify trap reason based on message content for easier diagnostics."""
    if message is None:
        return None

    lowered = message.lower()
    if "fuel" in lowered:
        return "out_of_fuel"
    if "memory" in lowered:
        return "memory_limit"
    return "trap"


def _enforce_cap(text: str, cap: int, already_truncated: bool) -> tuple[str, bool]:
    """Ensure text does not exceed cap bytes while tracking truncation."""
    data = text.encode("utf-8", errors="replace")
    if len(data) <= cap:
        return text, already_truncated

    truncated_text = data[:cap].decode("utf-8", errors="replace")
    return truncated_text, True
