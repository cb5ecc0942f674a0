"""Interpreter backends and the guest driver they execute."""

from pyworkspace.runtimes.native import NativeBackend
from pyworkspace.runtimes.wasm import WasmBackend

__all__ = ["NativeBackend", "WasmBackend"]
