"""Path resolution for the CPython WASI binary used by the wasm backend.

Locates python.wasm from an explicit override, the PYWORKSPACE_PYTHON_WASM
environment variable, the package installation or the project bin/ directory.
"""

from __future__ import annotations

import os
from pathlib import Path

PYTHON_WASM_ENV = "PYWORKSPACE_PYTHON_WASM"


def get_bundled_binary_path(binary_name: str) -> Path:
    """Get path to a bundled WASM binary, with fallback for development.

    Searches for WASM binaries in the following order:
    1. In the package installation directory
    2. In project bin/ relative to the current working directory

    Args:
        binary_name: Name of WASM binary file (e.g., "python.wasm")

    Returns:
        Path to WASM binary file

    Raises:
        FileNotFoundError: If binary cannot be found in any search location
    """
    bundled_path = Path(__file__).parent.parent / "bin" / binary_name
    if bundled_path.is_file():
        return bundled_path

    cwd_bin = Path.cwd() / "bin" / binary_name
    if cwd_bin.is_file():
        return cwd_bin

    search_locations = [str(bundled_path), str(cwd_bin)]
    raise FileNotFoundError(
        f"WASM binary '{binary_name}' not found. Searched locations:\n"
        + "\n".join(f"  - {loc}" for loc in search_locations)
        + f"\n\nSet {PYTHON_WASM_ENV} or runtime.wasm_binary_path to a CPython WASI build."
    )


def get_python_wasm_path(override: str | os.PathLike[str] | None = None) -> Path:
    """Get path to the CPython WASM binary.

    Args:
        override: Explicit path taking precedence over every search location

    Returns:
        Path to python.wasm binary

    Raises:
        FileNotFoundError: If python.wasm cannot be found
    """
    explicit = override or os.environ.get(PYTHON_WASM_ENV)
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise FileNotFoundError(f"WASM binary not found: {path}")
        return path
    return get_bundled_binary_path("python.wasm")


def find_python_wasm(override: str | os.PathLike[str] | None = None) -> Path | None:
    """Like get_python_wasm_path, returning None instead of raising."""
    try:
        return get_python_wasm_path(override)
    except FileNotFoundError:
        return None
