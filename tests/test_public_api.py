"""Tests for public API exports from the pyworkspace package.

Verifies the documented components are importable from the package root and
that __all__ matches what the package actually exposes.
"""

from __future__ import annotations

import pyworkspace


class TestPublicAPIImports:
    def test_all_names_resolve(self) -> None:
        missing = [name for name in pyworkspace.__all__ if not hasattr(pyworkspace, name)]
        assert missing == []

    def test_session_facade(self) -> None:
        from pyworkspace import WorkspaceSession, create_session

        assert callable(create_session)
        assert hasattr(WorkspaceSession, "run_python")
        assert hasattr(WorkspaceSession, "export_workspace")

    def test_models_are_pydantic(self) -> None:
        from pyworkspace import ExecutionPolicy, ExecutionResult, WorkspaceSnapshot

        for model in (ExecutionPolicy, ExecutionResult, WorkspaceSnapshot):
            assert hasattr(model, "model_validate")

    def test_runtime_type_values(self) -> None:
        from pyworkspace import RuntimeType

        assert {t.value for t in RuntimeType} == {"auto", "wasm", "native"}

    def test_error_hierarchy(self) -> None:
        from pyworkspace import (
            ExecutionInProgressError,
            PersistenceError,
            RuntimeNotInitializedError,
            SessionInitializationError,
            WorkspaceError,
        )

        for error in (
            ExecutionInProgressError,
            PersistenceError,
            RuntimeNotInitializedError,
            SessionInitializationError,
        ):
            assert issubclass(error, WorkspaceError)

    def test_version(self) -> None:
        assert pyworkspace.__version__ == "0.1.0"


class TestPublicAPIUsage:
    def test_default_config(self) -> None:
        from pyworkspace import WorkspaceConfig

        config = WorkspaceConfig()
        assert config.state.session_id == "default"

    def test_memory_store_is_a_backing_store(self) -> None:
        from pyworkspace import BackingStore, MemoryBackingStore

        assert isinstance(MemoryBackingStore(), BackingStore)
