"""Versioned schemas for payloads produced inside the interpreter.

Generated helper programs serialize their results into plain JSON documents
tagged with schema_version and kind. These models validate those documents on
receipt and turn them into typed records; anything that does not match raises
PayloadValidationError instead of leaking loosely-typed dicts to callers.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError

from pyworkspace.core.errors import PayloadValidationError
from pyworkspace.core.models import FileInfo, FileKind, FileSystemStats, PackageInfo

PAYLOAD_SCHEMA_VERSION = 1


def _timestamp(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


class _Payload(BaseModel):
    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION


class EntryPayload(BaseModel):
    name: str
    path: str
    type: FileKind
    size: int = Field(ge=0)
    modified: float

    def to_file_info(self) -> FileInfo:
        return FileInfo(
            name=self.name,
            path=self.path,
            kind=self.type,
            size=self.size,
            modified=_timestamp(self.modified),
        )


class ListingPayload(_Payload):
    kind: Literal["listing"]
    entries: list[EntryPayload] = Field(default_factory=list)

    def to_file_infos(self) -> list[FileInfo]:
        return [entry.to_file_info() for entry in self.entries]


class InfoPayload(_Payload):
    kind: Literal["info"]
    entry: EntryPayload | None = None


class StatsPayload(_Payload):
    kind: Literal["stats"]
    total_files: int = Field(ge=0)
    total_size: int = Field(ge=0)
    directories: int = Field(ge=0)
    last_modified: float | None = None

    def to_stats(self) -> FileSystemStats:
        return FileSystemStats(
            total_files=self.total_files,
            total_size=self.total_size,
            directories=self.directories,
            last_modified=_timestamp(self.last_modified),
        )


class OperationPayload(_Payload):
    kind: Literal["operation"]
    operation: str
    path: str
    destination: str | None = None
    removed: int | None = None


class PackagesPayload(_Payload):
    kind: Literal["packages"]
    packages: list[PackageInfo] = Field(default_factory=list)


class DependenciesPayload(_Payload):
    kind: Literal["dependencies"]
    package: str
    dependencies: list[str] = Field(default_factory=list)


class GuestResultPayload(_Payload):
    """Result document written by the guest driver after every submission."""

    kind: Literal["execution"]
    success: bool
    value: Any = None
    value_repr: str | None = None
    error: str | None = None
    error_type: str | None = None
    python_version: str = ""


PayloadT = TypeVar("PayloadT", bound=BaseModel)


def parse_payload(model: type[PayloadT], raw: Any) -> PayloadT:
    """Validate a decoded guest payload against its schema.

    Args:
        model: Payload model class to validate against
        raw: Decoded JSON value produced by the guest

    Returns:
        Validated payload instance

    Raises:
        PayloadValidationError: If the payload does not match the schema
    """
    if not isinstance(raw, dict):
        raise PayloadValidationError(
            f"Expected {model.__name__} object, got {type(raw).__name__}"
        )
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise PayloadValidationError(f"Invalid {model.__name__}: {e}") from e
