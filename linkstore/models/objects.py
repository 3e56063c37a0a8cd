"""Merkle DAG object models — all Pydantic v2, all frozen (immutable).

Blob content is stored raw so checkouts can hard-link it; every other
kind is stored as canonical JSON. The canonical bytes of a model are the
exact bytes written to the store and hashed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from linkstore.core.hasher import (
    blob_flags,
    canonical_json_bytes,
    object_digest,
)
from linkstore.errors import InvalidTreeError
from linkstore.models.names import ObjectHash, PackageName, PlatformName


class ObjectKind(str, Enum):
    """Object kinds; the value doubles as the on-disk file extension."""

    BLOB = "blob"
    TREE = "tree"
    PACKAGE = "pkg"
    BUILDER = "bld"
    MAPPING = "map"

    @property
    def ext(self) -> str:
        return self.value


class EntryKind(str, Enum):
    """Kind tag of a tree entry."""

    FILE = "file"
    EXECUTABLE = "executable"
    SYMLINK = "symlink"
    TREE = "tree"

    @property
    def object_kind(self) -> ObjectKind:
        return ObjectKind.TREE if self is EntryKind.TREE else ObjectKind.BLOB

    @property
    def blob_flags(self) -> str:
        return blob_flags(
            executable=self is EntryKind.EXECUTABLE,
            symlink=self is EntryKind.SYMLINK,
        )


class CanonicalModel(BaseModel):
    """Base for JSON-encoded objects."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def canonical_bytes(self) -> bytes:
        return canonical_json_bytes(self.model_dump(mode="json", by_alias=True))

    def object_hash(self) -> str:
        return object_digest(self.object_kind().ext, self.canonical_bytes())

    @classmethod
    def object_kind(cls) -> ObjectKind:
        raise NotImplementedError

    @classmethod
    def decode(cls, data: bytes) -> Self:
        return cls.model_validate_json(data)


class Blob(BaseModel):
    """A single file's content, or a symlink's target text."""

    model_config = ConfigDict(frozen=True)

    content: bytes
    executable: bool = False
    symlink: bool = False

    @property
    def flags(self) -> str:
        return blob_flags(executable=self.executable, symlink=self.symlink)

    def object_hash(self) -> str:
        return object_digest(ObjectKind.BLOB.ext, self.content, self.flags)

    @property
    def entry_kind(self) -> EntryKind:
        if self.symlink:
            return EntryKind.SYMLINK
        return EntryKind.EXECUTABLE if self.executable else EntryKind.FILE


def is_utf8_name(name: str) -> bool:
    """False for names carrying undecodable bytes as lone surrogates."""
    try:
        name.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


class TreeEntry(BaseModel):
    """One ``(name, kind, hash)`` row of a directory."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: EntryKind
    hash: ObjectHash

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not v or v in (".", "..") or "/" in v or "\0" in v or not is_utf8_name(v):
            raise ValueError(f"invalid tree entry name {v!r}")
        return v


class Tree(CanonicalModel):
    """A directory: entries ordered by name, names unique."""

    entries: tuple[TreeEntry, ...] = ()

    @classmethod
    def object_kind(cls) -> ObjectKind:
        return ObjectKind.TREE

    @model_validator(mode="before")
    @classmethod
    def _sort_entries(cls, data: Any) -> Any:
        if isinstance(data, dict) and "entries" in data:
            entries = list(data["entries"])
            data = dict(data)
            data["entries"] = sorted(
                entries,
                key=lambda e: e["name"] if isinstance(e, dict) else e.name,
            )
        return data

    @model_validator(mode="after")
    def _reject_duplicates(self) -> Tree:
        seen: set[str] = set()
        for entry in self.entries:
            if entry.name in seen:
                raise InvalidTreeError(
                    f"duplicate entry name {entry.name!r} in one directory"
                )
            seen.add(entry.name)
        return self

    def references(self) -> list[tuple[str, ObjectKind]]:
        return [(e.hash, e.kind.object_kind) for e in self.entries]


class Package(CanonicalModel):
    """A realized build output: the unit of checkout."""

    name: PackageName
    platform: PlatformName
    references: tuple[ObjectHash, ...] = ()
    self_references: dict[ObjectHash, tuple[int, ...]] = Field(
        default_factory=dict, alias="self-references"
    )
    tree: ObjectHash

    @classmethod
    def object_kind(cls) -> ObjectKind:
        return ObjectKind.PACKAGE

    @field_validator("references")
    @classmethod
    def _dedupe_references(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted(set(v)))

    @field_validator("self_references")
    @classmethod
    def _sort_offsets(cls, v: dict[str, tuple[int, ...]]) -> dict[str, tuple[int, ...]]:
        return {k: tuple(sorted(set(offsets))) for k, offsets in v.items() if offsets}


class Builder(CanonicalModel):
    """A reproducible build recipe.

    ``dependencies`` and ``build_dependencies`` are hashes of other
    builders, never packages; ``sources`` maps a file name in the build's
    ``src`` directory to the hash of a blob or tree.
    """

    name: PackageName
    platform: PlatformName
    dependencies: tuple[ObjectHash, ...] = ()
    build_dependencies: tuple[ObjectHash, ...] = Field(
        default=(), alias="build-dependencies"
    )
    sources: dict[str, ObjectHash] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    command: tuple[str, ...] = Field(min_length=1)

    @classmethod
    def object_kind(cls) -> ObjectKind:
        return ObjectKind.BUILDER

    @field_validator("dependencies", "build_dependencies")
    @classmethod
    def _dedupe(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted(set(v)))

    @field_validator("sources")
    @classmethod
    def _check_source_names(cls, v: dict[str, str]) -> dict[str, str]:
        for name in v:
            if not name or name in (".", "..") or "/" in name:
                raise ValueError(f"invalid source file name {name!r}")
        return v

    def all_dependencies(self) -> tuple[str, ...]:
        return tuple(sorted(set(self.dependencies) | set(self.build_dependencies)))


class MappingMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    duration: float = 0.0  # wall-clock seconds
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Mapping(CanonicalModel):
    """A recorded (builder -> result package) build outcome."""

    builder: ObjectHash
    result: ObjectHash
    metadata: MappingMetadata = Field(default_factory=MappingMetadata)

    @classmethod
    def object_kind(cls) -> ObjectKind:
        return ObjectKind.MAPPING


MODEL_FOR_KIND: dict[ObjectKind, type[CanonicalModel]] = {
    ObjectKind.TREE: Tree,
    ObjectKind.PACKAGE: Package,
    ObjectKind.BUILDER: Builder,
    ObjectKind.MAPPING: Mapping,
}
