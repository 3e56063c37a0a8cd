"""Store configuration — env-driven via pydantic-settings.

All settings can be overridden via LINKSTORE_* environment variables or a
.env file. Components never read settings globally: a ``StoreLayout`` is
resolved once and handed to each constructor, so several stores can live
in one process.

Examples
--------
Override via environment::

    export LINKSTORE_STORE_ROOT=/var/lib/linkstore
    export LINKSTORE_LINK_FALLBACK=copy
    export LINKSTORE_SOURCE_PRIORITY='["localhost", "cache.example.org"]'
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

OBJECTS_SUBDIR = "objects"
PACKAGES_SUBDIR = "packages"
MAPPINGS_SUBDIR = "mappings"
TMP_SUBDIR = "tmp"


class LinkFallback(str, Enum):
    """What to do when a hard link would cross filesystems."""

    FAIL = "fail"
    COPY = "copy"


class StoreLayout(BaseModel):
    """Absolute on-disk locations of one store."""

    model_config = ConfigDict(frozen=True)

    root: Path
    objects: Path
    packages: Path
    mappings: Path
    tmp: Path

    @classmethod
    def under(cls, root: Path) -> StoreLayout:
        root = Path(root).absolute()
        return cls(
            root=root,
            objects=root / OBJECTS_SUBDIR,
            packages=root / PACKAGES_SUBDIR,
            mappings=root / MAPPINGS_SUBDIR,
            tmp=root / TMP_SUBDIR,
        )

    def directories(self) -> list[Path]:
        return [self.root, self.objects, self.packages, self.mappings, self.tmp]


class StoreSettings(BaseSettings):
    """Store configuration with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LINKSTORE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage paths
    store_root: Path = Path(".linkstore")
    objects_path: Path | None = None
    packages_path: Path | None = None
    mappings_path: Path | None = None

    # Trust domains, most trusted first
    local_source: str = "localhost"
    source_priority: list[str] = ["localhost"]

    # Checkout policy
    link_fallback: LinkFallback = LinkFallback.FAIL
    verify_existing_checkouts: bool = False

    # Integrity
    verify_reads: bool = True

    # GC roots in addition to the mapping index (package names or hashes)
    pinned_packages: list[str] = []

    build_timeout_seconds: float | None = None

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _local_source_first(self) -> StoreSettings:
        if self.local_source not in self.source_priority:
            self.source_priority = [self.local_source, *self.source_priority]
        return self

    def layout(self) -> StoreLayout:
        """Resolve the configured paths to an absolute ``StoreLayout``."""
        base = StoreLayout.under(self.store_root)
        return base.model_copy(
            update={
                "objects": Path(self.objects_path).absolute()
                if self.objects_path
                else base.objects,
                "packages": Path(self.packages_path).absolute()
                if self.packages_path
                else base.packages,
                "mappings": Path(self.mappings_path).absolute()
                if self.mappings_path
                else base.mappings,
            }
        )
