"""Linkstore data models — all Pydantic v2, all frozen (immutable)."""

from linkstore.models.builds import (
    VALID_TRANSITIONS,
    BuildRecord,
    BuildState,
    BuildTransition,
)
from linkstore.models.names import (
    ObjectHash,
    PackageName,
    PlatformName,
    host_platform,
    install_name,
    parse_install_name,
)
from linkstore.models.objects import (
    Blob,
    Builder,
    EntryKind,
    Mapping,
    MappingMetadata,
    ObjectKind,
    Package,
    Tree,
    TreeEntry,
)

__all__ = [
    # objects
    "ObjectKind",
    "EntryKind",
    "Blob",
    "TreeEntry",
    "Tree",
    "Package",
    "Builder",
    "Mapping",
    "MappingMetadata",
    # names
    "ObjectHash",
    "PackageName",
    "PlatformName",
    "host_platform",
    "install_name",
    "parse_install_name",
    # builds
    "BuildState",
    "BuildTransition",
    "BuildRecord",
    "VALID_TRANSITIONS",
]
