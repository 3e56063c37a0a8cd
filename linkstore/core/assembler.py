"""Wrap a root tree plus metadata into a stored Package object."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from linkstore.core.object_store import ObjectStore
from linkstore.models.objects import Package

logger = logging.getLogger(__name__)


class PackageAssembler:
    """Pure construction step: no closure computation, no checkout.

    ``reference_hashes`` are recorded as given (deduplicated); callers
    supply the direct runtime dependencies they intend to record.
    """

    def __init__(self, objects: ObjectStore) -> None:
        self._objects = objects

    def assemble(
        self,
        name: str,
        platform: str,
        reference_hashes: Iterable[str],
        root_tree_hash: str,
        *,
        self_references: Mapping[str, Iterable[int]] | None = None,
    ) -> str:
        package = Package(
            name=name,
            platform=platform,
            references=tuple(reference_hashes),
            self_references={k: tuple(v) for k, v in (self_references or {}).items()},
            tree=root_tree_hash,
        )
        package_hash = self._objects.put_object(package)
        logger.info("assembled package %s-%s", name, package_hash)
        return package_hash
