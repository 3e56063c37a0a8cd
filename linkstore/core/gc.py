"""Garbage collector — mark from roots, unlink everything else.

Roots are every mapping referenced from ``mappings/``, the configured
pinned packages and any pins passed by the caller. The live set is the
closure of each rooted package, the builder closure of each rooted
mapping, and the mapping objects themselves.

Unlinking a canonical object path is safe while a checkout still holds a
hard link to it: the content lives on until its last link is removed.
Checkouts of packages that are not live are pruned in the same pass.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from linkstore.core.checkout import CheckoutEngine
from linkstore.core.closure import ClosureWalker, Node
from linkstore.core.hasher import is_hash, normalize_hash
from linkstore.core.mapping_index import MappingIndex
from linkstore.core.object_store import ObjectStore
from linkstore.errors import CorruptionError, NotFoundError
from linkstore.models.objects import ObjectKind

logger = logging.getLogger(__name__)

STALE_TEMP_SECONDS = 3600.0


@dataclass
class GcReport:
    """What one collection found and removed (or would remove, on a dry run)."""

    dry_run: bool = False
    roots: int = 0
    live: int = 0
    removed_objects: list[tuple[str, ObjectKind]] = field(default_factory=list)
    pruned_packages: list[Path] = field(default_factory=list)
    removed_temp_files: list[Path] = field(default_factory=list)
    missing: list[tuple[str, ObjectKind]] = field(default_factory=list)


class GarbageCollector:
    """Mark-and-sweep over one store.

    Parameters
    ----------
    objects, checkout, mappings:
        Store components to collect.
    pinned:
        Package names or hashes that are always roots.
    """

    def __init__(
        self,
        objects: ObjectStore,
        checkout: CheckoutEngine,
        mappings: MappingIndex,
        *,
        pinned: Iterable[str] = (),
    ) -> None:
        self._objects = objects
        self._checkout = checkout
        self._mappings = mappings
        self.pinned = list(pinned)

    # ------------------------------------------------------------------
    # Mark
    # ------------------------------------------------------------------

    def roots(self, extra_pins: Iterable[str] = ()) -> list[Node]:
        roots: list[Node] = [
            (ObjectKind.MAPPING, m) for m in sorted(self._mappings.all_mapping_hashes())
        ]
        for package_hash in sorted(self._resolve_pins([*self.pinned, *extra_pins])):
            roots.append((ObjectKind.PACKAGE, package_hash))
        return roots

    def _resolve_pins(self, pins: list[str]) -> set[str]:
        """Pins are package hashes or names; a name pins every package of that name."""
        hashes: set[str] = set()
        names: set[str] = set()
        for pin in pins:
            digest = pin.removeprefix("sha256:")
            if is_hash(digest):
                hashes.add(normalize_hash(digest))
            else:
                names.add(pin)
        if names:
            for package_hash, kind in self._objects.iter_objects():
                if kind is not ObjectKind.PACKAGE:
                    continue
                try:
                    name = self._objects.get_package(package_hash).name
                except (NotFoundError, CorruptionError) as exc:
                    logger.warning("gc: skipping unreadable package %s: %s", package_hash, exc)
                    continue
                if name in names:
                    hashes.add(package_hash)
            for name, package_hash, _ in self._checkout.iter_realized():
                if name in names:
                    hashes.add(package_hash)
        return hashes

    def mark(self, extra_pins: Iterable[str] = ()) -> tuple[set[Node], list[Node], set[Node]]:
        """Return ``(live set, roots, missing)``."""
        roots = self.roots(extra_pins)
        closure = ClosureWalker(self._objects, missing_ok=True).walk(roots)
        return closure.objects, roots, closure.missing

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def collect(self, *, dry_run: bool = False, extra_pins: Iterable[str] = ()) -> GcReport:
        live, roots, missing = self.mark(extra_pins)
        report = GcReport(dry_run=dry_run, roots=len(roots), live=len(live))
        report.missing = sorted((h, k) for k, h in missing)

        for digest, kind in list(self._objects.iter_objects()):
            if (kind, digest) in live:
                continue
            if dry_run or self._objects.remove(digest, kind):
                report.removed_objects.append((digest, kind))

        live_packages = {h for k, h in live if k is ObjectKind.PACKAGE}
        for _, package_hash, path in list(self._checkout.iter_realized()):
            if package_hash in live_packages:
                continue
            if not dry_run:
                self._checkout.remove(path)
            report.pruned_packages.append(path)

        cutoff = time.time() - STALE_TEMP_SECONDS
        stale = [
            p
            for p in [*self._objects.iter_temp_files(), *self._checkout.iter_placeholders()]
            if p.lstat().st_mtime < cutoff
        ]
        for path in stale:
            if not dry_run:
                if path.is_dir() and not path.is_symlink():
                    self._checkout.remove(path)
                else:
                    path.unlink(missing_ok=True)
            report.removed_temp_files.append(path)

        if not dry_run:
            self._remove_empty_shards()

        logger.info(
            "gc%s: %d roots, %d live, %d objects removed, %d checkouts pruned, "
            "%d temp files removed",
            " (dry run)" if dry_run else "",
            report.roots,
            report.live,
            len(report.removed_objects),
            len(report.pruned_packages),
            len(report.removed_temp_files),
        )
        return report

    def _remove_empty_shards(self) -> None:
        for shard in self._objects.root.iterdir():
            if shard.is_dir() and len(shard.name) == 2 and not any(shard.iterdir()):
                shard.rmdir()
                logger.debug("removed empty shard %s", shard.name)
