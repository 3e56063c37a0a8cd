"""Mapping index — builder hash <-> result hash, partitioned by trust source.

Canonical Mapping objects live in the object store. For each source the
index keeps two keys per mapping, one under the builder hash and one under
the result hash, both referring to the same ``.map`` object::

    mappings/<source>/builders/<b[:2]>/<b[2:]>/<mapping hash>  -> objects/../<m>.map
    mappings/<source>/results/<r[:2]>/<r[2:]>/<mapping hash>   -> objects/../<m>.map

A pair is created as a matched set or not at all. A half-recorded pair
(one key present, the other missing) is an inconsistency reported by
``check_consistency`` and fixed by ``repair``; it is never silently
tolerated on lookup.
"""

from __future__ import annotations

import logging
import os
import re
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from linkstore.core.hasher import is_hash, normalize_hash
from linkstore.core.object_store import ObjectStore
from linkstore.errors import (
    CorruptionError,
    InvalidNameError,
    MappingConflictError,
    NotFoundError,
)
from linkstore.models.objects import Mapping, ObjectKind

logger = logging.getLogger(__name__)

_SOURCE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]*$")


def validate_source(source: str) -> str:
    """Trust-source identifiers double as directory names."""
    if not _SOURCE_RE.match(source):
        raise InvalidNameError(f"invalid mapping source {source!r}")
    return source


class IndexSide(str, Enum):
    BUILDER = "builders"
    RESULT = "results"


# ---------------------------------------------------------------------------
# Two-key index backends
# ---------------------------------------------------------------------------


@runtime_checkable
class TwoKeyIndex(Protocol):
    """Many-to-many index keyed two ways onto one payload reference.

    ``put`` with an already-present ``(key, payload)`` pair is a no-op.
    """

    def put(self, builder_hash: str, result_hash: str, mapping_hash: str) -> None:
        ...

    def get_by_builder(self, builder_hash: str) -> set[str]:
        ...

    def get_by_result(self, result_hash: str) -> set[str]:
        ...

    def entries(self) -> Iterator[tuple[IndexSide, str, str]]:
        """Yield ``(side, key, mapping hash)`` for every stored key."""
        ...

    def discard(self, side: IndexSide, key: str, mapping_hash: str) -> None:
        ...


class SymlinkTwoKeyIndex:
    """Two-key index stored as relative symlinks into the object store."""

    def __init__(self, source_dir: Path, objects: ObjectStore) -> None:
        self._dir = Path(source_dir)
        self._objects = objects

    @property
    def directory(self) -> Path:
        return self._dir

    def link_path(self, side: IndexSide, key: str, mapping_hash: str) -> Path:
        key = normalize_hash(key)
        return self._dir / side.value / key[:2] / key[2:] / normalize_hash(mapping_hash)

    def put(self, builder_hash: str, result_hash: str, mapping_hash: str) -> None:
        builder_link = self.link_path(IndexSide.BUILDER, builder_hash, mapping_hash)
        result_link = self.link_path(IndexSide.RESULT, result_hash, mapping_hash)

        created = self._link(builder_link, mapping_hash)
        try:
            self._link(result_link, mapping_hash)
        except BaseException:
            if created:
                builder_link.unlink(missing_ok=True)
            raise

    def _link(self, link: Path, mapping_hash: str) -> bool:
        """Create one symlink; ``False`` if an identical one already exists."""
        target = self._objects.path_for(mapping_hash, ObjectKind.MAPPING)
        relative = os.path.relpath(target, link.parent)
        link.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.symlink(relative, link)
        except FileExistsError:
            if self._points_at(link, target):
                return False
            raise MappingConflictError(
                f"mapping link {link} exists but does not point at {target}",
                hash=mapping_hash,
                path=link,
            ) from None
        logger.debug("linked %s -> %s", link, relative)
        return True

    @staticmethod
    def _points_at(link: Path, target: Path) -> bool:
        if not link.is_symlink():
            return False
        current = os.path.normpath(os.path.join(link.parent, os.readlink(link)))
        return current == os.path.normpath(target)

    def _get(self, side: IndexSide, key: str) -> set[str]:
        key = normalize_hash(key)
        bucket = self._dir / side.value / key[:2] / key[2:]
        if not bucket.is_dir():
            return set()
        return {name for name in os.listdir(bucket) if is_hash(name)}

    def get_by_builder(self, builder_hash: str) -> set[str]:
        return self._get(IndexSide.BUILDER, builder_hash)

    def get_by_result(self, result_hash: str) -> set[str]:
        return self._get(IndexSide.RESULT, result_hash)

    def entries(self) -> Iterator[tuple[IndexSide, str, str]]:
        for side in IndexSide:
            side_dir = self._dir / side.value
            if not side_dir.is_dir():
                continue
            for shard in sorted(side_dir.iterdir()):
                for bucket in sorted(shard.iterdir()) if shard.is_dir() else ():
                    for link in sorted(bucket.iterdir()) if bucket.is_dir() else ():
                        key = shard.name + bucket.name
                        if is_hash(key) and is_hash(link.name):
                            yield side, key, link.name

    def discard(self, side: IndexSide, key: str, mapping_hash: str) -> None:
        link = self.link_path(side, key, mapping_hash)
        link.unlink(missing_ok=True)
        for parent in (link.parent, link.parent.parent):
            try:
                parent.rmdir()
            except OSError:
                break


class MemoryTwoKeyIndex:
    """Dict-backed two-key index with the same semantics as the symlink one."""

    def __init__(self) -> None:
        self._by_side: dict[IndexSide, dict[str, set[str]]] = {
            side: defaultdict(set) for side in IndexSide
        }

    def put(self, builder_hash: str, result_hash: str, mapping_hash: str) -> None:
        self._by_side[IndexSide.BUILDER][builder_hash].add(mapping_hash)
        self._by_side[IndexSide.RESULT][result_hash].add(mapping_hash)

    def get_by_builder(self, builder_hash: str) -> set[str]:
        return set(self._by_side[IndexSide.BUILDER].get(builder_hash, ()))

    def get_by_result(self, result_hash: str) -> set[str]:
        return set(self._by_side[IndexSide.RESULT].get(result_hash, ()))

    def entries(self) -> Iterator[tuple[IndexSide, str, str]]:
        for side, keys in self._by_side.items():
            for key, mappings in sorted(keys.items()):
                for mapping_hash in sorted(mappings):
                    yield side, key, mapping_hash

    def discard(self, side: IndexSide, key: str, mapping_hash: str) -> None:
        bucket = self._by_side[side].get(key)
        if bucket is not None:
            bucket.discard(mapping_hash)
            if not bucket:
                del self._by_side[side][key]


# ---------------------------------------------------------------------------
# Resolution strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Resolution:
    """A mapping chosen for build avoidance."""

    source: str
    mapping_hash: str
    mapping: Mapping


@runtime_checkable
class ResolutionStrategy(Protocol):
    """Picks one candidate; ``candidates`` arrive in trust order."""

    def choose(self, candidates: list[Resolution]) -> Resolution | None:
        ...


class FirstByPriority:
    """Most trusted source wins; inside a source the newest mapping wins."""

    def choose(self, candidates: list[Resolution]) -> Resolution | None:
        return candidates[0] if candidates else None


class RequireAgreement:
    """Refuse to resolve when sources disagree on the result."""

    def choose(self, candidates: list[Resolution]) -> Resolution | None:
        results = {c.mapping.result for c in candidates}
        if len(results) > 1:
            logger.warning(
                "sources disagree on builder %s: %d distinct results",
                candidates[0].mapping.builder,
                len(results),
            )
            return None
        return candidates[0] if candidates else None


# ---------------------------------------------------------------------------
# Consistency reporting
# ---------------------------------------------------------------------------


class IssueKind(str, Enum):
    DANGLING = "dangling"  # key refers to a missing or corrupt mapping object
    MISFILED = "misfiled"  # key does not match the mapping's builder/result
    HALF_RECORDED = "half-recorded"  # counterpart key is missing


@dataclass(frozen=True)
class IndexIssue:
    kind: IssueKind
    side: IndexSide
    key: str
    mapping_hash: str


@dataclass
class ConsistencyReport:
    source: str
    checked: int = 0
    issues: list[IndexIssue] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.issues


# ---------------------------------------------------------------------------
# Mapping index
# ---------------------------------------------------------------------------


class MappingIndex:
    """Records and resolves builder -> package mappings per trust source.

    Parameters
    ----------
    objects:
        Object store holding the canonical ``.map`` objects.
    index_factory:
        Returns the two-key index of a source.
    source_priority:
        Trust order consulted by ``resolve``; sources not listed are never
        used for build avoidance.
    strategy:
        Chooses among candidates; defaults to ``FirstByPriority``.
    """

    def __init__(
        self,
        objects: ObjectStore,
        index_factory: Callable[[str], TwoKeyIndex],
        *,
        source_priority: Iterable[str] = ("localhost",),
        strategy: ResolutionStrategy | None = None,
        list_sources: Callable[[], list[str]] | None = None,
    ) -> None:
        self._objects = objects
        self._factory = index_factory
        self._indexes: dict[str, TwoKeyIndex] = {}
        self._list_sources = list_sources
        self.source_priority = [validate_source(s) for s in source_priority]
        self.strategy = strategy or FirstByPriority()

    @classmethod
    def on_disk(
        cls,
        mappings_dir: Path,
        objects: ObjectStore,
        *,
        source_priority: Iterable[str] = ("localhost",),
        strategy: ResolutionStrategy | None = None,
    ) -> MappingIndex:
        mappings_dir = Path(mappings_dir)
        mappings_dir.mkdir(parents=True, exist_ok=True)

        def list_sources() -> list[str]:
            return sorted(p.name for p in mappings_dir.iterdir() if p.is_dir())

        return cls(
            objects,
            lambda source: SymlinkTwoKeyIndex(mappings_dir / source, objects),
            source_priority=source_priority,
            strategy=strategy,
            list_sources=list_sources,
        )

    @classmethod
    def in_memory(
        cls,
        objects: ObjectStore,
        *,
        source_priority: Iterable[str] = ("localhost",),
        strategy: ResolutionStrategy | None = None,
    ) -> MappingIndex:
        return cls(
            objects,
            lambda source: MemoryTwoKeyIndex(),
            source_priority=source_priority,
            strategy=strategy,
        )

    def index_for(self, source: str) -> TwoKeyIndex:
        validate_source(source)
        if source not in self._indexes:
            self._indexes[source] = self._factory(source)
        return self._indexes[source]

    def sources(self) -> list[str]:
        known = set(self._indexes)
        if self._list_sources is not None:
            known.update(self._list_sources())
        return sorted(known)

    # ------------------------------------------------------------------
    # Record and look up
    # ------------------------------------------------------------------

    def record_mapping(self, source: str, mapping: Mapping) -> str:
        """Store the mapping object and both index keys; idempotent."""
        mapping_hash = self._objects.put_object(mapping)
        self.index_for(source).put(mapping.builder, mapping.result, mapping_hash)
        logger.info(
            "recorded mapping %s (%s -> %s) in %s",
            mapping_hash,
            mapping.builder,
            mapping.result,
            source,
        )
        return mapping_hash

    def lookup_by_builder(self, source: str, builder_hash: str) -> set[str]:
        return self.index_for(source).get_by_builder(normalize_hash(builder_hash))

    def lookup_by_result(self, source: str, result_hash: str) -> set[str]:
        return self.index_for(source).get_by_result(normalize_hash(result_hash))

    def results_for_builder(self, source: str, builder_hash: str) -> set[str]:
        return {
            self._objects.get_mapping(m).result
            for m in self.lookup_by_builder(source, builder_hash)
        }

    def builders_for_result(self, source: str, result_hash: str) -> set[str]:
        return {
            self._objects.get_mapping(m).builder
            for m in self.lookup_by_result(source, result_hash)
        }

    def resolve(
        self,
        builder_hash: str,
        *,
        available: Callable[[str], bool] | None = None,
    ) -> Resolution | None:
        """Pick the mapping to trust for ``builder_hash``.

        ``available`` filters candidates by result package hash, e.g. to
        skip mappings whose package is not present locally.
        """
        candidates: list[Resolution] = []
        for source in self.source_priority:
            found = []
            for mapping_hash in self.lookup_by_builder(source, builder_hash):
                try:
                    mapping = self._objects.get_mapping(mapping_hash)
                except (NotFoundError, CorruptionError) as exc:
                    logger.warning("skipping unreadable mapping %s: %s", mapping_hash, exc)
                    continue
                if available is not None and not available(mapping.result):
                    continue
                found.append(Resolution(source, mapping_hash, mapping))
            found.sort(key=lambda r: (r.mapping.metadata.timestamp, r.mapping_hash), reverse=True)
            candidates.extend(found)
        return self.strategy.choose(candidates)

    def all_mapping_hashes(self) -> set[str]:
        """Every mapping hash referenced from any source."""
        return {m for source in self.sources() for _, _, m in self.index_for(source).entries()}

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def check_consistency(self, source: str) -> ConsistencyReport:
        index = self.index_for(source)
        report = ConsistencyReport(source=source)
        for side, key, mapping_hash in list(index.entries()):
            report.checked += 1
            try:
                mapping = self._objects.get_mapping(mapping_hash)
            except (NotFoundError, CorruptionError):
                report.issues.append(IndexIssue(IssueKind.DANGLING, side, key, mapping_hash))
                continue

            if side is IndexSide.BUILDER:
                expected_key, counterpart = mapping.builder, index.get_by_result(mapping.result)
            else:
                expected_key, counterpart = mapping.result, index.get_by_builder(mapping.builder)

            if key != expected_key:
                report.issues.append(IndexIssue(IssueKind.MISFILED, side, key, mapping_hash))
            elif mapping_hash not in counterpart:
                report.issues.append(
                    IndexIssue(IssueKind.HALF_RECORDED, side, key, mapping_hash)
                )
        return report

    def repair(self, source: str) -> ConsistencyReport:
        """Fix every issue ``check_consistency`` finds; returns what was fixed."""
        index = self.index_for(source)
        report = self.check_consistency(source)
        for issue in report.issues:
            if issue.kind is IssueKind.HALF_RECORDED:
                mapping = self._objects.get_mapping(issue.mapping_hash)
                index.put(mapping.builder, mapping.result, issue.mapping_hash)
            else:
                index.discard(issue.side, issue.key, issue.mapping_hash)
            logger.warning(
                "repaired %s %s key %s for mapping %s in %s",
                issue.kind.value,
                issue.side.value,
                issue.key,
                issue.mapping_hash,
                source,
            )
        return report
