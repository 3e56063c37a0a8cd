"""Reachability over the object graph.

Edges:
- Package -> referenced packages, root tree
- Tree    -> child trees and blobs
- Builder -> dependency and build-dependency builders, source blobs/trees
- Mapping -> builder, result package

The walk is an iterative depth-first search, so deep trees never hit the
recursion limit, and a back edge raises ``CyclicReferenceError``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from linkstore.core.object_store import ObjectStore
from linkstore.errors import CorruptionError, CyclicReferenceError, NotFoundError
from linkstore.models.objects import ObjectKind

logger = logging.getLogger(__name__)

Node = tuple[ObjectKind, str]

_IN_PROGRESS = 1
_DONE = 2


class Closure:
    """The set of nodes reachable from some roots, with their edges."""

    def __init__(self, roots: list[Node]) -> None:
        self.roots = roots
        self.edges: dict[Node, list[Node]] = {}
        self.labels: dict[Node, str] = {}
        self.missing: set[Node] = set()
        self._postorder: list[Node] = []

    def __contains__(self, node: object) -> bool:
        return node in self.edges

    def __len__(self) -> int:
        return len(self._postorder)

    @property
    def objects(self) -> set[Node]:
        return set(self._postorder)

    def hashes(self, kind: ObjectKind | None = None) -> set[str]:
        return {h for k, h in self._postorder if kind is None or k is kind}

    @property
    def packages(self) -> list[str]:
        """Package hashes, dependencies before dependents."""
        return [h for k, h in self._postorder if k is ObjectKind.PACKAGE]

    def topological_order(self) -> list[Node]:
        """Children before parents."""
        return list(self._postorder)

    def to_dot(self) -> str:
        """Render the graph in Graphviz DOT format."""
        lines = ["digraph closure {", "  rankdir=LR;"]
        for node in self._postorder:
            kind, digest = node
            label = self.labels.get(node, digest[:12])
            lines.append(f'  "{kind.ext}:{digest}" [label="{kind.ext}\\n{label}"];')
        for node in self._postorder:
            for child in self.edges[node]:
                lines.append(
                    f'  "{node[0].ext}:{node[1]}" -> "{child[0].ext}:{child[1]}";'
                )
        lines.append("}")
        return "\n".join(lines) + "\n"


class ClosureWalker:
    """Depth-first walker over stored objects.

    Parameters
    ----------
    objects:
        Store to read objects from.
    missing_ok:
        Record unreadable objects in ``Closure.missing`` instead of
        raising; the garbage collector walks with this set.
    """

    def __init__(self, objects: ObjectStore, *, missing_ok: bool = False) -> None:
        self._objects = objects
        self._missing_ok = missing_ok

    def walk(self, roots: Iterable[Node]) -> Closure:
        roots = list(roots)
        closure = Closure(roots)
        state: dict[Node, int] = {}

        for root in roots:
            if root in state:
                continue
            state[root] = _IN_PROGRESS
            stack = [(root, iter(self._children(root, closure)))]
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    state[node] = _DONE
                    closure._postorder.append(node)
                    continue
                seen = state.get(child)
                if seen == _IN_PROGRESS:
                    raise CyclicReferenceError(
                        f"cycle through {child[0].ext} {child[1]} "
                        f"(reached from {node[0].ext} {node[1]})",
                        hash=child[1],
                    )
                if seen is None:
                    state[child] = _IN_PROGRESS
                    stack.append((child, iter(self._children(child, closure))))
        return closure

    def _children(self, node: Node, closure: Closure) -> list[Node]:
        kind, digest = node
        try:
            children = self._read_children(kind, digest, closure)
        except (NotFoundError, CorruptionError):
            if not self._missing_ok:
                raise
            logger.warning("closure: %s %s is missing or unreadable", kind.ext, digest)
            closure.missing.add(node)
            children = []
        closure.edges[node] = children
        return children

    def _read_children(self, kind: ObjectKind, digest: str, closure: Closure) -> list[Node]:
        if kind is ObjectKind.BLOB:
            return []
        if kind is ObjectKind.TREE:
            return [(e.kind.object_kind, e.hash) for e in self._objects.get_tree(digest).entries]
        if kind is ObjectKind.PACKAGE:
            package = self._objects.get_package(digest)
            closure.labels[(kind, digest)] = package.name
            return [(ObjectKind.PACKAGE, ref) for ref in package.references] + [
                (ObjectKind.TREE, package.tree)
            ]
        if kind is ObjectKind.BUILDER:
            builder = self._objects.get_builder(digest)
            closure.labels[(kind, digest)] = builder.name
            children: list[Node] = [(ObjectKind.BUILDER, d) for d in builder.all_dependencies()]
            for source_name, source_hash in sorted(builder.sources.items()):
                source_kind = self._objects.kind_of(source_hash)
                if source_kind is None:
                    if not self._missing_ok:
                        raise NotFoundError(
                            f"source {source_name!r} of builder {digest} is missing",
                            hash=source_hash,
                        )
                    # The kind of an absent source is unknown; report it as a blob.
                    logger.warning(
                        "closure: source %r of builder %s is missing", source_name, digest
                    )
                    closure.missing.add((ObjectKind.BLOB, source_hash))
                    continue
                children.append((source_kind, source_hash))
            return children
        mapping = self._objects.get_mapping(digest)
        return [(ObjectKind.BUILDER, mapping.builder), (ObjectKind.PACKAGE, mapping.result)]


def compute_closure(
    objects: ObjectStore, package_hashes: Iterable[str], *, missing_ok: bool = False
) -> Closure:
    """Everything reachable from the given packages."""
    return ClosureWalker(objects, missing_ok=missing_ok).walk(
        (ObjectKind.PACKAGE, h) for h in package_hashes
    )


def builder_closure(
    objects: ObjectStore, builder_hashes: Iterable[str], *, missing_ok: bool = False
) -> Closure:
    """Builders reachable through dependency edges, plus their sources."""
    return ClosureWalker(objects, missing_ok=missing_ok).walk(
        (ObjectKind.BUILDER, h) for h in builder_hashes
    )
