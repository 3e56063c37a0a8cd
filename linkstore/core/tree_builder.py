"""Build the Blob/Tree object graph of a directory, bottom-up.

The scanner is pluggable: anything that lists a directory as
``ScanEntry`` rows satisfies the ``Scanner`` protocol. Entries are sorted
by name before encoding, so the traversal order of the scanner never
affects the resulting hash.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from linkstore.core.object_store import ObjectStore
from linkstore.errors import InvalidTreeError
from linkstore.models.objects import EntryKind, ObjectKind, Tree, TreeEntry, is_utf8_name

logger = logging.getLogger(__name__)


class ScanKind(str, Enum):
    FILE = "file"
    SYMLINK = "symlink"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class ScanEntry:
    """One directory entry as reported by a scanner."""

    name: str
    kind: ScanKind
    path: Path
    executable: bool = False


@runtime_checkable
class Scanner(Protocol):
    """Lists the immediate entries of a directory without following symlinks."""

    def scan(self, directory: Path) -> list[ScanEntry]:
        ...


class FilesystemScanner:
    """``os.scandir``-backed scanner.

    Anything other than a regular file, symlink or directory (sockets,
    device nodes, FIFOs) cannot be represented and raises
    ``InvalidTreeError``.
    """

    def scan(self, directory: Path) -> list[ScanEntry]:
        entries: list[ScanEntry] = []
        with os.scandir(directory) as it:
            for dirent in it:
                path = Path(dirent.path)
                if dirent.is_symlink():
                    entries.append(ScanEntry(dirent.name, ScanKind.SYMLINK, path))
                elif dirent.is_dir(follow_symlinks=False):
                    entries.append(ScanEntry(dirent.name, ScanKind.DIRECTORY, path))
                elif dirent.is_file(follow_symlinks=False):
                    mode = dirent.stat(follow_symlinks=False).st_mode
                    entries.append(
                        ScanEntry(
                            dirent.name,
                            ScanKind.FILE,
                            path,
                            executable=bool(mode & stat.S_IXUSR),
                        )
                    )
                else:
                    raise InvalidTreeError(
                        f"{path} is not a file, symlink or directory", path=path
                    )
        return entries


class TreeBuilder:
    """Walks a directory and stores it as Blob and Tree objects.

    Parameters
    ----------
    objects:
        Destination object store.
    scanner:
        Directory scanner; defaults to ``FilesystemScanner``.
    """

    def __init__(self, objects: ObjectStore, scanner: Scanner | None = None) -> None:
        self._objects = objects
        self._scanner = scanner or FilesystemScanner()

    def build_tree(self, root_path: Path) -> str:
        """Store ``root_path`` recursively and return the root Tree hash."""
        root_path = Path(root_path)
        if not root_path.is_dir() or root_path.is_symlink():
            raise InvalidTreeError(f"{root_path} is not a directory", path=root_path)
        tree_hash = self._build(root_path)
        logger.info("built tree %s from %s", tree_hash, root_path)
        return tree_hash

    def _build(self, directory: Path) -> str:
        seen: set[str] = set()
        entries: list[TreeEntry] = []

        for item in self._scanner.scan(directory):
            if item.name in seen:
                raise InvalidTreeError(
                    f"scanner reported duplicate entry {item.name!r} in {directory}",
                    path=directory,
                )
            seen.add(item.name)
            if not is_utf8_name(item.name):
                raise InvalidTreeError(
                    f"entry name {os.fsencode(item.name)!r} in {directory} is not valid UTF-8",
                    path=directory,
                )

            if item.kind is ScanKind.DIRECTORY:
                child = self._build(item.path)
                kind = EntryKind.TREE
            elif item.kind is ScanKind.SYMLINK:
                target = os.readlink(item.path)
                child = self._objects.put(
                    ObjectKind.BLOB, os.fsencode(target), symlink=True
                )
                kind = EntryKind.SYMLINK
            else:
                child = self._objects.put_file(item.path, executable=item.executable)
                kind = EntryKind.EXECUTABLE if item.executable else EntryKind.FILE

            entries.append(TreeEntry(name=item.name, kind=kind, hash=child))

        return self._objects.put_object(Tree(entries=tuple(entries)))


def iter_tree(
    objects: ObjectStore, tree_hash: str, prefix: Path = Path()
) -> list[tuple[Path, TreeEntry]]:
    """Flatten a stored tree into ``(relative path, entry)`` rows, parents first."""
    rows: list[tuple[Path, TreeEntry]] = []
    for entry in objects.get_tree(tree_hash).entries:
        rel = prefix / entry.name
        rows.append((rel, entry))
        if entry.kind is EntryKind.TREE:
            rows.extend(iter_tree(objects, entry.hash, rel))
    return rows
