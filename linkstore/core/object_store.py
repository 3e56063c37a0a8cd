"""Content-addressed, immutable object store.

Storage layout: {objects}/{hash[0:2]}/{hash[2:]}.{ext}

Objects are written to a temporary file in the objects directory and
renamed into place, so a partial write is never observable under its
final path. Writers racing on the same content agree on the path and the
bytes; whichever rename lands first wins and the others discard their
temporary file.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import stat
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import BinaryIO

from linkstore.core.hasher import (
    blob_flags,
    normalize_hash,
    object_digest,
    object_header,
)
from linkstore.errors import CorruptionError, NotFoundError
from linkstore.models.objects import (
    Blob,
    Builder,
    CanonicalModel,
    EntryKind,
    Mapping,
    ObjectKind,
    Package,
    Tree,
)

logger = logging.getLogger(__name__)

TMP_PREFIX = ".tmp-"

BLOB_MODE = 0o444
EXEC_BLOB_MODE = 0o555
METADATA_MODE = 0o444

_CHUNK_SIZE = 64 * 1024


class ObjectStore:
    """SHA-256 keyed, write-once object store.

    Storing the same content twice is a no-op (idempotent). There is no
    update; removal is reserved for the garbage collector.

    Parameters
    ----------
    objects_dir:
        Root directory for object storage.
    verify_reads:
        Re-hash bytes on every ``get`` and raise ``CorruptionError`` on
        mismatch.
    """

    def __init__(self, objects_dir: Path, *, verify_reads: bool = True) -> None:
        self._root = Path(objects_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self.verify_reads = verify_reads

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, object_hash: str, kind: ObjectKind) -> Path:
        """Layout: {root}/{hash[0:2]}/{hash[2:]}.{ext}"""
        digest = normalize_hash(object_hash)
        return self._root / digest[:2] / f"{digest[2:]}.{kind.ext}"

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def put(
        self,
        kind: ObjectKind,
        payload: bytes,
        *,
        executable: bool = False,
        symlink: bool = False,
    ) -> str:
        """Store canonical bytes and return their hash."""
        flags = blob_flags(executable=executable, symlink=symlink) if kind is ObjectKind.BLOB else "-"
        digest = object_digest(kind.ext, payload, flags)
        target = self.path_for(digest, kind)
        if target.exists():
            return digest

        mode = self._mode_for(kind, executable and not symlink)
        self._persist(target, lambda fh: fh.write(payload), mode)
        logger.debug("stored %s %s (%d bytes)", kind.ext, digest, len(payload))
        return digest

    def put_file(self, source: Path, *, executable: bool = False) -> str:
        """Stream a regular file into the store as a blob."""
        source = Path(source)
        flags = blob_flags(executable=executable)
        expected = source.stat().st_size
        hasher = hashlib.sha256(object_header(ObjectKind.BLOB.ext, expected, flags))

        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=TMP_PREFIX)
        tmp = Path(tmp_name)
        try:
            copied = 0
            with os.fdopen(fd, "wb") as out, source.open("rb") as src:
                while chunk := src.read(_CHUNK_SIZE):
                    hasher.update(chunk)
                    out.write(chunk)
                    copied += len(chunk)
            if copied != expected:
                raise CorruptionError(
                    f"{source} changed size while being stored "
                    f"({expected} -> {copied} bytes)",
                    path=source,
                )
            digest = hasher.hexdigest()
            target = self.path_for(digest, ObjectKind.BLOB)
            self._finalize(tmp, target, self._mode_for(ObjectKind.BLOB, executable))
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            raise
        logger.debug("stored blob %s from %s", digest, source)
        return digest

    def put_blob(self, blob: Blob) -> str:
        return self.put(
            ObjectKind.BLOB,
            blob.content,
            executable=blob.executable,
            symlink=blob.symlink,
        )

    def put_object(self, obj: CanonicalModel) -> str:
        return self.put(obj.object_kind(), obj.canonical_bytes())

    def _persist(self, target: Path, write: Callable[[BinaryIO], object], mode: int) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=TMP_PREFIX)
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                write(fh)
            self._finalize(tmp, target, mode)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            raise

    @staticmethod
    def _finalize(tmp: Path, target: Path, mode: int) -> None:
        os.chmod(tmp, mode)
        os.utime(tmp, (0, 0))
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            tmp.unlink()
            return
        os.replace(tmp, target)

    @staticmethod
    def _mode_for(kind: ObjectKind, executable: bool) -> int:
        if kind is not ObjectKind.BLOB:
            return METADATA_MODE
        return EXEC_BLOB_MODE if executable else BLOB_MODE

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(
        self,
        object_hash: str,
        kind: ObjectKind,
        *,
        flags: str | None = None,
        verify: bool | None = None,
    ) -> bytes:
        """Return the stored bytes of an object.

        ``flags`` pins the blob flag used for the integrity check; when
        omitted it is inferred from the file mode.
        """
        digest = normalize_hash(object_hash)
        path = self.path_for(digest, kind)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(
                f"object {digest}.{kind.ext} not found", hash=digest, path=path
            ) from None

        if self.verify_reads if verify is None else verify:
            candidates = [flags] if flags else self._candidate_flags(kind, path)
            if not any(object_digest(kind.ext, data, f) == digest for f in candidates):
                raise CorruptionError(
                    f"object {digest}.{kind.ext} does not hash to its address",
                    hash=digest,
                    path=path,
                )
        return data

    @staticmethod
    def _candidate_flags(kind: ObjectKind, path: Path) -> list[str]:
        if kind is not ObjectKind.BLOB:
            return ["-"]
        if path.stat().st_mode & stat.S_IXUSR:
            return ["x"]
        return ["-", "l"]

    def get_blob(self, object_hash: str, entry_kind: EntryKind = EntryKind.FILE) -> Blob:
        data = self.get(object_hash, ObjectKind.BLOB, flags=entry_kind.blob_flags)
        return Blob(
            content=data,
            executable=entry_kind is EntryKind.EXECUTABLE,
            symlink=entry_kind is EntryKind.SYMLINK,
        )

    def get_tree(self, object_hash: str) -> Tree:
        return Tree.decode(self.get(object_hash, ObjectKind.TREE))

    def get_package(self, object_hash: str) -> Package:
        return Package.decode(self.get(object_hash, ObjectKind.PACKAGE))

    def get_builder(self, object_hash: str) -> Builder:
        return Builder.decode(self.get(object_hash, ObjectKind.BUILDER))

    def get_mapping(self, object_hash: str) -> Mapping:
        return Mapping.decode(self.get(object_hash, ObjectKind.MAPPING))

    # ------------------------------------------------------------------
    # Check and verify
    # ------------------------------------------------------------------

    def exists(self, object_hash: str, kind: ObjectKind | None = None) -> bool:
        """Check if an object exists; with no ``kind``, any kind matches."""
        if kind is not None:
            return self.path_for(object_hash, kind).exists()
        return self.kind_of(object_hash) is not None

    def kind_of(self, object_hash: str) -> ObjectKind | None:
        for kind in ObjectKind:
            if self.path_for(object_hash, kind).exists():
                return kind
        return None

    def verify(self, object_hash: str, kind: ObjectKind) -> bool:
        """Re-hash stored bytes; ``False`` if missing or corrupt."""
        try:
            self.get(object_hash, kind, verify=True)
        except (NotFoundError, CorruptionError):
            return False
        return True

    def size(self, object_hash: str, kind: ObjectKind) -> int:
        path = self.path_for(object_hash, kind)
        try:
            return path.stat().st_size
        except FileNotFoundError:
            raise NotFoundError(
                f"object {object_hash}.{kind.ext} not found", hash=object_hash, path=path
            ) from None

    # ------------------------------------------------------------------
    # Enumeration and removal (garbage collector only)
    # ------------------------------------------------------------------

    def iter_objects(self) -> Iterator[tuple[str, ObjectKind]]:
        """Yield ``(hash, kind)`` for every canonical object on disk."""
        for shard in sorted(self._root.iterdir()):
            if not shard.is_dir() or len(shard.name) != 2:
                continue
            for path in sorted(shard.iterdir()):
                if path.name.startswith(TMP_PREFIX):
                    continue
                stem, _, ext = path.name.partition(".")
                try:
                    kind = ObjectKind(ext)
                except ValueError:
                    continue
                yield shard.name + stem, kind

    def iter_temp_files(self) -> Iterator[Path]:
        yield from self._root.glob(f"{TMP_PREFIX}*")

    def remove(self, object_hash: str, kind: ObjectKind) -> bool:
        """Unlink the canonical path of an object.

        Hard links elsewhere (for example inside ``packages/``) keep the
        content alive until they are removed too.
        """
        path = self.path_for(object_hash, kind)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("removed %s %s", kind.ext, object_hash)
        return True
