"""Checkout engine — realize Package objects as hard-linked directories.

A package is first constructed under a placeholder name inside the
packages directory and then renamed to ``<name>-<hash>`` in one step, so
its final name is only ever observable fully populated. Blobs are hard
links to the object files; symlink blobs become real symlinks; blobs
carrying self-references are copied and patched with the real install
path, which has exactly the length of the zero-hash placeholder.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
import tempfile
from collections.abc import Iterator
from pathlib import Path

from linkstore.config import LinkFallback
from linkstore.core.hasher import ZERO_HASH, file_digest, object_digest
from linkstore.core.object_store import ObjectStore
from linkstore.errors import (
    ChecksumMismatchError,
    CrossDeviceLinkError,
    InvalidNameError,
    NotFoundError,
)
from linkstore.models.names import install_name, parse_install_name
from linkstore.models.objects import EntryKind, ObjectKind, Package, TreeEntry

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = ".tmp-"


def placeholder_install_path(packages_dir: Path, name: str) -> Path:
    """Install path with the hash component zeroed, used before the hash is known."""
    return Path(packages_dir) / f"{name}-{ZERO_HASH}"


class CheckoutEngine:
    """Materializes packages and trees from the object store.

    Parameters
    ----------
    objects:
        Source object store.
    packages_dir:
        Directory receiving ``<name>-<hash>`` checkouts. Must live on the
        same filesystem as the object store unless ``link_fallback`` is
        ``COPY``.
    link_fallback:
        ``FAIL`` raises ``CrossDeviceLinkError`` when a hard link would
        cross filesystems; ``COPY`` copies the blob instead.
    verify_existing:
        Walk and re-hash an existing checkout instead of trusting its
        hash-qualified name.
    """

    def __init__(
        self,
        objects: ObjectStore,
        packages_dir: Path,
        *,
        link_fallback: LinkFallback = LinkFallback.FAIL,
        verify_existing: bool = False,
    ) -> None:
        self._objects = objects
        self._packages = Path(packages_dir)
        self._packages.mkdir(parents=True, exist_ok=True)
        self.link_fallback = link_fallback
        self.verify_existing = verify_existing

    @property
    def packages_dir(self) -> Path:
        return self._packages

    def install_dir(self, package_hash: str, package: Package | None = None) -> Path:
        package = package or self._objects.get_package(package_hash)
        return self._packages / install_name(package.name, package_hash)

    # ------------------------------------------------------------------
    # Realize
    # ------------------------------------------------------------------

    def realize(self, package_hash: str) -> Path:
        """Check out a package; a no-op if it is already realized."""
        package = self._objects.get_package(package_hash)
        target = self.install_dir(package_hash, package)

        if target.exists():
            if self.verify_existing:
                self.verify(package_hash)
            logger.debug("package %s already realized", target.name)
            return target

        placeholder = Path(
            tempfile.mkdtemp(dir=self._packages, prefix=f"{PLACEHOLDER_PREFIX}{package.name}-")
        )
        try:
            os.chmod(placeholder, 0o755)
            self._construct(package.tree, placeholder, package=package, final_root=target)
            try:
                os.rename(placeholder, target)
            except OSError as exc:
                if exc.errno in (errno.EEXIST, errno.ENOTEMPTY) and target.is_dir():
                    # Another process realized the same package first.
                    shutil.rmtree(placeholder)
                    return target
                raise
        except BaseException:
            shutil.rmtree(placeholder, ignore_errors=True)
            raise

        logger.info("realized package %s", target.name)
        return target

    def materialize(self, tree_hash: str, dest: Path, *, copy: bool = False) -> Path:
        """Write a bare tree to ``dest`` (created if missing).

        ``copy=True`` writes private copies, for directories a build may
        modify in place.
        """
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        self._construct(tree_hash, dest, copy=copy)
        return dest

    def _construct(
        self,
        tree_hash: str,
        directory: Path,
        *,
        package: Package | None = None,
        final_root: Path | None = None,
        copy: bool = False,
    ) -> None:
        for entry in self._objects.get_tree(tree_hash).entries:
            dst = directory / entry.name
            if entry.kind is EntryKind.TREE:
                dst.mkdir()
                self._construct(
                    entry.hash, dst, package=package, final_root=final_root, copy=copy
                )
            elif entry.kind is EntryKind.SYMLINK:
                target = self._objects.get(entry.hash, ObjectKind.BLOB, flags="l")
                os.symlink(os.fsdecode(target), dst)
                logger.debug("created symlink %s -> %s", dst, os.fsdecode(target))
            elif package is not None and entry.hash in package.self_references:
                self._copy_patched(entry, dst, package, final_root)
            else:
                self._place_blob(entry, dst, copy=copy)

    def _place_blob(self, entry: TreeEntry, dst: Path, *, copy: bool) -> None:
        src = self._objects.path_for(entry.hash, ObjectKind.BLOB)
        if not src.exists():
            raise NotFoundError(
                f"blob object {entry.hash} not found for {dst}", hash=entry.hash, path=src
            )
        if copy:
            shutil.copy2(src, dst)
            os.chmod(dst, 0o755 if entry.kind is EntryKind.EXECUTABLE else 0o644)
            return
        try:
            os.link(src, dst)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise
            if self.link_fallback is not LinkFallback.COPY:
                raise CrossDeviceLinkError(
                    f"cannot hard-link blob {entry.hash} into {dst}: "
                    f"object store and destination are on different filesystems",
                    hash=entry.hash,
                    path=dst,
                ) from exc
            shutil.copy2(src, dst)
            logger.debug("copied blob %s -> %s (cross-device)", src, dst)
            return
        logger.debug("hard-linked blob %s -> %s", src, dst)

    def _copy_patched(
        self, entry: TreeEntry, dst: Path, package: Package, final_root: Path | None
    ) -> None:
        placeholder = os.fsencode(str(placeholder_install_path(self._packages, package.name)))
        real = os.fsencode(str(final_root))
        if len(real) != len(placeholder):
            raise InvalidNameError(
                f"install path {final_root} does not match placeholder length"
            )
        data = bytearray(self._objects.get(entry.hash, ObjectKind.BLOB, flags=entry.kind.blob_flags))
        for offset in package.self_references[entry.hash]:
            data[offset : offset + len(real)] = real
        dst.write_bytes(bytes(data))
        os.chmod(dst, 0o555 if entry.kind is EntryKind.EXECUTABLE else 0o444)
        os.utime(dst, (0, 0))
        logger.debug("patched self-references in %s", dst)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, package_hash: str, path: Path | None = None) -> None:
        """Walk a checkout and compare it against its package.

        Raises ``ChecksumMismatchError`` naming the first differing path.
        """
        package = self._objects.get_package(package_hash)
        root = Path(path) if path else self.install_dir(package_hash, package)
        if not root.is_dir():
            raise NotFoundError(
                f"package {package_hash} is not realized at {root}",
                hash=package_hash,
                path=root,
            )
        placeholder = os.fsencode(str(placeholder_install_path(self._packages, package.name)))
        self._verify_dir(package.tree, root, package, package_hash, placeholder)

    def _verify_dir(
        self,
        tree_hash: str,
        directory: Path,
        package: Package,
        package_hash: str,
        placeholder: bytes,
    ) -> None:
        def mismatch(path: Path, why: str) -> ChecksumMismatchError:
            return ChecksumMismatchError(
                f"checkout of {package_hash} differs at {path}: {why}",
                hash=package_hash,
                path=path,
            )

        tree = self._objects.get_tree(tree_hash)
        expected = {e.name for e in tree.entries}
        actual = set(os.listdir(directory))
        if extra := sorted(actual - expected):
            raise mismatch(directory / extra[0], "unexpected entry")

        for entry in tree.entries:
            path = directory / entry.name
            if entry.name not in actual:
                raise mismatch(path, "missing entry")
            st = path.lstat()
            if entry.kind is EntryKind.TREE:
                if not stat.S_ISDIR(st.st_mode):
                    raise mismatch(path, "expected a directory")
                self._verify_dir(entry.hash, path, package, package_hash, placeholder)
            elif entry.kind is EntryKind.SYMLINK:
                if not stat.S_ISLNK(st.st_mode):
                    raise mismatch(path, "expected a symlink")
                if object_digest("blob", os.fsencode(os.readlink(path)), "l") != entry.hash:
                    raise mismatch(path, "symlink target changed")
            else:
                if not stat.S_ISREG(st.st_mode):
                    raise mismatch(path, "expected a regular file")
                is_exec = bool(st.st_mode & stat.S_IXUSR)
                if is_exec != (entry.kind is EntryKind.EXECUTABLE):
                    raise mismatch(path, "executable bit changed")
                if not self._blob_matches(entry, path, package, placeholder):
                    raise mismatch(path, "content changed")

    def _blob_matches(
        self, entry: TreeEntry, path: Path, package: Package, placeholder: bytes
    ) -> bool:
        flags = entry.kind.blob_flags
        offsets = package.self_references.get(entry.hash)
        if offsets:
            data = bytearray(path.read_bytes())
            for offset in offsets:
                data[offset : offset + len(placeholder)] = placeholder
            return object_digest("blob", bytes(data), flags) == entry.hash
        # Always re-hash: an in-place edit through a hard link changes the object too.
        return file_digest("blob", path, flags) == entry.hash

    # ------------------------------------------------------------------
    # Enumeration and removal
    # ------------------------------------------------------------------

    def is_realized(self, package_hash: str) -> bool:
        return self.install_dir(package_hash).is_dir()

    def iter_realized(self) -> Iterator[tuple[str, str, Path]]:
        """Yield ``(name, package hash, path)`` for every checkout."""
        for path in sorted(self._packages.iterdir()):
            if path.name.startswith(PLACEHOLDER_PREFIX) or not path.is_dir():
                continue
            try:
                name, package_hash = parse_install_name(path.name)
            except InvalidNameError:
                logger.warning("ignoring unrecognized entry in packages/: %s", path.name)
                continue
            yield name, package_hash, path

    def iter_placeholders(self) -> Iterator[Path]:
        yield from self._packages.glob(f"{PLACEHOLDER_PREFIX}*")

    def remove(self, path: Path) -> None:
        """Delete a checkout directory; object files are untouched."""
        shutil.rmtree(path)
        logger.info("removed checkout %s", Path(path).name)
