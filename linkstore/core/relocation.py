"""Post-build relocation of raw build output.

A build writes into a temporary output directory whose path differs on
every run. Before anything is hashed, relocation rewrites every reference
to that directory into the placeholder install path
``<packages>/<name>-000...0``: symlinks get relative targets that stay
inside the packages root, and file contents are rewritten by a
platform-specific ``SelfReferenceRewriter``. The placeholder has the
exact length of the final install path, so checkout can patch the real
hash in place at recorded offsets.
"""

from __future__ import annotations

import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from linkstore.core.checkout import placeholder_install_path
from linkstore.core.hasher import ZERO_HASH
from linkstore.errors import BuildFailureError, PathEscapeError
from linkstore.models.names import platform_os

logger = logging.getLogger(__name__)

# Remaining references to the working directory (sources, scratch space)
# collapse onto this token so they never leak the temporary path.
BUILD_DIR_TOKEN = b"/build"

_INSTALL_NAME_RE = re.compile(rb"[A-Za-z0-9+\-._?=]-([0-9a-f]{64})")

_ELF_MAGIC = b"\x7fELF"
_MACHO_MAGICS = (
    b"\xfe\xed\xfa\xce",
    b"\xce\xfa\xed\xfe",
    b"\xfe\xed\xfa\xcf",
    b"\xcf\xfa\xed\xfe",
    b"\xca\xfe\xba\xbe",
)


# ---------------------------------------------------------------------------
# Rewriters
# ---------------------------------------------------------------------------


@runtime_checkable
class SelfReferenceRewriter(Protocol):
    """Rewrites embedded absolute paths in one blob's bytes."""

    def rewrite_self_references(
        self, data: bytes, old_path: bytes, new_path_hint: bytes
    ) -> bytes:
        ...


class TextRewriter:
    """Literal replacement; the result may change length."""

    def rewrite_self_references(
        self, data: bytes, old_path: bytes, new_path_hint: bytes
    ) -> bytes:
        return data.replace(old_path, new_path_hint)


def rewrite_c_strings(data: bytes, old_path: bytes, new_path: bytes) -> bytes:
    """Replace ``old_path`` inside NUL-terminated strings, keeping offsets.

    Each affected string is rewritten as a whole and padded with NULs to
    its original length, so no other byte in the file moves.
    """
    if old_path not in data:
        return data
    out = bytearray()
    pos = 0
    while (start := data.find(old_path, pos)) != -1:
        end = data.find(b"\0", start)
        if end == -1:
            end = len(data)
        segment = data[start:end]
        replaced = segment.replace(old_path, new_path)
        if len(replaced) > len(segment):
            raise BuildFailureError(
                f"cannot rewrite {old_path!r} in place: replacement is longer"
            )
        out += data[pos:start]
        out += replaced
        out += b"\0" * (len(segment) - len(replaced))
        pos = end
    out += data[pos:]
    return bytes(out)


class _BinaryRewriter:
    """C-string rewriting for one binary format, text rewriting otherwise."""

    def __init__(self) -> None:
        self._text = TextRewriter()

    def matches(self, data: bytes) -> bool:
        raise NotImplementedError

    def rewrite_self_references(
        self, data: bytes, old_path: bytes, new_path_hint: bytes
    ) -> bytes:
        if self.matches(data):
            return rewrite_c_strings(data, old_path, new_path_hint)
        return self._text.rewrite_self_references(data, old_path, new_path_hint)


class ElfRewriter(_BinaryRewriter):
    def matches(self, data: bytes) -> bool:
        return data.startswith(_ELF_MAGIC)


class MachORewriter(_BinaryRewriter):
    def matches(self, data: bytes) -> bool:
        return data[:4] in _MACHO_MAGICS


def rewriter_for_platform(platform: str) -> SelfReferenceRewriter:
    """Select the rewriter for a ``<arch>-<os>`` platform string."""
    if platform_os(platform) == "darwin":
        return MachORewriter()
    return ElfRewriter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_within(path: str | Path, root: str | Path) -> bool:
    path, root = os.fspath(path), os.fspath(root).rstrip(os.sep)
    return path == root or path.startswith(root + os.sep)


def padded_out_dir(work_dir: Path, placeholder: Path) -> Path:
    """Output directory whose path is at least as long as ``placeholder``."""
    base = Path(work_dir) / "out"
    shortfall = len(os.fsencode(str(placeholder))) - len(os.fsencode(str(base)))
    return base.with_name("out" + "_" * max(0, shortfall))


def find_offsets(data: bytes, needle: bytes) -> tuple[int, ...]:
    offsets = []
    pos = data.find(needle)
    while pos != -1:
        offsets.append(pos)
        pos = data.find(needle, pos + len(needle))
    return tuple(offsets)


def scan_install_references(data: bytes) -> set[str]:
    """Package hashes that appear as ``<name>-<hash>`` install names."""
    found = {m.group(1).decode("ascii") for m in _INSTALL_NAME_RE.finditer(data)}
    found.discard(ZERO_HASH)
    return found


# ---------------------------------------------------------------------------
# Relocator
# ---------------------------------------------------------------------------


@dataclass
class RelocationResult:
    """What relocation changed and found in one output directory."""

    rewritten_files: list[Path] = field(default_factory=list)
    rewritten_links: list[Path] = field(default_factory=list)
    self_references: dict[Path, tuple[int, ...]] = field(default_factory=dict)
    referenced_hashes: set[str] = field(default_factory=set)


class Relocator:
    """Rewrites a build's output directory in place.

    Parameters
    ----------
    packages_dir:
        Packages root; every rewritten symlink must stay inside it.
    store_root:
        Store root; links into it outside ``packages_dir`` are escapes.
    rewriter:
        Content rewriter for embedded paths.
    """

    def __init__(
        self,
        packages_dir: Path,
        store_root: Path,
        rewriter: SelfReferenceRewriter | None = None,
    ) -> None:
        self._packages = Path(packages_dir)
        self._store_root = Path(store_root)
        self._rewriter = rewriter or TextRewriter()

    def placeholder_for(self, name: str) -> Path:
        return placeholder_install_path(self._packages, name)

    def relocate(self, out_dir: Path, work_dir: Path, name: str) -> RelocationResult:
        out_dir, work_dir = Path(out_dir), Path(work_dir)
        placeholder = self.placeholder_for(name)
        result = RelocationResult()

        links: list[Path] = []
        files: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(out_dir):
            directory = Path(dirpath)
            for entry in sorted(dirnames + filenames):
                path = directory / entry
                if path.is_symlink():
                    links.append(path)
                elif path.is_file():
                    files.append(path)

        # Every link is planned against the untouched tree, so chains of
        # links resolve through their original targets.
        plans: list[tuple[Path, str, str | None]] = []
        for link in links:
            target = os.readlink(link)
            new_target = self.relocated_target(link, target, out_dir, work_dir, placeholder)
            plans.append((link, target, new_target))
        for path in files:
            self._relocate_file(path, out_dir, work_dir, placeholder, result)
        for link, target, new_target in plans:
            self._relink(link, target, new_target, out_dir, result)

        logger.info(
            "relocated %s: %d files, %d links rewritten",
            name,
            len(result.rewritten_files),
            len(result.rewritten_links),
        )
        return result

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _relocate_file(
        self,
        path: Path,
        out_dir: Path,
        work_dir: Path,
        placeholder: Path,
        result: RelocationResult,
    ) -> None:
        data = path.read_bytes()
        new = self._rewriter.rewrite_self_references(
            data, os.fsencode(str(out_dir)), os.fsencode(str(placeholder))
        )
        new = self._rewriter.rewrite_self_references(
            new, os.fsencode(str(work_dir)), BUILD_DIR_TOKEN
        )
        rel = path.relative_to(out_dir)
        if new != data:
            mode = path.stat().st_mode
            os.chmod(path, stat.S_IMODE(mode) | stat.S_IWUSR)
            path.write_bytes(new)
            os.chmod(path, stat.S_IMODE(mode))
            result.rewritten_files.append(rel)
            logger.debug("rewrote embedded paths in %s", rel)

        offsets = find_offsets(new, os.fsencode(str(placeholder)))
        if offsets:
            result.self_references[rel] = offsets
        result.referenced_hashes |= scan_install_references(new)

    # ------------------------------------------------------------------
    # Symlinks
    # ------------------------------------------------------------------

    def relocated_target(
        self, link: Path, target: str, out_dir: Path, work_dir: Path, placeholder: Path
    ) -> str | None:
        """New target for ``link``, or ``None`` to leave it unchanged.

        Raises ``PathEscapeError`` for targets inside the working directory
        or the store that cannot be expressed inside the packages root, and
        for targets inside the output that resolve outside both the output
        and the packages root through another link. Resolution runs on the
        tree before any link is rewritten.
        """
        final_link = placeholder / link.relative_to(out_dir)
        lexical = os.path.normpath(os.path.join(link.parent, target))

        if is_within(lexical, out_dir):
            canonical = os.path.realpath(lexical)
            if not (
                is_within(canonical, os.path.realpath(out_dir))
                or is_within(canonical, os.path.realpath(self._packages))
            ):
                raise PathEscapeError(
                    f"symlink {link} -> {target} resolves to {canonical} "
                    f"through another link",
                    path=link,
                )
            new_abs = os.path.join(placeholder, os.path.relpath(lexical, out_dir))
        else:
            resolved = os.path.realpath(lexical)
            packages = os.path.realpath(self._packages)
            if is_within(resolved, packages):
                new_abs = os.path.join(
                    self._packages, os.path.relpath(resolved, packages)
                )
            elif is_within(resolved, os.path.realpath(work_dir)) or is_within(
                resolved, os.path.realpath(self._store_root)
            ) or is_within(lexical, work_dir):
                raise PathEscapeError(
                    f"symlink {link} -> {target} points into the build or store "
                    f"outside the packages root",
                    path=link,
                )
            else:
                return None

        new_target = os.path.relpath(new_abs, final_link.parent)
        landing = os.path.normpath(os.path.join(final_link.parent, new_target))
        if not is_within(landing, self._packages) or landing == os.fspath(self._packages):
            raise PathEscapeError(
                f"relocated symlink {link} -> {new_target} leaves the packages root",
                path=link,
            )
        return new_target

    def _relink(
        self,
        link: Path,
        target: str,
        new_target: str | None,
        out_dir: Path,
        result: RelocationResult,
    ) -> None:
        if new_target is not None and new_target != target:
            link.unlink()
            os.symlink(new_target, link)
            result.rewritten_links.append(link.relative_to(out_dir))
            logger.debug("relinked %s: %s -> %s", link, target, new_target)
        result.referenced_hashes |= scan_install_references(
            os.fsencode(new_target if new_target is not None else target)
        )
