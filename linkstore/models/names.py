"""Validated names: package names, install directory names and platform strings."""

from __future__ import annotations

import platform as _platform
import sys
from typing import Annotated

from pydantic import AfterValidator

from linkstore.core.hasher import HASH_LENGTH, normalize_hash
from linkstore.errors import InvalidNameError

# ext4 caps file names at 255 bytes; leave room for "-" plus the hash.
MAX_PACKAGE_NAME = 256 - 1 - HASH_LENGTH

_NAME_EXTRA_CHARS = set("+-._?=")

SUPPORTED_ARCHES = ("i686", "x86_64", "aarch64")
SUPPORTED_OSES = ("darwin", "linux-gnu", "linux-musl")

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "i386": "i686",
    "i686": "i686",
    "arm64": "aarch64",
    "aarch64": "aarch64",
}


def is_package_name_char(c: str) -> bool:
    return (c.isascii() and c.isalnum()) or c in _NAME_EXTRA_CHARS


def validate_package_name(name: str) -> str:
    if not name:
        raise InvalidNameError("package name cannot be empty")
    if len(name) > MAX_PACKAGE_NAME:
        raise InvalidNameError(
            f"package name must be at most {MAX_PACKAGE_NAME} characters: {name!r}"
        )
    if name.startswith("."):
        raise InvalidNameError(f"package name cannot start with '.': {name!r}")
    if not all(is_package_name_char(c) for c in name):
        raise InvalidNameError(
            f"package name {name!r} contains at least one invalid character"
        )
    return name


def validate_platform(value: str) -> str:
    """Accept ``<arch>-<os>`` where os is ``darwin`` or ``linux-<libc>``."""
    arch, sep, os_part = value.partition("-")
    if not sep:
        raise InvalidNameError(f"expected '<arch>-<os>' platform string, got {value!r}")
    if arch not in SUPPORTED_ARCHES:
        raise InvalidNameError(f"unsupported CPU architecture {arch!r}")
    if os_part not in SUPPORTED_OSES:
        raise InvalidNameError(f"unsupported operating system {os_part!r}")
    return value


def host_platform() -> str:
    """Return the platform string of the running host."""
    machine = _platform.machine().lower()
    arch = _ARCH_ALIASES.get(machine)
    if arch is None:
        raise InvalidNameError(f"unsupported host architecture {machine!r}")
    if sys.platform == "darwin":
        return f"{arch}-darwin"
    if sys.platform.startswith("linux"):
        libc, _ = _platform.libc_ver()
        env = "gnu" if libc == "glibc" else "musl"
        return f"{arch}-linux-{env}"
    raise InvalidNameError(f"unsupported host operating system {sys.platform!r}")


def platform_os(value: str) -> str:
    """``x86_64-linux-gnu`` -> ``linux``; ``aarch64-darwin`` -> ``darwin``."""
    return value.split("-")[1]


def install_name(name: str, package_hash: str) -> str:
    """Directory name of a realized package: ``<name>-<package hash>``."""
    return f"{validate_package_name(name)}-{normalize_hash(package_hash)}"


def parse_install_name(dirname: str) -> tuple[str, str]:
    """Split an install name back into ``(name, hash)``."""
    name, sep, digest = dirname.rpartition("-")
    if not sep:
        raise InvalidNameError(f"not an install name: {dirname!r}")
    return validate_package_name(name), normalize_hash(digest)


PackageName = Annotated[str, AfterValidator(validate_package_name)]
PlatformName = Annotated[str, AfterValidator(validate_platform)]
ObjectHash = Annotated[str, AfterValidator(normalize_hash)]
