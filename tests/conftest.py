"""Shared test fixtures for Linkstore."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from linkstore.config import StoreSettings
from linkstore.core.assembler import PackageAssembler
from linkstore.core.checkout import CheckoutEngine
from linkstore.core.mapping_index import MappingIndex
from linkstore.core.object_store import ObjectStore
from linkstore.core.tree_builder import TreeBuilder
from linkstore.models.objects import Builder
from linkstore.store import Store

PLATFORM = "x86_64-linux-gnu"


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test data."""
    return tmp_path


@pytest.fixture
def settings(tmp_dir: Path) -> StoreSettings:
    """Settings for a store rooted in the temp directory, ignoring any .env."""
    return StoreSettings(_env_file=None, store_root=tmp_dir / "store")


@pytest.fixture
def store(settings: StoreSettings) -> Store:
    """Provide a freshly initialized Store."""
    return Store.init(settings)


@pytest.fixture
def objects(store: Store) -> ObjectStore:
    return store.objects


@pytest.fixture
def tree_builder(store: Store) -> TreeBuilder:
    return store.tree_builder


@pytest.fixture
def assembler(store: Store) -> PackageAssembler:
    return store.assembler


@pytest.fixture
def checkout(store: Store) -> CheckoutEngine:
    return store.checkout


@pytest.fixture
def mapping_index(store: Store) -> MappingIndex:
    return store.mappings


# ---------------------------------------------------------------------------
# Factories — shared across test modules
# ---------------------------------------------------------------------------


@pytest.fixture
def write_tree() -> Callable[[Path, dict[str, Any]], Path]:
    """Factory fixture: materialize a nested dict as a directory.

    Values: ``bytes``/``str`` -> file, ``("exec", bytes)`` -> executable
    file, ``("link", target)`` -> symlink, ``dict`` -> subdirectory.
    """

    def _write(root: Path, spec: dict[str, Any]) -> Path:
        root.mkdir(parents=True, exist_ok=True)
        for name, value in spec.items():
            path = root / name
            if isinstance(value, dict):
                _write(path, value)
            elif isinstance(value, tuple) and value[0] == "link":
                os.symlink(value[1], path)
            elif isinstance(value, tuple) and value[0] == "exec":
                path.write_bytes(value[1])
                path.chmod(0o755)
            elif isinstance(value, bytes):
                path.write_bytes(value)
            else:
                path.write_text(value)
        return root

    return _write


@pytest.fixture
def make_package(
    store: Store, write_tree: Callable[[Path, dict[str, Any]], Path], tmp_dir: Path
) -> Callable[..., str]:
    """Factory fixture: store a directory spec as a package, return its hash."""
    counter = iter(range(1_000_000))

    def _factory(
        name: str = "pkg",
        spec: dict[str, Any] | None = None,
        references: tuple[str, ...] = (),
    ) -> str:
        root = write_tree(tmp_dir / "inputs" / f"{name}-{next(counter)}", spec or {"f": b"x"})
        tree_hash = store.tree_builder.build_tree(root)
        return store.assembler.assemble(name, PLATFORM, references, tree_hash)

    return _factory


@pytest.fixture
def make_builder() -> Callable[..., Builder]:
    """Factory fixture: build a shell-script Builder with sensible defaults."""

    def _factory(script: str = 'echo hello > "$out/hello"', **overrides: Any) -> Builder:
        defaults: dict[str, Any] = {
            "name": "hello",
            "platform": PLATFORM,
            "command": ("/bin/sh", "-c", script),
        }
        defaults.update(overrides)
        return Builder(**defaults)

    return _factory
