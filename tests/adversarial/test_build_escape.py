"""Adversarial tests — build outputs that try to point outside the package tree.

These tests verify that:
1. Output symlinks into the build directory are rejected
2. Output symlinks climbing into the store internals are rejected
3. A link that escapes only through another output link is rejected
4. A rejected build records nothing and leaves no working directory
"""

from __future__ import annotations

import os

import pytest

from linkstore.errors import PathEscapeError
from linkstore.store import Store


def _assert_nothing_recorded(store: Store) -> None:
    assert store.mappings.all_mapping_hashes() == set()
    assert list(store.layout.tmp.iterdir()) == []
    assert [p for p in store.layout.packages.iterdir()] == []


class TestSymlinkEscapes:
    def test_link_into_sources(self, store: Store, make_builder):
        builder = make_builder('ln -s "$src" "$out/sources"')
        with pytest.raises(PathEscapeError):
            store.executor.build(builder)
        _assert_nothing_recorded(store)

    def test_link_into_work_dir_root(self, store: Store, make_builder):
        builder = make_builder('ln -s "$out/.." "$out/up"')
        with pytest.raises(PathEscapeError):
            store.executor.build(builder)
        _assert_nothing_recorded(store)

    def test_relative_climb_into_objects(self, store: Store, make_builder):
        builder = make_builder('ln -s ../../../objects "$out/objects"')
        with pytest.raises(PathEscapeError):
            store.executor.build(builder)
        _assert_nothing_recorded(store)

    def test_nested_relative_climb(self, store: Store, make_builder):
        builder = make_builder('mkdir -p "$out/a/b" && ln -s ../../../../../mappings "$out/a/b/m"')
        with pytest.raises(PathEscapeError):
            store.executor.build(builder)
        _assert_nothing_recorded(store)

    def test_link_to_system_path_allowed(self, store: Store, make_builder):
        record = store.executor.build(make_builder('ln -s /bin/sh "$out/sh"'))
        path = store.checkout.install_dir(record.package_hash)
        assert os.readlink(path / "sh") == "/bin/sh"

    def test_internal_absolute_link_relocated(self, store: Store, make_builder):
        script = 'mkdir "$out/lib" && echo x > "$out/lib/real" && ln -s "$out/lib/real" "$out/alias"'
        record = store.executor.build(make_builder(script))
        path = store.checkout.install_dir(record.package_hash)
        assert not os.path.isabs(os.readlink(path / "alias"))
        assert (path / "alias").read_text() == "x\n"
        store.checkout.verify(record.package_hash)


class TestChainedLinks:
    """A link inside the output that only escapes through another link."""

    def test_absolute_link_through_external_link(self, store: Store, make_builder):
        builder = make_builder('ln -s /etc "$out/a" && ln -s "$out/a/passwd" "$out/b"')
        with pytest.raises(PathEscapeError, match="through another link"):
            store.executor.build(builder)
        _assert_nothing_recorded(store)

    def test_relative_link_through_external_link(self, store: Store, make_builder):
        builder = make_builder('ln -s /etc "$out/a" && ln -s a/passwd "$out/b"')
        with pytest.raises(PathEscapeError):
            store.executor.build(builder)
        _assert_nothing_recorded(store)

    def test_chain_through_internal_link_allowed(self, store: Store, make_builder):
        script = (
            'mkdir "$out/lib" && echo x > "$out/lib/real" && '
            'ln -s "$out/lib" "$out/l" && ln -s "$out/l/real" "$out/alias"'
        )
        record = store.executor.build(make_builder(script))
        path = store.checkout.install_dir(record.package_hash)
        assert os.readlink(path / "alias") == "l/real"
        assert os.readlink(path / "l") == "lib"
        assert (path / "alias").read_text() == "x\n"
