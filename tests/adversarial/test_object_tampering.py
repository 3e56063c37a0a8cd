"""Adversarial tests — tampered and forged objects.

These tests verify that:
1. Bytes that no longer hash to their address are rejected on read
2. Forged trees with escaping or duplicate names never decode
3. A tampered tree stops a checkout before anything is published
"""

from __future__ import annotations

import json

import pytest

from linkstore.core.object_store import ObjectStore
from linkstore.errors import CorruptionError, InvalidTreeError
from linkstore.models.objects import ObjectKind


def _overwrite(path, data: bytes) -> None:
    path.chmod(0o644)
    path.write_bytes(data)
    path.chmod(0o444)


class TestTamperedObjects:
    def test_blob_bit_flip(self, objects: ObjectStore):
        digest = objects.put(ObjectKind.BLOB, b"original")
        _overwrite(objects.path_for(digest, ObjectKind.BLOB), b"originaL")
        with pytest.raises(CorruptionError):
            objects.get(digest, ObjectKind.BLOB)
        assert not objects.verify(digest, ObjectKind.BLOB)

    def test_exec_bit_flip_changes_identity(self, objects: ObjectStore):
        digest = objects.put(ObjectKind.BLOB, b"#!/bin/sh\n", executable=True)
        path = objects.path_for(digest, ObjectKind.BLOB)
        path.chmod(0o444)
        with pytest.raises(CorruptionError):
            objects.get(digest, ObjectKind.BLOB)

    def test_package_rename_detected(self, objects: ObjectStore, make_package):
        package_hash = make_package("honest")
        path = objects.path_for(package_hash, ObjectKind.PACKAGE)
        data = json.loads(path.read_bytes())
        data["name"] = "evil"
        _overwrite(path, json.dumps(data).encode())
        with pytest.raises(CorruptionError):
            objects.get_package(package_hash)

    def test_unverified_reads_are_opt_in(self, store, objects: ObjectStore):
        digest = objects.put(ObjectKind.BLOB, b"original")
        _overwrite(objects.path_for(digest, ObjectKind.BLOB), b"tampered")
        lax = ObjectStore(objects.root, verify_reads=False)
        assert lax.get(digest, ObjectKind.BLOB) == b"tampered"

    def test_tampered_tree_blocks_checkout(self, checkout, objects: ObjectStore, make_package):
        package_hash = make_package("p", {"a": b"1"})
        tree_hash = objects.get_package(package_hash).tree
        tree_path = objects.path_for(tree_hash, ObjectKind.TREE)
        _overwrite(tree_path, tree_path.read_bytes().replace(b'"a"', b'"b"'))
        with pytest.raises(CorruptionError):
            checkout.realize(package_hash)
        assert not checkout.is_realized(package_hash)
        assert list(checkout.iter_placeholders()) == []


class TestForgedTrees:
    """Well-hashed but malformed trees must not decode."""

    @pytest.mark.parametrize("name", ["..", ".", "a/b", "", "nul\0byte"])
    def test_escaping_names(self, objects: ObjectStore, name):
        forged = {"entries": [{"name": name, "kind": "file", "hash": "ab" * 32}]}
        digest = objects.put(ObjectKind.TREE, json.dumps(forged).encode())
        with pytest.raises(ValueError):
            objects.get_tree(digest)

    def test_duplicate_names(self, objects: ObjectStore):
        entry = {"name": "a", "kind": "file", "hash": "ab" * 32}
        digest = objects.put(ObjectKind.TREE, json.dumps({"entries": [entry, entry]}).encode())
        with pytest.raises(InvalidTreeError):
            objects.get_tree(digest)
