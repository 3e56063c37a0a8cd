"""Tests for relocation — rewriters, symlink confinement, reference scanning."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from linkstore.core.hasher import ZERO_HASH
from linkstore.core.relocation import (
    BUILD_DIR_TOKEN,
    ElfRewriter,
    MachORewriter,
    Relocator,
    SelfReferenceRewriter,
    TextRewriter,
    find_offsets,
    is_within,
    padded_out_dir,
    rewrite_c_strings,
    rewriter_for_platform,
    scan_install_references,
)
from linkstore.errors import BuildFailureError, PathEscapeError

OLD = b"/tmp/build-xyz/out_____"
NEW = b"/s/packages/p-0000000"


class TestRewriters:
    def test_text_rewriter_replaces_all(self):
        data = b"a=" + OLD + b"\nb=" + OLD + b"/lib\n"
        assert TextRewriter().rewrite_self_references(data, OLD, NEW) == b"a=" + NEW + b"\nb=" + NEW + b"/lib\n"

    def test_c_string_rewrite_keeps_length_and_offsets(self):
        data = b"\x00head\x00" + OLD + b"/lib:" + OLD + b"/lib64\x00tail\x00"
        out = rewrite_c_strings(data, OLD, NEW)
        assert len(out) == len(data)
        assert out.endswith(b"\x00tail\x00")
        string = out[6:].split(b"\x00")[0]
        assert string == NEW + b"/lib:" + NEW + b"/lib64"

    def test_c_string_rewrite_rejects_longer_replacement(self):
        with pytest.raises(BuildFailureError):
            rewrite_c_strings(b"x" + NEW + b"\x00", NEW, OLD)

    def test_c_string_untouched_without_match(self):
        data = b"\x7fELF nothing here"
        assert rewrite_c_strings(data, OLD, NEW) is data

    def test_elf_rewriter_uses_c_strings_for_elf(self):
        data = b"\x7fELF\x00" + OLD + b"\x00"
        out = ElfRewriter().rewrite_self_references(data, OLD, NEW)
        assert len(out) == len(data)
        assert out.startswith(b"\x7fELF\x00" + NEW + b"\x00")

    def test_elf_rewriter_falls_back_to_text(self):
        data = b"#!/bin/sh\nexec " + OLD + b"/bin/real\n"
        out = ElfRewriter().rewrite_self_references(data, OLD, NEW)
        assert out == b"#!/bin/sh\nexec " + NEW + b"/bin/real\n"

    def test_macho_rewriter_detects_magic(self):
        data = b"\xcf\xfa\xed\xfe" + OLD + b"\x00"
        out = MachORewriter().rewrite_self_references(data, OLD, NEW)
        assert len(out) == len(data)

    def test_rewriter_for_platform(self):
        assert isinstance(rewriter_for_platform("aarch64-darwin"), MachORewriter)
        assert isinstance(rewriter_for_platform("x86_64-linux-gnu"), ElfRewriter)
        assert isinstance(rewriter_for_platform("x86_64-linux-musl"), SelfReferenceRewriter)


class TestHelpers:
    def test_is_within(self):
        assert is_within("/a/b", "/a")
        assert is_within("/a", "/a")
        assert not is_within("/ab", "/a")
        assert not is_within("/", "/a")

    def test_padded_out_dir_at_least_placeholder_length(self, tmp_path):
        placeholder = Path("/x" * 80)
        out = padded_out_dir(tmp_path, placeholder)
        assert out.parent == tmp_path
        assert out.name.startswith("out")
        assert len(str(out)) >= len(str(placeholder))

    def test_padded_out_dir_unpadded_when_long_enough(self, tmp_path):
        assert padded_out_dir(tmp_path, Path("/p")) == tmp_path / "out"

    def test_find_offsets(self):
        assert find_offsets(b"abXXcdXX", b"XX") == (2, 6)
        assert find_offsets(b"none", b"XX") == ()

    def test_scan_install_references(self):
        h = "ab" * 32
        data = f"/store/packages/zlib-1.3-{h}/lib:/p/x-{ZERO_HASH}".encode()
        assert scan_install_references(data) == {h}


class TestRelocator:
    @pytest.fixture
    def env(self, tmp_path):
        packages = tmp_path / "store" / "packages"
        packages.mkdir(parents=True)
        work = tmp_path / "store" / "tmp" / "build-p-abc"
        work.mkdir(parents=True)
        relocator = Relocator(packages, tmp_path / "store", TextRewriter())
        out = padded_out_dir(work, relocator.placeholder_for("p"))
        out.mkdir()
        return relocator, packages, work, out

    def test_embedded_out_path_replaced(self, env):
        relocator, packages, work, out = env
        (out / "config").write_text(f"prefix={out}\n")
        result = relocator.relocate(out, work, "p")
        placeholder = str(relocator.placeholder_for("p"))
        assert (out / "config").read_text() == f"prefix={placeholder}\n"
        assert result.rewritten_files == [Path("config")]
        assert result.self_references == {Path("config"): (7,)}

    def test_work_dir_reference_collapsed(self, env):
        relocator, packages, work, out = env
        (out / "note").write_bytes(str(work / "src" / "a.c").encode())
        relocator.relocate(out, work, "p")
        assert (out / "note").read_bytes() == BUILD_DIR_TOKEN + b"/src/a.c"

    def test_read_only_file_rewritten_mode_kept(self, env):
        relocator, packages, work, out = env
        path = out / "ro"
        path.write_text(str(out))
        path.chmod(0o555)
        relocator.relocate(out, work, "p")
        assert path.stat().st_mode & 0o777 == 0o555
        assert path.read_text() == str(relocator.placeholder_for("p"))

    def test_absolute_link_inside_out_made_relative(self, env):
        relocator, packages, work, out = env
        (out / "lib").mkdir()
        (out / "lib" / "libz.so.1").write_bytes(b"")
        os.symlink(out / "lib" / "libz.so.1", out / "lib" / "libz.so")
        result = relocator.relocate(out, work, "p")
        assert os.readlink(out / "lib" / "libz.so") == "libz.so.1"
        assert result.rewritten_links == [Path("lib/libz.so")]

    def test_relative_link_inside_out_unchanged(self, env):
        relocator, packages, work, out = env
        (out / "a").write_bytes(b"")
        os.symlink("a", out / "b")
        result = relocator.relocate(out, work, "p")
        assert os.readlink(out / "b") == "a"
        assert result.rewritten_links == []

    def test_link_into_other_package(self, env):
        relocator, packages, work, out = env
        dep = packages / f"dep-{'cd' * 32}"
        (dep / "lib").mkdir(parents=True)
        os.symlink(dep / "lib", out / "deplib")
        result = relocator.relocate(out, work, "p")
        assert os.readlink(out / "deplib") == f"../dep-{'cd' * 32}/lib"
        assert result.referenced_hashes == {"cd" * 32}

    def test_link_through_deps_symlink(self, env):
        relocator, packages, work, out = env
        dep = packages / f"dep-{'cd' * 32}"
        dep.mkdir()
        (work / "deps").mkdir()
        os.symlink(dep, work / "deps" / "dep")
        os.symlink(work / "deps" / "dep", out / "d")
        relocator.relocate(out, work, "p")
        assert os.readlink(out / "d") == f"../dep-{'cd' * 32}"

    def test_link_into_work_dir_escapes(self, env):
        relocator, packages, work, out = env
        (work / "src").mkdir()
        os.symlink(work / "src", out / "src")
        with pytest.raises(PathEscapeError):
            relocator.relocate(out, work, "p")

    def test_relative_link_climbing_into_store_escapes(self, env):
        relocator, packages, work, out = env
        os.symlink("../../../objects", out / "objs")
        with pytest.raises(PathEscapeError):
            relocator.relocate(out, work, "p")

    def test_internal_link_through_external_link_escapes(self, env):
        relocator, packages, work, out = env
        os.symlink("/etc", out / "a")
        os.symlink(out / "a" / "passwd", out / "b")
        with pytest.raises(PathEscapeError):
            relocator.relocate(out, work, "p")
        assert os.readlink(out / "b") == str(out / "a" / "passwd")

    def test_chained_internal_links_planned_before_rewrite(self, env):
        relocator, packages, work, out = env
        dep = packages / f"dep-{'cd' * 32}"
        (dep / "lib").mkdir(parents=True)
        os.symlink(dep / "lib", out / "a")
        os.symlink(out / "a" / "libdep.so", out / "b")
        relocator.relocate(out, work, "p")
        assert os.readlink(out / "a") == f"../dep-{'cd' * 32}/lib"
        assert os.readlink(out / "b") == "a/libdep.so"

    def test_external_link_left_alone(self, env):
        relocator, packages, work, out = env
        os.symlink("/usr/lib/libc.so.6", out / "libc")
        relocator.relocate(out, work, "p")
        assert os.readlink(out / "libc") == "/usr/lib/libc.so.6"

    @pytest.mark.parametrize("depth", range(0, 6))
    def test_rewritten_targets_stay_in_packages(self, env, depth):
        relocator, packages, work, out = env
        nested = out.joinpath(*["d"] * depth)
        nested.mkdir(parents=True, exist_ok=True)
        os.symlink(out, nested / "root")
        relocator.relocate(out, work, "p")
        final_link = relocator.placeholder_for("p").joinpath(*["d"] * depth, "root")
        landing = os.path.normpath(os.path.join(final_link.parent, os.readlink(nested / "root")))
        assert is_within(landing, packages)
