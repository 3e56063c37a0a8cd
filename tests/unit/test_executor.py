"""Tests for BuildExecutor — state machine, sandbox contract, recording."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from linkstore.core.executor import BuildRun, Sandbox, SubprocessSandbox
from linkstore.errors import BuildFailureError, InvalidTransitionError, NotFoundError
from linkstore.models.builds import VALID_TRANSITIONS, BuildRecord, BuildState
from linkstore.models.objects import ObjectKind
from linkstore.store import Store


class RecordingSandbox:
    """Writes fixed output instead of running anything."""

    def __init__(self, files: dict[str, bytes] | None = None, exit_code: int = 0) -> None:
        self.files = files or {"result": b"ok"}
        self.exit_code = exit_code
        self.calls: list[dict] = []

    def run(self, argv, *, cwd, env, timeout, log_path) -> int:
        self.calls.append({"argv": list(argv), "cwd": cwd, "env": dict(env)})
        out = Path(env["out"])
        for name, data in self.files.items():
            (out / name).write_bytes(data)
        log_path.write_text("recorded\n")
        return self.exit_code


class TestBuildStateMachine:
    def test_happy_path(self):
        run = BuildRun("ab" * 32, "p")
        for state in (BuildState.RUNNING, BuildState.RELOCATING, BuildState.HASHED, BuildState.RECORDED):
            run.transition(state)
        assert run.state is BuildState.RECORDED
        assert [t.to_state for t in run.transitions][-1] is BuildState.RECORDED

    @pytest.mark.parametrize("state", [BuildState.PREPARED, BuildState.RUNNING, BuildState.RELOCATING, BuildState.HASHED])
    def test_failure_allowed_before_recorded(self, state):
        assert BuildState.FAILED in VALID_TRANSITIONS[state]

    def test_terminal_states(self):
        assert VALID_TRANSITIONS[BuildState.RECORDED] == set()
        assert VALID_TRANSITIONS[BuildState.FAILED] == set()

    def test_cannot_skip_relocation(self):
        run = BuildRun("ab" * 32, "p")
        run.transition(BuildState.RUNNING)
        with pytest.raises(InvalidTransitionError):
            run.transition(BuildState.HASHED)

    def test_cannot_leave_failed(self):
        run = BuildRun("ab" * 32, "p")
        run.transition(BuildState.FAILED, reason="boom")
        assert run.transitions[-1].reason == "boom"
        with pytest.raises(InvalidTransitionError):
            run.transition(BuildState.RUNNING)


class TestSubprocessSandbox:
    def test_exit_code_and_log(self, tmp_dir):
        log = tmp_dir / "log"
        code = SubprocessSandbox().run(
            ["/bin/sh", "-c", "echo out; echo err >&2; exit 3"],
            cwd=tmp_dir,
            env={"PATH": os.defpath},
            timeout=10,
            log_path=log,
        )
        assert code == 3
        assert log.read_text().split() == ["out", "err"]

    def test_timeout_is_build_failure(self, tmp_dir):
        with pytest.raises(BuildFailureError, match="timed out"):
            SubprocessSandbox().run(
                ["/bin/sh", "-c", "sleep 5"],
                cwd=tmp_dir,
                env={"PATH": os.defpath},
                timeout=0.2,
                log_path=tmp_dir / "log",
            )

    def test_missing_command(self, tmp_dir):
        with pytest.raises(BuildFailureError, match="not found"):
            SubprocessSandbox().run(
                ["/nonexistent/cc"], cwd=tmp_dir, env={}, timeout=None, log_path=tmp_dir / "log"
            )

    def test_protocol(self):
        assert isinstance(SubprocessSandbox(), Sandbox)
        assert isinstance(RecordingSandbox(), Sandbox)


class TestExecutor:
    @pytest.fixture
    def sandbox(self) -> RecordingSandbox:
        return RecordingSandbox()

    @pytest.fixture
    def sandboxed(self, settings, sandbox) -> Store:
        return Store.init(settings, sandbox=sandbox)

    def test_records_mapping(self, sandboxed: Store, make_builder):
        record = sandboxed.executor.build(make_builder())
        assert record.state is BuildState.RECORDED
        assert not record.reused
        assert sandboxed.mappings.results_for_builder("localhost", record.builder_hash) == {record.package_hash}
        assert sandboxed.checkout.is_realized(record.package_hash)
        mapping = sandboxed.objects.get_mapping(record.mapping_hash)
        assert mapping.metadata.duration >= 0

    def test_builder_object_stored(self, sandboxed: Store, make_builder):
        builder = make_builder()
        record = sandboxed.executor.build(builder)
        assert sandboxed.objects.get_builder(record.builder_hash) == builder

    def test_environment(self, sandboxed: Store, sandbox: RecordingSandbox, make_builder):
        sandboxed.executor.build(make_builder(env={"CFLAGS": "-O2"}))
        env = sandbox.calls[0]["env"]
        assert env["CFLAGS"] == "-O2"
        assert env["LINKSTORE_PLATFORM"] == "x86_64-linux-gnu"
        assert Path(env["src"]).name == "src"
        assert Path(env["deps"]).name == "deps"
        assert Path(env["out"]).name.startswith("out")
        assert "PATH" in env

    def test_reuses_existing_mapping(self, sandboxed: Store, sandbox: RecordingSandbox, make_builder):
        first = sandboxed.executor.build(make_builder())
        second = sandboxed.executor.build(make_builder())
        assert second.reused
        assert second.package_hash == first.package_hash
        assert len(sandbox.calls) == 1

    def test_force_rebuilds(self, sandboxed: Store, sandbox: RecordingSandbox, make_builder):
        first = sandboxed.executor.execute(make_builder())
        second = sandboxed.executor.execute(make_builder(), force=True)
        assert first == second
        assert len(sandbox.calls) == 2

    def test_execute_accepts_builder_hash(self, sandboxed: Store, make_builder):
        builder_hash = sandboxed.objects.put_object(make_builder())
        package_hash = sandboxed.executor.execute(builder_hash)
        assert sandboxed.objects.exists(package_hash, ObjectKind.PACKAGE)

    def test_execute_requires_a_package(self, sandboxed: Store, monkeypatch):
        empty = BuildRecord(builder_hash="ab" * 32, name="hello", state=BuildState.FAILED)
        monkeypatch.setattr(sandboxed.executor, "build", lambda builder, force=False: empty)
        with pytest.raises(BuildFailureError, match="without a package") as excinfo:
            sandboxed.executor.execute("ab" * 32)
        assert excinfo.value.hash == "ab" * 32

    def test_nonzero_exit(self, settings, make_builder):
        store = Store.init(settings, sandbox=RecordingSandbox(exit_code=2))
        with pytest.raises(BuildFailureError) as excinfo:
            store.executor.build(make_builder())
        assert excinfo.value.exit_code == 2
        assert "recorded" in str(excinfo.value)
        assert store.mappings.all_mapping_hashes() == set()
        assert list(store.layout.tmp.iterdir()) == []

    def test_nothing_written_on_failure(self, settings, make_builder):
        store = Store.init(settings, sandbox=RecordingSandbox(files={"x": b"never stored"}, exit_code=1))
        with pytest.raises(BuildFailureError):
            store.executor.build(make_builder())
        kinds = {k for _, k in store.objects.iter_objects()}
        assert kinds == {ObjectKind.BUILDER}

    def test_missing_dependency(self, sandboxed: Store, make_builder):
        dep = sandboxed.objects.put_object(make_builder(name="dep"))
        with pytest.raises(NotFoundError, match="build it first"):
            sandboxed.executor.build(make_builder(dependencies=(dep,)))

    def test_sources_staged(self, settings, make_builder, tmp_dir, write_tree):
        seen = {}

        class Inspecting(RecordingSandbox):
            def run(self, argv, *, cwd, env, timeout, log_path):
                src = Path(env["src"])
                seen["tree"] = (src / "tree" / "a").read_bytes()
                seen["blob"] = (src / "patch").read_bytes()
                seen["writable"] = os.access(src / "patch", os.W_OK)
                return super().run(argv, cwd=cwd, env=env, timeout=timeout, log_path=log_path)

        store = Store.init(settings, sandbox=Inspecting())
        tree = store.tree_builder.build_tree(write_tree(tmp_dir / "t", {"a": b"tree-file"}))
        blob = store.objects.put(ObjectKind.BLOB, b"patch-data")
        store.executor.build(make_builder(sources={"tree": tree, "patch": blob}))
        assert seen == {"tree": b"tree-file", "blob": b"patch-data", "writable": True}
