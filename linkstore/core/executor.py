"""Build executor — run a Builder, relocate its output, record the Mapping.

Every run moves through ``PREPARED -> RUNNING -> RELOCATING -> HASHED ->
RECORDED``; any failure before ``RECORDED`` moves it to ``FAILED``, writes
no mapping and removes the working directory. Output objects are only
written to the store after relocation succeeds.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
import tempfile
import time
from collections.abc import Mapping as MappingABC
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from linkstore.config import StoreLayout
from linkstore.core.assembler import PackageAssembler
from linkstore.core.checkout import CheckoutEngine
from linkstore.core.mapping_index import MappingIndex
from linkstore.core.object_store import ObjectStore
from linkstore.core.relocation import (
    Relocator,
    RelocationResult,
    SelfReferenceRewriter,
    padded_out_dir,
    rewriter_for_platform,
)
from linkstore.core.tree_builder import TreeBuilder, iter_tree
from linkstore.errors import BuildFailureError, InvalidTransitionError, NotFoundError
from linkstore.models.builds import (
    VALID_TRANSITIONS,
    BuildRecord,
    BuildState,
    BuildTransition,
)
from linkstore.models.objects import Builder, Mapping, MappingMetadata, ObjectKind

logger = logging.getLogger(__name__)

_LOG_TAIL_LINES = 20


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


@runtime_checkable
class Sandbox(Protocol):
    """Runs a build command; process isolation is the implementation's job.

    Returns the exit code. Timeouts and interruption raise
    ``BuildFailureError`` after the process has been terminated.
    """

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: MappingABC[str, str],
        timeout: float | None,
        log_path: Path,
    ) -> int:
        ...


class SubprocessSandbox:
    """Plain ``subprocess`` runner writing stdout and stderr to ``log_path``."""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: MappingABC[str, str],
        timeout: float | None,
        log_path: Path,
    ) -> int:
        with open(log_path, "wb") as log:
            try:
                completed = subprocess.run(
                    list(argv),
                    cwd=cwd,
                    env=dict(env),
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                raise BuildFailureError(
                    f"build command timed out after {timeout}s: {argv[0]}"
                ) from exc
            except FileNotFoundError as exc:
                raise BuildFailureError(f"build command not found: {argv[0]}") from exc
            except KeyboardInterrupt as exc:
                raise BuildFailureError(f"build command interrupted: {argv[0]}") from exc
        return completed.returncode


# ---------------------------------------------------------------------------
# State tracking
# ---------------------------------------------------------------------------


class BuildRun:
    """In-memory state of one build, checked against ``VALID_TRANSITIONS``."""

    def __init__(self, builder_hash: str, name: str) -> None:
        self.builder_hash = builder_hash
        self.name = name
        self.state = BuildState.PREPARED
        self.transitions: list[BuildTransition] = []
        self.started = time.monotonic()

    def transition(self, target: BuildState, reason: str | None = None) -> None:
        allowed = VALID_TRANSITIONS.get(self.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition build of {self.name} from {self.state.value} "
                f"to {target.value}. Allowed: {sorted(s.value for s in allowed)}",
                hash=self.builder_hash,
            )
        self.transitions.append(
            BuildTransition(from_state=self.state, to_state=target, reason=reason)
        )
        logger.debug("build %s: %s -> %s", self.name, self.state.value, target.value)
        self.state = target

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def record(self, **fields: object) -> BuildRecord:
        return BuildRecord(
            builder_hash=self.builder_hash,
            name=self.name,
            state=self.state,
            transitions=tuple(self.transitions),
            duration=self.elapsed,
            **fields,
        )


@dataclass
class BuildInputs:
    """Directories and packages made available to one build."""

    work_dir: Path
    out_dir: Path
    src_dir: Path
    deps_dir: Path
    log_path: Path
    packages: dict[str, str] = field(default_factory=dict)  # hash -> name


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class BuildExecutor:
    """Executes builders against one store.

    Parameters
    ----------
    objects, tree_builder, assembler, checkout, mappings:
        Store components the executor reads inputs from and writes
        results to.
    layout:
        Store layout; working directories are created under ``layout.tmp``.
    local_source:
        Trust source new mappings are recorded under.
    sandbox:
        Command runner; defaults to ``SubprocessSandbox``.
    rewriter:
        Content rewriter; defaults to the one for the builder's platform.
    timeout:
        Seconds before the build command is terminated.
    """

    def __init__(
        self,
        objects: ObjectStore,
        tree_builder: TreeBuilder,
        assembler: PackageAssembler,
        checkout: CheckoutEngine,
        mappings: MappingIndex,
        *,
        layout: StoreLayout,
        local_source: str = "localhost",
        sandbox: Sandbox | None = None,
        rewriter: SelfReferenceRewriter | None = None,
        timeout: float | None = None,
    ) -> None:
        self._objects = objects
        self._tree_builder = tree_builder
        self._assembler = assembler
        self._checkout = checkout
        self._mappings = mappings
        self._layout = layout
        self.local_source = local_source
        self._sandbox = sandbox or SubprocessSandbox()
        self._rewriter = rewriter
        self.timeout = timeout

    def execute(self, builder: Builder | str, *, force: bool = False) -> str:
        """Build (or reuse) and return the package hash."""
        record = self.build(builder, force=force)
        if record.package_hash is None:
            raise BuildFailureError(
                f"build of {record.name} ended in {record.state.value} without a package",
                hash=record.builder_hash,
            )
        return record.package_hash

    def build(self, builder: Builder | str, *, force: bool = False) -> BuildRecord:
        """Build and return the full ``BuildRecord``.

        Unless ``force`` is set, an existing trusted mapping whose package
        is present in the store is reused without running anything.
        """
        if isinstance(builder, str):
            builder_hash = builder
            builder = self._objects.get_builder(builder_hash)
        else:
            builder_hash = self._objects.put_object(builder)

        if not force:
            reused = self._reuse(builder, builder_hash)
            if reused is not None:
                return reused

        run = BuildRun(builder_hash, builder.name)
        self._layout.tmp.mkdir(parents=True, exist_ok=True)
        try:
            with tempfile.TemporaryDirectory(
                dir=self._layout.tmp, prefix=f"build-{builder.name}-"
            ) as tmp:
                record = self._run(builder, builder_hash, run, Path(tmp))
        except BaseException as exc:
            if run.state not in (BuildState.FAILED, BuildState.RECORDED):
                run.transition(BuildState.FAILED, reason=str(exc))
            logger.error("build of %s (%s) failed: %s", builder.name, builder_hash, exc)
            raise

        logger.info(
            "built %s -> %s in %.2fs (mapping %s)",
            builder.name,
            record.package_hash,
            record.duration,
            record.mapping_hash,
        )
        return record

    def _reuse(self, builder: Builder, builder_hash: str) -> BuildRecord | None:
        resolution = self._mappings.resolve(
            builder_hash,
            available=lambda result: self._objects.exists(result, ObjectKind.PACKAGE),
        )
        if resolution is None:
            return None
        self._checkout.realize(resolution.mapping.result)
        logger.info(
            "reusing %s from %s for builder %s",
            resolution.mapping.result,
            resolution.source,
            builder_hash,
        )
        return BuildRecord(
            builder_hash=builder_hash,
            name=builder.name,
            state=BuildState.RECORDED,
            package_hash=resolution.mapping.result,
            mapping_hash=resolution.mapping_hash,
            reused=True,
        )

    def _run(
        self, builder: Builder, builder_hash: str, run: BuildRun, work_dir: Path
    ) -> BuildRecord:
        relocator = Relocator(
            self._layout.packages,
            self._layout.root,
            self._rewriter or rewriter_for_platform(builder.platform),
        )
        inputs = self._prepare(builder, work_dir, relocator.placeholder_for(builder.name))

        run.transition(BuildState.RUNNING)
        exit_code = self._sandbox.run(
            builder.command,
            cwd=inputs.work_dir,
            env=self._environment(builder, inputs),
            timeout=self.timeout,
            log_path=inputs.log_path,
        )
        if exit_code != 0:
            raise BuildFailureError(
                f"build of {builder.name} exited with status {exit_code}"
                f"{_log_tail(inputs.log_path)}",
                hash=builder_hash,
                exit_code=exit_code,
            )

        run.transition(BuildState.RELOCATING)
        relocation = relocator.relocate(inputs.out_dir, inputs.work_dir, builder.name)

        run.transition(BuildState.HASHED)
        package_hash = self._hash_output(builder, inputs, relocation)
        self._checkout.realize(package_hash)

        mapping = Mapping(
            builder=builder_hash,
            result=package_hash,
            metadata=MappingMetadata(duration=run.elapsed),
        )
        mapping_hash = self._mappings.record_mapping(self.local_source, mapping)
        run.transition(BuildState.RECORDED)
        return run.record(package_hash=package_hash, mapping_hash=mapping_hash, exit_code=0)

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _prepare(self, builder: Builder, work_dir: Path, placeholder: Path) -> BuildInputs:
        inputs = BuildInputs(
            work_dir=work_dir,
            out_dir=padded_out_dir(work_dir, placeholder),
            src_dir=work_dir / "src",
            deps_dir=work_dir / "deps",
            log_path=work_dir / "build.log",
        )
        for directory in (inputs.out_dir, inputs.src_dir, inputs.deps_dir):
            directory.mkdir()

        for source_name, source_hash in sorted(builder.sources.items()):
            self._stage_source(source_name, source_hash, inputs.src_dir)

        for dep_hash in builder.all_dependencies():
            resolution = self._mappings.resolve(
                dep_hash,
                available=lambda result: self._objects.exists(result, ObjectKind.PACKAGE),
            )
            if resolution is None:
                raise NotFoundError(
                    f"dependency builder {dep_hash} of {builder.name} has no "
                    f"recorded result; build it first",
                    hash=dep_hash,
                )
            package_hash = resolution.mapping.result
            path = self._checkout.realize(package_hash)
            name = self._objects.get_package(package_hash).name
            link = inputs.deps_dir / name
            if link.is_symlink():
                logger.warning("dependency name %s is provided twice; keeping the first", name)
            else:
                os.symlink(path, link)
            inputs.packages[package_hash] = name
        return inputs

    def _stage_source(self, name: str, source_hash: str, src_dir: Path) -> None:
        kind = self._objects.kind_of(source_hash)
        dest = src_dir / name
        if kind is ObjectKind.TREE:
            self._checkout.materialize(source_hash, dest, copy=True)
        elif kind is ObjectKind.BLOB:
            shutil.copy2(self._objects.path_for(source_hash, ObjectKind.BLOB), dest)
            os.chmod(dest, stat.S_IMODE(dest.stat().st_mode) | stat.S_IWUSR)
        else:
            raise NotFoundError(f"source {name!r} ({source_hash}) is not in the store", hash=source_hash)
        logger.debug("staged source %s (%s)", name, source_hash)

    def _environment(self, builder: Builder, inputs: BuildInputs) -> dict[str, str]:
        env = {"PATH": os.environ.get("PATH", os.defpath)}
        env.update(builder.env)
        env.update(
            {
                "out": str(inputs.out_dir),
                "src": str(inputs.src_dir),
                "deps": str(inputs.deps_dir),
                "LINKSTORE_PLATFORM": builder.platform,
            }
        )
        return env

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def _hash_output(
        self, builder: Builder, inputs: BuildInputs, relocation: RelocationResult
    ) -> str:
        tree_hash = self._tree_builder.build_tree(inputs.out_dir)

        self_references: dict[str, tuple[int, ...]] = {}
        if relocation.self_references:
            for rel, entry in iter_tree(self._objects, tree_hash):
                if rel in relocation.self_references:
                    self_references[entry.hash] = relocation.self_references[rel]

        references = sorted(relocation.referenced_hashes & set(inputs.packages))
        return self._assembler.assemble(
            builder.name,
            builder.platform,
            references,
            tree_hash,
            self_references=self_references,
        )


def _log_tail(log_path: Path) -> str:
    try:
        lines = log_path.read_text(errors="replace").splitlines()
    except FileNotFoundError:
        return ""
    if not lines:
        return ""
    return "\n" + "\n".join(lines[-_LOG_TAIL_LINES:])
