"""Build state machine models — deterministic transitions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BuildState(str, Enum):
    """Lifecycle of one build run."""

    PREPARED = "prepared"
    RUNNING = "running"
    RELOCATING = "relocating"
    HASHED = "hashed"
    RECORDED = "recorded"
    FAILED = "failed"


# Valid state transitions, enforced by BuildRun.transition.
# Terminal states (RECORDED, FAILED) have no outgoing transitions.
VALID_TRANSITIONS: dict[BuildState, set[BuildState]] = {
    BuildState.PREPARED: {BuildState.RUNNING, BuildState.FAILED},
    BuildState.RUNNING: {BuildState.RELOCATING, BuildState.FAILED},
    BuildState.RELOCATING: {BuildState.HASHED, BuildState.FAILED},
    BuildState.HASHED: {BuildState.RECORDED, BuildState.FAILED},
    BuildState.RECORDED: set(),  # terminal
    BuildState.FAILED: set(),  # terminal
}


class BuildTransition(BaseModel):
    """Records a single state transition of a build."""

    model_config = ConfigDict(frozen=True)

    from_state: BuildState
    to_state: BuildState
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str | None = None  # populated when entering FAILED


class BuildRecord(BaseModel):
    """Outcome of ``BuildExecutor.execute``.

    ``reused`` is set when an existing mapping satisfied the request and
    nothing was run.
    """

    model_config = ConfigDict(frozen=True)

    builder_hash: str
    name: str
    state: BuildState
    transitions: tuple[BuildTransition, ...] = ()
    package_hash: str | None = None
    mapping_hash: str | None = None
    duration: float = 0.0
    reused: bool = False
    exit_code: int | None = None
