# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Step, state and run schemas for provision.

Follows the registry pattern:
- Step (static definition) → engine decision → StepResult
- StateRecord persisted only on successful completion
- RunRecord collects the ordered StepResults of one invocation
"""

import dataclasses
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

if TYPE_CHECKING:
    from provision.runner import CommandRunner


class StepKind(str, Enum):
    """Broad class of work a step performs; selects its default timeout."""

    FILESYSTEM = "filesystem"
    COMMAND = "command"
    NETWORK = "network"
    PACKAGE = "package"


# Seconds. Package installs can legitimately take a long time.
DEFAULT_TIMEOUTS: Dict[StepKind, float] = {
    StepKind.FILESYSTEM: 60.0,
    StepKind.COMMAND: 300.0,
    StepKind.NETWORK: 600.0,
    StepKind.PACKAGE: 1800.0,
}


class StepOutcome(str, Enum):
    """Outcome of a single step within a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED_DONE = "skipped-already-done"
    SKIPPED_DRY_RUN = "skipped-dry-run"


class RunState(str, Enum):
    """Lifecycle state of a run.

    completed:     every step succeeded or was skipped
    rolled-back:   a step failed and every snapshot was restored
    aborted-dirty: a step failed and at least one restore failed
    aborted:       preconditions failed; nothing was mutated
    """

    RUNNING = "running"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled-back"
    ABORTED_DIRTY = "aborted-dirty"
    ABORTED = "aborted"


@dataclass
class StepContext:
    """Configuration and collaborators handed to every step callable.

    The same ``config`` mapping feeds the input hash, so a step only sees
    values that are accounted for in idempotency decisions.
    """

    target: Path
    config: Mapping[str, Any]
    runner: "CommandRunner"
    work_dir: Path
    dry_run: bool = False
    step_id: Optional[str] = None
    timeout: Optional[float] = None

    def path(self, relative: Union[str, Path]) -> Path:
        """Resolve a path against the target root (absolute paths pass through)."""
        p = Path(relative).expanduser()
        if p.is_absolute():
            return p
        return self.target / p

    def get(self, key: str, default: Any = None) -> Any:
        value = self.config.get(key)
        if value is None or value == "":
            return default
        return value

    def flag(self, key: str, default: bool = False) -> bool:
        """Read a boolean config value, handling string 'true'/'false'."""
        value = self.config.get(key)
        if value is None or value == "":
            return default
        if isinstance(value, bool):
            return value
        return str(value).lower() in ("true", "1", "yes")

    def run(self, command: Union[str, List[str]], **kwargs: Any) -> Optional[subprocess.CompletedProcess]:
        """Run an external command with this step's timeout and configuration."""
        kwargs.setdefault("timeout", self.timeout)
        kwargs.setdefault("variables", self.config)
        if "cwd" not in kwargs and self.target.is_dir():
            kwargs["cwd"] = self.target
        return self.runner.run(command, **kwargs)

    def for_step(self, step: "Step", timeout: Optional[float]) -> "StepContext":
        """Return a copy of this context bound to a single step."""
        return dataclasses.replace(self, step_id=step.step_id, timeout=timeout)


StepCallable = Callable[[StepContext], Any]


@dataclass(frozen=True, eq=False)
class Step:
    """A named, idempotent unit of provisioning work.

    Steps are defined once at process start and never mutated.

    Attributes:
        step_id: Unique identifier within a workflow
        description: Human description shown in plans and summaries
        action: Callable performing the side effects
        requires: Prerequisite step ids
        validate: Optional check run after the action; False fails the step
        is_applied: Idempotency predicate; True if the effect already exists
        inputs: Config keys the step consumes (hashed for idempotency)
        params: Static parameters (hashed for idempotency)
        backup_paths: Paths snapshotted before the action runs
        kind: Step kind, selects the default timeout
        timeout: Per-step timeout in seconds (overrides the kind default)
        requires_tools: Executables that must be on PATH
        precondition: Callable raising PreconditionError when the target
            is not in the expected state
    """

    step_id: str
    description: str
    action: StepCallable
    requires: Tuple[str, ...] = ()
    validate: Optional[Callable[[StepContext], bool]] = None
    is_applied: Optional[Callable[[StepContext], bool]] = None
    inputs: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    backup_paths: Tuple[str, ...] = ()
    kind: StepKind = StepKind.COMMAND
    timeout: Optional[float] = None
    requires_tools: Tuple[str, ...] = ()
    precondition: Optional[StepCallable] = None

    def __post_init__(self) -> None:
        if not self.step_id:
            raise ValueError("step_id cannot be empty")
        # Accept lists from callers, store immutable values
        object.__setattr__(self, "requires", tuple(self.requires))
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "backup_paths", tuple(self.backup_paths))
        object.__setattr__(self, "requires_tools", tuple(self.requires_tools))
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))
        object.__setattr__(self, "kind", StepKind(self.kind))


@dataclass(frozen=True)
class StateRecord:
    """Persisted completion record for one step."""

    step_id: str
    input_hash: str
    completed_at: str  # ISO 8601


@dataclass
class StepResult:
    """Result of one step decision within a run."""

    step_id: str
    outcome: StepOutcome
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    detail: Optional[str] = None
    attempts: int = 0
    retryable: bool = False

    @property
    def duration_s(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class PreconditionFailure:
    """A step that cannot run because a tool or target state is missing."""

    step_id: str
    message: str


@dataclass
class RunRecord:
    """One invocation of a workflow."""

    run_id: str
    workflow: str
    target: Path
    started_at: datetime
    dry_run: bool = False
    state: RunState = RunState.RUNNING
    completed_at: Optional[datetime] = None
    results: List[StepResult] = field(default_factory=list)
    preconditions: List[PreconditionFailure] = field(default_factory=list)
    unrestored: List[str] = field(default_factory=list)
    snapshot_dir: Optional[str] = None
    log_file: Optional[str] = None

    @property
    def failed(self) -> Optional[StepResult]:
        """The failed step result, if the run stopped on a failure."""
        for result in self.results:
            if result.outcome == StepOutcome.FAILED:
                return result
        return None

    def step_ids(self, outcome: StepOutcome) -> List[str]:
        return [r.step_id for r in self.results if r.outcome == outcome]
