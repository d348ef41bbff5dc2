# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST_OPENED = "pull-request-opened"
    PULL_REQUEST_SYNCHRONIZED = "pull-request-synchronized"
    MANUAL_DISPATCH = "manual-dispatch"

    @property
    def is_pull_request(self) -> bool:
        return self in (EventKind.PULL_REQUEST_OPENED, EventKind.PULL_REQUEST_SYNCHRONIZED)


@dataclass(frozen=True)
class Event:
    """An inbound repository event that may start a run."""
    kind: EventKind
    ref: str
    changed_paths: tuple[str, ...] = ()
    commit_message: str = ""
    sha: str | None = None
    repository: str = ""
    change_request: int | None = None  # pull request number
    inputs: Dict[str, str] = field(default_factory=dict)  # manual-dispatch inputs

    @property
    def branch(self) -> str:
        """Ref with any refs/heads/ prefix removed."""
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref


@dataclass(frozen=True)
class TriggerSpec:
    """
    Declarative filter deciding whether an Event starts a run.

    branches=None means "no branch filter"; patterns prefixed with "!" negate.
    """
    branches: Optional[List[str]] = None
    paths_ignore: List[str] = field(default_factory=list)
    manual_dispatch: bool = True
    skip_marker: str = "[skip ci]"
    events: frozenset[EventKind] = frozenset(EventKind)


# A condition is either an expression ("steps.deps.outputs.cache-hit != 'true'")
# or a callable receiving the expression context.
Condition = Union[str, Callable[[Dict[str, Any]], bool]]


@dataclass(frozen=True)
class Step:
    """A single step inside a job: a shell command or an action reference."""
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Dict[str, str] = field(default_factory=dict)
    id: str | None = None
    condition: Condition | None = None
    continue_on_error: bool = False
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionInput:
    name: str
    required: bool = False
    default: str | None = None
    description: str = ""


@dataclass(frozen=True)
class CompositeAction:
    """Reusable, named sequence of steps with a declared input schema."""
    name: str
    steps: List[Step]
    inputs: List[ActionInput] = field(default_factory=list)
    description: str = ""


@dataclass
class Job:
    """
    A CI job: steps + dependencies + the environment it runs on.

    `needs` names the jobs that must succeed before this one starts.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    runs_on: str = "local"
    env: Dict[str, str] = field(default_factory=dict)
    timeout: float | None = None  # seconds
    environment: str | None = None  # deployment environment
    condition: Condition | None = None


@dataclass
class WorkflowDefinition:
    name: str
    jobs: list[Job]
    triggers: TriggerSpec = field(default_factory=TriggerSpec)
    env: Dict[str, str] = field(default_factory=dict)
    permissions: Dict[str, str] = field(default_factory=dict)
    actions: Dict[str, CompositeAction] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"


@dataclass
class StepOutcome:
    """What an action reports back after executing."""
    status: str = SUCCESS
    outputs: Dict[str, str] = field(default_factory=dict)
    log: List[str] = field(default_factory=list)
    exit_code: int | None = None
    error: str | None = None
    fatal: bool = False  # configuration/authorization problems ignore continue_on_error

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


@dataclass
class StepResult:
    name: str
    id: str | None
    outcome: str
    conclusion: str
    outputs: Dict[str, str] = field(default_factory=dict)
    log: List[str] = field(default_factory=list)
    exit_code: int | None = None
    error: str | None = None
    duration: float = 0.0
    best_effort: bool = False


@dataclass
class JobResult:
    status: JobStatus = JobStatus.PENDING
    steps: List[StepResult] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    cache_keys: List[str] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    reason: str | None = None  # why a job was skipped/cancelled
    started_at: float | None = None
    finished_at: float | None = None

    def mark(self, status: JobStatus) -> None:
        self.status = status
        if status == JobStatus.RUNNING:
            self.started_at = time.time()
        elif status.terminal:
            self.finished_at = time.time()

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass
class Run:
    id: str
    workflow: str
    event: Event
    status: RunStatus = RunStatus.PENDING
    jobs: Dict[str, JobResult] = field(default_factory=dict)
