# context.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from .artifacts import ArtifactStore
from .cache import CacheStore
from .dag import ancestors
from .environment import ExecutionEnvironment, LocalProvisioner, Provisioner
from .model import FAILURE, Event, Job, JobResult, StepResult, WorkflowDefinition
from .publish import DeploymentEnvironment, DeploymentPublisher, DirectoryHostingTarget
from .quality import ConsoleChangeRequestSink, HttpAnalysisService, HttpChangeRequestClient, QualityGateReporter
from .secrets import EnvSecretStore, Masker, SecretStore

if TYPE_CHECKING:
    from .actions import ActionRegistry
    from .config import Settings


@dataclass
class Services:
    """Collaborators shared by every run an engine executes."""
    cache: CacheStore
    artifacts: ArtifactStore
    provisioner: Provisioner
    secrets: SecretStore
    actions: "ActionRegistry"
    publisher: Optional[DeploymentPublisher] = None
    reporter: Optional[QualityGateReporter] = None
    source_root: Path = Path(".")
    default_branch: str = "main"
    runs_dir: Optional[Path] = None


def build_services(
    settings: "Settings",
    *,
    source_root: str | Path = ".",
    provisioner: Provisioner | None = None,
    secrets: SecretStore | None = None,
) -> Services:
    from .actions import default_registry

    home = Path(settings.home)
    publisher = DeploymentPublisher(
        DirectoryHostingTarget(settings.deploy_dir, settings.deploy_base_url),
        ledger_path=home / "deployments.json",
        environments={"github-pages": DeploymentEnvironment("github-pages", permission="pages")},
    )
    sink = (
        HttpChangeRequestClient(settings.change_request_url)
        if settings.change_request_url
        else ConsoleChangeRequestSink()
    )
    service = HttpAnalysisService(settings.analysis_url) if settings.analysis_url else None
    return Services(
        cache=CacheStore(settings.cache_dir, max_bytes=settings.cache_max_bytes),
        artifacts=ArtifactStore(settings.artifact_dir),
        provisioner=provisioner or LocalProvisioner(home / "workspaces"),
        secrets=secrets or EnvSecretStore(settings.secret_prefix),
        actions=default_registry(),
        publisher=publisher,
        reporter=QualityGateReporter(service, sink),
        source_root=Path(source_root).resolve(),
        default_branch=settings.default_branch,
        runs_dir=home / "runs",
    )


@dataclass
class RunContext:
    """
    Everything resolved once per run and threaded through the engine and the
    step runner: secrets, permissions, the frozen workflow, cancellation.
    """
    run_id: str
    workflow: WorkflowDefinition
    event: Event
    services: Services
    secrets: Dict[str, str] = field(default_factory=dict)
    cancel: threading.Event = field(default_factory=threading.Event)
    results: Dict[str, JobResult] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.masker = Masker(self.secrets.values())
        self._ancestors = ancestors(self.workflow.jobs)
        self._actions = self.services.actions.with_composites(self.workflow.actions)

    def ancestors(self, job: str) -> Set[str]:
        return self._ancestors.get(job, set())

    @property
    def permissions(self) -> Dict[str, str]:
        return self.workflow.permissions

    @property
    def actions(self) -> "ActionRegistry":
        return self._actions

    def base_expression_context(self) -> Dict[str, Any]:
        ev = self.event
        return {
            "event": {
                "kind": ev.kind.value,
                "ref": ev.ref,
                "branch": ev.branch,
                "sha": ev.sha,
                "repository": ev.repository,
                "change_request": ev.change_request,
                "commit_message": ev.commit_message,
                "inputs": dict(ev.inputs),
            },
            "run": {"id": self.run_id, "workflow": self.workflow.name},
            "secrets": dict(self.secrets),
            "env": dict(self.workflow.env),
        }


@dataclass
class Scope:
    """Step namespace: a job's top-level steps, or the inner steps of one composite invocation."""
    inputs: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    results: List[StepResult] = field(default_factory=list)

    def steps_context(self) -> Dict[str, Any]:
        out = {}
        for r in self.results:
            if r.id:
                out[r.id] = {"outputs": dict(r.outputs), "outcome": r.outcome, "conclusion": r.conclusion}
        return out


@dataclass
class JobContext:
    run: RunContext
    job: Job
    environment: ExecutionEnvironment
    result: JobResult
    deadline: Optional[float] = None  # time.monotonic() based
    # post-job hooks, run in order after every step succeeded (e.g. cache saves)
    post_hooks: List[tuple[str, Callable[[], None]]] = field(default_factory=list)

    @property
    def workspace(self) -> Path:
        return self.environment.workdir

    def base_env(self) -> Dict[str, str]:
        env = dict(self.run.workflow.env)
        env.update(self.job.env)
        return env

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def expression_context(self, scope: Scope) -> Dict[str, Any]:
        ctx = self.run.base_expression_context()
        ctx["env"] = dict(scope.env)
        ctx["inputs"] = dict(scope.inputs)
        ctx["steps"] = scope.steps_context()
        ctx["job"] = {
            "name": self.job.name,
            "runs_on": self.job.runs_on,
            "environment": self.job.environment,
            "status": "failure" if any(r.conclusion == FAILURE for r in scope.results) else "success",
        }
        return ctx

    def status_functions(self, scope: Scope) -> Dict[str, Callable[[], bool]]:
        return {
            "success": lambda: not any(r.conclusion == FAILURE for r in scope.results),
            "failure": lambda: any(r.outcome == FAILURE for r in scope.results),
            "always": lambda: True,
            "cancelled": lambda: self.run.cancel.is_set(),
        }
