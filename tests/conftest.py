"""Shared pytest fixtures for pipewright tests."""

from pathlib import Path

import pytest

from pipewright.actions import default_registry
from pipewright.artifacts import ArtifactStore
from pipewright.cache import CacheStore
from pipewright.context import Services
from pipewright.engine import WorkflowEngine
from pipewright.environment import LocalProvisioner
from pipewright.model import Event, EventKind
from pipewright.publish import DeploymentPublisher, DirectoryHostingTarget
from pipewright.quality import QualityGateReporter
from pipewright.secrets import MappingSecretStore
from pipewright.ui.console import Console, set_console

SECRET_VALUE = "hunter2-very-secret"


@pytest.fixture(autouse=True)
def quiet_console():
    """Fresh non-debug console for every test."""
    console = Console(debug=False)
    set_console(console)
    return console


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """A small repository checkout."""
    root = tmp_path / "source"
    (root / "src").mkdir(parents=True)
    (root / "src" / "index.html").write_text("<h1>hello</h1>\n")
    (root / "package-lock.json").write_text('{"lockfileVersion": 3}\n')
    return root


@pytest.fixture
def services(tmp_path: Path, source_dir: Path) -> Services:
    home = tmp_path / "home"
    return Services(
        cache=CacheStore(home / "cache"),
        artifacts=ArtifactStore(home / "artifacts"),
        provisioner=LocalProvisioner(home / "workspaces"),
        secrets=MappingSecretStore({"DEPLOY_TOKEN": SECRET_VALUE}),
        actions=default_registry(),
        publisher=DeploymentPublisher(
            DirectoryHostingTarget(home / "sites", "https://pages.example.test"),
            ledger_path=home / "deployments.json",
        ),
        reporter=QualityGateReporter(None),
        source_root=source_dir,
        runs_dir=home / "runs",
    )


@pytest.fixture
def engine(services: Services) -> WorkflowEngine:
    return WorkflowEngine(services, max_workers=4)


@pytest.fixture
def push_event() -> Event:
    return Event(
        kind=EventKind.PUSH,
        ref="refs/heads/main",
        changed_paths=("src/index.html",),
        commit_message="Update landing page",
        repository="acme/site",
    )


@pytest.fixture
def execute(engine: WorkflowEngine, push_event: Event):
    """Validate and execute a workflow, returning the finished Run."""

    def _execute(workflow, event: Event | None = None):
        return engine.execute(engine.create_run(workflow, event or push_event))

    return _execute
