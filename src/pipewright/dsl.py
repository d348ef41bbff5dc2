# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .actions.artifacts import download_step, upload_step
from .actions.cache import cache_step
from .actions.checkout import checkout_step
from .actions.deploy import deploy_step
from .actions.quality import quality_gate_step
from .model import (
    ActionInput,
    CompositeAction,
    Condition,
    EventKind,
    Job,
    Step,
    TriggerSpec,
    WorkflowDefinition,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    id: str | None = None,
    condition: Condition | None = None,
    continue_on_error: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        id=id,
        condition=condition,
        continue_on_error=continue_on_error,
        env=env or {},
    )


def uses(
    name: str,
    action: str,
    /,
    *,
    id: str | None = None,
    condition: Condition | None = None,
    continue_on_error: bool = False,
    **inputs: Any,
) -> Step:
    """
    Create a step invoking an action. Keyword arguments become inputs;
    underscores map to dashes (key_files -> key-files).
    """
    return Step(
        name=name,
        uses=action,
        id=id,
        condition=condition,
        continue_on_error=continue_on_error,
        with_={k.replace("_", "-"): str(v) for k, v in inputs.items()},
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    runs_on: str = "local",
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    environment: str | None = None,
    condition: Condition | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None or s.uses else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        runs_on=runs_on,
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
        environment=environment,
        condition=condition,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._runs_on: str = "local"
        self._timeout: float | None = None
        self._environment: str | None = None
        self._condition: Condition | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use(self, name: str, action: str, /, **inputs):
        self._steps.append(uses(name, action, **inputs))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def runs_on(self, os_id: str):
        self._runs_on = os_id
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def deploys_to(self, environment: str):
        self._environment = environment
        return self

    def when(self, condition: Condition):
        self._condition = condition
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            runs_on=self._runs_on,
            env=dict(self._env),
            timeout=self._timeout,
            environment=self._environment,
            condition=self._condition,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.10","3.11"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Triggers and composite actions
# ---------------------------------------------------------------------

def triggers(
    *,
    branches: Optional[Sequence[str]] = None,
    paths_ignore: Sequence[str] = (),
    manual_dispatch: bool = True,
    skip_marker: str = "[skip ci]",
    events: Optional[Iterable[EventKind | str]] = None,
) -> TriggerSpec:
    kinds = frozenset(EventKind(e) for e in events) if events is not None else frozenset(EventKind)
    return TriggerSpec(
        branches=list(branches) if branches is not None else None,
        paths_ignore=list(paths_ignore),
        manual_dispatch=manual_dispatch,
        skip_marker=skip_marker,
        events=kinds,
    )


def composite(
    name: str,
    *steps: Step,
    inputs: Optional[Mapping[str, Any]] = None,
    description: str = "",
) -> CompositeAction:
    """
    Define a composite action.

    `inputs` maps an input name to its default; a default of None makes the
    input required:

        composite("setup-node", sh("Install", "npm ci"), inputs={"node-version": "20"})
    """
    declared = [
        ActionInput(n, required=d is None, default=None if d is None else str(d))
        for n, d in (inputs or {}).items()
    ]
    return CompositeAction(name=name, steps=list(steps), inputs=declared, description=description)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "workflow",
    on: TriggerSpec | None = None,
    env: Optional[Dict[str, str]] = None,
    permissions: Optional[Dict[str, str]] = None,
    actions: Iterable[CompositeAction] = (),
) -> WorkflowDefinition:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from pipewright import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
                name="pages",
                on=triggers(branches=["main"]),
            )

    Or use JOBS directly:
        JOBS = [job(...), job(...)]
    """
    return WorkflowDefinition(
        name=name,
        jobs=list(jobs),
        triggers=on or TriggerSpec(),
        env=dict(env or {}),
        permissions=dict(permissions or {}),
        actions={a.name: a for a in actions},
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)


# built-in action step helpers
checkout = checkout_step
cache = cache_step
upload_artifact = upload_step
download_artifact = download_step
deploy = deploy_step
quality_gate = quality_gate_step
