"""YAML workflow and composite-action schemas.

A workflow file:

    name: pages
    on:
      push:
        branches: [main]
        paths-ignore: ["docs/**"]
      pull_request:
        types: [opened, synchronize]
      workflow_dispatch: {}
    permissions:
      deployments: write
    jobs:
      build:
        runs-on: ubuntu-latest
        steps:
          - uses: checkout
          - run: npm run build

A composite-action file has `name`, `inputs` and `runs.steps`. The models
validate the documents and convert them into `pipewright.model` objects.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .model import (
    ActionInput,
    CompositeAction,
    EventKind,
    Job,
    Step,
    TriggerSpec,
    WorkflowDefinition,
)


def _scalar(value: Any) -> str:
    """YAML scalars as step-visible strings (true -> "true")."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepSchema(_Model):
    """One entry of `steps`: exactly one of `run` or `uses`."""

    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    if_: Optional[Union[str, bool]] = Field(None, alias="if")
    continue_on_error: bool = Field(False, alias="continue-on-error")
    working_directory: Optional[str] = Field(None, alias="working-directory")
    env: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _run_or_uses(self) -> "StepSchema":
        if bool(self.run) == bool(self.uses):
            raise ValueError("a step needs exactly one of `run` or `uses`")
        return self

    def default_name(self) -> str:
        if self.name:
            return self.name
        if self.uses:
            return self.uses
        return (self.run or "").strip().splitlines()[0][:60]

    def to_step(self) -> Step:
        return Step(
            name=self.default_name(),
            run=self.run,
            uses=self.uses,
            with_={k: _scalar(v) for k, v in self.with_.items()},
            id=self.id,
            condition=_scalar(self.if_) if self.if_ is not None else None,
            continue_on_error=self.continue_on_error,
            cwd=self.working_directory,
            env={k: _scalar(v) for k, v in self.env.items()},
        )


class EnvironmentSchema(_Model):
    name: str
    url: Optional[str] = None


class JobSchema(_Model):
    name: Optional[str] = None
    runs_on: str = Field("local", alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)
    environment: Optional[Union[str, EnvironmentSchema]] = None
    if_: Optional[Union[str, bool]] = Field(None, alias="if")
    env: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepSchema] = Field(..., min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    def to_job(self, job_id: str) -> Job:
        env_name = self.environment.name if isinstance(self.environment, EnvironmentSchema) else self.environment
        return Job(
            name=job_id,
            steps=[s.to_step() for s in self.steps],
            needs=list(self.needs),
            runs_on=self.runs_on,
            env={k: _scalar(v) for k, v in self.env.items()},
            timeout=self.timeout_minutes * 60 if self.timeout_minutes else None,
            environment=env_name,
            condition=_scalar(self.if_) if self.if_ is not None else None,
        )


class InputSchema(_Model):
    description: str = ""
    required: bool = False
    default: Optional[Any] = None


class RunsSchema(_Model):
    using: str = "composite"
    steps: List[StepSchema] = Field(..., min_length=1)

    @field_validator("using")
    @classmethod
    def _composite_only(cls, value: str) -> str:
        if value != "composite":
            raise ValueError(f"only composite actions are supported, got using={value!r}")
        return value


class ActionSchema(_Model):
    """A composite action: named, typed inputs and a list of steps."""

    name: str
    description: str = ""
    inputs: Dict[str, InputSchema] = Field(default_factory=dict)
    runs: RunsSchema

    def to_action(self) -> CompositeAction:
        return CompositeAction(
            name=self.name,
            steps=[s.to_step() for s in self.runs.steps],
            inputs=[
                ActionInput(
                    name=key,
                    required=spec.required,
                    default=None if spec.default is None else _scalar(spec.default),
                    description=spec.description,
                )
                for key, spec in self.inputs.items()
            ],
            description=self.description,
        )


class PushSchema(_Model):
    branches: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = Field(None, alias="branches-ignore")
    paths_ignore: List[str] = Field(default_factory=list, alias="paths-ignore")


class PullRequestSchema(_Model):
    types: List[str] = Field(default_factory=lambda: ["opened", "synchronize"])
    branches: Optional[List[str]] = None
    paths_ignore: List[str] = Field(default_factory=list, alias="paths-ignore")

    @field_validator("types")
    @classmethod
    def _known_types(cls, value: List[str]) -> List[str]:
        unknown = sorted(set(value) - set(_PR_TYPES))
        if unknown:
            raise ValueError(f"unsupported pull_request types {unknown}; supported: {sorted(_PR_TYPES)}")
        return value

    @field_validator("branches")
    @classmethod
    def _no_branch_filter(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        # the single branch filter applies to push refs
        if value is not None:
            raise ValueError("pull_request.branches is not supported; put the branch filter under push")
        return value


_PR_TYPES = {
    "opened": EventKind.PULL_REQUEST_OPENED,
    "synchronize": EventKind.PULL_REQUEST_SYNCHRONIZED,
}


class OnSchema(_Model):
    push: Optional[PushSchema] = None
    pull_request: Optional[PullRequestSchema] = None
    workflow_dispatch: Optional[Dict[str, Any]] = None
    skip_marker: str = Field("[skip ci]", alias="skip-marker")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        # `on: push` and `on: [push, pull_request]` are shorthands for empty mappings
        if isinstance(value, str):
            value = [value]
        if isinstance(value, list):
            return {str(v): {} for v in value}
        if isinstance(value, dict):
            return {k: ({} if v is None else v) for k, v in value.items()}
        return value

    def to_triggers(self) -> TriggerSpec:
        events = {EventKind.MANUAL_DISPATCH}
        branches: Optional[List[str]] = None
        paths_ignore: List[str] = []
        if self.push is not None:
            events.add(EventKind.PUSH)
            if self.push.branches is not None or self.push.branches_ignore:
                branches = list(self.push.branches or ["**"])
                branches += [f"!{b}" for b in self.push.branches_ignore or []]
            paths_ignore += self.push.paths_ignore
        if self.pull_request is not None:
            events.update(_PR_TYPES[t] for t in self.pull_request.types)
            paths_ignore += [p for p in self.pull_request.paths_ignore if p not in paths_ignore]
        return TriggerSpec(
            branches=branches,
            paths_ignore=paths_ignore,
            manual_dispatch=self.workflow_dispatch is not None,
            skip_marker=self.skip_marker,
            events=frozenset(events),
        )


class WorkflowSchema(_Model):
    name: Optional[str] = None
    on: Optional[OnSchema] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    permissions: Dict[str, str] = Field(default_factory=dict)
    actions: Dict[str, ActionSchema] = Field(default_factory=dict)
    jobs: Dict[str, JobSchema] = Field(..., min_length=1)

    @field_validator("permissions")
    @classmethod
    def _access_levels(cls, value: Dict[str, str]) -> Dict[str, str]:
        bad = {k: v for k, v in value.items() if v not in ("read", "write", "none")}
        if bad:
            raise ValueError(f"permissions must be read, write or none: {bad}")
        return value

    def to_workflow(self, default_name: str) -> WorkflowDefinition:
        return WorkflowDefinition(
            name=self.name or default_name,
            jobs=[spec.to_job(job_id) for job_id, spec in self.jobs.items()],
            triggers=self.on.to_triggers() if self.on is not None else TriggerSpec(),
            env={k: _scalar(v) for k, v in self.env.items()},
            permissions=dict(self.permissions),
            actions={key: a.to_action() for key, a in self.actions.items()},
        )
