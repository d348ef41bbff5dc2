# actions/deploy.py
from __future__ import annotations

from typing import TYPE_CHECKING, Dict

from ..errors import ConfigurationError
from ..model import ActionInput, Step, StepOutcome
from ..publish import DeploymentEnvironment
from ..ui.console import get_console
from . import Action

if TYPE_CHECKING:
    from ..context import JobContext


def deploy_step(
    name: str = "Deploy",
    *,
    artifact: str = "artifact",
    environment: str | None = None,
    permission: str | None = None,
    id: str | None = None,
) -> Step:
    """Create a deploy step. Without `permission` the environment's registered scope applies."""
    with_ = {"artifact": artifact}
    if environment:
        with_["environment"] = environment
    if permission:
        with_["permission"] = permission
    return Step(name=name, uses="deploy", id=id, with_=with_)


class DeployAction(Action):
    name = "deploy"
    description = "Publish a run artifact to a hosting environment"
    inputs = (
        ActionInput("artifact", default="artifact"),
        ActionInput("environment", default="", description="Defaults to the job's environment"),
        ActionInput("permission", default="", description="Permission scope needing write access; defaults to the environment's"),
    )

    def execute(self, job: "JobContext", inputs: Dict[str, str]) -> StepOutcome:
        services = job.run.services
        env_name = inputs["environment"] or job.job.environment
        if not env_name:
            raise ConfigurationError(
                "deploy needs an environment: set `environment` on the job or the step",
                job=job.job.name,
            )
        if services.publisher is None:
            raise ConfigurationError("no deployment publisher is configured", job=job.job.name)

        artifact = services.artifacts.get(job.run.run_id, inputs["artifact"])
        target = services.publisher.environment(env_name)
        if inputs["permission"]:
            target = DeploymentEnvironment(env_name, permission=inputs["permission"])
        record = services.publisher.publish(
            target,
            artifact,
            permissions=job.run.permissions,
            run_id=job.run.run_id,
        )
        get_console().print_deployment(job.job.name, record)
        note = "already live, nothing to do" if record.reused else "published"
        return StepOutcome(
            outputs={"page_url": record.url, "reused": "true" if record.reused else "false"},
            log=[f"{artifact.name} -> {env_name}: {note} ({record.url})"],
        )
