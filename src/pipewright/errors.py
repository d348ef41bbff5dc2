# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class PipewrightError(Exception):
    """Base class for every error raised by pipewright."""


class ConfigurationError(PipewrightError):
    """
    A workflow declaration is invalid: cyclic or dangling `needs`, unknown
    action, missing required input, artifact consumed before produced.

    Never retried.
    """

    def __init__(self, message: str, *, job: str | None = None, step: str | None = None):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step

    def __str__(self) -> str:
        where = []
        if self.job:
            where.append(f"job={self.job}")
        if self.step:
            where.append(f"step={self.step}")
        if where:
            return f"{self.message} ({', '.join(where)})"
        return self.message


class ArtifactNotFound(ConfigurationError):
    """An artifact was requested before any job in the run uploaded it."""


@dataclass
class StepFailure(PipewrightError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeout(PipewrightError):
    job: str
    step: str
    timeout: float

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' exceeded the job timeout of {self.timeout:g}s"


class StepCancelled(PipewrightError):
    """The run was cancelled while a step was executing."""


@dataclass
class AuthorizationError(PipewrightError):
    """The run lacks write authorization for a deployment environment."""
    environment: str
    scope: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"run is not authorized to deploy to '{self.environment}' "
            f"(requires permission '{self.scope}: write')"
        )


class AnalysisServiceUnavailable(PipewrightError):
    """The external analysis service could not produce a report."""


class ProvisioningError(PipewrightError):
    """No execution environment could be supplied for a job."""
