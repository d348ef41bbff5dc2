# runner.py
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

from .actions import resolve_inputs
from .context import JobContext, RunContext, Scope
from .errors import (
    AuthorizationError,
    ConfigurationError,
    PipewrightError,
    ProvisioningError,
    StepCancelled,
    StepFailure,
    StepTimeout,
)
from .expressions import evaluate_condition, interpolate
from .model import FAILURE, SKIPPED, SUCCESS, Condition, Job, JobResult, JobStatus, Step, StepOutcome, StepResult
from .ui.console import get_console

logger = logging.getLogger(__name__)

# Steps write outputs to the file named by $PIPEWRIGHT_OUTPUT, one
# `name=value` per line, or `name<<DELIM` ... `DELIM` for multi-line values.
OUTPUT_ENV = "PIPEWRIGHT_OUTPUT"
OUTPUTS_DIR = ".pipewright/step-outputs"
LOG_TAIL = 4000

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


@dataclass
class StepsRun:
    """Result of running a sequence of steps in one scope."""
    ok: bool = True
    failed_step: str | None = None
    error: str | None = None
    fatal: bool = False
    results: List[StepResult] = field(default_factory=list)


def _hint_for(command: str, exit_code: int | None) -> str | None:
    if exit_code != 127:
        return None
    words = command.split()
    return TOOL_HINTS.get(words[0]) if words else None


def _read_outputs(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    outputs: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            i += 1  # closing delimiter
            outputs[name.strip()] = "\n".join(body)
        elif "=" in line:
            name, value = line.split("=", 1)
            outputs[name.strip()] = value
    return outputs


def _condition_holds(
    condition: Condition | None,
    context: Mapping[str, Any],
    functions: Mapping[str, Callable[[], bool]],
) -> bool:
    if condition is None:
        return functions["success"]()
    if callable(condition):
        return bool(condition(context))
    return evaluate_condition(condition, context, functions)


def job_env(job: JobContext, scope: Scope, step: Step, context, functions) -> Dict[str, str]:
    env = dict(scope.env)
    env.update({k: interpolate(v, context, functions) for k, v in step.env.items()})
    env.update(
        {
            "CI": "true",
            "PIPEWRIGHT_RUN_ID": job.run.run_id,
            "PIPEWRIGHT_JOB": job.job.name,
        }
    )
    return env


def _run_shell(job: JobContext, step: Step, label: str, scope: Scope, context, functions) -> StepOutcome:
    command = interpolate(step.run or "", context, functions)
    outputs_file = job.workspace / OUTPUTS_DIR / f"{uuid.uuid4().hex}.txt"
    outputs_file.parent.mkdir(parents=True, exist_ok=True)
    outputs_file.touch()

    env = job_env(job, scope, step, context, functions)
    env[OUTPUT_ENV] = job.environment.path_in_env(outputs_file)
    cwd = interpolate(step.cwd, context, functions) if step.cwd else None

    try:
        res = job.environment.run(command, env=env, cwd=cwd, deadline=job.deadline, cancel=job.run.cancel)
    except FileNotFoundError as e:
        return StepOutcome(status=FAILURE, error=f"[{job.job.name}] step '{label}': {e}")

    if res.cancelled:
        raise StepCancelled(f"[{job.job.name}] step '{label}' cancelled")
    if res.timed_out:
        raise StepTimeout(job.job.name, label, job.job.timeout or 0)

    log = (res.stdout + res.stderr).splitlines()
    if res.exit_code != 0:
        failure = StepFailure(
            job=job.job.name,
            step=label,
            cmd=command,
            exit_code=res.exit_code,
            stdout=res.stdout[-LOG_TAIL:],
            stderr=res.stderr[-LOG_TAIL:],
        )
        return StepOutcome(status=FAILURE, log=log, exit_code=res.exit_code, error=str(failure))
    return StepOutcome(outputs=_read_outputs(outputs_file), log=log, exit_code=0)


def _run_action(job: JobContext, step: Step, label: str, context, functions) -> StepOutcome:
    action = job.run.actions.get(step.uses)
    given = {k: interpolate(str(v), context, functions) for k, v in step.with_.items()}
    inputs = resolve_inputs(action, given, job=job.job.name, step=label)
    return action.execute(job, inputs)


def run_steps(job: JobContext, steps: Sequence[Step], scope: Scope, *, prefix: str = "") -> StepsRun:
    """
    Run steps in order within one scope.

    A failing step aborts the rest except steps whose condition still holds
    (`always()`, `failure()`); `continue_on_error` records the failure and
    carries on. Configuration and authorization errors stop the sequence
    outright.
    """
    console = get_console()
    masker = job.run.masker
    name = job.job.name
    run = StepsRun(results=scope.results)

    for step in steps:
        label = f"{prefix}{step.name}"
        if job.run.cancel.is_set():
            raise StepCancelled(f"[{name}] cancelled before step '{label}'")
        remaining = job.remaining()
        if remaining is not None and remaining <= 0:
            raise StepTimeout(name, label, job.job.timeout or 0)

        context = job.expression_context(scope)
        functions = job.status_functions(scope)
        try:
            holds = _condition_holds(step.condition, context, functions)
        except ConfigurationError as e:
            e.job, e.step = e.job or name, e.step or label
            outcome = StepOutcome(status=FAILURE, error=str(e), fatal=True)
            holds = True
        else:
            outcome = None

        if not holds:
            result = StepResult(name=label, id=step.id, outcome=SKIPPED, conclusion=SKIPPED)
            scope.results.append(result)
            job.result.steps.append(result)
            console.print_step_skipped(name, label, "condition not met")
            continue

        started = time.monotonic()
        if outcome is None:
            console.print_step(name, label)
            try:
                if step.uses:
                    outcome = _run_action(job, step, label, context, functions)
                else:
                    outcome = _run_shell(job, step, label, scope, context, functions)
            except (ConfigurationError, AuthorizationError) as e:
                outcome = StepOutcome(status=FAILURE, error=str(e), fatal=True)
            except StepTimeout as e:
                result = StepResult(
                    name=label,
                    id=step.id,
                    outcome=FAILURE,
                    conclusion=FAILURE,
                    error=str(e),
                    duration=time.monotonic() - started,
                )
                scope.results.append(result)
                job.result.steps.append(result)
                job.result.failed_step = job.result.failed_step or label
                raise
            except StepCancelled:
                raise
            except (PipewrightError, OSError, ValueError) as e:
                logger.debug("step %s raised", label, exc_info=True)
                outcome = StepOutcome(status=FAILURE, error=str(e))

        log = [masker.mask(line) for line in outcome.log]
        error = masker.mask(outcome.error) if outcome.error else None
        best_effort = not outcome.ok and step.continue_on_error and not outcome.fatal
        result = StepResult(
            name=label,
            id=step.id,
            outcome=outcome.status,
            conclusion=SUCCESS if best_effort else outcome.status,
            outputs=dict(outcome.outputs),
            log=log,
            exit_code=outcome.exit_code,
            error=error,
            duration=time.monotonic() - started,
            best_effort=best_effort,
        )
        scope.results.append(result)
        job.result.steps.append(result)

        if outcome.ok:
            console.print_step_log(name, log)
            continue
        if best_effort:
            console.print_best_effort(name, label, error or "failed")
            continue

        console.print_failure(
            label,
            error or "step failed",
            exit_code=outcome.exit_code,
            hint=_hint_for(step.run or "", outcome.exit_code),
            output=log,
        )
        if run.ok:
            run.ok, run.failed_step, run.error = False, label, error
        if job.result.failed_step is None:
            job.result.failed_step = label
        if outcome.fatal:
            run.fatal = True
            break

    return run


def run_job(run: RunContext, job: Job, result: JobResult) -> JobResult:
    """
    Provision an environment, run the job's steps in it, then dispose of it.

    Post-job hooks (cache saves) run only when every step succeeded.
    """
    console = get_console()
    console.print_job_start(job.name, job.runs_on)
    result.mark(JobStatus.RUNNING)

    try:
        environment = run.services.provisioner.provision(job.runs_on)
    except ProvisioningError as e:
        result.error = str(e)
        console.print_failure(job.name, str(e), is_job=True)
        result.mark(JobStatus.FAILED)
        return result

    deadline = time.monotonic() + job.timeout if job.timeout else None
    ctx = JobContext(run=run, job=job, environment=environment, result=result, deadline=deadline)
    try:
        steps = run_steps(ctx, job.steps, Scope(env=ctx.base_env()))
        if steps.ok and not run.cancel.is_set():
            for label, hook in ctx.post_hooks:
                try:
                    hook()
                except (PipewrightError, OSError, ValueError) as e:
                    logger.warning("[%s] %s failed: %s", job.name, label, e)
                    console.print_warning(f"[{job.name}] {label} failed: {e}")
            result.mark(JobStatus.SUCCEEDED)
        elif steps.ok:
            result.reason = "run cancelled"
            result.mark(JobStatus.CANCELLED)
        else:
            result.error = steps.error
            result.mark(JobStatus.FAILED)
    except StepCancelled as e:
        result.reason = "run cancelled"
        result.error = str(e)
        result.mark(JobStatus.CANCELLED)
    except StepTimeout as e:
        result.error = str(e)
        console.print_failure(e.step, str(e))
        result.mark(JobStatus.FAILED)
    finally:
        environment.dispose()

    console.print_job_finished(job.name, result.status.value, result.duration)
    return result
