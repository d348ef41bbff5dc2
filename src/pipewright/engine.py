# engine.py
from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Optional, Set

from .triggers import evaluate as evaluate_triggers
from .context import RunContext, Services
from .dag import build_dag, descendants, validate_workflow
from .errors import ConfigurationError
from .expressions import evaluate_condition, referenced_paths
from .model import Event, Job, JobResult, JobStatus, Run, RunStatus, Step, WorkflowDefinition
from .runner import run_job
from .snapshot import write_bytes_atomic
from .ui.console import get_console

logger = logging.getLogger(__name__)

# local dev ---> event ---> triggers ---> run (jobs as a DAG) ---> artifacts / deploy / report


def new_run_id() -> str:
    return f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


def _texts(steps: Iterable[Step]) -> Iterable[str]:
    for s in steps:
        yield from (t for t in (s.run, s.cwd) if t)
        yield from (str(v) for v in s.with_.values())
        yield from s.env.values()
        if isinstance(s.condition, str):
            yield s.condition


def workflow_texts(workflow: WorkflowDefinition) -> Iterable[str]:
    """Every string in the workflow that may hold an expression."""
    yield from workflow.env.values()
    for j in workflow.jobs:
        yield from j.env.values()
        if isinstance(j.condition, str):
            yield j.condition
        yield from _texts(j.steps)
    for action in workflow.actions.values():
        yield from _texts(action.steps)


def run_to_dict(run: Run) -> Dict[str, Any]:
    data = asdict(run)
    data["status"] = run.status.value
    data["event"]["kind"] = run.event.kind.value
    data["event"]["changed_paths"] = list(run.event.changed_paths)
    for name, result in run.jobs.items():
        data["jobs"][name]["status"] = result.status.value
    return data


class WorkflowEngine:
    """
    Validates workflows and executes runs.

    Jobs are scheduled from a ready queue fed by in-degree counting and run
    on a thread pool; a job becomes ready once every job it `needs` has
    succeeded.
    """

    def __init__(
        self,
        services: Services,
        *,
        max_workers: int | None = None,
        fail_fast: bool = False,
        retain_artifacts: bool = False,
    ):
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.services = services
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.retain_artifacts = retain_artifacts
        self._active: Dict[str, RunContext] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------

    def create_run(self, workflow: WorkflowDefinition, event: Event, *, run_id: str | None = None) -> RunContext:
        """Validate the workflow and freeze it into a new run. Nothing executes yet."""
        validate_workflow(workflow, self.services.actions)
        frozen = copy.deepcopy(workflow)

        names: List[str] = []
        for text in workflow_texts(frozen):
            for name in referenced_paths(text, "secrets"):
                if name not in names:
                    names.append(name)
        secrets = self.services.secrets.resolve(names)
        missing = sorted(set(names) - set(secrets))
        if missing:
            logger.warning("secrets referenced but not available: %s", missing)

        return RunContext(
            run_id=run_id or new_run_id(),
            workflow=frozen,
            event=event,
            services=self.services,
            secrets=secrets,
        )

    def cancel(self, run_id: str) -> bool:
        """Cancel an active run. Returns False if no such run is executing."""
        with self._lock:
            ctx = self._active.get(run_id)
        if ctx is None:
            return False
        logger.info("cancelling run %s", run_id)
        ctx.cancel.set()
        return True

    # ------------------------------------------------------------------

    def _job_condition_holds(self, ctx: RunContext, job: Job, run: Run) -> bool:
        if job.condition is None:
            return True
        context = ctx.base_expression_context()
        context["env"].update(job.env)
        context["needs"] = {n: {"result": run.jobs[n].status.value} for n in job.needs}
        context["job"] = {"name": job.name, "runs_on": job.runs_on, "environment": job.environment}
        if callable(job.condition):
            return bool(job.condition(context))
        functions = {
            "success": lambda: all(run.jobs[n].status == JobStatus.SUCCEEDED for n in job.needs),
            "failure": lambda: any(run.jobs[n].status == JobStatus.FAILED for n in job.needs),
            "always": lambda: True,
            "cancelled": lambda: ctx.cancel.is_set(),
        }
        return evaluate_condition(job.condition, context, functions)

    def _fail_unstarted(self, run: Run, adj: Dict[str, Set[str]], name: str, error: str) -> None:
        result = run.jobs[name]
        result.error = error
        result.mark(JobStatus.FAILED)
        get_console().print_failure(name, error, is_job=True)
        self._skip_descendants(run, adj, name)

    def _skip_descendants(self, run: Run, adj: Dict[str, Set[str]], name: str) -> None:
        status = run.jobs[name].status.value
        for d in sorted(descendants(adj, name)):
            result = run.jobs[d]
            if result.status == JobStatus.PENDING:
                result.reason = f"dependency '{name}' {status}"
                result.mark(JobStatus.SKIPPED)
                get_console().print_job_skipped(d, result.reason)

    def execute(self, ctx: RunContext) -> Run:
        """Run every job of ctx's workflow and return the finished Run."""
        console = get_console()
        workflow = ctx.workflow
        by_name = {j.name: j for j in workflow.jobs}
        run = Run(
            id=ctx.run_id,
            workflow=workflow.name,
            event=ctx.event,
            status=RunStatus.RUNNING,
            jobs={j.name: JobResult() for j in workflow.jobs},
        )
        ctx.results = run.jobs
        with self._lock:
            self._active[ctx.run_id] = ctx

        console.print_run_started(
            ctx.event.repository or self.services.source_root.name,
            workflow.name,
            len(workflow.jobs),
            run_id=ctx.run_id,
        )

        adj, indeg = build_dag(workflow.jobs)
        ready: List[str] = sorted(n for n, d in indeg.items() if d == 0)
        in_flight: Dict = {}
        stopped = False

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                while ready or in_flight:
                    # schedule all currently ready
                    while ready and not (stopped or ctx.cancel.is_set()):
                        name = ready.pop(0)
                        job, result = by_name[name], run.jobs[name]
                        try:
                            holds = self._job_condition_holds(ctx, job, run)
                        except ConfigurationError as e:
                            e.job = e.job or name
                            self._fail_unstarted(run, adj, name, str(e))
                            stopped = self.fail_fast
                            continue
                        except Exception as e:
                            logger.exception("condition of job %s raised", name)
                            self._fail_unstarted(run, adj, name, f"condition raised {type(e).__name__}: {e}")
                            stopped = self.fail_fast
                            continue
                        if not holds:
                            result.reason = "condition not met"
                            result.mark(JobStatus.SKIPPED)
                            console.print_job_skipped(name, result.reason)
                            self._skip_descendants(run, adj, name)
                            continue
                        in_flight[pool.submit(run_job, ctx, job, result)] = name

                    if not in_flight:
                        break

                    # wait for one completion, then loop to schedule newly-ready jobs
                    try:
                        done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    except KeyboardInterrupt:
                        # in-flight commands are killed before the pool shuts down
                        ctx.cancel.set()
                        raise
                    for fut in done:
                        name = in_flight.pop(fut)
                        result = run.jobs[name]
                        try:
                            fut.result()
                        except Exception as e:
                            logger.exception("job %s crashed", name)
                            result.error = str(e)
                            result.mark(JobStatus.FAILED)
                            console.print_failure(name, str(e), is_job=True)

                        if result.status == JobStatus.SUCCEEDED:
                            for nxt in sorted(adj[name]):
                                indeg[nxt] -= 1
                                if indeg[nxt] == 0 and run.jobs[nxt].status == JobStatus.PENDING:
                                    ready.append(nxt)
                        elif result.status in (JobStatus.FAILED, JobStatus.SKIPPED):
                            self._skip_descendants(run, adj, name)
                            if result.status == JobStatus.FAILED and self.fail_fast:
                                stopped = True
        finally:
            with self._lock:
                self._active.pop(ctx.run_id, None)

        for name, result in run.jobs.items():
            if not result.status.terminal:
                result.reason = "run cancelled" if ctx.cancel.is_set() else "fail-fast"
                result.mark(JobStatus.CANCELLED)

        run.status = self._run_status(ctx, run)
        self._finish(ctx, run)
        console.print_results(run)
        return run

    @staticmethod
    def _run_status(ctx: RunContext, run: Run) -> RunStatus:
        statuses = [r.status for r in run.jobs.values()]
        if ctx.cancel.is_set():
            return RunStatus.CANCELLED
        if JobStatus.FAILED in statuses:
            return RunStatus.FAILURE
        if statuses and all(s == JobStatus.SKIPPED for s in statuses):
            return RunStatus.SKIPPED
        return RunStatus.SUCCESS

    def _finish(self, ctx: RunContext, run: Run) -> None:
        if not self.retain_artifacts:
            self.services.artifacts.discard_run(ctx.run_id)
        if self.services.runs_dir is not None:
            record = self.services.runs_dir / f"{run.id}.json"
            write_bytes_atomic(record, json.dumps(run_to_dict(run), indent=2, default=str).encode("utf-8"))
            logger.debug("run record written to %s", record)


def run_workflow(
    workflow: WorkflowDefinition,
    event: Event,
    services: Services,
    **kwargs,
) -> Optional[Run]:
    """
    Evaluate triggers, then validate and execute the workflow.

    Returns None when the event is rejected; no run is created.
    """
    decision = evaluate_triggers(event, workflow.triggers)
    get_console().print_trigger_decision(decision)
    if not decision:
        logger.info("event rejected: %s", decision.reason)
        return None
    engine = WorkflowEngine(services, **kwargs)
    return engine.execute(engine.create_run(workflow, event))
