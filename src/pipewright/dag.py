# dag.py
from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set, Tuple

from .errors import ConfigurationError
from .expressions import has_template
from .model import CompositeAction, Job, Step, WorkflowDefinition

if TYPE_CHECKING:
    from .actions import ActionRegistry


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs or []:
            if need not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' needs missing job '{need}'. Known jobs: {sorted(name_set)}",
                    job=job.name,
                )
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ConfigurationError(f"Job graph has a cycle. Stuck jobs: {remaining}")

    return levels


def ancestors(jobs: Iterable[Job]) -> Dict[str, Set[str]]:
    """Transitive `needs` closure per job."""
    needs = {j.name: set(j.needs or []) for j in jobs}
    out: Dict[str, Set[str]] = {}

    def visit(name: str, trail: Tuple[str, ...]) -> Set[str]:
        if name in out:
            return out[name]
        acc: Set[str] = set()
        for n in needs.get(name, ()):
            if n in trail:
                continue
            acc.add(n)
            acc |= visit(n, trail + (n,))
        out[name] = acc
        return acc

    for name in needs:
        visit(name, (name,))
    return out


def descendants(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    seen: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        n = stack.pop()
        if n in seen:
            continue
        seen.add(n)
        stack.extend(adj.get(n, ()))
    return seen


# ----------------------------------------------------------------------
# Static validation
# ----------------------------------------------------------------------

def _literal(value: Optional[str]) -> Optional[str]:
    """The value if it contains no ${{ }} template, else None."""
    if value is None or has_template(value):
        return None
    return value


def _check_steps(
    steps: List[Step],
    registry: "ActionRegistry",
    composites: Dict[str, CompositeAction],
    *,
    job: str,
    trail: Tuple[str, ...] = (),
) -> Tuple[List[str], List[str]]:
    """
    Validate steps, recursing into composite actions.

    Returns the literal artifact names (uploaded, downloaded) by the steps.
    """
    from .actions import resolve_inputs

    uploads: List[str] = []
    downloads: List[str] = []
    ids: Set[str] = set()
    for step in steps:
        label = " / ".join(trail + (step.name,))
        if bool(step.run) == bool(step.uses):
            raise ConfigurationError("a step needs exactly one of `run` or `uses`", job=job, step=label)
        if step.id:
            if step.id in ids:
                raise ConfigurationError(f"duplicate step id {step.id!r}", job=job, step=label)
            ids.add(step.id)
        if not step.uses:
            continue

        action = registry.get(step.uses)
        inputs = resolve_inputs(action, step.with_, job=job, step=label)

        if action.name == "upload-artifact":
            name = _literal(inputs.get("name"))
            if name:
                uploads.append(name)
        elif action.name == "download-artifact":
            name = _literal(inputs.get("name"))
            if name:
                downloads.append(name)

        if action.name in composites:
            if action.name in trail:
                raise ConfigurationError(
                    f"composite action {action.name!r} invokes itself: {' -> '.join(trail + (action.name,))}",
                    job=job,
                    step=label,
                )
            up, down = _check_steps(
                composites[action.name].steps,
                registry,
                composites,
                job=job,
                trail=trail + (action.name,),
            )
            uploads += up
            downloads += down
    return uploads, downloads


def validate_workflow(workflow: WorkflowDefinition, registry: "ActionRegistry") -> List[List[str]]:
    """
    Check a workflow before anything runs. Returns the execution levels.

    Raises ConfigurationError for duplicate or undefined jobs, cycles,
    malformed steps, unknown actions, missing required inputs and artifacts
    downloaded by a job that no ancestor uploads.
    """
    if not workflow.jobs:
        raise ConfigurationError(f"workflow {workflow.name!r} has no jobs")

    adj, indeg = build_dag(workflow.jobs)
    levels = topo_levels(adj, indeg)

    reg = registry.with_composites(workflow.actions)
    uploads: Dict[str, List[str]] = {}
    downloads: Dict[str, List[str]] = {}
    for job in workflow.jobs:
        if not job.steps:
            raise ConfigurationError("job has no steps", job=job.name)
        uploads[job.name], downloads[job.name] = _check_steps(job.steps, reg, workflow.actions, job=job.name)

    closure = ancestors(workflow.jobs)
    for job in workflow.jobs:
        # an artifact the job uploads itself before downloading is fine too
        visible = set(uploads[job.name])
        for a in closure[job.name]:
            visible.update(uploads[a])
        for name in downloads[job.name]:
            if name not in visible:
                producers = sorted(j for j, names in uploads.items() if name in names)
                hint = (
                    f"produced by {producers}, which must be listed in `needs`"
                    if producers
                    else "no job uploads it"
                )
                raise ConfigurationError(f"artifact {name!r} is downloaded but {hint}", job=job.name)

    return levels
