# actions/cache.py
from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List

from ..cache import cache_scope, compute_cache_key
from ..model import ActionInput, Step, StepOutcome
from ..ui.console import get_console
from . import Action, split_list

if TYPE_CHECKING:
    from ..context import JobContext


def cache_step(
    name: str,
    *,
    path: List[str],
    key_files: List[str],
    prefix: str = "deps",
    id: str | None = None,
) -> Step:
    """
    Create a dependency-cache step.

    Pair it with an install step guarded by
    `steps.<id>.outputs.cache-hit != 'true'`.
    """
    return Step(
        name=name,
        uses="cache",
        id=id,
        with_={"path": "\n".join(path), "key-files": "\n".join(key_files), "prefix": prefix},
    )


class CacheAction(Action):
    """
    Restore a dependency cache keyed by a hash of lockfile-like inputs.

    On an exact hit the snapshot is extracted and `cache-hit` is "true".
    On a miss a save is registered to run after the job's steps succeed.
    A feature branch may restore from the default branch's entry; that is
    a restore but not a hit, so the install step still runs and the branch
    gets its own entry.
    """

    name = "cache"
    description = "Restore and save a dependency cache"
    inputs = (
        ActionInput("path", required=True, description="Directories/files to cache"),
        ActionInput("key-files", required=True, description="Files whose contents key the cache"),
        ActionInput("prefix", default="deps", description="Names what is cached"),
    )

    def execute(self, job: "JobContext", inputs: Dict[str, str]) -> StepOutcome:
        console = get_console()
        services = job.run.services
        event = job.run.event
        repository = event.repository or services.source_root.name
        paths = split_list(inputs["path"])
        key_files = split_list(inputs["key-files"])

        def key_for(branch: str) -> str:
            scope = cache_scope(repository, branch, inputs["prefix"])
            return compute_cache_key(scope, job.job.runs_on, job.workspace, key_files)

        primary = key_for(event.branch)
        candidates = [(event.branch, primary)]
        if services.default_branch and services.default_branch != event.branch:
            candidates.append((services.default_branch, key_for(services.default_branch)))

        for branch, key in candidates:
            entry = services.cache.lookup(key)
            if entry is None:
                continue
            restored = services.cache.restore(entry, job.workspace)
            exact = key == primary
            console.print_cache_hit(job.job.name, key if exact else f"{key} (from {branch})")
            log = [f"restored {len(restored)} file(s) from {key}"]
            if exact:
                return StepOutcome(outputs={"cache-hit": "true", "cache-key": primary, "matched-key": key}, log=log)
            self._register_save(job, primary, paths)
            return StepOutcome(outputs={"cache-hit": "false", "cache-key": primary, "matched-key": key}, log=log)

        console.print_cache_miss(job.job.name)
        self._register_save(job, primary, paths)
        return StepOutcome(
            outputs={"cache-hit": "false", "cache-key": primary, "matched-key": ""},
            log=[f"cache miss: {primary}"],
        )

    def _register_save(self, job: "JobContext", key: str, paths: List[str]) -> None:
        def save() -> None:
            entry = job.run.services.cache.store(key, paths, root=job.workspace)
            job.result.cache_keys.append(entry.key)
            get_console().print_cache_saved(job.job.name, entry.key)

        job.post_hooks.append((f"save cache {key}", save))
