# actions/checkout.py
from __future__ import annotations

import shutil
from typing import TYPE_CHECKING, Dict

from ..model import ActionInput, Step, StepOutcome
from ..snapshot import collect_files
from . import Action, split_list

if TYPE_CHECKING:
    from ..context import JobContext


def checkout_step(name: str = "Checkout", *, path: str = ".", exclude: list[str] | None = None) -> Step:
    """Create a step that copies the source tree into the job workspace."""
    with_ = {"path": path}
    if exclude:
        with_["exclude"] = ",".join(exclude)
    return Step(name=name, uses="checkout", with_=with_)


class CheckoutAction(Action):
    name = "checkout"
    description = "Copy the repository source tree into the workspace"
    inputs = (
        ActionInput("path", default=".", description="Workspace directory to check out into"),
        ActionInput("exclude", default="", description="Glob patterns to leave out"),
    )

    def execute(self, job: "JobContext", inputs: Dict[str, str]) -> StepOutcome:
        source = job.run.services.source_root.resolve()
        dest = (job.workspace / (inputs["path"] or ".")).resolve()
        files = collect_files(source, ["."], excludes=split_list(inputs["exclude"]))
        for rel, f in files:
            target = dest / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(f, target)
        return StepOutcome(
            outputs={"files": str(len(files))},
            log=[f"checked out {len(files)} file(s) from {source}"],
        )
