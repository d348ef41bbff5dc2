# actions/composite.py
from __future__ import annotations

from typing import TYPE_CHECKING, Dict

from ..model import FAILURE, SUCCESS, CompositeAction, StepOutcome
from . import Action

if TYPE_CHECKING:
    from ..context import JobContext


class CompositeActionRunner(Action):
    """Expands a CompositeAction inline: its steps run in the caller's environment with `inputs.*` bound."""

    def __init__(self, definition: CompositeAction):
        self.definition = definition
        self.name = definition.name
        self.description = definition.description
        self.inputs = tuple(definition.inputs)

    def execute(self, job: "JobContext", inputs: Dict[str, str]) -> StepOutcome:
        # Import here to avoid circular import
        from ..context import Scope
        from ..runner import run_steps

        scope = Scope(inputs=dict(inputs), env=job.base_env())
        outcome = run_steps(job, self.definition.steps, scope, prefix=f"{self.name} / ")

        outputs: Dict[str, str] = {}
        log = []
        for r in scope.results:
            outputs.update(r.outputs)
            log.append(f"{r.name}: {r.outcome}")
            log.extend(f"  {line}" for line in r.log)

        return StepOutcome(
            status=SUCCESS if outcome.ok else FAILURE,
            outputs=outputs,
            log=log,
            error=outcome.error,
            fatal=outcome.fatal,
        )
