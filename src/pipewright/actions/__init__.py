# actions/__init__.py
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Sequence

from ..errors import ConfigurationError
from ..model import ActionInput, CompositeAction, StepOutcome

if TYPE_CHECKING:
    from ..context import JobContext

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------
# Everything a step can `uses:` is an Action: declared inputs plus
# execute(job, inputs) -> StepOutcome. Built-ins (checkout, cache, artifact
# upload/download, deploy, quality gate) and user-defined composite actions
# go through the same path in the step runner.
# ---------------------------------------------------------------------

class Action:
    name: str = ""
    description: str = ""
    inputs: Sequence[ActionInput] = ()

    def execute(self, job: "JobContext", inputs: Dict[str, str]) -> StepOutcome:
        raise NotImplementedError


def resolve_inputs(
    action: Action,
    given: Mapping[str, str],
    *,
    job: str | None = None,
    step: str | None = None,
) -> Dict[str, str]:
    """Apply declared defaults and check required inputs."""
    declared = {i.name for i in action.inputs}
    unknown = sorted(set(given) - declared)
    if unknown:
        logger.warning("action %s: unexpected input(s) %s (job=%s step=%s)", action.name, unknown, job, step)

    out: Dict[str, str] = {}
    missing: List[str] = []
    for spec in action.inputs:
        if spec.name in given:
            out[spec.name] = given[spec.name]
        elif spec.default is not None:
            out[spec.name] = spec.default
        elif spec.required:
            missing.append(spec.name)
        else:
            out[spec.name] = ""
    if missing:
        raise ConfigurationError(
            f"action '{action.name}' is missing required input(s): {', '.join(missing)}",
            job=job,
            step=step,
        )
    return out


def split_list(value: str) -> List[str]:
    """Split a multi-value input on newlines and commas."""
    out: List[str] = []
    for line in (value or "").splitlines():
        out.extend(p.strip() for p in line.split(","))
    return [p for p in out if p]


def as_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class ActionRegistry:
    def __init__(self, actions: Iterable[Action] = ()):
        self._actions: Dict[str, Action] = {}
        for a in actions:
            self.register(a)

    @staticmethod
    def _normalize(ref: str) -> str:
        # "cache@v2" and "pipewright/cache" both refer to "cache"
        ref = ref.split("@", 1)[0].strip()
        if ref.startswith("pipewright/"):
            ref = ref[len("pipewright/"):]
        return ref

    def register(self, action: Action) -> Action:
        self._actions[action.name] = action
        return action

    def get(self, ref: str) -> Action:
        action = self._actions.get(self._normalize(ref))
        if action is None:
            raise ConfigurationError(f"unknown action {ref!r}; known actions: {sorted(self._actions)}")
        return action

    def __contains__(self, ref: str) -> bool:
        return self._normalize(ref) in self._actions

    def names(self) -> List[str]:
        return sorted(self._actions)

    def with_composites(self, composites: Mapping[str, CompositeAction]) -> "ActionRegistry":
        from .composite import CompositeActionRunner

        if not composites:
            return self
        reg = ActionRegistry(self._actions.values())
        for name, definition in composites.items():
            runner = CompositeActionRunner(definition)
            runner.name = name
            reg.register(runner)
        return reg


def default_registry() -> ActionRegistry:
    from .artifacts import DownloadArtifactAction, UploadArtifactAction
    from .cache import CacheAction
    from .checkout import CheckoutAction
    from .deploy import DeployAction
    from .quality import QualityGateAction

    return ActionRegistry(
        [
            CheckoutAction(),
            CacheAction(),
            UploadArtifactAction(),
            DownloadArtifactAction(),
            DeployAction(),
            QualityGateAction(),
        ]
    )


__all__ = [
    "Action",
    "ActionRegistry",
    "resolve_inputs",
    "default_registry",
    "split_list",
    "as_bool",
]
