# loader.py
from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from .dsl import wf
from .errors import ConfigurationError
from .model import CompositeAction, Job, Step, WorkflowDefinition
from .schema import ActionSchema, WorkflowSchema

logger = logging.getLogger(__name__)

WORKFLOW_DIR = Path(".pipewright") / "workflows"
YAML_SUFFIXES = (".yml", ".yaml")
ACTION_FILES = ("action.yml", "action.yaml")


def _format_validation_error(path: Path, exc: ValidationError) -> str:
    lines = [f"invalid {path}:"]
    for err in exc.errors():
        where = ".".join(str(p) for p in err["loc"]) or "<root>"
        lines.append(f"  {where}: {err['msg']}")
    return "\n".join(lines)


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    # YAML 1.1 reads a bare `on` key as boolean true
    if True in data:
        data["on"] = data.pop(True)
    return data


# ----------------------------------------------------------------------
# Composite actions
# ----------------------------------------------------------------------

def load_action(path: str | Path) -> CompositeAction:
    """
    Load a composite action from a YAML file, or from a directory holding
    action.yml / action.yaml.
    """
    p = Path(path)
    if p.is_dir():
        for candidate in ACTION_FILES:
            if (p / candidate).exists():
                p = p / candidate
                break
        else:
            raise ConfigurationError(f"no action.yml found in {p}")
    if not p.exists():
        raise ConfigurationError(f"action file not found: {p}")
    try:
        action = ActionSchema.model_validate(_read_yaml(p)).to_action()
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(p, e)) from e
    logger.debug("loaded composite action %s from %s", action.name, p)
    return action


def _local_action_refs(steps: List[Step]) -> List[str]:
    return [s.uses for s in steps if s.uses and s.uses.startswith("./")]


def resolve_local_actions(workflow: WorkflowDefinition, base_dir: str | Path) -> WorkflowDefinition:
    """
    Load every `uses: ./path/to/action` reference (relative to base_dir)
    into workflow.actions, following references made by composites too.
    """
    base = Path(base_dir)
    pending = [ref for j in workflow.jobs for ref in _local_action_refs(j.steps)]
    for action in list(workflow.actions.values()):
        pending += _local_action_refs(action.steps)
    while pending:
        ref = pending.pop()
        if ref in workflow.actions:
            continue
        action = load_action(base / ref)
        workflow.actions[ref] = action
        pending += _local_action_refs(action.steps)
    return workflow


# ----------------------------------------------------------------------
# Workflows
# ----------------------------------------------------------------------

def _load_yaml_workflow(path: Path) -> WorkflowDefinition:
    try:
        schema = WorkflowSchema.model_validate(_read_yaml(path))
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(path, e)) from e
    return schema.to_workflow(default_name=path.stem)


def _load_python_workflow(path: Path) -> WorkflowDefinition:
    """
    The file must define one of:
      - workflow() -> WorkflowDefinition | List[Job]
      - WORKFLOW = WorkflowDefinition(...)
      - JOBS = [Job, ...]
    """
    module_name = f"pipewright_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    result: Any = None
    fn = globals_dict.get("workflow")
    # `from pipewright import workflow` brings in the helper itself
    if callable(fn) and fn is not wf:
        try:
            result = fn()
        except TypeError as e:
            if "positional argument" in str(e) or "required" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from pipewright import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, WorkflowDefinition):
        return result
    if isinstance(result, list) and all(isinstance(j, Job) for j in result):
        return WorkflowDefinition(name=path.stem, jobs=result)
    raise TypeError(
        "Workflow must return/define a WorkflowDefinition or a List[Job]. "
        "Define workflow(), WORKFLOW = wf(...) or JOBS = [Job, ...]."
    )


def load_workflow(path: str | Path, *, base_dir: str | Path | None = None) -> WorkflowDefinition:
    """
    Load a workflow from a YAML (.yml/.yaml) or Python (.py) file.

    Local composite actions (`uses: ./...`) are resolved relative to
    base_dir, which defaults to the current directory.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        workflow = _load_yaml_workflow(wf_path)
    elif wf_path.suffix == ".py":
        workflow = _load_python_workflow(wf_path)
    else:
        raise ValueError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    return resolve_local_actions(workflow, base_dir if base_dir is not None else Path.cwd())


def find_workflow_files(root: str | Path = ".") -> List[Path]:
    """
    Find workflow files under root:
      .pipewright/workflows/*.yml|*.yaml, pipewright.yml, *_workflow.py
    """
    root_p = Path(root)
    found: List[Path] = []
    wf_dir = root_p / WORKFLOW_DIR
    if wf_dir.is_dir():
        found += [p for p in sorted(wf_dir.iterdir()) if p.suffix in YAML_SUFFIXES]
    for name in ("pipewright.yml", "pipewright.yaml"):
        if (root_p / name).exists():
            found.append(root_p / name)
    found += sorted(root_p.glob("*_workflow.py"))
    return found
