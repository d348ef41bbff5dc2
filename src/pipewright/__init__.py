from .dsl import (
    JobBuilder,
    build,
    cache,
    checkout,
    composite,
    deploy,
    download_artifact,
    job,
    matrix,
    quality_gate,
    sh,
    triggers,
    upload_artifact,
    uses,
    wf,
    workflow,
)
from .engine import WorkflowEngine, run_workflow
from .loader import load_action, load_workflow
from .model import Event, EventKind, Job, Run, RunStatus, Step, TriggerSpec, WorkflowDefinition

__all__ = [
    "job",
    "sh",
    "uses",
    "matrix",
    "wf",
    "workflow",
    "triggers",
    "composite",
    "JobBuilder",
    "build",
    "checkout",
    "cache",
    "upload_artifact",
    "download_artifact",
    "deploy",
    "quality_gate",
    "WorkflowEngine",
    "run_workflow",
    "load_workflow",
    "load_action",
    "Event",
    "EventKind",
    "Job",
    "Step",
    "Run",
    "RunStatus",
    "TriggerSpec",
    "WorkflowDefinition",
]
