# actions/quality.py
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Dict

from ..model import ActionInput, Step, StepOutcome
from ..quality import (
    AnalysisProject,
    HttpAnalysisService,
    QualityGateReporter,
    load_baseline,
    load_project_properties,
)
from ..snapshot import write_bytes_atomic
from . import Action

if TYPE_CHECKING:
    from ..context import JobContext


REPORT_PATH = ".pipewright/quality-report.json"


def quality_gate_step(
    name: str = "Quality gate",
    *,
    path: str = ".",
    properties: str = "analysis.properties",
    baseline: str = "",
    token: str = "",
) -> Step:
    return Step(
        name=name,
        uses="quality-gate",
        with_={"path": path, "properties": properties, "baseline": baseline, "token": token},
    )


class QualityGateAction(Action):
    """
    Analyze the workspace and report the verdict to the change request.

    The step itself always succeeds: a failing gate is reported, not
    enforced. Outputs: status (passed/failed/indeterminate), passed,
    new-findings.
    """

    name = "quality-gate"
    description = "Static analysis quality gate"
    inputs = (
        ActionInput("path", default="."),
        ActionInput("properties", default="analysis.properties"),
        ActionInput("baseline", default="", description="JSON file of already-known findings"),
        ActionInput("token", default="", description="Analysis service token, e.g. ${{ secrets.ANALYSIS_TOKEN }}"),
        ActionInput("blocking-severity", default=""),
    )

    def execute(self, job: "JobContext", inputs: Dict[str, str]) -> StepOutcome:
        services = job.run.services
        event = job.run.event
        reporter = services.reporter or QualityGateReporter(None)
        tree = job.workspace / (inputs["path"] or ".")

        props = job.workspace / inputs["properties"] if inputs["properties"] else None
        if props is not None and props.exists():
            project = load_project_properties(props)
        else:
            project = AnalysisProject(key=event.repository or services.source_root.name)

        service = reporter.service
        if inputs["token"] and isinstance(service, HttpAnalysisService):
            service = HttpAnalysisService(service.base_url, inputs["token"], timeout=service.timeout)

        baseline = load_baseline(job.workspace / inputs["baseline"]) if inputs["baseline"] else []
        report = reporter.analyze(
            tree,
            baseline,
            project=project,
            service=service,
            blocking_severity=inputs["blocking-severity"] or None,
        )
        posted = reporter.report(event, report)
        write_bytes_atomic(job.workspace / REPORT_PATH, json.dumps(report.to_dict(), indent=2).encode("utf-8"))

        log = [
            f"quality gate {report.status} for {report.project}: "
            f"{len(report.findings)} finding(s), {len(report.new_findings)} new"
        ]
        if report.error:
            log.append(f"analysis error: {report.error}")
        log.append("reported to change request" if posted else "not a change request, report not posted")
        passed = "" if report.passed is None else ("true" if report.passed else "false")
        return StepOutcome(
            outputs={"status": report.status, "passed": passed, "new-findings": str(len(report.new_findings))},
            log=log,
        )
