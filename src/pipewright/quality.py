# quality.py
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import urljoin

from .errors import AnalysisServiceUnavailable
from .model import Event
from .snapshot import tree_archive_bytes

logger = logging.getLogger(__name__)

SEVERITIES = ["info", "minor", "major", "critical", "blocker"]

PASSED = "passed"
FAILED = "failed"
INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class Finding:
    rule: str
    message: str
    path: str
    line: int | None = None
    severity: str = "major"

    @property
    def fingerprint(self) -> tuple:
        # line numbers move between revisions; rule + path + message do not
        return (self.rule, self.path, self.message)

    @classmethod
    def from_dict(cls, data: Dict) -> "Finding":
        severity = str(data.get("severity", "major")).lower()
        if severity not in SEVERITIES:
            severity = "major"
        line = data.get("line")
        return cls(
            rule=str(data.get("rule", "")),
            message=str(data.get("message", "")),
            path=str(data.get("path", "")),
            line=int(line) if line is not None else None,
            severity=severity,
        )


@dataclass
class Report:
    status: str
    findings: List[Finding] = field(default_factory=list)
    new_findings: List[Finding] = field(default_factory=list)
    project: str = ""
    error: str | None = None

    @property
    def passed(self) -> Optional[bool]:
        """True/False, or None when the analysis could not be performed."""
        if self.status == INDETERMINATE:
            return None
        return self.status == PASSED

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "passed": self.passed,
            "project": self.project,
            "error": self.error,
            "findings": [asdict(f) for f in self.findings],
            "new_findings": [asdict(f) for f in self.new_findings],
        }


@dataclass(frozen=True)
class AnalysisProject:
    key: str
    organization: str = ""
    sources: List[str] = field(default_factory=lambda: ["."])
    exclusions: List[str] = field(default_factory=list)


def load_project_properties(path: str | Path) -> AnalysisProject:
    """
    Read a properties file naming the analysis project:

        project.key=my-site
        project.organization=my-org
        project.sources=src
        project.exclusions=**/*.test.js,build/**
    """
    props: Dict[str, str] = {}
    for raw in Path(path).read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", "!")):
            continue
        sep = min((i for i in (line.find("="), line.find(":")) if i >= 0), default=-1)
        if sep < 0:
            continue
        props[line[:sep].strip()] = line[sep + 1:].strip()

    def split(value: str) -> List[str]:
        return [v.strip() for v in value.split(",") if v.strip()]

    key = props.get("project.key")
    if not key:
        raise ValueError(f"{path}: project.key is required")
    return AnalysisProject(
        key=key,
        organization=props.get("project.organization", ""),
        sources=split(props.get("project.sources", ".")) or ["."],
        exclusions=split(props.get("project.exclusions", "")),
    )


# ---------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------

class AnalysisService:
    def analyze(self, tree: Path, project: AnalysisProject) -> List[Finding]:
        raise NotImplementedError


class HttpAnalysisService(AnalysisService):
    """Uploads a tar.gz of the code tree and reads findings back as JSON."""

    def __init__(self, base_url: str, token: str | None = None, *, timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def analyze(self, tree: Path, project: AnalysisProject) -> List[Finding]:
        body = tree_archive_bytes(Path(tree), project.sources, excludes=project.exclusions)
        url = urljoin(self.base_url + "/", "api/analyses")
        headers = {
            "Content-Type": "application/gzip",
            "X-Project-Key": project.key,
            "X-Organization": project.organization,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(url, data=body, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                payload = json.loads(response.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as e:
            raise AnalysisServiceUnavailable(f"analysis request failed: {e.code} {e.reason}")
        except (urllib.error.URLError, TimeoutError) as e:
            raise AnalysisServiceUnavailable(f"could not reach analysis service at {self.base_url}: {e}")
        except json.JSONDecodeError as e:
            raise AnalysisServiceUnavailable(f"invalid response from analysis service: {e}")
        return [Finding.from_dict(f) for f in payload.get("findings", [])]


class ChangeRequestSink:
    """Where reports go: a visible status plus inline annotations on the change request."""

    def post(self, event: Event, report: Report) -> None:
        raise NotImplementedError


class ConsoleChangeRequestSink(ChangeRequestSink):
    def post(self, event: Event, report: Report) -> None:
        from .ui.console import get_console

        get_console().print_quality_report(event.change_request, report)


class HttpChangeRequestClient(ChangeRequestSink):
    def __init__(self, base_url: str, token: str | None = None, *, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _post(self, path: str, data: Dict) -> None:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(url, data=json.dumps(data).encode("utf-8"), headers=headers, method="POST")
        with urllib.request.urlopen(req, timeout=self.timeout) as response:
            response.read()

    def post(self, event: Event, report: Report) -> None:
        base = f"repos/{event.repository}/change-requests/{event.change_request}"
        descriptions = {
            PASSED: "Quality gate passed",
            FAILED: f"Quality gate failed: {len(report.new_findings)} new finding(s)",
            INDETERMINATE: "Quality gate could not be evaluated",
        }
        self._post(
            f"{base}/statuses",
            {
                "context": "quality-gate",
                "state": report.status,
                "description": descriptions[report.status],
                "sha": event.sha,
            },
        )
        if report.new_findings:
            self._post(
                f"{base}/annotations",
                {
                    "annotations": [
                        {
                            "path": f.path,
                            "line": f.line,
                            "level": f.severity,
                            "title": f.rule,
                            "message": f.message,
                        }
                        for f in report.new_findings
                    ]
                },
            )


# ---------------------------------------------------------------------
# Reporter
# ---------------------------------------------------------------------

def load_baseline(path: str | Path | None) -> List[Finding]:
    if not path or not Path(path).exists():
        return []
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    items = data.get("findings", []) if isinstance(data, dict) else data
    return [Finding.from_dict(f) for f in items]


class QualityGateReporter:
    """
    Runs an analysis pass and turns findings into a pass/fail verdict.

    Only findings absent from the baseline count, and only those at or
    above `blocking_severity` fail the gate. A failed report is advisory:
    refusing the merge is left to branch protection.
    """

    def __init__(
        self,
        service: AnalysisService | None,
        sink: ChangeRequestSink | None = None,
        *,
        blocking_severity: str = "major",
    ):
        if blocking_severity not in SEVERITIES:
            raise ValueError(f"unknown severity {blocking_severity!r}; expected one of {SEVERITIES}")
        self.service = service
        self.sink = sink
        self.blocking_severity = blocking_severity

    def analyze(
        self,
        code_tree: str | Path,
        baseline: Iterable[Finding] = (),
        *,
        project: AnalysisProject | None = None,
        service: AnalysisService | None = None,
        blocking_severity: str | None = None,
    ) -> Report:
        project = project or AnalysisProject(key=Path(code_tree).resolve().name)
        service = service or self.service
        if service is None:
            return Report(INDETERMINATE, project=project.key, error="no analysis service configured")
        try:
            findings = service.analyze(Path(code_tree), project)
        except AnalysisServiceUnavailable as e:
            logger.warning("analysis service unavailable: %s", e)
            return Report(INDETERMINATE, project=project.key, error=str(e))

        known = {f.fingerprint for f in baseline}
        new = [f for f in findings if f.fingerprint not in known]
        threshold = SEVERITIES.index(blocking_severity or self.blocking_severity)
        status = FAILED if any(SEVERITIES.index(f.severity) >= threshold for f in new) else PASSED
        return Report(status, findings=findings, new_findings=new, project=project.key)

    def report(self, event: Event, report: Report) -> bool:
        """Post the report to the originating change request. Returns True if posted."""
        if not event.kind.is_pull_request or event.change_request is None or self.sink is None:
            return False
        self.sink.post(event, report)
        return True
