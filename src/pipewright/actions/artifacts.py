# actions/artifacts.py
from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List

from ..errors import ArtifactNotFound
from ..model import ActionInput, Step, StepOutcome
from . import Action, as_bool, split_list

if TYPE_CHECKING:
    from ..context import JobContext


def upload_step(name: str, artifact: str, path: List[str], *, retain: bool = False) -> Step:
    """Create a step uploading workspace paths as a run-scoped artifact."""
    return Step(
        name=name,
        uses="upload-artifact",
        with_={"name": artifact, "path": "\n".join(path), "retain": "true" if retain else "false"},
    )


def download_step(name: str, artifact: str, *, path: str = ".") -> Step:
    """Create a step extracting an artifact produced by a job listed in `needs`."""
    return Step(name=name, uses="download-artifact", with_={"name": artifact, "path": path})


class UploadArtifactAction(Action):
    name = "upload-artifact"
    description = "Store workspace files as an artifact of this run"
    inputs = (
        ActionInput("name", default="artifact"),
        ActionInput("path", required=True),
        ActionInput("retain", default="false", description="Keep after the run completes"),
    )

    def execute(self, job: "JobContext", inputs: Dict[str, str]) -> StepOutcome:
        store = job.run.services.artifacts
        artifact = store.put(
            job.run.run_id,
            inputs["name"],
            split_list(inputs["path"]),
            root=job.workspace,
            retain=as_bool(inputs["retain"]),
            producer=job.job.name,
        )
        job.result.artifacts.append(artifact.name)
        log = [f"uploaded {artifact.files} file(s) as '{artifact.name}' ({artifact.content_hash[:12]})"]
        if artifact.files == 0:
            log.append(f"warning: no files matched {inputs['path']!r}")
        return StepOutcome(
            outputs={"artifact": artifact.name, "content-hash": artifact.content_hash},
            log=log,
        )


class DownloadArtifactAction(Action):
    name = "download-artifact"
    description = "Extract an artifact uploaded earlier in this run"
    inputs = (
        ActionInput("name", default="artifact"),
        ActionInput("path", default="."),
    )

    def execute(self, job: "JobContext", inputs: Dict[str, str]) -> StepOutcome:
        store = job.run.services.artifacts
        # ArtifactNotFound propagates: a missing `needs` edge is a configuration problem
        artifact = store.get(job.run.run_id, inputs["name"])
        visible = job.run.ancestors(job.job.name) | {job.job.name}
        if artifact.producer and artifact.producer not in visible:
            raise ArtifactNotFound(
                f"artifact {artifact.name!r} was uploaded by {artifact.producer!r}, which must be listed in `needs`",
                job=job.job.name,
            )
        dest = job.workspace / (inputs["path"] or ".")
        files = store.extract(artifact, dest)
        return StepOutcome(
            outputs={"download-path": str(dest)},
            log=[f"downloaded {len(files)} file(s) from '{artifact.name}'"],
        )
