# artifacts.py
from __future__ import annotations

import json
import logging
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .errors import ArtifactNotFound
from .snapshot import extract_snapshot, write_bytes_atomic, write_snapshot

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = ".pipewright/artifacts"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class Artifact:
    run_id: str
    name: str
    path: Path
    content_hash: str
    files: int
    retain: bool = False
    created_at: float = 0.0
    producer: str = ""  # job that uploaded it


class ArtifactStore:
    """
    Run-scoped artifact storage:
      root/
        <run_id>/
          <name>.tar.gz
          <name>.json

    Nothing here is shared between runs: `get` only ever looks inside the
    directory of the run it is asked about.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _run_dir(self, run_id: str) -> Path:
        if not _SAFE_NAME.match(run_id):
            raise ValueError(f"invalid run id: {run_id!r}")
        return self.root / run_id

    def _check_name(self, name: str) -> None:
        if not _SAFE_NAME.match(name):
            raise ValueError(
                f"invalid artifact name {name!r}: use letters, digits, '.', '_' or '-'"
            )

    def put(
        self,
        run_id: str,
        name: str,
        paths: List[str],
        *,
        root: str | Path = ".",
        retain: bool = False,
        producer: str = "",
    ) -> Artifact:
        """Snapshot `paths` under root as artifact `name` of run `run_id`."""
        self._check_name(name)
        run_dir = self._run_dir(run_id)
        archive = run_dir / f"{name}.tar.gz"
        content_hash, files = write_snapshot(archive, Path(root).resolve(), list(paths))
        created = time.time()
        meta = {
            "run_id": run_id,
            "name": name,
            "content_hash": content_hash,
            "files": files,
            "retain": retain,
            "created_at": created,
            "producer": producer,
        }
        write_bytes_atomic(run_dir / f"{name}.json", json.dumps(meta, indent=2).encode("utf-8"))
        logger.info("artifact uploaded: run=%s name=%s files=%d", run_id, name, files)
        return Artifact(run_id, name, archive, content_hash, files, retain, created, producer)

    def get(self, run_id: str, name: str) -> Artifact:
        self._check_name(name)
        run_dir = self._run_dir(run_id)
        archive = run_dir / f"{name}.tar.gz"
        meta_path = run_dir / f"{name}.json"
        if not archive.exists() or not meta_path.exists():
            raise ArtifactNotFound(
                f"artifact '{name}' has not been uploaded in run {run_id}; "
                "the producing job must be listed in `needs`"
            )
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        return Artifact(
            run_id=run_id,
            name=name,
            path=archive,
            content_hash=meta["content_hash"],
            files=int(meta.get("files", 0)),
            retain=bool(meta.get("retain", False)),
            created_at=float(meta.get("created_at", 0.0)),
            producer=str(meta.get("producer", "")),
        )

    def extract(self, artifact: Artifact, dest: str | Path) -> List[str]:
        return extract_snapshot(artifact.path, Path(dest))

    def list(self, run_id: str) -> List[Artifact]:
        run_dir = self._run_dir(run_id)
        if not run_dir.exists():
            return []
        return [self.get(run_id, p.name[: -len(".json")]) for p in sorted(run_dir.glob("*.json"))]

    def discard_run(self, run_id: str, *, keep_retained: bool = True) -> List[str]:
        """Delete the run's artifacts. Returns the names removed."""
        removed: List[str] = []
        run_dir = self._run_dir(run_id)
        if not run_dir.exists():
            return removed
        for artifact in self.list(run_id):
            if keep_retained and artifact.retain:
                continue
            (run_dir / f"{artifact.name}.json").unlink(missing_ok=True)
            artifact.path.unlink(missing_ok=True)
            removed.append(artifact.name)
        if not any(run_dir.iterdir()):
            shutil.rmtree(run_dir, ignore_errors=True)
        logger.debug("discarded %d artifact(s) of run %s", len(removed), run_id)
        return removed
