# publish.py
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from .artifacts import Artifact
from .errors import AuthorizationError
from .snapshot import extract_snapshot, write_bytes_atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentEnvironment:
    """
    A publish target. `permission` names the scope the run must hold with
    `write` access (e.g. "pages" for static hosting).
    """
    name: str
    permission: str = "deployments"


@dataclass(frozen=True)
class DeploymentRecord:
    environment: str
    artifact: str
    content_hash: str
    url: str
    deployed_at: float
    run_id: str = ""
    reused: bool = False  # identical content was already live


class HostingTarget:
    def upload(self, environment: str, archive: Path) -> str:
        """Make the archive's files live for `environment`; return the public URL."""
        raise NotImplementedError


class DirectoryHostingTarget(HostingTarget):
    """
    Static-file hosting backed by a directory:
      root/<environment>/...   the live site

    A new version is extracted next to the live one and swapped in with
    renames, so readers see either the old or the new tree.
    """

    def __init__(self, root: str | Path, base_url: str = "http://localhost:8000"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")

    def live_dir(self, environment: str) -> Path:
        return self.root / environment

    def upload(self, environment: str, archive: Path) -> str:
        staging = Path(tempfile.mkdtemp(prefix=f".{environment}-", dir=self.root))
        extract_snapshot(archive, staging)
        live = self.live_dir(environment)
        old = self.root / f".{environment}.old-{int(time.time() * 1000)}"
        if live.exists():
            os.replace(live, old)
        os.replace(staging, live)
        shutil.rmtree(old, ignore_errors=True)
        return f"{self.base_url}/{environment}/"


class DeploymentPublisher:
    """
    Publishes artifacts to environments, idempotently per
    (environment, artifact content hash).

    The ledger remembers what is live in each environment; publishing the
    content that is already live returns a success record without touching
    the target.
    """

    def __init__(
        self,
        target: HostingTarget,
        *,
        ledger_path: str | Path,
        environments: Optional[Mapping[str, DeploymentEnvironment]] = None,
    ):
        self.target = target
        self.ledger_path = Path(ledger_path)
        self.environments: Dict[str, DeploymentEnvironment] = dict(environments or {})
        self._lock = threading.Lock()

    def environment(self, name: str) -> DeploymentEnvironment:
        return self.environments.get(name) or DeploymentEnvironment(name)

    def register(self, environment: DeploymentEnvironment) -> None:
        self.environments[environment.name] = environment

    def _load(self) -> Dict[str, Dict]:
        if not self.ledger_path.exists():
            return {}
        return json.loads(self.ledger_path.read_text(encoding="utf-8"))

    def _save(self, ledger: Dict[str, Dict]) -> None:
        write_bytes_atomic(self.ledger_path, json.dumps(ledger, indent=2, sort_keys=True).encode("utf-8"))

    def live(self, environment: str) -> Optional[DeploymentRecord]:
        entry = self._load().get(environment)
        if not entry:
            return None
        return DeploymentRecord(**entry["live"])

    def publish(
        self,
        environment: str | DeploymentEnvironment,
        artifact: Artifact,
        *,
        permissions: Mapping[str, str],
        run_id: str = "",
    ) -> DeploymentRecord:
        env = environment if isinstance(environment, DeploymentEnvironment) else self.environment(environment)
        if permissions.get(env.permission) != "write":
            raise AuthorizationError(environment=env.name, scope=env.permission)

        with self._lock:
            ledger = self._load()
            entry = ledger.setdefault(env.name, {"live": None, "history": []})
            live = entry.get("live")
            if live and live["content_hash"] == artifact.content_hash:
                logger.info("deploy %s: content %s already live", env.name, artifact.content_hash[:12])
                return DeploymentRecord(
                    environment=env.name,
                    artifact=artifact.name,
                    content_hash=artifact.content_hash,
                    url=live["url"],
                    deployed_at=time.time(),
                    run_id=run_id,
                    reused=True,
                )

            url = self.target.upload(env.name, artifact.path)
            record = DeploymentRecord(
                environment=env.name,
                artifact=artifact.name,
                content_hash=artifact.content_hash,
                url=url,
                deployed_at=time.time(),
                run_id=run_id,
            )
            entry["live"] = asdict(record)
            entry["history"].append({"content_hash": record.content_hash, "run_id": run_id, "deployed_at": record.deployed_at})
            self._save(ledger)
            logger.info("deployed %s to %s (%s)", artifact.name, env.name, url)
            return record
