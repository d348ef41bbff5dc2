# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass
class Settings:
    """
    Runtime settings. Everything can be set through PIPEWRIGHT_* environment
    variables; CLI options override what comes from the environment.
    """
    home: Path = Path(".pipewright")
    cache_dir: Optional[Path] = None
    artifact_dir: Optional[Path] = None
    deploy_dir: Optional[Path] = None
    deploy_base_url: str = "http://localhost:8000"
    cache_max_bytes: Optional[int] = 2 * 1024 ** 3
    max_workers: Optional[int] = None
    analysis_url: Optional[str] = None
    change_request_url: Optional[str] = None
    secret_prefix: str = "PIPEWRIGHT_SECRET_"
    default_branch: str = "main"

    def __post_init__(self) -> None:
        self.home = Path(self.home)
        if self.cache_dir is None:
            self.cache_dir = self.home / "cache"
        if self.artifact_dir is None:
            self.artifact_dir = self.home / "artifacts"
        if self.deploy_dir is None:
            self.deploy_dir = self.home / "deployments"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        def path(name: str) -> Optional[Path]:
            value = env.get(name)
            return Path(value) if value else None

        max_bytes = env.get("PIPEWRIGHT_CACHE_MAX_BYTES")
        return cls(
            home=Path(env.get("PIPEWRIGHT_HOME", ".pipewright")),
            cache_dir=path("PIPEWRIGHT_CACHE_DIR"),
            artifact_dir=path("PIPEWRIGHT_ARTIFACT_DIR"),
            deploy_dir=path("PIPEWRIGHT_DEPLOY_DIR"),
            deploy_base_url=env.get("PIPEWRIGHT_DEPLOY_BASE_URL", "http://localhost:8000"),
            cache_max_bytes=_int_or_none(max_bytes) if max_bytes is not None else 2 * 1024 ** 3,
            max_workers=_int_or_none(env.get("PIPEWRIGHT_MAX_WORKERS")),
            analysis_url=env.get("PIPEWRIGHT_ANALYSIS_URL") or None,
            change_request_url=env.get("PIPEWRIGHT_CHANGE_REQUEST_URL") or None,
            secret_prefix=env.get("PIPEWRIGHT_SECRET_PREFIX", "PIPEWRIGHT_SECRET_"),
            default_branch=env.get("PIPEWRIGHT_DEFAULT_BRANCH", "main"),
        )
