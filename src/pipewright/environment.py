# environment.py
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ProvisioningError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


def _kill(proc: subprocess.Popen) -> None:
    # shell=True: the shell's children hold the pipes open, so kill the whole group
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (AttributeError, ProcessLookupError, PermissionError):
        proc.kill()


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False


class ExecutionEnvironment:
    """
    One disposable place to run a job's steps.

    `workdir` is the host path of the job workspace. Subclasses decide how
    a shell command is executed against it.
    """

    def __init__(self, os_id: str, workdir: Path):
        self.os_id = os_id
        self.workdir = workdir
        self.disposed = False

    def _argv(self, command: str, cwd: Path, env: Dict[str, str]):
        """Return (argv, process env, process cwd, use shell)."""
        raise NotImplementedError

    def run(
        self,
        command: str,
        *,
        env: Dict[str, str] | None = None,
        cwd: str | None = None,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        """
        Run a shell command in the workspace.

        `deadline` is an absolute time.monotonic() value; the process is killed
        once it passes. `cancel` kills the process as soon as it is set.
        """
        work_cwd = (self.workdir / (cwd or ".")).resolve()
        if not work_cwd.exists():
            raise FileNotFoundError(f"step cwd not found: {cwd}")

        argv, proc_env, proc_cwd, shell = self._argv(command, work_cwd, dict(env or {}))
        proc = subprocess.Popen(
            argv,
            shell=shell,
            cwd=str(proc_cwd) if proc_cwd is not None else None,
            env=proc_env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )

        out_parts: List[str] = []
        err_parts: List[str] = []
        timed_out = cancelled = False
        while True:
            try:
                out, err = proc.communicate(timeout=POLL_INTERVAL)
                out_parts.append(out or "")
                err_parts.append(err or "")
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    cancelled = True
                elif deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
                self._terminate(proc)
                out, err = proc.communicate()
                out_parts.append(out or "")
                err_parts.append(err or "")
                break

        return CommandResult(
            exit_code=proc.returncode,
            stdout="".join(out_parts),
            stderr="".join(err_parts),
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def _terminate(self, proc: subprocess.Popen) -> None:
        _kill(proc)

    def path_in_env(self, host_path: Path) -> str:
        """How a command running in this environment sees a host path inside the workspace."""
        return str(host_path)

    def dispose(self) -> None:
        if self.disposed:
            return
        shutil.rmtree(self.workdir, ignore_errors=True)
        self.disposed = True


class LocalEnvironment(ExecutionEnvironment):
    """Runs commands with the host shell inside a temporary workspace."""

    def _argv(self, command, cwd, env):
        proc_env = os.environ.copy()
        proc_env.update(env)
        proc_env.setdefault("PIPEWRIGHT_WORKSPACE", str(self.workdir))
        return command, proc_env, cwd, True


class DockerEnvironment(ExecutionEnvironment):
    """Runs every command in a fresh container with the workspace mounted at /workspace."""

    MOUNT = "/workspace"

    def __init__(self, os_id: str, workdir: Path, image: str, *, user: str | None = None):
        super().__init__(os_id, workdir)
        self.image = image
        self.user = user
        self.container: Optional[str] = None

    def _argv(self, command, cwd, env):
        rel = cwd.relative_to(self.workdir.resolve()).as_posix()
        container_cwd = self.MOUNT if rel == "." else f"{self.MOUNT}/{rel}"
        self.container = f"pipewright-{uuid.uuid4().hex[:12]}"
        argv = [
            "docker", "run", "--rm", "--name", self.container,
            "-v", f"{self.workdir.resolve()}:{self.MOUNT}", "-w", container_cwd,
        ]
        if self.user:
            argv.extend(["--user", self.user])
        for k, v in sorted(env.items()):
            argv.extend(["-e", f"{k}={v}"])
        argv.extend([self.image, "sh", "-c", command])
        return argv, None, None, False

    def _terminate(self, proc):
        # killing the docker client leaves the container running
        stopped = subprocess.run(["docker", "kill", self.container], capture_output=True, text=True)
        if stopped.returncode != 0:
            logger.debug("docker kill %s: %s", self.container, stopped.stderr.strip())
        super()._terminate(proc)

    def path_in_env(self, host_path: Path) -> str:
        rel = Path(host_path).resolve().relative_to(self.workdir.resolve()).as_posix()
        return f"{self.MOUNT}/{rel}"


# ---------------------------------------------------------------------
# Provisioners
# ---------------------------------------------------------------------

class Provisioner:
    def provision(self, os_id: str) -> ExecutionEnvironment:
        raise NotImplementedError


class LocalProvisioner(Provisioner):
    """Hands out temporary directories on this machine, whatever the requested os id."""

    def __init__(self, base_dir: str | Path | None = None):
        self.base_dir = Path(base_dir).resolve() if base_dir else None
        if self.base_dir:
            self.base_dir.mkdir(parents=True, exist_ok=True)

    def provision(self, os_id: str) -> ExecutionEnvironment:
        workdir = Path(tempfile.mkdtemp(prefix="pipewright-", dir=self.base_dir))
        logger.debug("provisioned local workspace %s for %s", workdir, os_id)
        return LocalEnvironment(os_id, workdir)


DEFAULT_IMAGES = {
    "ubuntu-latest": "ubuntu:24.04",
    "ubuntu-24.04": "ubuntu:24.04",
    "ubuntu-22.04": "ubuntu:22.04",
}


class DockerProvisioner(Provisioner):
    """Maps os ids to container images; `local` falls back to the host shell."""

    def __init__(
        self,
        images: Optional[Dict[str, str]] = None,
        *,
        base_dir: str | Path | None = None,
        user: str | None = None,
    ):
        self.images = dict(DEFAULT_IMAGES)
        self.images.update(images or {})
        self.local = LocalProvisioner(base_dir)
        self.user = user
        self._checked = False

    def _check_docker_available(self) -> None:
        if self._checked:
            return
        try:
            subprocess.run(["docker", "--version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise ProvisioningError("docker is not available: install Docker and ensure the daemon is running")
        self._checked = True

    def provision(self, os_id: str) -> ExecutionEnvironment:
        if os_id == "local":
            return self.local.provision(os_id)
        image = self.images.get(os_id)
        if image is None:
            raise ProvisioningError(
                f"no image configured for runs-on {os_id!r}; known: {sorted(self.images)}"
            )
        self._check_docker_available()
        env = self.local.provision(os_id)
        return DockerEnvironment(os_id, env.workdir, image, user=self.user)

