# events.py
from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigurationError
from .git_facts.git import (
    changed_files,
    current_branch,
    get_remote_url,
    head_commit_message,
    head_sha,
    is_dirty,
    merge_base,
    repo_root,
    tracked_files,
    uncommitted_files,
)
from .model import Event, EventKind

logger = logging.getLogger(__name__)


_KIND_ALIASES = {
    "pull_request": EventKind.PULL_REQUEST_OPENED,
    "pull-request": EventKind.PULL_REQUEST_OPENED,
    "opened": EventKind.PULL_REQUEST_OPENED,
    "synchronize": EventKind.PULL_REQUEST_SYNCHRONIZED,
    "synchronized": EventKind.PULL_REQUEST_SYNCHRONIZED,
    "workflow_dispatch": EventKind.MANUAL_DISPATCH,
    "dispatch": EventKind.MANUAL_DISPATCH,
}


def parse_kind(value: str) -> EventKind:
    try:
        return EventKind(value)
    except ValueError:
        pass
    kind = _KIND_ALIASES.get(value.replace(" ", "_").lower())
    if kind is None:
        raise ConfigurationError(
            f"unknown event kind {value!r}; expected one of {[k.value for k in EventKind]}"
        )
    return kind


def repository_name(url: Optional[str], root: Path) -> str:
    """owner/name from a remote URL, else the directory name."""
    if url:
        tail = url.rstrip("/").removesuffix(".git")
        tail = tail.split("://", 1)[-1].replace(":", "/")
        parts = [p for p in tail.split("/") if p]
        if len(parts) >= 2:
            return "/".join(parts[-2:])
    return root.name


def event_from_payload(data: Dict[str, Any]) -> Event:
    """
    Build an Event from a JSON payload:

        {"kind": "push", "ref": "refs/heads/main", "changed_paths": [...],
         "commit_message": "...", "sha": "...", "repository": "owner/repo",
         "change_request": 12, "inputs": {...}}
    """
    if "kind" not in data or "ref" not in data:
        raise ConfigurationError("event payload needs at least `kind` and `ref`")
    change_request = data.get("change_request")
    return Event(
        kind=parse_kind(str(data["kind"])),
        ref=str(data["ref"]),
        changed_paths=tuple(data.get("changed_paths") or ()),
        commit_message=str(data.get("commit_message") or ""),
        sha=data.get("sha"),
        repository=str(data.get("repository") or ""),
        change_request=int(change_request) if change_request is not None else None,
        inputs={str(k): str(v) for k, v in (data.get("inputs") or {}).items()},
    )


def load_event(path: str | Path) -> Event:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"cannot read event payload {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"event payload {p} must be a JSON object")
    return event_from_payload(data)


def git_changes(root: Path, compare_ref: str) -> Tuple[Optional[str], List[str]]:
    """
    Returns:
      head sha, or None if the repo has uncommitted changes (dirty)
      changed files relative to the repo root
    """
    if is_dirty(root):
        return None, uncommitted_files(root)

    # Fall back to HEAD~1 if compare_ref isn't available
    try:
        base = merge_base(compare_ref, root)
    except subprocess.CalledProcessError:
        base = "HEAD~1"
    try:
        changed = changed_files(base, "HEAD", root)
    except subprocess.CalledProcessError:
        # first commit: every tracked file is "changed"
        changed = tracked_files(root)
    return head_sha(root), changed


def event_from_git(
    kind: EventKind = EventKind.PUSH,
    *,
    cwd: str | Path = ".",
    compare_ref: str = "origin/main",
    ref: str | None = None,
    change_request: int | None = None,
    inputs: Dict[str, str] | None = None,
) -> Event:
    """Build an Event describing the local repository state."""
    root = repo_root(cwd)
    sha, changed = git_changes(root, compare_ref)
    branch = ref or current_branch(root)
    try:
        message = head_commit_message(root)
    except subprocess.CalledProcessError:
        message = ""
    event = Event(
        kind=kind,
        ref=branch,
        changed_paths=tuple(changed),
        commit_message=message,
        sha=sha,
        repository=repository_name(get_remote_url("origin", root), root),
        change_request=change_request,
        inputs=dict(inputs or {}),
    )
    logger.debug("event from git: %s %s (%d changed paths)", event.kind.value, event.ref, len(changed))
    return event
