# snapshot.py
from __future__ import annotations

import hashlib
import io
import json
import os
import tarfile
import uuid
from pathlib import Path
from typing import Iterable, List, Tuple

from .triggers import glob_match

# ---------------------------------------------------------------------
# Directory snapshots
# ---------------------------------------------------------------------
# Cache entries, artifacts and deployments all move "a directory tree" around.
# A snapshot is a tar.gz of files addressed by their path relative to a root,
# so extracting it into another root reproduces the same layout.
#
# Snapshots are written to a unique temporary file next to dest and renamed
# into place, so a reader never observes a half-written archive.
# ---------------------------------------------------------------------

DEFAULT_EXCLUDES = [
    ".git/**",
    ".pipewright/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

TMP_SUFFIX = ".tmp"


def tmp_path_for(dest: Path) -> Path:
    # unique per writer so concurrent stores of the same key never share a file
    return dest.with_name(f"{dest.name}.{uuid.uuid4().hex[:12]}{TMP_SUFFIX}")


def sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def matches_any_glob(rel: str, globs: List[str]) -> bool:
    return any(glob_match(rel, g) for g in globs)


def hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns into concrete paths under root.
    Supports:
      - file path: "package-lock.json"
      - dir path:  "build/"
      - glob:      "src/**", "**/package-lock.json"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        try:
            matches = sorted(root.glob(pat))
        except (ValueError, NotImplementedError):
            matches = []
        out.extend(m for m in matches if m.exists())

    # de-dupe, keep order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def collect_files(root: Path, patterns: List[str], *, excludes: List[str] | None = None) -> List[Tuple[str, Path]]:
    """Return sorted (relpath, path) pairs for every file selected by patterns."""
    exclude_globs = list(DEFAULT_EXCLUDES) + list(excludes or [])
    files = {}
    for p in resolve_globs(root, patterns):
        candidates = [p] if p.is_file() else list(iter_files_under(p))
        for f in candidates:
            rel = relpath(f, root)
            if matches_any_glob(rel, exclude_globs):
                continue
            files[rel] = f
    return sorted(files.items())


def hash_files(root: Path, patterns: List[str], *, excludes: List[str] | None = None) -> str:
    """Content hash over relative paths and file contents of the selected files."""
    fps = [(rel, hash_file_contents(f)) for rel, f in collect_files(root, patterns, excludes=excludes)]
    return sha256_str(json_dumps_stable({"files": fps}))


def write_snapshot(
    dest: Path,
    root: Path,
    patterns: List[str],
    *,
    excludes: List[str] | None = None,
) -> Tuple[str, int]:
    """
    Archive the selected files under root into dest.
    Returns (content_hash, file_count); the content hash ignores archive metadata.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    files = collect_files(root, patterns, excludes=excludes)
    tmp = tmp_path_for(dest)
    fps = []
    try:
        with tarfile.open(str(tmp), mode="w:gz") as tar:
            for rel, f in files:
                tar.add(str(f), arcname=rel, recursive=False)
                fps.append((rel, hash_file_contents(f)))
        os.replace(tmp, dest)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)
    return sha256_str(json_dumps_stable({"files": fps})), len(files)


def extract_snapshot(archive: Path, dest: Path) -> List[str]:
    """Extract archive into dest (overwrite by extraction). Returns extracted relpaths."""
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(str(archive), mode="r:gz") as tar:
        members = [m for m in tar.getmembers() if m.isfile()]
        root = dest.resolve()
        for m in members:
            target = (dest / m.name).resolve()
            if not target.is_relative_to(root):
                raise ValueError(f"refusing to extract {m.name!r} outside {dest}")
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(dest), members=members, filter="data")
        else:
            tar.extractall(path=str(dest), members=members)
    return [m.name for m in members]


def write_bytes_atomic(dest: Path, data: bytes) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = tmp_path_for(dest)
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, dest)


def tree_archive_bytes(root: Path, patterns: List[str], *, excludes: List[str] | None = None) -> bytes:
    """In-memory tar.gz of a tree (used for uploads to external services)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for rel, f in collect_files(root, patterns, excludes=excludes):
            tar.add(str(f), arcname=rel, recursive=False)
    return buf.getvalue()
