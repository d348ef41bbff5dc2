# cache.py
from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from .snapshot import (
    extract_snapshot,
    hash_files,
    sha256_str,
    write_bytes_atomic,
    write_snapshot,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency caching, shared across runs:
#   cache_key = scope + ":" + os_id + ":" + hash(declared input files)
#
#   scope  = repository + branch (+ a prefix naming what is cached)
#   os_id  = the job's runs_on descriptor
#   inputs = lockfile-like files ("package-lock.json", "**/poetry.lock")
#
# Lookups are exact: a changed lockfile yields a different key and therefore
# a miss, never a partial match. Entries are immutable once written.
#
# Layout:
#   root/
#     <sha256(key)>.tar.gz        snapshot of the cached directories
#     <sha256(key)>.json          manifest (key, size, created_at)
#
# An entry exists only when both files exist. The archive is renamed into
# place before the manifest is written, so a crashed writer leaves at most a
# stray archive that lookups ignore. Archive mtime tracks last access (LRU).
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".pipewright/cache"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    path: Path
    size: int
    created_at: float
    last_access: float


def cache_scope(repository: str, branch: str, prefix: str = "") -> str:
    scope = f"{repository or 'local'}@{branch or 'detached'}"
    return f"{prefix}/{scope}" if prefix else scope


def compute_cache_key(
    scope: str,
    os_id: str,
    root: str | Path,
    inputs: List[str],
) -> str:
    """scope:os_id:hash(inputs). The hash covers relative paths and contents."""
    digest = hash_files(Path(root).resolve(), list(inputs))
    return f"{scope}:{os_id}:{digest}"


class CacheStore:
    """
    File-based, content-addressed cache store.

    Safe for concurrent readers and writers: stores go through a temporary
    file plus rename, and a key is never overwritten once present.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, *, max_bytes: int | None = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self._lock = threading.Lock()

    def _stem(self, key: str) -> str:
        return sha256_str(key)

    def archive_path(self, key: str) -> Path:
        return self.root / f"{self._stem(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{self._stem(key)}.json"

    def _read_entry(self, manifest: Path) -> Optional[CacheEntry]:
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        archive = manifest.with_name(manifest.name[: -len(".json")] + ".tar.gz")
        try:
            st = archive.stat()
        except FileNotFoundError:
            return None
        return CacheEntry(
            key=data["key"],
            path=archive,
            size=st.st_size,
            created_at=float(data.get("created_at", st.st_mtime)),
            last_access=st.st_mtime,
        )

    # ------------------------------------------------------------------

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """Return the entry stored under exactly `key`, or None on a miss."""
        entry = self._read_entry(self.manifest_path(key))
        if entry is None or entry.key != key:
            logger.debug("cache miss: %s", key)
            return None
        now = time.time()
        try:
            os.utime(entry.path, (now, now))
        except FileNotFoundError:
            # evicted between the manifest read and now
            return None
        logger.debug("cache hit: %s", key)
        return CacheEntry(entry.key, entry.path, entry.size, entry.created_at, now)

    def store(self, key: str, paths: List[str], *, root: str | Path = ".") -> CacheEntry:
        """
        Snapshot `paths` (relative to root) under `key`.

        Storing a key that already exists is a no-op returning the existing
        entry; contents are assumed identical when keys match.
        """
        existing = self.lookup(key)
        if existing is not None:
            return existing

        root_p = Path(root).resolve()
        archive = self.archive_path(key)
        _hash, count = write_snapshot(archive, root_p, list(paths))
        created = time.time()
        manifest = {"key": key, "paths": list(paths), "files": count, "created_at": created}
        write_bytes_atomic(
            self.manifest_path(key),
            json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8"),
        )
        logger.info("cache saved: %s (%d files)", key, count)
        entry = CacheEntry(key, archive, archive.stat().st_size, created, created)

        if self.max_bytes is not None:
            self.evict(self.max_bytes, keep=(key,))

        return entry

    def restore(self, entry: CacheEntry, dest: str | Path) -> List[str]:
        """Extract an entry into dest (overwrite by extraction)."""
        return extract_snapshot(entry.path, Path(dest))

    def entries(self) -> List[CacheEntry]:
        out = []
        for manifest in sorted(self.root.glob("*.json")):
            entry = self._read_entry(manifest)
            if entry is not None:
                out.append(entry)
        return out

    def total_bytes(self) -> int:
        return sum(e.size for e in self.entries())

    def evict(self, max_bytes: int, keep: Iterable[str] = ()) -> List[str]:
        """
        Remove least-recently-used entries until the store fits in max_bytes.
        Keys in `keep` are never removed, even if the store stays over budget.
        Returns the evicted keys.
        """
        protected = set(keep)
        evicted: List[str] = []
        with self._lock:
            entries = sorted(self.entries(), key=lambda e: e.last_access)
            total = sum(e.size for e in entries)
            for e in entries:
                if total <= max_bytes:
                    break
                if e.key in protected:
                    continue
                # manifest first: the entry disappears atomically for readers
                self.manifest_path(e.key).unlink(missing_ok=True)
                e.path.unlink(missing_ok=True)
                total -= e.size
                evicted.append(e.key)
                logger.info("cache evicted: %s (%d bytes)", e.key, e.size)
        return evicted

    def clear(self) -> None:
        for e in self.entries():
            self.manifest_path(e.key).unlink(missing_ok=True)
            e.path.unlink(missing_ok=True)
