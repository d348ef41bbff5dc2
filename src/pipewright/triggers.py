# triggers.py
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List

from .model import Event, EventKind, TriggerSpec


@dataclass(frozen=True)
class TriggerDecision:
    accepted: bool
    reason: str

    def __bool__(self) -> bool:
        return self.accepted


# ---------------------------------------------------------------------
# Glob matching
# ---------------------------------------------------------------------
#   *   any run of characters except "/"
#   **  any run of characters, "/" included ("docs/**" matches "docs/a/b.md")
#   ?   one character except "/"

@lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> re.Pattern:
    out: List[str] = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(path: str, pattern: str) -> bool:
    return _compile_glob(pattern).match(path) is not None


def matches_patterns(value: str, patterns: Iterable[str]) -> bool:
    """
    Match against an ordered pattern list. "!pattern" excludes; the last
    pattern that matches decides.
    """
    matched = False
    for pat in patterns:
        if pat.startswith("!"):
            if glob_match(value, pat[1:]):
                matched = False
        elif glob_match(value, pat):
            matched = True
    return matched


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def evaluate(event: Event, spec: TriggerSpec) -> TriggerDecision:
    """Decide whether `event` starts a run of a workflow filtered by `spec`."""
    marker = (spec.skip_marker or "").lower()
    if marker and marker in (event.commit_message or "").lower():
        return TriggerDecision(False, f"commit message contains skip marker {spec.skip_marker!r}")

    if event.kind not in spec.events:
        return TriggerDecision(False, f"workflow does not listen to {event.kind.value} events")

    if event.kind == EventKind.MANUAL_DISPATCH:
        if not spec.manual_dispatch:
            return TriggerDecision(False, "manual dispatch is disabled")
        return TriggerDecision(True, "manual dispatch")

    if event.kind == EventKind.PUSH and spec.branches:
        if not matches_patterns(event.branch, spec.branches):
            return TriggerDecision(False, f"branch {event.branch!r} does not match {spec.branches}")

    if spec.paths_ignore and event.changed_paths:
        relevant = [p for p in event.changed_paths if not matches_patterns(p, spec.paths_ignore)]
        if not relevant:
            return TriggerDecision(False, "every changed path is ignored")
        return TriggerDecision(True, f"{len(relevant)} relevant changed path(s)")

    return TriggerDecision(True, "filters matched")


def should_run(event: Event, spec: TriggerSpec) -> bool:
    return evaluate(event, spec).accepted
