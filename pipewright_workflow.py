# pipewright_workflow.py
# Workflow for pipewright itself: lint, tests, and a quality gate on pull requests
from __future__ import annotations

from pipewright.dsl import cache, checkout, job, quality_gate, sh, triggers, wf


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            checkout(),
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests", continue_on_error=True),
        ),

        # Test job - pip cache keyed on pyproject.toml, then pytest
        job(
            "test",
            checkout(),
            cache("Pip cache", path=[".venv"], key_files=["pyproject.toml"], prefix="venv", id="venv"),
            sh(
                "Install package",
                "python -m venv .venv && .venv/bin/pip install -e '.[test]'",
                condition="steps.venv.outputs.cache-hit != 'true'",
            ),
            sh("Run pytest", ".venv/bin/pytest -q"),
            needs=["lint"],
            timeout=900,
        ),

        # Quality gate - only reports back on pull requests
        job(
            "quality",
            checkout(),
            quality_gate(properties="analysis.properties", token="${{ secrets.ANALYSIS_TOKEN }}"),
            needs=["test"],
            condition="event.kind != 'push'",
        ),

        # Docs check - ensures the design notes are present
        job(
            "docs-check",
            checkout(),
            sh("Check DESIGN.md", "test -f DESIGN.md && echo 'DESIGN.md exists'"),
        ),
        name="pipewright",
        on=triggers(branches=["main"], paths_ignore=["docs/**"]),
    )
