"""
Tests for loading YAML and Python workflow files.
"""

import textwrap
from pathlib import Path

import pytest

from pipewright.actions import default_registry
from pipewright.dag import validate_workflow
from pipewright.errors import ConfigurationError
from pipewright.loader import find_workflow_files, load_action, load_workflow
from pipewright.model import EventKind, WorkflowDefinition


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content))
    return path


PAGES = """
name: pages
on:
  push:
    branches: [main]
    paths-ignore: ["docs/**"]
  pull_request:
    types: [opened]
  workflow_dispatch:
permissions:
  pages: write
env:
  NODE_ENV: production
jobs:
  build:
    runs-on: ubuntu-latest
    timeout-minutes: 10
    steps:
      - uses: checkout
      - id: deps
        uses: cache
        with:
          path: node_modules
          key-files: package-lock.json
      - name: Install
        if: steps.deps.outputs.cache-hit != 'true'
        run: npm ci
      - run: npm run build
        continue-on-error: false
      - uses: upload-artifact
        with:
          name: site
          path: dist
  deploy:
    needs: build
    environment:
      name: github-pages
      url: https://example.test
    steps:
      - uses: download-artifact
        with:
          name: site
      - uses: deploy
        with:
          artifact: site
          permission: pages
"""


class TestYamlWorkflow:
    """Tests for YAML workflow documents."""

    def test_load_full_workflow(self, tmp_path):
        workflow = load_workflow(write(tmp_path / "pages.yml", PAGES), base_dir=tmp_path)

        assert workflow.name == "pages"
        assert workflow.permissions == {"pages": "write"}
        assert workflow.env == {"NODE_ENV": "production"}
        build = workflow.job("build")
        assert build.runs_on == "ubuntu-latest"
        assert build.timeout == 600
        assert [s.name for s in build.steps] == ["checkout", "cache", "Install", "npm run build", "upload-artifact"]
        assert build.steps[1].id == "deps"
        assert build.steps[1].with_ == {"path": "node_modules", "key-files": "package-lock.json"}
        assert build.steps[2].condition == "steps.deps.outputs.cache-hit != 'true'"
        deploy = workflow.job("deploy")
        assert deploy.needs == ["build"]
        assert deploy.environment == "github-pages"
        assert validate_workflow(workflow, default_registry()) == [["build"], ["deploy"]]

    def test_on_key_triggers(self, tmp_path):
        workflow = load_workflow(write(tmp_path / "pages.yml", PAGES), base_dir=tmp_path)

        spec = workflow.triggers
        assert spec.branches == ["main"]
        assert spec.paths_ignore == ["docs/**"]
        assert spec.manual_dispatch is True
        assert spec.events == {EventKind.PUSH, EventKind.PULL_REQUEST_OPENED, EventKind.MANUAL_DISPATCH}

    def test_on_shorthand_without_dispatch(self, tmp_path):
        path = write(
            tmp_path / "ci.yml",
            """
            on: [push, pull_request]
            jobs:
              test:
                steps:
                  - run: "true"
            """,
        )

        workflow = load_workflow(path, base_dir=tmp_path)

        assert workflow.name == "ci"
        assert workflow.triggers.manual_dispatch is False
        assert workflow.triggers.branches is None
        assert EventKind.PULL_REQUEST_SYNCHRONIZED in workflow.triggers.events

    def test_branches_ignore_become_negations(self, tmp_path):
        path = write(
            tmp_path / "ci.yml",
            """
            on:
              push:
                branches-ignore: ["wip/**"]
            jobs:
              test:
                steps:
                  - run: "true"
            """,
        )

        assert load_workflow(path, base_dir=tmp_path).triggers.branches == ["**", "!wip/**"]

    @pytest.mark.parametrize(
        "body, message",
        [
            ("jobs: {}\n", "jobs"),
            ("jobs:\n  a:\n    steps:\n      - name: nothing\n", "exactly one of `run` or `uses`"),
            ("jobs:\n  a:\n    step:\n      - run: x\n", "step"),
            ("permissions:\n  pages: admin\njobs:\n  a:\n    steps:\n      - run: x\n", "read, write or none"),
            ("on:\n  pull_request:\n    types: [closed]\njobs:\n  a:\n    steps:\n      - run: x\n", "closed"),
            ("on:\n  pull_request:\n    branches: [main]\njobs:\n  a:\n    steps:\n      - run: x\n", "pull_request.branches is not supported"),
        ],
    )
    def test_schema_errors(self, tmp_path, body, message):
        path = write(tmp_path / "bad.yml", body)

        with pytest.raises(ConfigurationError, match=message) as exc:
            load_workflow(path, base_dir=tmp_path)
        assert "invalid" in str(exc.value)

    def test_not_yaml(self, tmp_path):
        path = write(tmp_path / "broken.yml", "jobs: [unclosed\n")

        with pytest.raises(ConfigurationError, match="not valid YAML"):
            load_workflow(path, base_dir=tmp_path)

    def test_scalars_become_strings(self, tmp_path):
        path = write(
            tmp_path / "ci.yml",
            """
            jobs:
              a:
                env:
                  DEBUG: true
                  RETRIES: 3
                steps:
                  - uses: upload-artifact
                    with:
                      path: dist
                      retain: true
            """,
        )

        a = load_workflow(path, base_dir=tmp_path).job("a")

        assert a.env == {"DEBUG": "true", "RETRIES": "3"}
        assert a.steps[0].with_["retain"] == "true"


class TestCompositeActionFiles:
    """Tests for composite action files."""

    ACTION = """
    name: setup-node
    description: Install dependencies
    inputs:
      node-version:
        required: true
      registry:
        default: https://registry.npmjs.org
    runs:
      using: composite
      steps:
        - run: echo "node ${{ inputs.node-version }}"
    """

    def test_load_action(self, tmp_path):
        write(tmp_path / "actions" / "setup-node" / "action.yml", self.ACTION)

        action = load_action(tmp_path / "actions" / "setup-node")

        assert action.name == "setup-node"
        assert [(i.name, i.required, i.default) for i in action.inputs] == [
            ("node-version", True, None),
            ("registry", False, "https://registry.npmjs.org"),
        ]

    def test_local_action_references(self, tmp_path):
        write(tmp_path / "actions" / "setup-node" / "action.yml", self.ACTION)
        path = write(
            tmp_path / "ci.yml",
            """
            jobs:
              build:
                steps:
                  - uses: ./actions/setup-node
                    with:
                      node-version: "20"
            """,
        )

        workflow = load_workflow(path, base_dir=tmp_path)

        assert list(workflow.actions) == ["./actions/setup-node"]
        validate_workflow(workflow, default_registry())

    def test_missing_local_action(self, tmp_path):
        path = write(
            tmp_path / "ci.yml",
            """
            jobs:
              build:
                steps:
                  - uses: ./actions/nope
            """,
        )

        with pytest.raises(ConfigurationError, match="action file not found"):
            load_workflow(path, base_dir=tmp_path)

    def test_only_composite_actions(self, tmp_path):
        path = write(
            tmp_path / "action.yml",
            """
            name: docker-thing
            runs:
              using: docker
              steps:
                - run: "true"
            """,
        )

        with pytest.raises(ConfigurationError, match="only composite"):
            load_action(path)


class TestPythonWorkflow:
    """Tests for Python workflow files."""

    def test_workflow_function(self, tmp_path):
        path = write(
            tmp_path / "site_workflow.py",
            """
            from pipewright import job, sh, triggers, wf

            def workflow():
                return wf(
                    job("build", sh("Build", "make")),
                    job("test", sh("Test", "make test"), needs=["build"]),
                    name="site",
                    on=triggers(branches=["main"]),
                )
            """,
        )

        workflow = load_workflow(path)

        assert isinstance(workflow, WorkflowDefinition)
        assert workflow.name == "site"
        assert [j.name for j in workflow.jobs] == ["build", "test"]

    def test_jobs_list(self, tmp_path):
        path = write(
            tmp_path / "ci_workflow.py",
            """
            from pipewright import job, sh, workflow

            JOBS = [job("lint", sh("Lint", "ruff check ."))]
            """,
        )

        workflow = load_workflow(path)

        assert workflow.name == "ci_workflow"
        assert workflow.jobs[0].name == "lint"

    def test_nothing_defined(self, tmp_path):
        path = write(tmp_path / "empty_workflow.py", "X = 1\n")

        with pytest.raises(TypeError, match="WorkflowDefinition"):
            load_workflow(path)

    def test_unsupported_suffix(self, tmp_path):
        path = write(tmp_path / "ci.toml", "")

        with pytest.raises(ValueError, match=".yml, .yaml or .py"):
            load_workflow(path)


class TestFindWorkflowFiles:
    def test_discovery_order(self, tmp_path):
        write(tmp_path / ".pipewright" / "workflows" / "pages.yml", PAGES)
        write(tmp_path / ".pipewright" / "workflows" / "notes.txt", "")
        write(tmp_path / "pipewright.yml", PAGES)
        write(tmp_path / "site_workflow.py", "")

        found = [p.relative_to(tmp_path).as_posix() for p in find_workflow_files(tmp_path)]

        assert found == [".pipewright/workflows/pages.yml", "pipewright.yml", "site_workflow.py"]
