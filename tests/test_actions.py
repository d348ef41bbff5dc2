"""
Tests for the built-in actions running inside workflows.
"""

import json
from dataclasses import replace

import pytest

from pipewright.actions import ActionRegistry, default_registry, resolve_inputs, split_list
from pipewright.dsl import (
    cache,
    checkout,
    deploy,
    download_artifact,
    job,
    quality_gate,
    sh,
    upload_artifact,
    wf,
)
from pipewright.errors import ConfigurationError
from pipewright.model import Event, EventKind, JobStatus, RunStatus
from pipewright.publish import DeploymentEnvironment
from pipewright.quality import Finding, QualityGateReporter


def install_job(log, *extra):
    return job(
        "build",
        checkout(),
        cache("Dependencies", path=["node_modules"], key_files=["package-lock.json"], id="deps"),
        sh(
            "Install",
            f"mkdir -p node_modules && echo installed > node_modules/marker && echo install >> '{log}'",
            condition="steps.deps.outputs.cache-hit != 'true'",
        ),
        sh("Use deps", "test -f node_modules/marker"),
        *extra,
    )


class TestRegistry:
    """Tests for action lookup and input resolution."""

    def test_reference_forms(self):
        registry = default_registry()
        assert registry.get("cache").name == "cache"
        assert registry.get("cache@v2").name == "cache"
        assert registry.get("pipewright/checkout@v1").name == "checkout"
        assert "deploy" in registry
        assert "deploy-to-mars" not in registry

    def test_defaults_fill_absent_inputs(self):
        action = default_registry().get("download-artifact")
        assert resolve_inputs(action, {"name": "site"}) == {"name": "site", "path": "."}

    def test_missing_required_input(self):
        action = default_registry().get("cache")
        with pytest.raises(ConfigurationError, match="key-files"):
            resolve_inputs(action, {"path": "node_modules"}, job="build", step="Deps")

    def test_unknown_action(self):
        with pytest.raises(ConfigurationError, match="unknown action"):
            ActionRegistry().get("checkout")

    def test_split_list(self):
        assert split_list("dist\nbuild, out\n\n") == ["dist", "build", "out"]


class TestCheckout:
    """Tests for copying the source tree into the workspace."""

    def test_checkout_copies_sources(self, execute):
        workflow = wf(job("build", checkout(), sh("Check", "test -f src/index.html && test -f package-lock.json")))

        run = execute(workflow)

        assert run.status == RunStatus.SUCCESS
        assert run.jobs["build"].steps[0].outputs == {"files": "2"}

    def test_checkout_excludes(self, execute):
        workflow = wf(job("build", checkout(exclude=["src/**"]), sh("Check", "test ! -e src/index.html")))

        assert execute(workflow).status == RunStatus.SUCCESS


class TestCacheAction:
    """Tests for dependency caching across runs."""

    def test_miss_then_hit(self, execute, services, tmp_path):
        log = tmp_path / "install.log"
        workflow = wf(install_job(log))

        first = execute(workflow)
        second = execute(workflow)

        assert first.status == RunStatus.SUCCESS
        assert second.status == RunStatus.SUCCESS
        assert log.read_text().split() == ["install"]
        assert len(first.jobs["build"].cache_keys) == 1
        assert second.jobs["build"].cache_keys == []
        assert second.jobs["build"].steps[1].outputs["cache-hit"] == "true"
        assert len(services.cache.entries()) == 1

    def test_lockfile_change_is_a_miss(self, execute, source_dir, tmp_path):
        log = tmp_path / "install.log"
        workflow = wf(install_job(log))

        execute(workflow)
        (source_dir / "package-lock.json").write_text('{"lockfileVersion": 3, "changed": true}\n')
        execute(workflow)

        assert log.read_text().split() == ["install", "install"]

    def test_failed_job_saves_nothing(self, execute, services, tmp_path):
        workflow = wf(install_job(tmp_path / "install.log", sh("Tests", "exit 1")))

        run = execute(workflow)

        assert run.status == RunStatus.FAILURE
        assert services.cache.entries() == []

    def test_feature_branch_restores_from_default_branch(self, execute, services, tmp_path):
        log = tmp_path / "install.log"
        workflow = wf(install_job(log))
        execute(workflow)

        feature = Event(kind=EventKind.PUSH, ref="feature/login", repository="acme/site")
        run = execute(workflow, feature)

        deps = run.jobs["build"].steps[1].outputs
        assert deps["cache-hit"] == "false"
        assert "@main:" in deps["matched-key"]
        assert "@feature/login:" in deps["cache-key"]
        # the install still runs and the branch gets its own entry
        assert log.read_text().split() == ["install", "install"]
        assert len(services.cache.entries()) == 2


class TestArtifacts:
    """Tests for passing artifacts between jobs."""

    def build_and_consume(self, *consumer_steps, needs=("build",)):
        return wf(
            job(
                "build",
                checkout(),
                sh("Build", "mkdir -p dist && cp src/index.html dist/"),
                upload_artifact("Upload", "site", ["dist"]),
            ),
            job("consume", *consumer_steps, needs=list(needs)),
            env={"ARTIFACT": "site"},
        )

    def test_download_along_needs(self, execute, services):
        workflow = self.build_and_consume(
            download_artifact("Fetch", "site", path="incoming"),
            sh("Check", "grep -q hello incoming/dist/index.html"),
        )

        run = execute(workflow)

        assert run.status == RunStatus.SUCCESS
        assert run.jobs["build"].artifacts == ["site"]
        # discarded once the run completes
        assert services.artifacts.list(run.id) == []

    def test_retained_artifact_survives_run(self, services, push_event):
        from pipewright.engine import WorkflowEngine

        engine = WorkflowEngine(services, max_workers=2, retain_artifacts=True)
        workflow = self.build_and_consume(download_artifact("Fetch", "site"))

        run = engine.execute(engine.create_run(workflow, push_event))

        assert [a.name for a in services.artifacts.list(run.id)] == ["site"]

    def test_runtime_download_without_needs_fails(self, execute):
        workflow = self.build_and_consume(download_artifact("Fetch", "${{ env.ARTIFACT }}"), needs=())

        run = execute(workflow)

        consume = run.jobs["consume"]
        assert consume.status == JobStatus.FAILED
        assert "artifact 'site'" in consume.steps[0].error

    def test_empty_upload_warns(self, execute):
        run = execute(wf(job("build", upload_artifact("Upload", "nothing", ["missing-dir"]))))

        step = run.jobs["build"].steps[0]
        assert step.outcome == "success"
        assert any("no files matched" in line for line in step.log)


class TestDeploy:
    """Tests for publishing artifacts from a workflow."""

    def pages_workflow(self, permissions):
        return wf(
            job(
                "build",
                checkout(),
                sh("Build", "mkdir -p dist && cp src/index.html dist/"),
                upload_artifact("Upload", "site", ["dist"]),
            ),
            job(
                "deploy",
                deploy("Publish", artifact="site", permission="pages", id="publish"),
                sh("Url", "test '${{ steps.publish.outputs.page_url }}' = https://pages.example.test/production/"),
                needs=["build"],
                environment="production",
            ),
            permissions=permissions,
        )

    def test_publish_and_reuse(self, execute, tmp_path):
        workflow = self.pages_workflow({"pages": "write"})

        first = execute(workflow)
        second = execute(workflow)

        assert first.status == RunStatus.SUCCESS
        assert first.jobs["deploy"].steps[0].outputs["reused"] == "false"
        assert second.jobs["deploy"].steps[0].outputs["reused"] == "true"
        live = tmp_path / "home" / "sites" / "production" / "dist" / "index.html"
        assert live.read_text() == "<h1>hello</h1>\n"

    def test_missing_permission_is_fatal(self, execute):
        workflow = self.pages_workflow({"pages": "read"})
        deploy_job = workflow.job("deploy")
        deploy_job.steps[0] = replace(deploy_job.steps[0], continue_on_error=True)

        run = execute(workflow)

        result = run.jobs["deploy"]
        assert run.status == RunStatus.FAILURE
        assert result.status == JobStatus.FAILED
        assert "not authorized to deploy to 'production'" in result.error
        assert not result.steps[0].best_effort

    def test_environment_required(self, execute):
        workflow = wf(
            job("build", checkout(), upload_artifact("Upload", "site", ["src"])),
            job("deploy", deploy("Publish", artifact="site"), needs=["build"]),
            permissions={"deployments": "write"},
        )

        run = execute(workflow)

        assert run.jobs["deploy"].status == JobStatus.FAILED
        assert "needs an environment" in run.jobs["deploy"].error

    def test_registered_environment_scope(self, execute, services):
        """Without a step permission the registered environment decides the scope."""
        services.publisher.register(DeploymentEnvironment("github-pages", permission="pages"))
        workflow = wf(
            job("build", checkout(), upload_artifact("Upload", "site", ["src"])),
            job("deploy", deploy("Publish", artifact="site"), needs=["build"], environment="github-pages"),
            permissions={"pages": "write"},
        )

        run = execute(workflow)

        assert run.status == RunStatus.SUCCESS, run.jobs["deploy"].error
        assert run.jobs["deploy"].steps[0].outputs["page_url"].endswith("/github-pages/")


class FixedFindings:
    def __init__(self, findings):
        self.findings = findings

    def analyze(self, tree, project):
        return list(self.findings)


class TestQualityGateAction:
    """Tests for the quality gate step."""

    def test_failed_gate_does_not_fail_job(self, execute, services, source_dir):
        (source_dir / "analysis.properties").write_text("project.key=acme-site\nproject.sources=src\n")
        (source_dir / "baseline.json").write_text(
            json.dumps({"findings": [{"rule": "js:S1", "path": "src/old.js", "message": "known"}]})
        )
        services.reporter = QualityGateReporter(
            FixedFindings(
                [
                    Finding("js:S1", "known", "src/old.js", 3),
                    Finding("js:S2", "unused variable", "src/index.js", 7, severity="critical"),
                ]
            )
        )
        workflow = wf(
            job(
                "analyze",
                checkout(),
                quality_gate(baseline="baseline.json"),
                sh("Report", "test -f .pipewright/quality-report.json"),
            )
        )

        run = execute(workflow)

        assert run.status == RunStatus.SUCCESS
        outputs = run.jobs["analyze"].steps[1].outputs
        assert outputs == {"status": "failed", "passed": "false", "new-findings": "1"}

    def test_no_service_is_indeterminate(self, execute):
        run = execute(wf(job("analyze", checkout(), quality_gate())))

        outputs = run.jobs["analyze"].steps[1].outputs
        assert outputs["status"] == "indeterminate"
        assert outputs["passed"] == ""
