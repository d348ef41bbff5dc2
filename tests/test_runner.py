"""
Tests for step execution within a job.
"""

from pathlib import Path

from pipewright.dsl import composite, job, sh, uses, wf
from pipewright.model import FAILURE, SKIPPED, SUCCESS, JobStatus, RunStatus
from pipewright.runner import _read_outputs

from conftest import SECRET_VALUE


def steps_by_name(result):
    return {s.name: s for s in result.steps}


class TestStepOutputs:
    """Tests for outputs written through $PIPEWRIGHT_OUTPUT."""

    def test_outputs_feed_later_steps(self, execute):
        workflow = wf(
            job(
                "build",
                sh("Version", "echo version=1.2.3 >> \"$PIPEWRIGHT_OUTPUT\"", id="ver"),
                sh("Use", "test '${{ steps.ver.outputs.version }}' = 1.2.3"),
                sh("Never", "exit 1", condition="steps.ver.outputs.version == '0.0.0'"),
            )
        )

        run = execute(workflow)

        result = run.jobs["build"]
        assert result.status == JobStatus.SUCCEEDED
        steps = steps_by_name(result)
        assert steps["Version"].outputs == {"version": "1.2.3"}
        assert steps["Use"].outcome == SUCCESS
        assert steps["Never"].outcome == SKIPPED

    def test_multiline_outputs(self, execute):
        cmd = "printf 'notes<<EOF\\nline one\\nline two\\nEOF\\n' >> \"$PIPEWRIGHT_OUTPUT\""
        run = execute(wf(job("build", sh("Notes", cmd, id="notes"))))

        assert run.jobs["build"].steps[0].outputs == {"notes": "line one\nline two"}

    def test_read_outputs_file(self, tmp_path: Path):
        path = tmp_path / "out.txt"
        path.write_text("a=1\nurl=http://x?y=z\nbody<<END\nfirst\nsecond\nEND\nb=2\n")

        assert _read_outputs(path) == {"a": "1", "url": "http://x?y=z", "body": "first\nsecond", "b": "2"}
        assert _read_outputs(tmp_path / "missing.txt") == {}


class TestFailureHandling:
    """Tests for failing, best-effort and always-run steps."""

    def test_first_failure_aborts_remaining_steps(self, execute):
        workflow = wf(
            job(
                "build",
                sh("Fail", "exit 2"),
                sh("Never", "true"),
                sh("Cleanup", "true", condition="always()"),
            )
        )

        run = execute(workflow)

        result = run.jobs["build"]
        assert result.status == JobStatus.FAILED
        assert result.failed_step == "Fail"
        steps = steps_by_name(result)
        assert steps["Fail"].outcome == FAILURE
        assert steps["Fail"].exit_code == 2
        assert steps["Never"].outcome == SKIPPED
        assert steps["Cleanup"].outcome == SUCCESS

    def test_best_effort_step(self, execute):
        """A continue-on-error failure is recorded but the job succeeds."""
        workflow = wf(
            job(
                "build",
                sh("Flaky", "exit 1", id="flaky", continue_on_error=True),
                sh("After", "true"),
                sh("Report", "true", condition="failure()"),
                sh("Inspect", "true", condition="steps.flaky.outcome == 'failure' && steps.flaky.conclusion == 'success'"),
            )
        )

        run = execute(workflow)

        assert run.status == RunStatus.SUCCESS
        result = run.jobs["build"]
        assert result.status == JobStatus.SUCCEEDED
        assert result.failed_step is None
        steps = steps_by_name(result)
        assert steps["Flaky"].outcome == FAILURE
        assert steps["Flaky"].conclusion == SUCCESS
        assert steps["Flaky"].best_effort
        assert steps["After"].outcome == SUCCESS
        assert steps["Report"].outcome == SUCCESS
        assert steps["Inspect"].outcome == SUCCESS

    def test_missing_working_directory_fails_step(self, execute):
        run = execute(wf(job("build", sh("Elsewhere", "true", cwd="does/not/exist"))))

        result = run.jobs["build"]
        assert result.status == JobStatus.FAILED
        assert "does/not/exist" in result.steps[0].error

    def test_invalid_condition_is_fatal(self, execute):
        workflow = wf(
            job(
                "build",
                sh("Broken", "true", condition="steps.x ==", continue_on_error=True),
                sh("Cleanup", "true", condition="always()"),
            )
        )

        run = execute(workflow)

        result = run.jobs["build"]
        assert result.status == JobStatus.FAILED
        assert result.failed_step == "Broken"
        assert [s.name for s in result.steps] == ["Broken"]


class TestEnvironment:
    """Tests for env, working directories and interpolation."""

    def test_env_layers(self, execute):
        workflow = wf(
            job(
                "build",
                sh("Check", 'test "$LEVEL" = step && test "$MODE" = prod && test "$CI" = true', env={"LEVEL": "step"}),
                env={"LEVEL": "job"},
            ),
            env={"MODE": "prod", "LEVEL": "workflow"},
        )

        assert execute(workflow).status == RunStatus.SUCCESS

    def test_job_identity_in_env(self, execute):
        run = execute(wf(job("build", sh("Who", 'echo "$PIPEWRIGHT_JOB $PIPEWRIGHT_RUN_ID"'))))

        assert run.jobs["build"].steps[0].log == [f"build {run.id}"]

    def test_steps_share_a_workspace(self, execute):
        workflow = wf(
            job(
                "build",
                sh("Write", "mkdir -p out && echo data > out/file.txt"),
                sh("Read", "test \"$(cat file.txt)\" = data", cwd="out"),
            )
        )

        assert execute(workflow).status == RunStatus.SUCCESS


class TestSecrets:
    """Tests for secret resolution and masking."""

    def test_secret_values_are_masked_in_logs(self, execute):
        workflow = wf(
            job(
                "deploy",
                sh("Direct", "echo token=${{ secrets.DEPLOY_TOKEN }}"),
                sh("Via env", 'echo "$TOKEN"', env={"TOKEN": "${{ secrets.DEPLOY_TOKEN }}"}),
            )
        )

        run = execute(workflow)

        logs = [line for s in run.jobs["deploy"].steps for line in s.log]
        assert logs == ["token=***", "***"]

    def test_secret_masked_in_failure_error(self, execute):
        run = execute(wf(job("deploy", sh("Leak", "echo ${{ secrets.DEPLOY_TOKEN }}; exit 1"))))

        step = run.jobs["deploy"].steps[0]
        assert SECRET_VALUE not in step.error
        assert "***" in step.error
        assert step.log == ["***"]

    def test_unknown_secret_is_empty(self, execute):
        run = execute(wf(job("deploy", sh("Missing", "echo \"[${{ secrets.NOPE }}]\""))))

        assert run.jobs["deploy"].steps[0].log == ["[]"]

    def test_unreferenced_secrets_are_not_resolved(self, engine, push_event):
        ctx = engine.create_run(wf(job("a", sh("noop", "true"))), push_event)

        assert ctx.secrets == {}


class TestCompositeActions:
    """Tests for user-defined composite actions."""

    def test_inputs_defaults_and_outputs(self, execute, tmp_path):
        log = tmp_path / "greet.log"
        greet = composite(
            "greet",
            sh("Say", f"echo hello ${{{{ inputs.who }}}} >> '{log}'"),
            sh("Out", "echo greeting=hi-${{ inputs.who }} >> \"$PIPEWRIGHT_OUTPUT\""),
            inputs={"who": "world"},
        )
        workflow = wf(
            job(
                "build",
                uses("Default", "greet", id="first"),
                uses("Custom", "greet", who="pipewright", id="second"),
                sh("Check", "test '${{ steps.second.outputs.greeting }}' = hi-pipewright"),
            ),
            actions=[greet],
        )

        run = execute(workflow)

        assert run.status == RunStatus.SUCCESS
        assert log.read_text().split("\n")[:2] == ["hello world", "hello pipewright"]
        names = [s.name for s in run.jobs["build"].steps]
        assert "greet / Say" in names
        assert "Custom" in names

    def test_composite_failure_fails_job(self, execute):
        broken = composite("broken", sh("Boom", "exit 4"))
        run = execute(wf(job("build", uses("Use broken", "broken")), actions=[broken]))

        result = run.jobs["build"]
        assert result.status == JobStatus.FAILED
        assert result.failed_step == "broken / Boom"
