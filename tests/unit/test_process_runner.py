"""
Tests for ProcessRunner and SubprocessExecutor against real processes.
"""
import os
import shutil
import time

import pytest

from p2r.MANAGERS.environment_manager import EnvironmentManager
from p2r.MODELS.pipeline_run import RunOutcome
from p2r.MODELS.push_event import PushEvent
from p2r.PARSERS.workflow_parser import WorkflowParser
from p2r.RUNNERS.command_executor import FAILED_COMMAND_MARKER, SubprocessExecutor, shell_command
from p2r.RUNNERS.pipeline_runner import PipelineRunner
from p2r.RUNNERS.process_runner import NOT_FOUND_EXIT_CODE, TIMEOUT_EXIT_CODE, ProcessRunner
from p2r.UTILS.secret_masker import SecretMasker, SecretStore
from p2r.exceptions import StaticVerificationError

needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")


@needs_bash
def test_output_and_exit_code():
    lines = []
    runner = ProcessRunner("test", on_line=lines.append)
    result = runner.run(["bash", "-c", "echo out; echo err >&2; exit 3"], env=dict(os.environ))
    assert result.exit_code == 3
    assert not result.ok
    assert sorted(result.output) == ["err", "out"]
    assert lines == result.output


@needs_bash
def test_stdin_input():
    runner = ProcessRunner("stdin")
    result = runner.run(["bash", "-c", "read line; echo got $line"], env=dict(os.environ), input="s3cret\n")
    assert result.output == ["got s3cret"]


@needs_bash
def test_timeout_kills_process_tree():
    runner = ProcessRunner("slow")
    start = time.monotonic()
    result = runner.run(["bash", "-c", "sleep 30 & sleep 30; wait"], env=dict(os.environ), timeout=0.5)
    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert time.monotonic() - start < 20
    assert runner.process.poll() is not None


@needs_bash
def test_undecodable_output_is_replaced():
    result = ProcessRunner("bytes").run(["bash", "-c", r"printf '\377\376 bad\nnext\n'"], env=dict(os.environ))
    assert result.ok
    assert result.output == ["\ufffd\ufffd bad", "next"]


def test_missing_executable():
    result = ProcessRunner("missing").run(["p2r-no-such-command-xyz"], env=dict(os.environ))
    assert result.exit_code == NOT_FOUND_EXIT_CODE


@needs_bash
def test_shell_reports_failing_command(tmp_path):
    executor = SubprocessExecutor()
    result = executor.execute(
        shell_command("echo first\nfalse\necho never"),
        env=dict(os.environ),
        working_dir=str(tmp_path),
    )
    assert result.exit_code == 1
    assert "first" in result.output
    assert "never" not in result.output
    assert FAILED_COMMAND_MARKER + "false" in result.output


@needs_bash
def test_shell_pipefail():
    result = SubprocessExecutor().execute(shell_command("false | cat\necho after"), env=dict(os.environ))
    assert result.exit_code == 1
    assert "after" not in result.output


FAKE_CARGO = """\
#!/bin/sh
echo 'warning: unused variable: `x`' >&2
printf '\\377\\376 finished\\n'
"""


def _run_with_fake_cargo(tmp_path, command):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    cargo = bin_dir / "cargo"
    cargo.write_text(FAKE_CARGO)
    cargo.chmod(0o755)
    content = f"on: push\njobs:\n  build:\n    steps:\n    - name: Verify\n      run: |\n        echo start\n        {command}\n"
    definition = WorkflowParser().parse_from_string(content)
    runner = PipelineRunner(SubprocessExecutor(), SecretStore(SecretMasker(), environ={}), workspace=str(tmp_path),
                            environ={"PATH": f"{bin_dir}:{os.environ['PATH']}"})
    return runner.run(definition, PushEvent(ref="master", sha="abc"))


@needs_bash
def test_pipeline_scans_only_lint_output_for_warnings(tmp_path):
    run = _run_with_fake_cargo(tmp_path, "cargo test --all")
    assert run.outcome == RunOutcome.SUCCEEDED
    assert run.steps[0].output_tail == ["start", "warning: unused variable: `x`", "\ufffd\ufffd finished"]


@needs_bash
def test_pipeline_fails_on_lint_warning(tmp_path):
    run = _run_with_fake_cargo(tmp_path, "cargo clippy -- -D warnings")
    assert run.outcome == RunOutcome.FAILED
    assert run.error_category == StaticVerificationError.category
    assert "warning: unused variable" in run.error_message


def test_environment_layers(tmp_path):
    (tmp_path / "ci.env").write_text("FROM_FILE=1\nOVERRIDDEN=file\n")
    manager = EnvironmentManager(str(tmp_path), environ={"HOST": "h", "OVERRIDDEN": "host"})
    ci = EnvironmentManager.ci_variables(PushEvent(ref="master", sha="abc"), "run1", str(tmp_path))
    env = manager.get_merged_environment({"OVERRIDDEN": "explicit"}, ["ci.env", "missing.env"], ci)

    assert env["HOST"] == "h"
    assert env["FROM_FILE"] == "1"
    assert env["OVERRIDDEN"] == "explicit"
    assert env["CI"] == "true"
    assert env["P2R_REF_NAME"] == "master"
    assert env["P2R_SHA"] == "abc"
