import logging
import os
import shutil

import pytest

from p2r.MODELS.push_event import PushEvent
from p2r.PARSERS.dockerfile_parser import DockerfileParser
from p2r.PARSERS.workflow_parser import WorkflowParser
from p2r.RUNNERS.command_executor import RecordingExecutor
from p2r.RUNNERS.pipeline_runner import PipelineRunner
from p2r.RUNNERS.process_runner import CommandResult, ProcessRunner
from p2r.UTILS.logging_setup import configure_logging
from p2r.UTILS.secret_masker import SecretMasker, SecretStore
from p2r.exceptions import ManifestError, PipelineDefinitionError


@pytest.mark.skipif(shutil.which("echo") is None, reason="echo not available")
def test_command_injection_attempt(tmp_path):
    """
    ProcessRunner never goes through a shell, so ';' is a literal argument.
    """
    runner = ProcessRunner(name="test_injection")
    injected_file = tmp_path / "injected.txt"
    command = ["echo", "hello", ";", "touch", str(injected_file)]

    result = runner.run(command=command, env=dict(os.environ), working_dir=str(tmp_path))

    assert result.ok
    assert result.output == [f"hello ; touch {injected_file}"]
    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."


def test_ref_cannot_inject_into_docker_arguments(tmp_path):
    """
    Pushed refs only reach commands through the environment or as single
    argv entries, never spliced into a shell command line.
    """
    (tmp_path / "Dockerfile").write_text("FROM rust:latest\nUSER bot\n")
    content = (
        "on: push\n"
        "jobs:\n"
        "  build:\n"
        "    steps:\n"
        "    - uses: p2r/push-image\n"
        "      with:\n"
        "        image: registry.heroku.com/congratulator/worker:${{ github.sha }}\n"
    )
    definition = WorkflowParser().parse_from_string(content)
    executor = RecordingExecutor()
    store = SecretStore(SecretMasker(), environ={})
    run = PipelineRunner(executor, store, workspace=str(tmp_path), environ={}).run(
        definition, PushEvent(ref="master", sha="x; rm -rf /")
    )
    # the malformed tag is rejected instead of being passed to docker
    assert run.error_category == "publish"
    assert executor.executed == []


def test_secrets_never_reach_logs(tmp_path, caplog):
    masker = SecretMasker()
    configure_logging("debug", masker)
    for handler in logging.getLogger().handlers:
        handler.addFilter(masker)

    content = (
        "on: push\n"
        "jobs:\n"
        "  build:\n"
        "    steps:\n"
        "    - name: Login\n"
        "      env:\n"
        "        HEROKU_API_KEY: ${{ secrets.HEROKU_API_KEY }}\n"
        "      run: heroku container:login\n"
    )
    definition = WorkflowParser().parse_from_string(content)
    executor = RecordingExecutor({
        "heroku": CommandResult(exit_code=1, output=["invalid credentials: hk-s3cret-value"]),
    })
    store = SecretStore(masker, environ={"HEROKU_API_KEY": "hk-s3cret-value"})
    with caplog.at_level(logging.DEBUG):
        run = PipelineRunner(executor, store, workspace=str(tmp_path), environ={},
                             log_dir=str(tmp_path / "logs")).run(definition, PushEvent(ref="master"))

    assert run.error_category == "registry-auth"
    assert "hk-s3cret-value" not in caplog.text
    assert "invalid credentials: ***" in caplog.text
    assert "hk-s3cret-value" not in (tmp_path / "logs" / f"{run.run_id}.log").read_text()
    assert "hk-s3cret-value" not in run.model_dump_json()
    # the secret is still handed to the process itself
    assert executor.executed[0].env["HEROKU_API_KEY"] == "hk-s3cret-value"


def test_path_traversal_parse():
    """
    A manifest path that does not exist is a ManifestError, not an OSError.
    """
    parser = DockerfileParser()
    with pytest.raises(ManifestError):
        parser.parse("../../non_existent_file_12345/Dockerfile")


def test_yaml_tags_are_not_executed():
    content = "on: push\njobs:\n  build:\n    steps:\n    - run: !!python/object/apply:os.system ['touch /tmp/p2r-pwned']\n"
    with pytest.raises(PipelineDefinitionError, match="Invalid YAML"):
        WorkflowParser().parse_from_string(content)
    assert not os.path.exists("/tmp/p2r-pwned")
