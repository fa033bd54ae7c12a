import pytest

from p2r.BUILDERS.pipeline_builder import build_release_pipeline
from p2r.CONVERTERS.scaffold import WORKFLOW_PATH, ScaffoldConverter
from p2r.MODELS.pipeline_definition import PipelineState, StepCategory
from p2r.MODELS.release_settings import ImageSettings, ReleaseSettings
from p2r.PARSERS.dockerfile_parser import DockerfileParser
from p2r.PARSERS.workflow_parser import WorkflowParser
from p2r.exceptions import ConfigError
from conftest import CI_WORKFLOW, DOCKERFILE


def test_default_dockerfile_matches_release_manifest():
    rendered = ScaffoldConverter(ReleaseSettings()).render_dockerfile()
    parser = DockerfileParser()
    manifest = parser.build_manifest(parser.parse_from_string(rendered))
    expected = parser.build_manifest(parser.parse_from_string(DOCKERFILE))

    assert manifest.final_stage.user == expected.final_stage.user == "myuser"
    assert manifest.final_stage.startup_command == expected.final_stage.startup_command
    assert manifest.final_stage.env_vars == {"RUST_LOG": "info"}
    assert manifest.final_stage.run_commands == expected.final_stage.run_commands
    assert not manifest.runs_as_root


def test_default_workflow_matches_ci_workflow():
    rendered = ScaffoldConverter(ReleaseSettings()).render_workflow()
    parser = WorkflowParser()
    generated = parser.parse_from_string(rendered)
    original = parser.parse_from_string(CI_WORKFLOW)

    assert generated.name == original.name
    assert generated.trigger == original.trigger
    assert generated.env == original.env
    assert [s.display_name for s in generated.steps] == [s.display_name for s in original.steps]
    assert [s.run for s in generated.steps] == [s.run for s in original.steps]
    assert [s.env for s in generated.steps] == [s.env for s in original.steps]


def test_custom_settings_are_rendered():
    settings = ReleaseSettings(
        app="bot", process_type="web", tag="v2", branch="main", manifest="Dockerfile.release",
        image=ImageSettings(user="bot", env={"RUST_LOG": "debug", "TZ": "UTC"}),
    )
    converter = ScaffoldConverter(settings)
    dockerfile = converter.render_dockerfile()
    assert "USER bot" in dockerfile
    assert "ENV TZ=UTC" in dockerfile

    workflow = WorkflowParser().parse_from_string(converter.render_workflow())
    assert workflow.trigger.branches == ["main"]
    build = next(s for s in workflow.steps if StepCategory.BUILD in s.categories)
    assert build.run == "docker build -t registry.heroku.com/bot/web:v2 -f Dockerfile.release ."
    release = workflow.steps[-1]
    assert release.run == "heroku container:release -a bot web"


def test_convert_writes_and_refuses_overwrite(tmp_path):
    converter = ScaffoldConverter(ReleaseSettings())
    paths = converter.convert(str(tmp_path))
    assert paths == [str(tmp_path / "Dockerfile"), str(tmp_path / WORKFLOW_PATH)]
    assert (tmp_path / ".github" / "workflows" / "ci.yml").exists()

    with pytest.raises(ConfigError, match="--force"):
        converter.convert(str(tmp_path))
    assert converter.convert(str(tmp_path), force=True) == paths


class TestReleasePipeline:

    def test_steps_and_states(self):
        definition = build_release_pipeline(ReleaseSettings())
        assert definition.name == "Congratulator-Bot-CI"
        assert definition.trigger.branches == ["master"]
        assert [s.display_name for s in definition.steps] == [
            "Run actions/checkout@v3",
            "Update local toolchain",
            "Toolchain info",
            "Check",
            "Lint",
            "Test",
            "Build Docker image",
            "Docker image info",
            "Login to container registry",
            "Push Docker image",
            "Release",
        ]
        reached = [s.target_state for s in definition.steps if s.target_state]
        assert reached == [
            PipelineState.TOOLCHAIN_PREPARED,
            PipelineState.VERIFIED,
            PipelineState.BUILT,
            PipelineState.AUTHENTICATED,
            PipelineState.PUBLISHED,
            PipelineState.RELEASED,
        ]

    def test_action_inputs(self):
        settings = ReleaseSettings(tag="abc123", login_method="docker", step_timeout_minutes=20)
        steps = {s.display_name: s for s in build_release_pipeline(settings).steps}
        assert steps["Build Docker image"].with_ == {
            "tag": "registry.heroku.com/congratulator/worker:abc123",
            "manifest": "Dockerfile",
            "context": ".",
        }
        assert steps["Login to container registry"].with_["method"] == "docker"
        assert steps["Release"].env == {"HEROKU_API_KEY": "${{ secrets.HEROKU_API_KEY }}"}
        assert steps["Test"].timeout_minutes == 20
        assert steps["Toolchain info"].timeout_minutes is None

    def test_empty_command_lists_are_left_out(self):
        settings = ReleaseSettings(check_commands=[], info_commands=[])
        names = [s.display_name for s in build_release_pipeline(settings).steps]
        assert "Check" not in names
        assert "Toolchain info" not in names
