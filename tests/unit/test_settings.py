import pytest

from p2r.MODELS.release_settings import ReleaseSettings, lint_denies_warnings
from p2r.PARSERS.settings_loader import load_environment, load_settings
from p2r.exceptions import ConfigError


@pytest.fixture
def in_tmp(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_defaults_reproduce_congratulator_release():
    settings = ReleaseSettings()
    assert settings.app == "congratulator"
    assert settings.process_type == "worker"
    assert settings.branch == "master"
    assert settings.image == "registry.heroku.com/congratulator/worker:latest"
    assert settings.repository == "registry.heroku.com/congratulator/worker"
    assert settings.env == {"CARGO_TERM_COLOR": "always"}
    assert settings.lint_commands == ["cargo clippy -- -D warnings"]
    assert settings.image_settings.user == "myuser"


def test_load_without_file(in_tmp):
    settings = load_settings(environ={}, dotenv_path=None)
    assert settings == ReleaseSettings()


def test_load_file_with_interpolation(in_tmp):
    (in_tmp / "p2r.yml").write_text(
        "app: ${APP_NAME:-bot}\n"
        "process-type: web\n"
        "tag: ${GIT_SHA}\n"
        "test-commands:\n"
        "  - cargo test --all --release\n"
        "image:\n"
        "  user: congratulator\n"
    )
    settings = load_settings(environ={"GIT_SHA": "abc123"}, dotenv_path=None)
    assert settings.app == "bot"
    assert settings.process_type == "web"
    assert settings.tag == "abc123"
    assert settings.test_commands == ["cargo test --all --release"]
    assert settings.image_settings.user == "congratulator"
    assert settings.image == "registry.heroku.com/bot/web:abc123"


def test_environment_overrides_file(in_tmp):
    path = in_tmp / "release.yml"
    path.write_text("app: from-file\nbranch: main\n")
    settings = load_settings(str(path), environ={"P2R_APP": "from-env"}, dotenv_path=None)
    assert settings.app == "from-env"
    assert settings.branch == "main"


def test_dotenv_is_layered_under_environment(in_tmp):
    (in_tmp / ".env").write_text("P2R_APP=dotenv-app\nP2R_TAG=v1\n")
    settings = load_settings(environ={"P2R_TAG": "v2"}, dotenv_path=".env")
    assert settings.app == "dotenv-app"
    assert settings.tag == "v2"
    assert load_environment({"A": "1"}, ".env")["P2R_APP"] == "dotenv-app"


@pytest.mark.parametrize("content", [
    "lint-commands:\n  - cargo clippy\n",
    "image:\n  user: root\n",
    "image:\n  user: '0:0'\n",
    "login-method: ssh\n",
    "app: ''\n",
    "- a list\n",
    "app: [unclosed\n",
])
def test_invalid_settings(in_tmp, content):
    (in_tmp / "p2r.yml").write_text(content)
    with pytest.raises(ConfigError):
        load_settings(environ={}, dotenv_path=None)


def test_missing_settings_file(in_tmp):
    with pytest.raises(ConfigError):
        load_settings("nope.yml", environ={}, dotenv_path=None)


@pytest.mark.parametrize("command,expected", [
    ("cargo clippy -- -D warnings", True),
    ("cargo clippy --all-targets -- -Dwarnings", True),
    ("cargo clippy -- --deny=warnings", True),
    ("cargo clippy", False),
    ("cargo clippy -- -W clippy::pedantic", False),
])
def test_lint_denies_warnings(command, expected):
    assert lint_denies_warnings(command) is expected


def test_default_file_is_read_from_base_dir(in_tmp):
    project = in_tmp / "project"
    project.mkdir()
    (project / "p2r.yml").write_text("app: elsewhere\n")
    assert load_settings(environ={}, dotenv_path=None).app != "elsewhere"
    assert load_settings(environ={}, dotenv_path=None, base_dir=str(project)).app == "elsewhere"
