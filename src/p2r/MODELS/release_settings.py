"""
Settings for the standard release pipeline and the scaffolded artifacts.
The defaults reproduce the congratulator bot's Heroku worker release.
"""
import re
from typing import List, Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .build_manifest import is_root_user

LINT_DENY_WARNINGS = re.compile(r"(-D\s*warnings|--deny[ =]warnings)")


def lint_denies_warnings(command: str) -> bool:
    """True when a lint command turns every warning into an error."""
    return bool(LINT_DENY_WARNINGS.search(command))


class ImageSettings(BaseModel):
    """
    What the scaffolded build manifest contains.
    """
    base_image: str = "rust:latest"
    working_directory: str = "/myapp"
    build_command: str = "cargo build --release"
    user: str = "myuser"
    binary: str = "./target/release/rust-congratulator-bot"
    env: Dict[str, str] = {"RUST_LOG": "info"}

    @field_validator("user")
    @classmethod
    def _non_root(cls, value: str) -> str:
        if is_root_user(value):
            raise ValueError(f"image user {value!r} is root-equivalent")
        return value


class ReleaseSettings(BaseModel):
    """
    Release pipeline settings, loaded from p2r.yml and P2R_* variables.
    """
    name: str = "Congratulator-Bot-CI"
    app: str = "congratulator"
    process_type: str = "worker"
    registry: str = "registry.heroku.com"
    tag: str = "latest"
    branch: str = "master"

    manifest: str = "Dockerfile"
    context: str = "."
    login_method: Literal["heroku-cli", "docker"] = "heroku-cli"
    api_key_secret: str = "HEROKU_API_KEY"

    env: Dict[str, str] = {"CARGO_TERM_COLOR": "always"}
    toolchain_commands: List[str] = [
        "rustup update",
        "rustup component add clippy",
        "rustup install nightly",
    ]
    info_commands: List[str] = [
        "cargo --version --verbose",
        "rustc --version",
        "cargo clippy --version",
    ]
    check_commands: List[str] = ["cargo check"]
    lint_commands: List[str] = ["cargo clippy -- -D warnings"]
    test_commands: List[str] = ["cargo test --all"]
    step_timeout_minutes: Optional[float] = Field(default=None, gt=0)

    image_settings: ImageSettings = Field(default_factory=ImageSettings, alias="image")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("app", "process_type", "registry", "tag", "branch")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("lint_commands")
    @classmethod
    def _lint_is_strict(cls, value: List[str]) -> List[str]:
        for command in value:
            if not lint_denies_warnings(command):
                raise ValueError(f"lint command {command!r} must treat warnings as errors (-D warnings)")
        return value

    @property
    def repository(self) -> str:
        return f"{self.registry}/{self.app}/{self.process_type}"

    @property
    def image(self) -> str:
        return f"{self.repository}:{self.tag}"
