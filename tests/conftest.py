import logging

import pytest

from p2r.RUNNERS.process_runner import CommandResult

CI_WORKFLOW = """\
name: Congratulator-Bot-CI

on:
  push:
    branches: [ "master" ]

env:
  CARGO_TERM_COLOR: always

jobs:
  build:
    runs-on: ubuntu-latest
    steps:
    - uses: actions/checkout@v3

    - name: Update local toolchain
      run: |
          rustup update
          rustup component add clippy
          rustup install nightly

    - name: Toolchain info
      run: |
          cargo --version --verbose
          rustc --version
          cargo clippy --version

    - name: Test
      run: |
          cargo check
          cargo clippy -- -D warnings
          cargo test --all

    - name: Build Docker image
      run: docker build -t registry.heroku.com/congratulator/worker:latest .

    - name: Docker image info
      run: docker images

    - name: Login to container registry
      env:
        HEROKU_API_KEY: ${{ secrets.HEROKU_API_KEY }}
      run: heroku container:login

    - name: Push Docker image
      run: docker push registry.heroku.com/congratulator/worker

    - name: Release
      env:
        HEROKU_API_KEY: ${{ secrets.HEROKU_API_KEY }}
      run: heroku container:release -a congratulator worker
"""

DOCKERFILE = """\
FROM rust:latest AS builder

WORKDIR /myapp
COPY ./ .
RUN cargo build --release

# Run the image as a non-root user
RUN adduser -D myuser
USER myuser

ENV RUST_LOG=info
CMD ["./target/release/rust-congratulator-bot"]
"""

ROOT_DOCKERFILE = """\
FROM rust:latest
WORKDIR /myapp
COPY ./ .
RUN cargo build --release
CMD ["./target/release/rust-congratulator-bot"]
"""

# what `docker image inspect` reports for an image built from DOCKERFILE
INSPECT_NON_ROOT = {"docker image inspect": CommandResult(exit_code=0, output=["myuser"])}


@pytest.fixture
def workspace(tmp_path):
    """A source tree holding the non-root Dockerfile and the CI workflow."""
    (tmp_path / "Dockerfile").write_text(DOCKERFILE)
    workflows = tmp_path / ".github" / "workflows"
    workflows.mkdir(parents=True)
    (workflows / "ci.yml").write_text(CI_WORKFLOW)
    return tmp_path


@pytest.fixture
def ci_workflow(workspace):
    return str(workspace / ".github" / "workflows" / "ci.yml")


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """Undo root-logger changes (e.g. from configure_logging) between tests."""
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield
    root.setLevel(level)
    root.handlers[:] = handlers
