# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Converters for generating a build manifest and a CI workflow from release
settings.
"""
import logging
import os
from typing import List

from jinja2 import Template

from ..MODELS.release_settings import ReleaseSettings
from ..exceptions import ConfigError

logger = logging.getLogger(__name__)

DOCKERFILE_TEMPLATE = """\
FROM {{ image.base_image }} AS builder

WORKDIR {{ image.working_directory }}
COPY ./ .
RUN {{ image.build_command }}

# Run the image as a non-root user
RUN adduser -D {{ image.user }}
USER {{ image.user }}

{% for k, v in image.env.items() %}
ENV {{ k }}={{ v }}
{% endfor %}
CMD {{ [image.binary] | tojson }}
"""

WORKFLOW_TEMPLATE = """\
name: {{ name }}

on:
  push:
    branches: [ "{{ branch }}" ]
{% if env %}

env:
{% for k, v in env.items() %}
  {{ k }}: {{ v }}
{% endfor %}
{% endif %}

jobs:
  build:
    runs-on: ubuntu-latest
    steps:
    - uses: actions/checkout@v3
{% for step in steps %}

    - name: {{ step.name }}
{% if step.secret %}
      env:
        {{ api_key_secret }}: {{ secret_ref }}
{% endif %}
{% if step.commands | length == 1 %}
      run: {{ step.commands[0] }}
{% else %}
      run: |
{% for command in step.commands %}
          {{ command }}
{% endfor %}
{% endif %}
{% endfor %}
"""

WORKFLOW_PATH = os.path.join(".github", "workflows", "ci.yml")


class ScaffoldConverter:
    """
    Renders the Dockerfile and CI workflow that release an application the
    way ReleaseSettings describe it.
    """

    def __init__(self, settings: ReleaseSettings):
        """
        Initializes the scaffold converter.

        :param settings: The release settings to render.
        """
        self.settings = settings
        self.dockerfile_template = Template(DOCKERFILE_TEMPLATE, trim_blocks=True)
        self.workflow_template = Template(WORKFLOW_TEMPLATE, trim_blocks=True)

    def render_dockerfile(self) -> str:
        return self.dockerfile_template.render(image=self.settings.image_settings)

    def workflow_steps(self) -> List[dict]:
        s = self.settings
        verify = s.check_commands + s.lint_commands + s.test_commands
        steps = [
            {"name": "Update local toolchain", "commands": s.toolchain_commands},
            {"name": "Toolchain info", "commands": s.info_commands},
            {"name": "Test", "commands": verify},
            {"name": "Build Docker image", "commands": [f"docker build -t {s.image} -f {s.manifest} {s.context}"
                                                        if s.manifest != "Dockerfile"
                                                        else f"docker build -t {s.image} {s.context}"]},
            {"name": "Docker image info", "commands": ["docker images"]},
            {"name": "Login to container registry", "commands": ["heroku container:login"], "secret": True},
            {"name": "Push Docker image", "commands": [f"docker push {s.repository}"]},
            {"name": "Release", "commands": [f"heroku container:release -a {s.app} {s.process_type}"],
             "secret": True},
        ]
        return [step for step in steps if step["commands"]]

    def render_workflow(self) -> str:
        return self.workflow_template.render(
            name=self.settings.name,
            branch=self.settings.branch,
            env=self.settings.env,
            steps=self.workflow_steps(),
            api_key_secret=self.settings.api_key_secret,
            secret_ref="${{ secrets.%s }}" % self.settings.api_key_secret,
        )

    def convert(self, output_dir: str = ".", force: bool = False) -> List[str]:
        """
        Writes the Dockerfile and .github/workflows/ci.yml.

        :param output_dir: The directory the files are created in.
        :param force: Overwrite existing files.
        :return: The paths written.
        :raises ConfigError: If a file exists and ``force`` is not set.
        """
        files = {
            os.path.join(output_dir, self.settings.manifest): self.render_dockerfile(),
            os.path.join(output_dir, WORKFLOW_PATH): self.render_workflow(),
        }
        existing = [path for path in files if os.path.exists(path)]
        if existing and not force:
            raise ConfigError(f"{', '.join(existing)} already exist(s); use --force to overwrite")

        for path, content in files.items():
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, "w") as f:
                f.write(content)
            logger.info("Wrote %s", path)
        return list(files)
