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
Container registry client: authentication and image publishing through the
docker CLI.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .image_reference import ImageReference
from ..RUNNERS.command_executor import CommandExecutor
from ..exceptions import PublishError, RegistryAuthError

logger = logging.getLogger(__name__)


@dataclass
class RegistryCredentials:
    """Authentication credentials for a registry."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"RegistryCredentials(username={self.username!r}, password='***')"


class RegistryClient:
    """
    Logs in to registries and pushes tagged images.
    """

    def __init__(self, executor: CommandExecutor, env: Optional[Dict[str, str]] = None):
        """
        Args:
            executor: Runs the docker commands.
            env: Environment for the docker processes.
        """
        self.executor = executor
        self.env = dict(env or {})

    def login(self, registry: str, credentials: RegistryCredentials) -> None:
        """
        Log in with ``docker login``; the password goes through stdin so it
        never appears in the process list.

        Raises:
            RegistryAuthError: If the password is empty or the login fails.
        """
        if not credentials.password and not self.executor.dry_run:
            raise RegistryAuthError(f"No password available for registry {registry}")
        logger.info("Logging in to %s as %s", registry, credentials.username)
        result = self.executor.execute(
            ["docker", "login", registry, "--username", credentials.username, "--password-stdin"],
            env=self.env,
            input=credentials.password,
            label="docker login",
        )
        if not result.ok:
            raise RegistryAuthError(f"Login to {registry} failed", exit_code=result.exit_code)

    def push(self, image: str) -> ImageReference:
        """
        Push one tagged image.

        Args:
            image: Image reference to push.

        Returns:
            The parsed reference that was pushed.

        Raises:
            PublishError: If the reference is invalid or the push fails.
        """
        try:
            ref = ImageReference.parse(image)
        except ValueError as e:
            raise PublishError(str(e)) from e
        logger.info("Pushing image %s", ref.full_name)
        result = self.executor.execute(["docker", "push", str(ref)], env=self.env, label="docker push")
        if not result.ok:
            raise PublishError(f"Push of {ref} failed", exit_code=result.exit_code)
        return ref
