"""
Hosting platform client: registry login and release (promotion) of a
published image to the running deployment.
"""
import logging
from typing import Dict, Optional

from .registry_client import RegistryClient, RegistryCredentials
from ..RUNNERS.command_executor import CommandExecutor
from ..exceptions import RegistryAuthError, ReleaseError

logger = logging.getLogger(__name__)

LOGIN_METHODS = ("heroku-cli", "docker")


class HerokuPlatform:
    """
    Heroku container registry and release API, driven through the heroku and
    docker CLIs. The API key is read from the environment the client gets.
    """
    REGISTRY = "registry.heroku.com"
    # docker login to the Heroku registry accepts any username with the API key
    DOCKER_USERNAME = "_"

    def __init__(self,
                 executor: CommandExecutor,
                 env: Dict[str, str],
                 api_key_var: str = "HEROKU_API_KEY",
                 registry_client: Optional[RegistryClient] = None):
        self.executor = executor
        self.env = dict(env)
        self.api_key_var = api_key_var
        self.registry_client = registry_client or RegistryClient(executor, self.env)

    def _api_key(self, error_cls) -> Optional[str]:
        key = self.env.get(self.api_key_var)
        if key:
            return key
        if self.executor.dry_run:
            logger.warning("%s is not set; continuing because this is a dry run", self.api_key_var)
            return None
        raise error_cls(f"{self.api_key_var} is not set")

    def login(self, method: str = "heroku-cli") -> None:
        """
        Authenticate docker against the Heroku registry.

        :param method: 'heroku-cli' (heroku container:login) or 'docker'
            (docker login with the API key as password).
        :raises RegistryAuthError: If the key is missing or the login fails.
        """
        if method not in LOGIN_METHODS:
            raise RegistryAuthError(f"Unknown login method {method!r}; expected one of {', '.join(LOGIN_METHODS)}")
        key = self._api_key(RegistryAuthError)

        if method == "docker":
            self.registry_client.login(self.REGISTRY, RegistryCredentials(self.DOCKER_USERNAME, key or ""))
            return

        logger.info("Logging in to %s with the heroku CLI", self.REGISTRY)
        result = self.executor.execute(["heroku", "container:login"], env=self.env, label="heroku login")
        if not result.ok:
            raise RegistryAuthError("heroku container:login failed", exit_code=result.exit_code)

    def release(self, app: str, process_type: str) -> None:
        """
        Promote the image last pushed for ``process_type`` to the running
        deployment of ``app``.

        :raises ReleaseError: If the key is missing or the release fails.
        """
        if not app or not process_type:
            raise ReleaseError("Release needs an app and a process type")
        self._api_key(ReleaseError)
        logger.info("Releasing %s process of %s", process_type, app)
        result = self.executor.execute(
            ["heroku", "container:release", "-a", app, process_type],
            env=self.env,
            label="heroku release",
        )
        if not result.ok:
            raise ReleaseError(f"Release of {app}/{process_type} failed", exit_code=result.exit_code)
