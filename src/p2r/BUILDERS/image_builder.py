"""
Builds container images from a build manifest and enforces that the image
never runs its main process as a root-equivalent user.
"""
import logging
import os
from typing import Dict, Optional

from pydantic import BaseModel

from ..MODELS.build_manifest import BuildManifest, is_root_user
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..REGISTRY.image_reference import ImageReference
from ..RUNNERS.command_executor import CommandExecutor
from ..exceptions import ImageBuildError, ManifestError, PrivilegeError

logger = logging.getLogger(__name__)


class BuiltImage(BaseModel):
    """A tagged image produced by the builder."""
    reference: str
    user: Optional[str] = None
    base_image: str
    manifest_path: str


class ImageBuilder:
    """
    Parses a Dockerfile, checks it drops privileges, builds and tags the image,
    then inspects the result. An image found to run as root is removed before
    the error is raised, so it can never be published.
    """
    def __init__(self, executor: CommandExecutor, base_dir: str = ".", env: Optional[Dict[str, str]] = None):
        """
        Initializes the ImageBuilder.

        :param executor: Runs the docker commands.
        :param base_dir: The base directory for resolving relative paths.
        :param env: Environment for the docker processes.
        """
        self.executor = executor
        self.base_dir = base_dir
        self.env = dict(env or {})
        self.parser = DockerfileParser()

    def load_manifest(self, dockerfile_path: str) -> BuildManifest:
        return self.parser.parse_manifest(os.path.join(self.base_dir, dockerfile_path))

    @staticmethod
    def check_privileges(manifest: BuildManifest) -> None:
        """
        :raises PrivilegeError: If the final stage runs as root.
        """
        if manifest.runs_as_root:
            user = manifest.runtime_user
            detail = f"USER {user}" if user else "no USER instruction"
            raise PrivilegeError(
                f"{manifest.path or 'build manifest'}: final stage runs as root ({detail}); "
                f"add a non-privileged USER"
            )

    def build(self, dockerfile_path: str, image_name: str, context: str = ".") -> BuiltImage:
        """
        Builds and tags an image.

        :param dockerfile_path: Path to the Dockerfile, relative to base_dir.
        :param image_name: Tag to assign to the resulting image.
        :param context: Build context, relative to base_dir.
        :return: The built image.
        :raises PrivilegeError: If the manifest or the built image runs as root.
        :raises ImageBuildError: If the manifest is invalid or the build fails.
        """
        try:
            manifest = self.load_manifest(dockerfile_path)
            ref = ImageReference.parse(image_name)
        except (ManifestError, ValueError) as e:
            raise ImageBuildError(str(e)) from e
        self.check_privileges(manifest)

        logger.info("Building %s from %s (base %s)", ref, manifest.path, manifest.base_image)
        result = self.executor.execute(
            ["docker", "build", "-t", str(ref), "-f", manifest.path, context],
            env=self.env,
            working_dir=self.base_dir,
            label="docker build",
        )
        if not result.ok:
            raise ImageBuildError(f"Build of {ref} failed", exit_code=result.exit_code)

        if self.executor.dry_run:
            user = manifest.runtime_user
        else:
            user = self.verify_user(ref)

        logger.info("Built %s running as %s", ref, user)
        return BuiltImage(
            reference=str(ref),
            user=user,
            base_image=manifest.base_image,
            manifest_path=manifest.path,
        )

    def verify_user(self, ref: ImageReference) -> str:
        """
        Checks the user a built image runs as. An image that runs as root is
        removed.

        :return: The configured user.
        :raises PrivilegeError: If the user is root-equivalent.
        """
        user = self.inspect_user(ref)
        if is_root_user(user):
            self.remove(ref)
            raise PrivilegeError(f"Built image {ref} runs as root (Config.User={user!r}); image removed")
        return user

    def inspect_user(self, ref: ImageReference) -> str:
        """
        Reads the user the image's main process runs as.
        """
        result = self.executor.execute(
            ["docker", "image", "inspect", "--format", "{{.Config.User}}", str(ref)],
            env=self.env,
            label="docker inspect",
        )
        if not result.ok:
            raise ImageBuildError(f"Cannot inspect {ref}", exit_code=result.exit_code)
        lines = [line.strip() for line in result.output if line.strip()]
        return lines[-1] if lines else ""

    def remove(self, ref: ImageReference) -> None:
        result = self.executor.execute(
            ["docker", "image", "rm", "--force", str(ref)],
            env=self.env,
            label="docker rm",
        )
        if not result.ok:
            logger.error("Could not remove image %s (exit code %s)", ref, result.exit_code)
