"""
Managers for building the environment a step process runs with.
"""
import os
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values

from ..MODELS.push_event import PushEvent


class EnvironmentManager:
    """
    Merges environment variables from the host, .env files, the CI run
    variables and the pipeline's own definitions.
    """
    def __init__(self, base_dir: str = ".", environ: Optional[Mapping[str, str]] = None):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        :param environ: Host environment; defaults to os.environ.
        """
        self.base_dir = base_dir
        self.environ = dict(os.environ if environ is None else environ)

    @staticmethod
    def ci_variables(event: PushEvent, run_id: str, workspace: str) -> Dict[str, str]:
        """
        Variables every step sees, describing the run and the push.
        """
        return {
            "CI": "true",
            "P2R_REF": event.ref,
            "P2R_REF_NAME": event.ref_name,
            "P2R_SHA": event.sha or "",
            "P2R_RUN_ID": run_id,
            "P2R_WORKSPACE": workspace,
        }

    def get_merged_environment(self,
                               explicit_env: Dict[str, str],
                               env_files: Optional[List[str]] = None,
                               ci_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Merges, lowest precedence first: the host environment, .env files
        (later files override earlier ones), CI run variables, explicit
        definitions.

        :param explicit_env: Resolved pipeline, job and step variables.
        :param env_files: Paths to .env files, relative to base_dir.
        :param ci_env: Variables from ci_variables().
        :return: The complete environment of the step process.
        """
        merged_env = dict(self.environ)

        for env_file in env_files or []:
            file_path = os.path.join(self.base_dir, env_file)
            if os.path.exists(file_path):
                merged_env.update({k: v for k, v in dotenv_values(file_path).items() if v is not None})

        if ci_env:
            merged_env.update(ci_env)
        merged_env.update(explicit_env)
        return merged_env
