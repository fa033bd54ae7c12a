"""
Loads ReleaseSettings from p2r.yml, a .env file and P2R_* variables.
"""
import logging
import os
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..MODELS.release_settings import ReleaseSettings
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "p2r.yml"
DEFAULT_DOTENV_FILE = ".env"

# environment variable -> settings field
ENV_OVERRIDES = {
    "P2R_APP": "app",
    "P2R_PROCESS_TYPE": "process_type",
    "P2R_REGISTRY": "registry",
    "P2R_TAG": "tag",
    "P2R_BRANCH": "branch",
    "P2R_MANIFEST": "manifest",
    "P2R_CONTEXT": "context",
    "P2R_LOGIN_METHOD": "login_method",
}


def load_environment(environ: Optional[Mapping[str, str]] = None,
                     dotenv_path: Optional[str] = DEFAULT_DOTENV_FILE) -> Dict[str, str]:
    """
    The process environment layered over the values of a .env file; the
    process environment wins.
    """
    merged: Dict[str, str] = {}
    if dotenv_path and os.path.exists(dotenv_path):
        merged.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
    merged.update(os.environ if environ is None else environ)
    return merged


def load_settings(path: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None,
                  dotenv_path: Optional[str] = DEFAULT_DOTENV_FILE,
                  base_dir: str = ".") -> ReleaseSettings:
    """
    Loads release settings.

    Args:
        path: Settings file. When omitted, p2r.yml in base_dir is used if it exists.
        environ: Environment to read overrides from. Defaults to os.environ.
        dotenv_path: .env file layered under the environment.
        base_dir: Directory holding the default settings file.

    Returns:
        Validated ReleaseSettings.
    """
    env = load_environment(environ, dotenv_path)
    data: Dict[str, Any] = {}

    default_path = os.path.join(base_dir, DEFAULT_SETTINGS_FILE)
    if path is None and os.path.exists(default_path):
        path = default_path
    if path is not None:
        data = _read_settings_file(path, env)

    for var, field in ENV_OVERRIDES.items():
        if env.get(var):
            data[field] = env[var]

    try:
        settings = ReleaseSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e
    logger.debug("Loaded settings for %s (%s)", settings.app, settings.image)
    return settings


def _read_settings_file(path: str, env: Dict[str, str]) -> Dict[str, Any]:
    try:
        with open(path, 'r') as f:
            content = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read settings file {path}: {e}") from e

    content = EnvironmentInterpolator.interpolate(content, env)
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return {str(key).replace("-", "_"): value for key, value in data.items()}
