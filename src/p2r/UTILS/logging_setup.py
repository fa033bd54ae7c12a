"""
Logging configuration for the p2r command line.
"""
import logging
import os
from typing import Optional

from .secret_masker import SecretMasker

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
DEFAULT_LEVEL = "info"


def resolve_level(level: Optional[str] = None) -> int:
    """
    Level from the argument, then P2R_LOG, then info. Accepts names in any
    case (``debug``, ``WARNING``) or numeric levels.
    """
    name = (level or os.environ.get("P2R_LOG") or DEFAULT_LEVEL).strip()
    if name.isdigit():
        return int(name)
    value = logging.getLevelName(name.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {name}")
    return value


def configure_logging(level: Optional[str] = None, masker: Optional[SecretMasker] = None) -> None:
    """
    Configures the root logger once; the secret masker is attached to every
    root handler so nothing logged can leak a resolved secret.
    """
    logging.basicConfig(level=resolve_level(level), format=LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(resolve_level(level))
    if masker is not None:
        for handler in root.handlers:
            if masker not in handler.filters:
                handler.addFilter(masker)
