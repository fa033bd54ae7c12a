"""
Secret lookup and masking for step output and log records.
"""
import logging
import os
from typing import Dict, Iterable, Mapping, Optional, Set

from dotenv import dotenv_values

MASK = "***"


class SecretMasker(logging.Filter):
    """
    Replaces registered secret values with ``***``.

    Installed as a logging filter on handlers, and applied directly to
    captured step output before it is stored.
    """
    def __init__(self, values: Iterable[str] = ()):
        super().__init__()
        self._values: Set[str] = set()
        for value in values:
            self.add(value)

    def add(self, value: Optional[str]) -> None:
        if value and value.strip():
            self._values.add(value)
            # multi-line secrets are masked line by line as well
            for line in value.splitlines():
                if line.strip():
                    self._values.add(line)

    def mask(self, text: str) -> str:
        # longest first so a secret containing another one is masked whole
        for value in sorted(self._values, key=len, reverse=True):
            text = text.replace(value, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._values:
            record.msg = self.mask(record.getMessage())
            record.args = ()
        return True


class SecretStore:
    """
    Secrets available to a run: values from an optional secrets file (.env
    format) take precedence over the process environment. Every secret that is
    looked up is registered with the masker.
    """
    def __init__(self,
                 masker: SecretMasker,
                 environ: Optional[Mapping[str, str]] = None,
                 secrets_file: Optional[str] = None):
        self.masker = masker
        self._environ = dict(os.environ if environ is None else environ)
        self._file_values: Dict[str, str] = {}
        if secrets_file:
            self._file_values = {
                key: value for key, value in dotenv_values(secrets_file).items()
                if value is not None
            }

    def get(self, name: str) -> Optional[str]:
        value = self._file_values.get(name, self._environ.get(name))
        if value:
            self.masker.add(value)
        return value or None
