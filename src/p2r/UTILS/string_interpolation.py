"""
Utilities for string interpolation.

Two syntaxes are supported:

* ``${VAR}``, ``${VAR:-default}`` and ``${VAR:+value}`` in settings files,
  resolved against environment variables;
* ``${{ context.key }}`` in pipeline definitions, resolved against the
  ``secrets``, ``env`` and ``github`` contexts.
"""
import logging
import re
from typing import Callable, Dict, Optional

from ..exceptions import ExpressionError

logger = logging.getLogger(__name__)

ENV_PATTERN = re.compile(r'\$\{([^}:{]+)(?::(-|\+)([^}]*))?\}')
BARE_VARIABLE = re.compile(r'\$([A-Za-z_][A-Za-z0-9_]*)')
EXPRESSION_PATTERN = re.compile(r'\$\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_\-]*)\s*\}\}')
ANY_EXPRESSION = re.compile(r'\$\{\{(.*?)\}\}')


class EnvironmentInterpolator:
    """
    Interpolates ${VAR} placeholders against a mapping of variables.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str], strict: bool = False) -> str:
        """
        :param template: The string containing ${VAR} placeholders.
        :param context: The variables to substitute.
        :param strict: Raise KeyError for an unset ${VAR} instead of using ''.
        :return: The interpolated string.
        """
        def replace(match):
            var_name = match.group(1).strip()
            modifier = match.group(2)
            alt_value = match.group(3)
            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if value is None:
                if strict:
                    raise KeyError(f"Variable {var_name} not found in context")
                return ''
            return value

        return ENV_PATTERN.sub(replace, template)

    @staticmethod
    def interpolate_shell(template: str, context: Dict[str, str]) -> str:
        """
        Like interpolate(), also expanding bare $VAR references as a shell
        or a Dockerfile does. Unset variables expand to ''.
        """
        value = EnvironmentInterpolator.interpolate(template, context)
        return BARE_VARIABLE.sub(lambda m: context.get(m.group(1), ''), value)


class ExpressionEvaluator:
    """
    Resolves ${{ context.key }} expressions.

    ``secrets`` is a callable so that only secrets actually referenced are
    looked up (and therefore masked). A missing secret or env value resolves
    to an empty string; an unknown context or github key is an error.
    """
    def __init__(self,
                 secrets: Callable[[str], Optional[str]],
                 env: Optional[Dict[str, str]] = None,
                 github: Optional[Dict[str, str]] = None):
        self._secrets = secrets
        self.env = dict(env or {})
        self.github = dict(github or {})

    def with_env(self, env: Dict[str, str]) -> "ExpressionEvaluator":
        """Returns an evaluator whose env context is extended by ``env``."""
        merged = dict(self.env)
        merged.update(env)
        return ExpressionEvaluator(self._secrets, merged, self.github)

    def lookup(self, context: str, key: str) -> str:
        if context == "secrets":
            value = self._secrets(key)
            if value is None:
                logger.warning("Secret %s is not set; using an empty value", key)
                return ""
            return value
        if context == "env":
            return self.env.get(key, "")
        if context == "github":
            if key not in self.github:
                raise ExpressionError(f"Unknown github context key: {key}")
            return self.github[key]
        raise ExpressionError(f"Unknown expression context: {context}")

    def evaluate(self, template: str) -> str:
        def replace(match):
            return self.lookup(match.group(1), match.group(2))

        result = EXPRESSION_PATTERN.sub(replace, template)
        leftover = ANY_EXPRESSION.search(result)
        if leftover:
            raise ExpressionError(f"Unsupported expression: {leftover.group(0)}")
        return result

    def evaluate_mapping(self, values: Dict[str, str]) -> Dict[str, str]:
        return {key: self.evaluate(value) for key, value in values.items()}
