"""
Infers the category of a shell step from the commands it runs.
"""
import re
from typing import List, Optional, Tuple, Pattern

from ..MODELS.pipeline_definition import StepCategory

# First match wins; version queries are informational even for toolchain tools.
_RULES: List[Tuple[StepCategory, Pattern]] = [
    (StepCategory.INFO, re.compile(r"^\S+(\s+\S+)?\s+(--version|-V)\b")),
    (StepCategory.INFO, re.compile(r"^docker\s+(images|image\s+ls|info|version)\b")),
    (StepCategory.TOOLCHAIN, re.compile(r"^(rustup|apt-get|apt|brew)\b")),
    (StepCategory.TOOLCHAIN, re.compile(r"^(pip3?|python3?\s+-m\s+pip)\s+install\b")),
    (StepCategory.TOOLCHAIN, re.compile(r"^(poetry\s+install|uv\s+sync|npm\s+(ci|install))\b")),
    (StepCategory.LINT, re.compile(r"^cargo\s+(\+\S+\s+)?clippy\b")),
    (StepCategory.LINT, re.compile(r"^(ruff|flake8|pylint|eslint|black\s+--check)\b")),
    (StepCategory.CHECK, re.compile(r"^cargo\s+(\+\S+\s+)?check\b")),
    (StepCategory.CHECK, re.compile(r"^(mypy|pyright|tsc)\b")),
    (StepCategory.TEST, re.compile(r"^cargo\s+(\+\S+\s+)?test\b")),
    (StepCategory.TEST, re.compile(r"^(pytest|python3?\s+-m\s+pytest|tox|npm\s+test)\b")),
    (StepCategory.BUILD, re.compile(r"^docker\s+(image\s+)?build\b")),
    (StepCategory.BUILD, re.compile(r"^docker\s+buildx\s+build\b")),
    (StepCategory.LOGIN, re.compile(r"^(docker\s+login|heroku\s+container:login)\b")),
    (StepCategory.PUBLISH, re.compile(r"^(docker\s+(image\s+)?push|heroku\s+container:push)\b")),
    (StepCategory.RELEASE, re.compile(r"^heroku\s+(container:release|releases:)")),
]


def script_commands(script: str) -> List[str]:
    """
    The commands of a script, one per entry, with backslash continuations
    joined and blank and comment lines dropped.
    """
    commands = []
    pending: List[str] = []
    for line in script.splitlines():
        line = line.strip()
        if not pending and (not line or line.startswith("#")):
            continue
        if line.endswith("\\"):
            pending.append(line[:-1].strip())
            continue
        pending.append(line)
        commands.append(" ".join(part for part in pending if part))
        pending = []
    if pending:
        commands.append(" ".join(part for part in pending if part))
    return commands


def classify_command(command: str) -> Optional[StepCategory]:
    """
    Returns the category of a single command line, or None if unknown.
    """
    command = command.strip()
    # env assignments and sudo do not change what the command is
    command = re.sub(r"^(sudo\s+)?([A-Za-z_][A-Za-z0-9_]*=\S*\s+)*", "", command)
    for category, pattern in _RULES:
        if pattern.search(command):
            return category
    return None


def classify_script(script: str) -> List[StepCategory]:
    """
    Returns the categories of all commands in a script, in order of first
    appearance. A script with no recognised command is OTHER.
    """
    categories: List[StepCategory] = []
    for command in script_commands(script):
        category = classify_command(command)
        if category is not None and category not in categories:
            categories.append(category)
    return categories or [StepCategory.OTHER]
