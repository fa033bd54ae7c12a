"""
Command executors: the seam between pipeline logic and the external tools
(cargo, docker, heroku) it drives.
"""
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from .process_runner import CommandResult, ProcessRunner
from ..UTILS.step_classifier import script_commands

logger = logging.getLogger(__name__)

# Shell used for `run` steps: errexit plus pipefail, like hosted CI runners.
SHELL_COMMAND = ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"]
# Reports which command tripped errexit so failures can be categorised.
FAILED_COMMAND_MARKER = "##[p2r-failed] "
# Announces every command before it runs so its output can be attributed to it.
COMMAND_MARKER = "##[p2r-command] "
SHELL_PRELUDE = (
    "trap 'echo \"" + FAILED_COMMAND_MARKER + "$BASH_COMMAND\"' ERR\n"
    "trap 'echo \"" + COMMAND_MARKER + "$BASH_COMMAND\"' DEBUG\n"
)


def shell_command(script: str) -> List[str]:
    return SHELL_COMMAND + [SHELL_PRELUDE + script]


def script_of(command: List[str]) -> Optional[str]:
    """The script of a shell_command() invocation, without the prelude."""
    if command[:len(SHELL_COMMAND)] != SHELL_COMMAND or len(command) != len(SHELL_COMMAND) + 1:
        return None
    script = command[-1]
    if script.startswith(SHELL_PRELUDE):
        script = script[len(SHELL_PRELUDE):]
    return script


class CommandExecutor(ABC):
    """
    Runs a command and reports its result.
    """
    dry_run = False

    @abstractmethod
    def execute(self,
                command: List[str],
                env: Dict[str, str],
                working_dir: Optional[str] = None,
                timeout: Optional[float] = None,
                input: Optional[str] = None,
                on_line: Optional[Callable[[str], None]] = None,
                label: str = "step") -> CommandResult:
        """
        :param command: argv of the command.
        :param env: Complete environment of the process.
        :param working_dir: Directory to run in.
        :param timeout: Seconds before the command is killed.
        :param input: Text for the command's stdin.
        :param on_line: Called with every output line.
        :param label: Name used in log messages.
        """


class SubprocessExecutor(CommandExecutor):
    """
    Executes commands as real processes.
    """
    def execute(self, command, env, working_dir=None, timeout=None, input=None,
                on_line=None, label="step"):
        runner = ProcessRunner(label, on_line=on_line)
        return runner.run(command, env=env, working_dir=working_dir, timeout=timeout, input=input)


@dataclass
class ExecutedCommand:
    argv: List[str]
    env: Dict[str, str]
    working_dir: Optional[str] = None
    input: Optional[str] = None
    # individual command lines actually reached (for shell scripts)
    lines: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        script = script_of(self.argv)
        return script if script is not None else shlex.join(self.argv)


class RecordingExecutor(CommandExecutor):
    """
    Records commands instead of running them.

    ``responses`` maps a substring to the result a matching command produces:
    an exit code or a CommandResult. Shell scripts are evaluated line by line
    with errexit semantics. Each line is announced and the first failing line
    stops the script, reported the same way the real shell prelude does it.
    """
    def __init__(self,
                 responses: Optional[Dict[str, Union[int, CommandResult]]] = None,
                 dry_run: bool = False):
        self.responses = dict(responses or {})
        self.dry_run = dry_run
        self.executed: List[ExecutedCommand] = []

    def execute(self, command, env, working_dir=None, timeout=None, input=None,
                on_line=None, label="step"):
        record = ExecutedCommand(argv=list(command), env=dict(env), working_dir=working_dir, input=input)
        self.executed.append(record)

        script = script_of(command)
        lines = script_commands(script) if script is not None else [shlex.join(command)]

        output: List[str] = []
        for line in lines:
            record.lines.append(line)
            logger.info("[%s] %s %s", label, "would run:" if self.dry_run else "$", line)
            if script is not None:
                output.append(COMMAND_MARKER + line)
                if on_line:
                    on_line(COMMAND_MARKER + line)
            result = self._response(line)
            for out in result.output:
                output.append(out)
                if on_line:
                    on_line(out)
            if not result.ok:
                if script is not None:
                    marker = FAILED_COMMAND_MARKER + line
                    output.append(marker)
                    if on_line:
                        on_line(marker)
                return CommandResult(exit_code=result.exit_code, output=output, timed_out=result.timed_out)
        return CommandResult(exit_code=0, output=output)

    def _response(self, line: str) -> CommandResult:
        for pattern, response in self.responses.items():
            if pattern in line:
                if isinstance(response, CommandResult):
                    return response
                return CommandResult(exit_code=response)
        return CommandResult(exit_code=0)

    @property
    def lines(self) -> List[str]:
        """Every command line reached, across all executed commands."""
        return [line for record in self.executed for line in record.lines]

    def count(self, pattern: str) -> int:
        return sum(1 for line in self.lines if pattern in line)
