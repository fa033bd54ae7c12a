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
Execution of a single blocking system process with streamed output,
timeouts and process-tree termination.
"""
import logging
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127
INTERRUPTED_EXIT_CODE = 130
OUTPUT_TAIL_LINES = 200


@dataclass
class CommandResult:
    """Outcome of one command."""
    exit_code: int
    output: List[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def kill_process_tree(pid: int) -> None:
    """
    Kills a process and all of its descendants.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    procs = parent.children(recursive=True) + [parent]
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    psutil.wait_procs(procs, timeout=5)


class ProcessRunner:
    """
    Runs one command to completion.
    """
    def __init__(self, name: str, on_line: Optional[Callable[[str], None]] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process, used in log messages.
            on_line (Optional[Callable]): Called with every output line.
        """
        self.name = name
        self.on_line = on_line
        self.process = None
        self._timed_out = False

    def run(self,
            command: List[str],
            env: Dict[str, str],
            working_dir: Optional[str] = None,
            timeout: Optional[float] = None,
            input: Optional[str] = None) -> CommandResult:
        """
        Starts the process and blocks until it exits.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.
            timeout (Optional[float]): Seconds before the process tree is killed.
            input (Optional[str]): Text written to the process's stdin.

        Returns:
            CommandResult: exit code and the tail of the combined output.
        """
        tail = deque(maxlen=OUTPUT_TAIL_LINES)
        self._timed_out = False
        logger.debug("[%s] Starting command: %s", self.name, command[0])

        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            message = f"[{self.name}] Failed to start: {e}"
            logger.error(message)
            return CommandResult(exit_code=NOT_FOUND_EXIT_CODE, output=[message])

        timer = None
        if timeout:
            timer = threading.Timer(timeout, self._expire)
            timer.daemon = True
            timer.start()

        try:
            if input is not None:
                self.process.stdin.write(input)
                self.process.stdin.close()
            for line in self.process.stdout:
                line = line.rstrip("\r\n")
                tail.append(line)
                if self.on_line:
                    self.on_line(line)
            exit_code = self.process.wait()
        except KeyboardInterrupt:
            logger.warning("[%s] Interrupted, killing process tree", self.name)
            self.stop()
            raise
        finally:
            if timer:
                timer.cancel()
            self.process.stdout.close()

        if self._timed_out:
            logger.error("[%s] Timed out after %.0f seconds", self.name, timeout)
            return CommandResult(exit_code=TIMEOUT_EXIT_CODE, output=list(tail), timed_out=True)
        return CommandResult(exit_code=exit_code, output=list(tail))

    def _expire(self):
        self._timed_out = True
        self.stop()

    def stop(self):
        """
        Kills the process and everything it spawned.
        """
        if self.process and self.process.poll() is None:
            kill_process_tree(self.process.pid)
            try:
                self.process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                logger.error("[%s] Process did not exit after kill", self.name)
