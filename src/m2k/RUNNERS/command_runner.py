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
Execution of external commands (docker, kubectl, git and deploy steps) with
captured output and optional log redirection.
"""
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """
    Outcome of a finished command.
    """
    command: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


class CommandRunner:
    """
    Runs commands to completion.

    Commands are always passed as argument lists, never through a shell
    string, so arguments cannot inject further commands.
    """
    def __init__(self, log_file: Optional[str] = None):
        """
        Initializes the command runner.

        Args:
            log_file (Optional[str]): File that receives a copy of every command's output.
        """
        self.log_file = log_file

    def run(self,
            command: List[str],
            env: Optional[Dict[str, str]] = None,
            cwd: Optional[str] = None,
            input: Optional[str] = None,
            timeout: Optional[float] = None) -> CommandResult:
        """
        Runs a command and waits for it to exit.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Optional[Dict[str, str]]): Full environment; inherits the current one if omitted.
            cwd (Optional[str]): Directory to run the command in.
            input (Optional[str]): Text written to the command's stdin.
            timeout (Optional[float]): Seconds before the command is killed.

        Returns:
            CommandResult: Exit code and captured output. A missing executable
            is reported as exit code 127, like a shell would.
        """
        logger.debug("Running %s", " ".join(command))
        try:
            completed = subprocess.run(
                command,
                env=env,
                cwd=cwd,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
            result = CommandResult(command, completed.returncode, completed.stdout, completed.stderr)
        except FileNotFoundError as e:
            result = CommandResult(command, 127, "", str(e))
        except subprocess.TimeoutExpired as e:
            result = CommandResult(command, 124, "", f"timed out after {e.timeout}s")

        self._append_log(result)
        return result

    def _append_log(self, result: CommandResult):
        if not self.log_file:
            return
        log_dir = os.path.dirname(self.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        with open(self.log_file, 'a') as f:
            f.write(f"$ {' '.join(result.command)}\n")
            if result.stdout:
                f.write(result.stdout)
            if result.stderr:
                f.write(result.stderr)
            f.write(f"[exit {result.exit_code}]\n")
