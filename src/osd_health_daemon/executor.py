"""
Command channel used to talk to the Ceph cluster.

The monitor never links against librados; it shells out to the `ceph` CLI the
same way an operator would. Two call styles are offered:

    execute_command_with_output(command, *args)
        Runs the command and returns its stdout.

    execute_command_with_output_file(command, out_file_arg, *args)
        Asks the command to write its result into a temporary file
        (`<out_file_arg>=<path>`), then returns the file contents. The Ceph CLI
        mixes warnings into stdout, so structured output is read from the file.

No retries happen here. A non-zero exit code, a missing binary or an expired
timeout is raised as CommandError and the periodic health check acts as the
retry mechanism.
"""

import logging
import os
import subprocess
import tempfile
from typing import List, Optional

from .errors import CommandError

logger = logging.getLogger(os.getenv("LOGGER_NAME", "OSD_HEALTH_MONITOR"))


class CommandExecutor:
    """Runs external commands through subprocess."""

    def __init__(self, timeout: Optional[float] = None):
        # None or 0 means "no timeout"; the caller's environment bounds latency
        self.timeout = timeout or None

    def execute_command_with_output(self, command: str, *args: str) -> str:
        """Run a command and return its stdout."""
        return self._run([command, *args])

    def execute_command_with_output_file(self, command: str, out_file_arg: str, *args: str) -> str:
        """Run a command that writes its result to a file and return the file contents."""
        fd, path = tempfile.mkstemp(prefix="osd-health-", suffix=".out")
        os.close(fd)
        try:
            self._run([command, *args, f"{out_file_arg}={path}"])
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        finally:
            try:
                os.remove(path)
            except OSError as e:
                logger.debug(f"Could not remove temporary output file {path}: {e}")

    def _run(self, cmd: List[str]) -> str:
        logger.debug(f"Running command: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise CommandError(f"command not found: {cmd[0]}", command=cmd[0], args=cmd[1:]) from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(
                f"command {cmd[0]} timed out after {self.timeout}s",
                command=cmd[0],
                args=cmd[1:],
            ) from e

        if result.returncode != 0:
            raise CommandError(
                f"command {cmd[0]} {' '.join(cmd[1:3])} failed",
                command=cmd[0],
                args=cmd[1:],
                exit_code=result.returncode,
                output=result.stderr or result.stdout,
            )
        return result.stdout
