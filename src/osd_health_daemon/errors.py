"""
Error types raised by the OSD health monitor.

Every failure a health check can hit falls into one of three kinds:

    - CommandError: the Ceph CLI could not be run or exited non-zero
    - ParseError: the CLI answered but the JSON did not have the expected shape
    - OrchestrationError: a Kubernetes API call failed for a reason other than
      "not found"

"Not found" on a delete is never raised; the callers treat it as the intended
outcome. All three share OSDHealthError so the monitor loop can log and carry on
with a single except clause.
"""

from typing import Optional, Sequence


class OSDHealthError(Exception):
    """Base class for all health-check failures."""


class CommandError(OSDHealthError):
    """A command channel invocation failed."""

    def __init__(self, message: str, command: str = "", args: Sequence[str] = (),
                 exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.command = command
        self.args_list = list(args)
        self.exit_code = exit_code
        self.output = output

    def __str__(self) -> str:
        base = super().__str__()
        if self.exit_code is not None:
            base += f" (exit code {self.exit_code})"
        if self.output:
            base += f": {self.output.strip()}"
        return base


class ParseError(OSDHealthError):
    """Command output was not the JSON shape we expected."""


class OrchestrationError(OSDHealthError):
    """A Kubernetes API call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
