"""Exceptions raised by worktrack.

The CLI commands are the only place these are caught; everything below them
raises the most specific class with enough context for the operator to act.
"""

from typing import Optional, Sequence


class WorktrackError(Exception):
    """Base exception for all worktrack errors."""

    pass


class ValidationError(WorktrackError):
    """Bad input detected before anything was changed (ID, status, path, message)."""

    pass


class ConfigError(ValidationError):
    """Configuration file could not be read or failed validation."""

    pass


class PreconditionError(WorktrackError):
    """The repository or work item is not in a state the operation can start from."""

    pass


class ExternalError(WorktrackError):
    """A remote system refused or failed the operation.

    ``override`` names the flag that lets the operator proceed anyway; it is
    appended to the message so the remedy is always visible.
    """

    def __init__(self, message: str, override: Optional[str] = None):
        self.override = override
        if override:
            message = f"{message}. Use {override} to proceed anyway"
        super().__init__(message)


class CommandError(WorktrackError):
    """An external command exited non-zero, timed out, or could not be started."""

    def __init__(
        self,
        args: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        cwd: Optional[str] = None,
        timed_out: bool = False,
        stdout: str = "",
    ):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        self.stdout = stdout.strip()
        self.cwd = cwd
        self.timed_out = timed_out

        cmd = " ".join(self.command)
        if timed_out:
            msg = f"command timed out: {cmd}"
        elif returncode is None:
            msg = f"command could not be started: {cmd}"
        else:
            msg = f"command failed with exit code {returncode}: {cmd}"
        if self.stderr:
            msg += f": {self.stderr}"
        super().__init__(msg)
