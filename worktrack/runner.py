"""Run git and setup commands.

All process execution goes through CommandRunner. Reads always execute;
``mutate`` is the single place that honors dry-run, printing the command
line instead of running it.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from rich.console import Console

from worktrack.errors import CommandError

log = logging.getLogger("worktrack.runner")

# Seconds. Local metadata reads are cheap, network operations are not.
GIT_METADATA_TIMEOUT = 10
GIT_COMMAND_TIMEOUT = 30
GIT_NETWORK_TIMEOUT = 60
SETUP_TIMEOUT = 300

PathLike = Union[str, Path]


def format_command_preview(args: Sequence[str], cwd: Optional[PathLike] = None) -> str:
    """Format the line printed for a command skipped by dry-run.

    Example:
        >>> format_command_preview(["git", "worktree", "add", "x"], "/repo")
        '[DRY RUN] git worktree add x (in /repo)'
    """
    preview = "[DRY RUN] " + " ".join(str(a) for a in args)
    if cwd:
        preview += f" (in {cwd})"
    return preview


def git_config_env() -> Dict[str, str]:
    """Extra environment passed to every command.

    Only GIT_CONFIG_GLOBAL is forwarded explicitly, so sandboxed runs (CI,
    tests) can point git at an isolated global config.
    """
    value = os.environ.get("GIT_CONFIG_GLOBAL")
    return {"GIT_CONFIG_GLOBAL": value} if value else {}


class CommandRunner:
    """Executes external commands with a timeout and optional working directory.

    Args:
        dry_run: When True, ``mutate`` prints instead of executing.
        console: Console used for dry-run previews.
        extra_env: Variables layered over the inherited environment.
    """

    def __init__(
        self,
        dry_run: bool = False,
        console: Optional[Console] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ):
        self.dry_run = dry_run
        self.console = console or Console()
        self.extra_env = git_config_env() if extra_env is None else extra_env

    def _env(self) -> Optional[Dict[str, str]]:
        if not self.extra_env:
            return None
        env = dict(os.environ)
        env.update(self.extra_env)
        return env

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[PathLike] = None,
        timeout: float = GIT_COMMAND_TIMEOUT,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Execute a command regardless of dry-run.

        Use this only for commands that do not change anything.

        Raises:
            CommandError: On timeout, a missing executable, or (when ``check``)
                a non-zero exit status.
        """
        argv: List[str] = [str(a) for a in args]
        log.debug("run: %s (cwd=%s)", " ".join(argv), cwd)
        try:
            result = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._env(),
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(argv, cwd=str(cwd) if cwd else None, timed_out=True) from e
        except OSError as e:
            raise CommandError(argv, stderr=str(e), cwd=str(cwd) if cwd else None) from e

        if check and result.returncode != 0:
            raise CommandError(
                argv,
                returncode=result.returncode,
                stderr=result.stderr or "",
                cwd=str(cwd) if cwd else None,
                stdout=result.stdout or "",
            )
        return result

    def output(
        self,
        args: Sequence[str],
        cwd: Optional[PathLike] = None,
        timeout: float = GIT_METADATA_TIMEOUT,
    ) -> str:
        """Execute a read-only command and return its stripped stdout."""
        return self.run(args, cwd=cwd, timeout=timeout).stdout.strip()

    def succeeds(
        self,
        args: Sequence[str],
        cwd: Optional[PathLike] = None,
        timeout: float = GIT_METADATA_TIMEOUT,
    ) -> bool:
        """Return True if a read-only command exits zero."""
        try:
            return self.run(args, cwd=cwd, timeout=timeout, check=False).returncode == 0
        except CommandError:
            return False

    def shell(self, command: str, cwd: PathLike, timeout: float = SETUP_TIMEOUT) -> str:
        """Run a user-configured shell command through ``sh -c``.

        Stdout and stderr are merged so failures can show everything the
        command printed. Callers handle dry-run themselves.

        Raises:
            CommandError: On timeout or non-zero exit; ``stdout`` holds the
                combined output.
        """
        argv = ["sh", "-c", command]
        log.debug("shell: %s (cwd=%s)", command, cwd)
        try:
            result = subprocess.run(
                argv,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout,
                env=self._env(),
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(argv, cwd=str(cwd), timed_out=True) from e
        except OSError as e:
            raise CommandError(argv, stderr=str(e), cwd=str(cwd)) from e

        if result.returncode != 0:
            raise CommandError(argv, returncode=result.returncode, cwd=str(cwd), stdout=result.stdout or "")
        return result.stdout or ""

    def mutate(
        self,
        args: Sequence[str],
        cwd: Optional[PathLike] = None,
        timeout: float = GIT_COMMAND_TIMEOUT,
    ) -> str:
        """Execute a command that changes state, or preview it in dry-run.

        Returns:
            Stripped stdout, or an empty string in dry-run.
        """
        if self.dry_run:
            self.console.print(format_command_preview(args, cwd), markup=False, highlight=False)
            return ""
        return self.run(args, cwd=cwd, timeout=timeout).stdout.strip()
