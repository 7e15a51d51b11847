"""Run configured setup commands once worktrees are ready.

``workspace.setup`` runs in the main worktree. In a polyrepo workspace each
project's ``setup`` then runs in that project's checkout, once per shared
``repo_root`` group.
"""

import logging
import os
from pathlib import Path
from typing import List, Set, Union

from rich.console import Console

from worktrack.config import Config
from worktrack.errors import CommandError, PreconditionError, WorktrackError
from worktrack.polyrepo import get_project_setup_path
from worktrack.runner import SETUP_TIMEOUT, CommandRunner

log = logging.getLogger("worktrack.setup_commands")
console = Console()

_SHELL_CHARS = set(" \t|&;<>")


def is_simple_script_path(command: str) -> bool:
    """True for ``./script`` or ``/abs/script`` with no arguments or shell syntax."""
    if not (command.startswith("./") or command.startswith("/")):
        return False
    return not any(c in _SHELL_CHARS for c in command)


def execute_setup(runner: CommandRunner, command: str, work_dir: Union[str, Path]) -> None:
    """Run one setup command in ``work_dir`` through the shell.

    Raises:
        PreconditionError: If the directory or a referenced script is missing
        WorktrackError: If the command fails or times out
    """
    if runner.dry_run:
        console.print(f"[DRY RUN] Would execute setup: {command} (in {work_dir})", markup=False, highlight=False)
        return

    if not os.path.isdir(work_dir):
        raise PreconditionError(f"setup directory does not exist: {work_dir}")

    if is_simple_script_path(command):
        script = command if os.path.isabs(command) else os.path.join(str(work_dir), command)
        if not os.path.exists(script):
            raise PreconditionError(
                f"setup script not found: {command}. Verify workspace.setup or "
                "project setup in worktrack.yml"
            )

    try:
        output = runner.shell(command, cwd=work_dir, timeout=SETUP_TIMEOUT)
    except CommandError as e:
        if e.timed_out:
            raise WorktrackError(
                f"setup command timed out after {SETUP_TIMEOUT // 60} minutes: {command}"
            ) from e
        if e.stdout:
            raise WorktrackError(
                f"setup command exited with code {e.returncode}: {command}\n{e.stdout}"
            ) from e
        raise WorktrackError(f"setup command exited with code {e.returncode}: {command}") from e

    if output:
        console.print(output.rstrip("\n"), markup=False, highlight=False)


def execute_setup_commands(
    runner: CommandRunner,
    config: Config,
    main_worktree: Path,
    polyrepo_base: Union[Path, None] = None,
) -> List[str]:
    """Run the main setup, then per-project setups for a polyrepo workspace.

    Args:
        main_worktree: Checkout of the primary repository
        polyrepo_base: ``<root>/<branch>`` for polyrepo workspaces, else None

    Returns:
        Directories a setup command ran in (or would run in, for dry-run)
    """
    ran: List[str] = []

    if config.workspace.setup:
        console.print(f"[dim]Running setup for main project: {config.workspace.setup}[/dim]")
        execute_setup(runner, config.workspace.setup, main_worktree)
        ran.append(str(main_worktree))

    if polyrepo_base is None:
        return ran

    processed: Set[str] = set()
    for project in config.workspace.projects:
        if not project.setup:
            continue
        setup_path = get_project_setup_path(project, polyrepo_base, processed)
        if not setup_path:
            log.debug("Skipping setup for %s: shared checkout already set up", project.name)
            continue
        console.print(f"[dim]Running setup for {project.name}: {project.setup}[/dim]")
        try:
            execute_setup(runner, project.setup, setup_path)
        except WorktrackError as e:
            raise WorktrackError(f"setup command failed for project '{project.name}': {e}") from e
        ran.append(setup_path)

    return ran
