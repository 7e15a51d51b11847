"""Open the new worktree in an editor. Best effort: failures only warn."""

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from rich.console import Console

from worktrack.config import Config
from worktrack.runner import format_command_preview

log = logging.getLogger("worktrack.ide")
console = Console()


def resolve_ide_command(config: Config, no_ide: bool, ide_flag: str) -> Optional[tuple]:
    """Pick the editor: ``--no-ide``, then ``--ide``, then ``ide.command``.

    Returns:
        (command, args) or None when no editor should be opened
    """
    if no_ide:
        return None
    if ide_flag:
        return ide_flag, []
    if config.ide.command:
        return config.ide.command, list(config.ide.args)
    return None


def launch_ide_command(command: str, args: List[str], worktree_path: Union[str, Path], dry_run: bool) -> bool:
    """Start the editor detached from worktrack.

    Returns:
        True if the editor was started (or would be, in dry-run)
    """
    argv = [command] + list(args) + [str(worktree_path)]
    if dry_run:
        console.print(format_command_preview(argv), markup=False, highlight=False)
        return True

    console.print(f"Opening IDE: {command} {worktree_path}")
    try:
        subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except FileNotFoundError:
        log.warning("IDE command %s not found", command)
        console.print(
            f"[yellow]Warning: IDE command '{command}' not found. Check --ide or ide.command "
            f"in worktrack.yml. You can open the worktree manually at {worktree_path}.[/yellow]"
        )
        return False
    except OSError as e:
        log.warning("Failed to launch IDE %s: %s", command, e)
        console.print(
            f"[yellow]Warning: failed to launch IDE ({e}). The worktree was created; "
            f"open it manually at {worktree_path}.[/yellow]"
        )
        return False
    return True


def launch_ide(config: Config, worktree_path: Union[str, Path], no_ide: bool, ide_flag: str, dry_run: bool) -> bool:
    if no_ide:
        return False
    resolved = resolve_ide_command(config, no_ide, ide_flag)
    if resolved is None:
        console.print(
            f"[dim]Info: no IDE configured. Worktree created at {worktree_path}. Set ide.command "
            "in worktrack.yml or pass --ide to open it automatically.[/dim]"
        )
        return False
    command, args = resolved
    return launch_ide_command(command, args, worktree_path, dry_run)
