"""Shared utilities for CLI modules."""

import sys
from typing import NoReturn

from rich.console import Console
from rich.markup import escape

from worktrack.errors import WorktrackError

# Shared Rich console instance for all CLI modules
console = Console()


def fail(error: WorktrackError) -> NoReturn:
    """Print the error the way every command reports failures, then exit 1."""
    console.print(f"[red]Error:[/red] {escape(str(error))}", highlight=False)
    sys.exit(1)
