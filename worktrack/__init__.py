"""worktrack: git worktree lifecycle for markdown work items."""

__version__ = "0.1.0"
