"""Run and switch between agent CLI sessions bound to Git worktrees."""

__version__ = "0.1.0"

__all__ = ["__version__"]
