"""cwt — parallel interactive sessions, one per isolated git worktree."""

__version__ = "0.1.0"
