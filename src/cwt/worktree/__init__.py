"""Worktree lifecycle — per-agent branches, worktrees, and durable state."""

from cwt.worktree.manager import WorktreeManager, find_git_root
from cwt.worktree.state import (
    Agent,
    AgentStatus,
    MergeOutcome,
    MergeRecord,
    State,
    StateStore,
)

__all__ = [
    "WorktreeManager",
    "find_git_root",
    "Agent",
    "AgentStatus",
    "MergeOutcome",
    "MergeRecord",
    "State",
    "StateStore",
]
