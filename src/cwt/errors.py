"""Error taxonomy shared by the session multiplexer and the worktree manager."""

from __future__ import annotations


class CwtError(Exception):
    """Base class for every error cwt raises on purpose."""


class NotFoundError(CwtError, KeyError):
    """A referenced agent or session id is not tracked."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return Exception.__str__(self)


class AlreadyExistsError(CwtError):
    """An id passed to spawn/create is already registered."""


class SpawnError(CwtError):
    """The child process or its pseudo-terminal could not be started."""


class ClosedError(CwtError):
    """Input was sent to a session that is not started or already stopped."""


class CorruptStateError(CwtError):
    """The state file exists but does not match the expected schema."""


class PersistenceError(CwtError):
    """The state file could not be written."""


class GitOperationError(CwtError):
    """A git subprocess failed."""


class MergeConflictError(GitOperationError):
    """``git merge`` stopped with conflicts; the agent stays in ``merging``."""


class InvalidTransitionError(CwtError):
    """An agent status change that the state machine does not allow."""


class ResolverError(CwtError):
    """The external merge collaborator failed or returned garbage."""
