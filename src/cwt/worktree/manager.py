"""Worktree manager — creates, tracks, and merges per-agent git worktrees.

Every agent gets its own branch and its own worktree under
``<repo>/<worktree_dir>/<id>``. The manager is the only writer of the
persisted :class:`~cwt.worktree.state.State`; each mutation is saved before
the call returns, and a failed save restores the in-memory copy so memory
and disk always describe the same last completed step.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from cwt.config import CwtConfig
from cwt.errors import (
    GitOperationError,
    InvalidTransitionError,
    MergeConflictError,
    NotFoundError,
)
from cwt.worktree.naming import branch_name, new_agent_id
from cwt.worktree.state import (
    STATE_DIR,
    Agent,
    AgentStatus,
    MergeOutcome,
    MergeRecord,
    State,
    StateStore,
    utc_now,
)

logger = logging.getLogger(__name__)

CONFLICT_MARKER = "<<<<<<<"


def find_git_root(path: str | os.PathLike[str] | None = None) -> str:
    """Return the top-level directory of the repository containing ``path``."""
    start = os.path.abspath(path or os.getcwd())
    try:
        repo = Repo(start, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        raise GitOperationError(f"Not in a git repository: {start}") from e
    if repo.working_tree_dir is None:
        raise GitOperationError(f"Bare repositories are not supported: {start}")
    return str(repo.working_tree_dir)


def _git_message(e: GitCommandError) -> str:
    detail = (e.stderr or e.stdout or "").strip()
    return detail or str(e)


@contextmanager
def _git_errors(action: str, error_cls: type[GitOperationError] = GitOperationError) -> Iterator[None]:
    try:
        yield
    except GitCommandError as e:
        raise error_cls(f"Failed to {action}: {_git_message(e)}") from e


class WorktreeManager:
    """Lifecycle of agent branches and worktrees for one repository.

    Mutating operations (create, remove, merge, status changes) hold a
    single re-entrant lock for their whole read-modify-persist sequence,
    so two of them never interleave.
    """

    def __init__(
        self,
        repo_root: str | os.PathLike[str],
        config: CwtConfig | None = None,
        store: StateStore | None = None,
    ) -> None:
        self._root = os.path.abspath(repo_root)
        self.config = config or CwtConfig()
        try:
            self._repo = Repo(self._root)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise GitOperationError(f"Not a git repository: {self._root}") from e

        self._store = store or StateStore(self._root)
        fresh = not self._store.path.exists()
        self._state = self._store.load()
        self._state.repo_root = self._root
        if fresh:
            self._state.worktree_dir = self.config.worktree_dir
        self._lock = threading.RLock()

    @classmethod
    def open(
        cls, path: str | os.PathLike[str] | None = None, config: CwtConfig | None = None
    ) -> WorktreeManager:
        """Open the manager for the repository containing ``path``."""
        return cls(find_git_root(path), config=config)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def repo_root(self) -> str:
        return self._root

    @property
    def worktrees_path(self) -> str:
        return os.path.join(self._root, self._state.worktree_dir)

    @property
    def state(self) -> State:
        return self._state

    def get_agent(self, agent_id: str) -> Agent | None:
        return self._state.get_agent(agent_id)

    def list_agents(self) -> list[Agent]:
        return self._state.list_agents()

    def current_branch(self) -> str:
        with _git_errors("read current branch"):
            return self._repo.git.rev_parse("--abbrev-ref", "HEAD")

    def current_commit(self) -> str:
        with _git_errors("read current commit"):
            return self._repo.git.rev_parse("HEAD")

    def require_agent(self, agent_id: str) -> Agent:
        agent = self._state.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        return agent

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _mutation(self) -> Iterator[State]:
        """Apply changes to the state and persist them, or roll both back."""
        with self._lock:
            backup = self._state.model_copy(deep=True)
            try:
                yield self._state
                self._store.save(self._state)
            except BaseException:
                self._state = backup
                raise

    def _transition(self, agent: Agent, status: AgentStatus) -> None:
        if not agent.status.can_transition_to(status):
            raise InvalidTransitionError(
                f"Agent {agent.id} cannot go from {agent.status.value} to {status.value}"
            )
        logger.info("Agent %s: %s -> %s", agent.id, agent.status.value, status.value)
        agent.status = status

    def _ensure_excluded(self) -> None:
        """Keep cwt's own directories out of ``git status``."""
        exclude = Path(self._repo.common_dir) / "info" / "exclude"
        wanted = [f"/{STATE_DIR}/", f"/{self._state.worktree_dir.strip('/')}/"]
        try:
            existing = exclude.read_text(encoding="utf-8").splitlines() if exclude.exists() else []
            missing = [line for line in wanted if line not in existing]
            if not missing:
                return
            exclude.parent.mkdir(parents=True, exist_ok=True)
            with exclude.open("a", encoding="utf-8") as f:
                if existing and existing[-1] != "":
                    f.write("\n")
                f.write("\n".join(missing) + "\n")
        except OSError as e:
            logger.warning("Could not update %s: %s", exclude, e)

    def _discard_worktree(self, path: str, branch: str) -> None:
        """Best-effort removal of a worktree and its branch."""
        try:
            self._repo.git.worktree("remove", path)
        except GitCommandError:
            try:
                self._repo.git.worktree("remove", "--force", path)
            except GitCommandError as e:
                logger.warning("Could not remove worktree %s: %s", path, _git_message(e))
        if os.path.exists(path):
            shutil.rmtree(path, ignore_errors=True)
        # Forget registrations whose directory is gone so the branch can go.
        try:
            self._repo.git.worktree("prune")
        except GitCommandError as e:
            logger.debug("worktree prune failed: %s", _git_message(e))

        try:
            self._repo.git.branch("-d", branch)
        except GitCommandError:
            try:
                self._repo.git.branch("-D", branch)
            except GitCommandError as e:
                logger.warning("Could not delete branch %s: %s", branch, _git_message(e))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_branch(self, task: str) -> Agent:
        """Create a worktree on a fresh branch for ``task`` and start tracking it."""
        with self._lock:
            agent_id = new_agent_id(self._state.agents, prefix=self.config.id_prefix)
            branch = branch_name(self.config.branch_prefix, agent_id, task)
            path = os.path.join(self.worktrees_path, agent_id)

            base_branch = self.current_branch()
            base_commit = self.current_commit()

            self._ensure_excluded()
            with _git_errors(f"create worktree {path}"):
                self._repo.git.worktree("add", "-b", branch, path, base_commit)
            logger.info("Created worktree %s on %s (base %s@%s)", path, branch, base_branch, base_commit[:8])

            agent = Agent(
                id=agent_id,
                branch=branch,
                worktree=path,
                task=task,
                status=AgentStatus.RUNNING,
                base_branch=base_branch,
                base_commit=base_commit,
            )
            try:
                with self._mutation() as state:
                    state.add_agent(agent)
            except BaseException:
                logger.warning("Rolling back worktree %s after failed save", path)
                self._discard_worktree(path, branch)
                raise
            return agent

    def remove_branch(self, agent_id: str) -> None:
        """Delete an agent's worktree and branch and stop tracking it.

        Git cleanup is best-effort; the record is dropped even if the
        worktree or branch could not be removed.
        """
        with self._lock:
            agent = self.require_agent(agent_id)
            self._discard_worktree(agent.worktree, agent.branch)
            with self._mutation() as state:
                state.remove_agent(agent_id)
            logger.info("Removed agent %s", agent_id)

    def set_status(self, agent_id: str, status: AgentStatus) -> Agent:
        """Move an agent along the status state machine and persist."""
        with self._mutation():
            agent = self.require_agent(agent_id)
            self._transition(agent, status)
        return self.require_agent(agent_id)

    def mark_completed(self, agent_id: str) -> Agent:
        return self.set_status(agent_id, AgentStatus.COMPLETED)

    def mark_failed(self, agent_id: str) -> Agent:
        return self.set_status(agent_id, AgentStatus.FAILED)

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def diff(self, agent_id: str) -> str:
        """Changes on the agent branch since it diverged from its base."""
        agent = self.require_agent(agent_id)
        with _git_errors(f"diff {agent.branch}"):
            return self._repo.git.diff(f"{agent.base_branch}...{agent.branch}")

    def diff_stat(self, agent_id: str) -> str:
        agent = self.require_agent(agent_id)
        with _git_errors(f"diff {agent.branch}"):
            return self._repo.git.diff("--stat", f"{agent.base_branch}...{agent.branch}")

    def commit_log(self, agent_id: str) -> str:
        """One line per commit on the agent branch that is not on its base."""
        agent = self.require_agent(agent_id)
        with _git_errors(f"read log of {agent.branch}"):
            return self._repo.git.log("--oneline", f"{agent.base_branch}..{agent.branch}")

    def has_conflicts(self, agent_id: str) -> bool:
        """Dry-run merge of the agent branch into its base.

        Advisory only: the external merge collaborator does the real
        detection and resolution.
        """
        agent = self.require_agent(agent_id)
        with _git_errors(f"find merge base of {agent.base_branch} and {agent.branch}"):
            merge_base = self._repo.git.merge_base(agent.base_branch, agent.branch)
        output = self._repo.git.merge_tree(
            merge_base, agent.base_branch, agent.branch, with_exceptions=False
        )
        return CONFLICT_MARKER in output

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def merge(self, agent_id: str) -> MergeRecord:
        """Merge the agent branch into its base branch with ``--no-ff``.

        The agent is persisted as ``merging`` before git runs. If the merge
        stops on conflicts the agent stays in ``merging`` and the conflicted
        tree is left in place for whoever resolves it.
        """
        with self._lock:
            with self._mutation():
                agent = self.require_agent(agent_id)
                if agent.status != AgentStatus.MERGING:
                    self._transition(agent, AgentStatus.MERGING)

            agent = self.require_agent(agent_id)
            with _git_errors(f"check out {agent.base_branch}"):
                self._repo.git.checkout(agent.base_branch)
            message = f"Merge {agent.id}: {agent.task}"
            with _git_errors(f"merge {agent.branch}", MergeConflictError):
                self._repo.git.merge("--no-ff", "-m", message, agent.branch)
            merge_commit = self.current_commit()

            return self._finish_merge(agent_id, merge_commit)

    def _finish_merge(
        self,
        agent_id: str,
        merge_commit: str,
        conflicts_resolved: int = 0,
        conflicts_escalated: int = 0,
    ) -> MergeRecord:
        now = utc_now()
        record = MergeRecord(
            agent_id=agent_id,
            merged_at=now,
            merge_commit=merge_commit,
            conflicts_resolved=conflicts_resolved,
            conflicts_escalated=conflicts_escalated,
        )
        with self._mutation() as state:
            agent = self.require_agent(agent_id)
            self._transition(agent, AgentStatus.MERGED)
            agent.merged_at = now
            state.merge_history.append(record)
        logger.info("Merged agent %s as %s", agent_id, merge_commit[:8])
        return record

    def record_merge_outcome(self, agent_id: str, outcome: MergeOutcome) -> Agent:
        """Apply the result reported by the external merge collaborator.

        ``merged`` finalizes the agent and appends a merge record.
        ``escalated`` leaves it in ``merging``, which is the signal that
        someone has to resolve the conflicts by hand.
        """
        with self._lock:
            with self._mutation():
                agent = self.require_agent(agent_id)
                if agent.status != AgentStatus.MERGING:
                    self._transition(agent, AgentStatus.MERGING)

            if outcome.outcome == "escalated":
                logger.warning(
                    "Merge of %s escalated (%d conflicts need manual resolution)",
                    agent_id,
                    outcome.conflicts_escalated,
                )
                return self.require_agent(agent_id)

            merge_commit = outcome.merge_commit
            if not merge_commit:
                base = self.require_agent(agent_id).base_branch
                with _git_errors(f"read head of {base}"):
                    merge_commit = self._repo.git.rev_parse(base)
            self._finish_merge(
                agent_id,
                merge_commit,
                conflicts_resolved=outcome.conflicts_resolved,
                conflicts_escalated=outcome.conflicts_escalated,
            )
            return self.require_agent(agent_id)
