"""Persistent state — the durable record of tracked agents and merges.

One JSON file per repository at ``<repo>/.cwt/state.json``. The whole
document is rewritten on every mutation (temp file + ``os.replace``), so
a reader never sees a half-written file.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from cwt.errors import CorruptStateError, PersistenceError

logger = logging.getLogger(__name__)

STATE_VERSION = "1.0"
STATE_DIR = ".cwt"
STATE_FILE = "state.json"
DEFAULT_WORKTREE_DIR = ".worktrees"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AgentStatus(str, enum.Enum):
    """Lifecycle states for a tracked agent."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    MERGING = "merging"
    MERGED = "merged"
    FAILED = "failed"

    def can_transition_to(self, target: AgentStatus) -> bool:
        return target in TRANSITIONS[self]

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self]


# Forward-only. Nothing reaches MERGED without passing through MERGING.
TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.PENDING: frozenset({AgentStatus.RUNNING, AgentStatus.FAILED}),
    AgentStatus.RUNNING: frozenset(
        {AgentStatus.COMPLETED, AgentStatus.MERGING, AgentStatus.FAILED}
    ),
    AgentStatus.COMPLETED: frozenset({AgentStatus.MERGING, AgentStatus.FAILED}),
    AgentStatus.MERGING: frozenset({AgentStatus.MERGED, AgentStatus.FAILED}),
    AgentStatus.MERGED: frozenset(),
    AgentStatus.FAILED: frozenset(),
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Agent(_CamelModel):
    """One isolated unit of work: a branch, its worktree, and a task."""

    id: str
    branch: str
    worktree: str
    task: str
    status: AgentStatus = AgentStatus.PENDING
    base_branch: str
    base_commit: str
    created_at: datetime = Field(default_factory=utc_now)
    merged_at: datetime | None = None


class MergeRecord(_CamelModel):
    """A completed merge. Appended once, never edited."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    merged_at: datetime = Field(default_factory=utc_now)
    merge_commit: str
    conflicts_resolved: int = 0
    conflicts_escalated: int = 0


class State(_CamelModel):
    """Everything cwt knows about one repository."""

    version: str = STATE_VERSION
    repo_root: str
    worktree_dir: str = DEFAULT_WORKTREE_DIR
    agents: dict[str, Agent] = Field(default_factory=dict)
    merge_history: list[MergeRecord] = Field(default_factory=list)

    @field_validator("agents", "merge_history", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return {} if info.field_name == "agents" else []
        return value

    @model_validator(mode="after")
    def _keys_match_ids(self) -> State:
        for key, agent in self.agents.items():
            if key != agent.id:
                raise ValueError(f"agent key {key!r} does not match id {agent.id!r}")
        return self

    def add_agent(self, agent: Agent) -> None:
        self.agents[agent.id] = agent

    def get_agent(self, agent_id: str) -> Agent | None:
        return self.agents.get(agent_id)

    def remove_agent(self, agent_id: str) -> Agent | None:
        return self.agents.pop(agent_id, None)

    def list_agents(self) -> list[Agent]:
        """All agents, oldest first."""
        return sorted(self.agents.values(), key=lambda a: a.created_at)

    def agents_by_status(self, status: AgentStatus) -> list[Agent]:
        return [a for a in self.list_agents() if a.status == status]

    def to_json(self) -> str:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(data, indent=2) + "\n"


def state_file_path(repo_root: str | os.PathLike[str]) -> Path:
    """Location of the state file for ``repo_root``."""
    return Path(repo_root) / STATE_DIR / STATE_FILE


class StateStore:
    """Loads and atomically saves :class:`State` for one repository.

    No cross-process locking: a single manager per repository is assumed
    and the last writer wins.
    """

    def __init__(self, repo_root: str | os.PathLike[str]) -> None:
        self.repo_root = str(repo_root)
        self.path = state_file_path(repo_root)

    def load(self) -> State:
        """Read the state file, or return a fresh empty state if there is none."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("No state file at %s, starting fresh", self.path)
            return State(repo_root=self.repo_root)
        except OSError as e:
            raise CorruptStateError(f"Cannot read state file {self.path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptStateError(f"State file {self.path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise CorruptStateError(f"State file {self.path} is not a JSON object")

        try:
            state = State.model_validate(data)
        except ValidationError as e:
            raise CorruptStateError(f"State file {self.path} has an invalid schema: {e}") from e

        logger.debug("Loaded %d agents from %s", len(state.agents), self.path)
        return state

    def save(self, state: State) -> None:
        """Replace the state file with ``state``.

        Writes to a temp file in the same directory and renames it over the
        old one. On any failure the previous file is left untouched and
        :class:`PersistenceError` is raised.
        """
        payload = state.to_json()
        tmp_path: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".state-", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            raise PersistenceError(f"Cannot write state file {self.path}: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.debug("Could not remove temp state file %s", tmp_path)


class MergeOutcome(_CamelModel):
    """Result reported by the external merge collaborator."""

    outcome: Literal["merged", "escalated"]
    merge_commit: str | None = None
    conflicts_resolved: int = Field(default=0, ge=0)
    conflicts_escalated: int = Field(default=0, ge=0)
    message: str = ""
