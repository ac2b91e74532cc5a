"""PTY Manager — the registry of live sessions, keyed by id."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, TYPE_CHECKING

from cwt.errors import AlreadyExistsError, NotFoundError, SpawnError
from cwt.pty.session import PTYSession
from cwt.pty.terminal import TerminalModel, create_terminal

if TYPE_CHECKING:
    from cwt.config import CwtConfig
    from cwt.session.wire import Wire

logger = logging.getLogger(__name__)

TerminalFactory = Callable[[int, int], TerminalModel]


class PTYManager:
    """Manages the lifecycle of multiple PTY sessions.

    Every agent tab and the main tab go through here. The manager ensures:
    - Sessions are tracked and can be looked up by ID
    - An ID is never registered twice, even under concurrent spawns
    - All sessions are killed on shutdown (no orphan processes)
    - Session limits are enforced
    """

    MAX_SESSIONS = 16

    def __init__(
        self,
        command: list[str] | None = None,
        rows: int = 24,
        cols: int = 80,
        terminal_factory: TerminalFactory | None = None,
        wire: Wire | None = None,
        max_sessions: int | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command = list(command) if command else ["claude"]
        self.rows = rows
        self.cols = cols
        self.max_sessions = max_sessions or self.MAX_SESSIONS
        self.env = env or {}
        self._terminal_factory = terminal_factory or (
            lambda rows, cols: create_terminal("pyte", rows, cols)
        )
        self._wire = wire
        self._sessions: dict[str, PTYSession] = {}
        self._reserved: set[str] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: CwtConfig, wire: Wire | None = None) -> PTYManager:
        def factory(rows: int, cols: int) -> TerminalModel:
            return create_terminal(
                config.terminal,
                rows=rows,
                cols=cols,
                scrollback=config.scrollback,
                tail_bytes=config.tail_bytes,
            )

        return cls(
            command=config.command,
            rows=config.rows,
            cols=config.cols,
            terminal_factory=factory,
            wire=wire,
            max_sessions=config.max_sessions,
        )

    async def spawn(self, session_id: str, workdir: str, label: str = "") -> PTYSession:
        """Start the configured command in ``workdir`` under ``session_id``.

        Raises:
            AlreadyExistsError: ``session_id`` is live or being spawned.
            SpawnError: The session limit is reached or the program failed
                to start. Nothing is registered in either case.
        """
        with self._lock:
            if session_id in self._sessions or session_id in self._reserved:
                raise AlreadyExistsError(f"Session already exists: {session_id}")
            if len(self._sessions) + len(self._reserved) >= self.max_sessions:
                raise SpawnError(
                    f"Session limit reached ({self.max_sessions}); close a tab first"
                )
            self._reserved.add(session_id)
            rows, cols = self.rows, self.cols

        try:
            session = PTYSession(
                id=session_id,
                cwd=workdir,
                title=label or session_id,
                command=list(self.command),
                env=dict(self.env),
                rows=rows,
                cols=cols,
                terminal=self._terminal_factory(rows, cols),
                wire=self._wire,
            )
            await session.start()
        except BaseException:
            with self._lock:
                self._reserved.discard(session_id)
            raise

        with self._lock:
            self._reserved.discard(session_id)
            self._sessions[session_id] = session
        logger.debug("Registered session %s (%d live)", session_id, len(self._sessions))
        return session

    def get(self, session_id: str) -> PTYSession | None:
        """Get a session by ID."""
        with self._lock:
            return self._sessions.get(session_id)

    def write(self, session_id: str, data: bytes) -> int:
        """Forward input to a session.

        Raises:
            NotFoundError: No such session.
            ClosedError: The session's program is gone.
        """
        session = self.get(session_id)
        if session is None:
            raise NotFoundError(f"No such session: {session_id}")
        return session.write(data)

    async def kill(self, session_id: str) -> None:
        """Stop a session and remove it from tracking.

        Raises:
            NotFoundError: No such session.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise NotFoundError(f"No such session: {session_id}")
        session.stop()
        await session.wait_closed(timeout=1.0)

    def resize_all(self, rows: int, cols: int) -> None:
        """Resize every live session; new sessions start at this size too."""
        with self._lock:
            self.rows = rows
            self.cols = cols
            sessions = list(self._sessions.values())
        for session in sessions:
            session.resize(rows, cols)

    async def stop_all(self) -> None:
        """Kill all sessions. Called on shutdown."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.stop()
        for session in sessions:
            await session.wait_closed(timeout=1.0)
        logger.info("All PTY sessions stopped (%d)", len(sessions))

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def list_sessions(self) -> list[dict[str, Any]]:
        """List all tracked sessions."""
        with self._lock:
            sessions = list(self._sessions.values())
        return [
            {
                "id": s.id,
                "title": s.title,
                "cwd": s.cwd,
                "command": " ".join(s.command),
                "alive": s.is_running,
                "status": s.status.value,
                "pid": s.pid,
            }
            for s in sessions
        ]

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions
