"""PTY session — one interactive program in its own pseudo-terminal."""

from __future__ import annotations

import asyncio
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cwt.errors import ClosedError, SpawnError
from cwt.pty.terminal import Cell, PyteTerminal, TerminalModel

if TYPE_CHECKING:
    from cwt.session.wire import Wire

logger = logging.getLogger(__name__)

READ_SIZE = 4096


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY session."""

    PENDING = "pending"  # Created, not started
    RUNNING = "running"
    KILLING = "killing"  # Stop requested, waiting for process to die
    KILLED = "killed"  # Stopped by us
    EXITED = "exited"  # Process exited on its own


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the pty slave. Without a
    # controlling terminal the child never receives SIGWINCH.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


@dataclass
class PTYSession:
    """A managed pseudo-terminal session.

    Wraps an interactive program with:
    - Process group isolation (start_new_session) for safe tree-killing
    - A terminal model that turns the output stream into a screen
    - Ordered, serialized input
    - Exit and output-ready notifications on the Wire

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when
    spawned from within an asyncio event loop on macOS.
    """

    id: str
    cwd: str = field(default_factory=os.getcwd)
    title: str = ""
    command: list[str] = field(default_factory=lambda: ["claude"])
    env: dict[str, str] = field(default_factory=dict)
    rows: int = 24
    cols: int = 80
    terminal: TerminalModel | None = None
    wire: Wire | None = None

    # Internal state
    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pgid: int = field(default=0, init=False)
    _reader_task: asyncio.Task | None = field(default=None, init=False)
    _executor: ThreadPoolExecutor | None = field(default=None, init=False)
    _status: PTYStatus = field(default=PTYStatus.PENDING, init=False)
    _write_lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def __post_init__(self) -> None:
        if self.terminal is None:
            self.terminal = PyteTerminal(rows=self.rows, cols=self.cols)
        if isinstance(self.terminal, PyteTerminal):
            self.terminal.set_responder(self._respond)

    async def start(self) -> None:
        """Spawn the program in a new PTY with its own process group.

        Raises:
            SpawnError: The program could not be started (missing
                executable, bad working directory, no ptys left).
        """
        if self._status != PTYStatus.PENDING:
            raise SpawnError(f"PTY session {self.id} was already started")

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"Cannot allocate a pseudo-terminal: {e}") from e

        env = {**os.environ, **self.env}
        env["TERM"] = "xterm-256color"
        env["COLORTERM"] = "truecolor"

        try:
            _set_winsize(slave_fd, self.rows, self.cols)
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # Creates new process group
                preexec_fn=_acquire_controlling_tty,
                env=env,
                cwd=self.cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnError(
                f"Cannot start {' '.join(self.command)!r} in {self.cwd}: {e}"
            ) from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pgid = os.getpgid(self._proc.pid)
        self._status = PTYStatus.RUNNING
        # One reader thread per session so idle sessions never starve the
        # default executor.
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"pty-{self.id}"
        )
        self._reader_task = asyncio.create_task(self._read_loop())

        logger.info(
            "PTY session %s started: pid=%d cwd=%s cmd=%s",
            self.id,
            self._proc.pid,
            self.cwd,
            " ".join(self.command),
        )

    async def _read_loop(self) -> None:
        """Drain the PTY master into the terminal model until EOF."""
        loop = asyncio.get_running_loop()
        fd = self._master_fd
        assert self.terminal is not None
        try:
            while self._status == PTYStatus.RUNNING:
                try:
                    data = await loop.run_in_executor(
                        self._executor, os.read, fd, READ_SIZE
                    )
                except OSError:
                    # EIO once the child side is gone
                    break
                if not data:
                    break
                self.terminal.feed(data)
                if self.wire is not None:
                    self.wire.send_output(self.id)
        finally:
            # Only transition to EXITED if we weren't already stopping
            if self._status == PTYStatus.RUNNING:
                self._status = PTYStatus.EXITED
                exit_code = None
                if self._proc is not None:
                    # EOF arrives as the child closes its tty, just before
                    # it can be reaped.
                    try:
                        exit_code = await loop.run_in_executor(None, self._proc.wait, 0.5)
                    except subprocess.TimeoutExpired:
                        logger.debug("PTY session %s closed its tty but is still running", self.id)
                logger.info("PTY session %s exited (code=%s)", self.id, exit_code)
                if self.wire is not None:
                    tail = self.terminal.text().splitlines()[-3:]
                    self.wire.send_session_exit(
                        self.id, self.title, exit_code, "\n".join(tail)
                    )

    def _respond(self, data: bytes) -> None:
        """Answer terminal queries from the child; dropped once closed."""
        try:
            self.write(data)
        except ClosedError:
            logger.debug("Dropping terminal reply for closed session %s", self.id)

    def write(self, data: bytes) -> int:
        """Send bytes to the program's input, in order. Returns the count.

        Raises:
            ClosedError: The session is not running.
        """
        with self._write_lock:
            if self._status != PTYStatus.RUNNING:
                raise ClosedError(f"PTY session {self.id} is not running")
            view = memoryview(data)
            written = 0
            try:
                while written < len(view):
                    written += os.write(self._master_fd, view[written:])
            except OSError as e:
                raise ClosedError(f"PTY session {self.id} closed: {e}") from e
            return written

    def write_text(self, text: str) -> int:
        return self.write(text.encode("utf-8"))

    def resize(self, rows: int, cols: int) -> None:
        """Resize the terminal model and the PTY.

        Before ``start()`` this only records the size to spawn with.
        """
        self.rows = rows
        self.cols = cols
        if self._status == PTYStatus.PENDING:
            return
        assert self.terminal is not None
        self.terminal.resize(rows, cols)
        if self._master_fd >= 0:
            try:
                _set_winsize(self._master_fd, rows, cols)
            except OSError as e:
                logger.debug("Resize of %s failed: %s", self.id, e)

    def output(self) -> str:
        """The rendered screen as of the last processed output."""
        assert self.terminal is not None
        return self.terminal.text()

    def snapshot(self) -> list[list[Cell]]:
        """Rows of styled cells for the visible screen."""
        assert self.terminal is not None
        return self.terminal.snapshot()

    def history_text(self, max_lines: int | None = None) -> str:
        assert self.terminal is not None
        return self.terminal.history_text(max_lines)

    def stop(self) -> None:
        """Kill the process tree and close the PTY. Safe to call repeatedly."""
        if self._status == PTYStatus.PENDING:
            self._status = PTYStatus.KILLED
            return
        if self._master_fd < 0:
            return

        if self._status == PTYStatus.RUNNING:
            self._status = PTYStatus.KILLING
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed PTY session %s (pgid=%d)", self.id, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error killing PTY session %s: %s", self.id, e)

        # Wait for process to be reaped (avoids zombies)
        if self._proc is not None:
            try:
                self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning("PTY session %s did not exit after SIGKILL", self.id)

        with self._write_lock:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = -1

        if self._executor is not None:
            self._executor.shutdown(wait=False)

        if self._status == PTYStatus.KILLING:
            self._status = PTYStatus.KILLED

    async def wait_closed(self, timeout: float | None = None) -> bool:
        """Wait for the reader to finish. Returns False on timeout."""
        if self._reader_task is None:
            return True
        try:
            await asyncio.wait_for(asyncio.shield(self._reader_task), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    @property
    def is_running(self) -> bool:
        return self._status == PTYStatus.RUNNING

    alive = is_running

    @property
    def status(self) -> PTYStatus:
        return self._status

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def exit_code(self) -> int | None:
        if self._proc is None:
            return None
        return self._proc.poll()

    def __del__(self) -> None:
        """Ensure cleanup on garbage collection."""
        if self._status in (PTYStatus.RUNNING, PTYStatus.KILLING, PTYStatus.EXITED):
            self.stop()
