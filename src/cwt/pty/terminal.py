"""Terminal models — turn a child's raw output into a screen.

A session feeds every byte it reads from the pty into a
:class:`TerminalModel`; the UI only ever reads snapshots back out. The
default model is a full VT100/xterm emulator built on ``pyte``; the
fixed-capacity :class:`~cwt.pty.buffer.TailBuffer` is the lightweight
alternative.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable

import pyte


@dataclass(frozen=True)
class Cell:
    """One character cell with its display attributes."""

    char: str = " "
    fg: str = "default"
    bg: str = "default"
    bold: bool = False
    italics: bool = False
    underscore: bool = False
    reverse: bool = False


BLANK = Cell()


@runtime_checkable
class TerminalModel(Protocol):
    """What a session needs from a terminal emulator."""

    rows: int
    cols: int

    def feed(self, data: bytes) -> None: ...

    def resize(self, rows: int, cols: int) -> None: ...

    def snapshot(self) -> list[list[Cell]]: ...

    def text(self) -> str: ...

    def history_text(self, max_lines: int | None = None) -> str: ...


def _trim_lines(lines: list[str]) -> str:
    stripped = [line.rstrip() for line in lines]
    while stripped and not stripped[-1]:
        stripped.pop()
    return "\n".join(stripped)


class _RespondingScreen(pyte.HistoryScreen):
    """HistoryScreen that forwards terminal replies (DA, DSR) to the child."""

    def __init__(self, columns: int, lines: int, history: int) -> None:
        super().__init__(columns, lines, history=history, ratio=0.5)
        self.responder: Callable[[bytes], None] | None = None

    def write_process_input(self, data: str) -> None:
        if self.responder is not None:
            self.responder(data.encode("utf-8"))


class PyteTerminal:
    """Screen grid, cursor and bounded scrollback backed by ``pyte``.

    Thread-safe: the session's reader feeds it while the UI tick reads
    snapshots from another task.
    """

    def __init__(self, rows: int = 24, cols: int = 80, scrollback: int = 1000) -> None:
        self.rows = rows
        self.cols = cols
        self.scrollback = scrollback
        self._screen = _RespondingScreen(cols, rows, history=max(scrollback, 1))
        self._stream = pyte.ByteStream(self._screen)
        self._lock = threading.Lock()

    def set_responder(self, responder: Callable[[bytes], None] | None) -> None:
        """Route replies the emulator owes the child (e.g. cursor reports)."""
        self._screen.responder = responder

    def feed(self, data: bytes) -> None:
        with self._lock:
            self._stream.feed(data)

    def resize(self, rows: int, cols: int) -> None:
        with self._lock:
            self.rows = rows
            self.cols = cols
            self._screen.resize(lines=rows, columns=cols)

    @property
    def cursor(self) -> tuple[int, int]:
        """(row, col) of the cursor."""
        with self._lock:
            return self._screen.cursor.y, self._screen.cursor.x

    def snapshot(self) -> list[list[Cell]]:
        with self._lock:
            buffer = self._screen.buffer
            return [
                [
                    Cell(
                        char=ch.data,
                        fg=ch.fg,
                        bg=ch.bg,
                        bold=ch.bold,
                        italics=ch.italics,
                        underscore=ch.underscore,
                        reverse=ch.reverse,
                    )
                    for ch in (buffer[y][x] for x in range(self.cols))
                ]
                for y in range(self.rows)
            ]

    def text(self) -> str:
        """The visible screen, trailing blanks trimmed."""
        with self._lock:
            return _trim_lines(list(self._screen.display))

    def history_text(self, max_lines: int | None = None) -> str:
        """Scrollback followed by the visible screen."""
        with self._lock:
            history = [
                "".join(line[x].data for x in range(self.cols))
                for line in self._screen.history.top
            ]
            lines = history + list(self._screen.display)
        if max_lines is not None:
            lines = lines[-max_lines:]
        return _trim_lines(lines)


def create_terminal(
    kind: str = "pyte",
    rows: int = 24,
    cols: int = 80,
    scrollback: int = 1000,
    tail_bytes: int = 64 * 1024,
) -> TerminalModel:
    """Build the terminal model named by ``kind`` ("pyte" or "tail")."""
    if kind == "pyte":
        return PyteTerminal(rows=rows, cols=cols, scrollback=scrollback)
    if kind == "tail":
        from cwt.pty.buffer import TailBuffer

        return TailBuffer(rows=rows, cols=cols, max_bytes=tail_bytes)
    raise ValueError(f"Unknown terminal model: {kind}")
