"""Fixed-capacity raw output buffer for PTY sessions."""

from __future__ import annotations

import re
import threading

from cwt.pty.terminal import BLANK, Cell

# CSI, OSC (BEL or ST terminated), and two-byte escapes.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_binary_output(text: str) -> str:
    """Remove control characters other than tab and newline."""
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n"):
            cleaned.append(ch)
        elif cp >= 32 and not 0x7F <= cp < 0xA0:
            cleaned.append(ch)
    return "".join(cleaned)


def _apply_carriage_returns(line: str) -> str:
    # A bare \r rewinds the line; keep what was written last.
    if "\r" not in line:
        return line
    return line.rsplit("\r", 1)[-1]


class TailBuffer:
    """Keeps only the trailing ``max_bytes`` of a session's raw output.

    The cheap alternative to a full emulator: no cursor addressing, no
    screen grid. ``text()`` renders the last ``rows`` lines with escape
    sequences stripped, which is enough for line-oriented programs.
    """

    def __init__(self, rows: int = 24, cols: int = 80, max_bytes: int = 64 * 1024) -> None:
        self.rows = rows
        self.cols = cols
        self.max_bytes = max_bytes
        self._data = bytearray()
        self._total_bytes = 0
        self._lock = threading.Lock()

    def feed(self, data: bytes) -> None:
        with self._lock:
            self._data += data
            self._total_bytes += len(data)
            overflow = len(self._data) - self.max_bytes
            if overflow > 0:
                del self._data[:overflow]

    def resize(self, rows: int, cols: int) -> None:
        with self._lock:
            self.rows = rows
            self.cols = cols

    def raw(self) -> bytes:
        """The buffered bytes, escape sequences included."""
        with self._lock:
            return bytes(self._data)

    def _lines(self) -> list[str]:
        with self._lock:
            text = self._data.decode("utf-8", errors="replace")
        text = strip_ansi(text).replace("\r\n", "\n")
        lines = [_apply_carriage_returns(line) for line in text.split("\n")]
        return [sanitize_binary_output(line) for line in lines]

    def read_tail(self, n: int = 100) -> list[str]:
        """The last ``n`` cleaned lines."""
        lines = self._lines()
        return lines[-n:] if len(lines) > n else lines

    def text(self) -> str:
        tail = self.read_tail(self.rows)
        return "\n".join(line[: self.cols].rstrip() for line in tail).rstrip("\n")

    def history_text(self, max_lines: int | None = None) -> str:
        lines = self._lines()
        if max_lines is not None:
            lines = lines[-max_lines:]
        return "\n".join(line.rstrip() for line in lines).rstrip("\n")

    def snapshot(self) -> list[list[Cell]]:
        tail = self.read_tail(self.rows)
        grid = []
        for line in tail:
            row = [Cell(char=ch) for ch in line[: self.cols]]
            row.extend([BLANK] * (self.cols - len(row)))
            grid.append(row)
        while len(grid) < self.rows:
            grid.append([BLANK] * self.cols)
        return grid

    @property
    def total_bytes(self) -> int:
        """Total bytes ever fed."""
        with self._lock:
            return self._total_bytes

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._total_bytes = 0
