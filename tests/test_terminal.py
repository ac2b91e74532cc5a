"""Tests for cwt.pty.terminal (PyteTerminal, create_terminal)."""

from __future__ import annotations

import pytest

from cwt.pty.buffer import TailBuffer
from cwt.pty.terminal import BLANK, Cell, PyteTerminal, TerminalModel, create_terminal


class TestPyteTerminal:
    def test_satisfies_terminal_protocol(self) -> None:
        assert isinstance(PyteTerminal(), TerminalModel)

    def test_plain_text(self) -> None:
        term = PyteTerminal(rows=5, cols=20)
        term.feed(b"hello\r\nworld")
        assert term.text() == "hello\nworld"

    def test_cursor_addressing_overwrites(self) -> None:
        term = PyteTerminal(rows=3, cols=10)
        term.feed(b"aaaa\x1b[1;2Hb")
        assert term.text() == "abaa"
        assert term.cursor == (0, 2)

    def test_clear_screen(self) -> None:
        term = PyteTerminal(rows=3, cols=10)
        term.feed(b"junk\x1b[2J\x1b[Hclean")
        assert term.text() == "clean"

    def test_snapshot_attributes(self) -> None:
        term = PyteTerminal(rows=2, cols=4)
        term.feed(b"\x1b[1;31mX\x1b[0mY")
        grid = term.snapshot()
        assert len(grid) == 2
        assert all(len(row) == 4 for row in grid)
        assert grid[0][0] == Cell(char="X", fg="red", bold=True)
        assert grid[0][1] == Cell(char="Y")
        assert grid[1][0] == BLANK

    def test_utf8_split_across_feeds(self) -> None:
        term = PyteTerminal(rows=2, cols=10)
        encoded = "héllo".encode("utf-8")
        term.feed(encoded[:2])
        term.feed(encoded[2:])
        assert term.text() == "héllo"

    def test_resize(self) -> None:
        term = PyteTerminal(rows=2, cols=4)
        term.resize(4, 8)
        assert (term.rows, term.cols) == (4, 8)
        grid = term.snapshot()
        assert len(grid) == 4
        assert len(grid[0]) == 8

    def test_scrollback_keeps_lines_that_scrolled_off(self) -> None:
        term = PyteTerminal(rows=2, cols=10, scrollback=100)
        term.feed(b"one\r\ntwo\r\nthree\r\nfour")
        assert term.text() == "three\nfour"
        history = term.history_text()
        assert history.splitlines() == ["one", "two", "three", "four"]
        assert term.history_text(max_lines=2) == "three\nfour"

    def test_replies_to_device_status_report(self) -> None:
        replies: list[bytes] = []
        term = PyteTerminal(rows=5, cols=10)
        term.set_responder(replies.append)
        term.feed(b"\x1b[6n")
        assert replies == [b"\x1b[1;1R"]


class TestCreateTerminal:
    def test_pyte(self) -> None:
        term = create_terminal("pyte", rows=3, cols=7, scrollback=10)
        assert isinstance(term, PyteTerminal)
        assert (term.rows, term.cols) == (3, 7)

    def test_tail(self) -> None:
        term = create_terminal("tail", rows=3, cols=7, tail_bytes=128)
        assert isinstance(term, TailBuffer)
        assert term.max_bytes == 128

    def test_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown terminal model"):
            create_terminal("vt52")
