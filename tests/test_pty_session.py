"""Tests for cwt.pty.session.PTYSession, using real child processes."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import pytest

from cwt.errors import ClosedError, SpawnError
from cwt.pty.buffer import TailBuffer
from cwt.pty.session import PTYSession, PTYStatus
from cwt.session.wire import EventType, Wire

pytestmark = pytest.mark.skipif(shutil.which("cat") is None, reason="needs a POSIX userland")

# Child that disables tty echo, announces itself, then echoes stdin once.
QUIET_CAT = ["sh", "-c", "stty -echo; echo ready; exec cat"]


async def wait_for_output(session: PTYSession, needle: str, timeout: float = 5.0) -> bool:
    """Poll until ``needle`` is on screen or the settle deadline passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if needle in session.output():
            return True
        await asyncio.sleep(0.02)
    return needle in session.output()


@pytest.fixture
async def cat_session(tmp_path: Path):
    session = PTYSession(id="cat", cwd=str(tmp_path), command=["cat"])
    await session.start()
    yield session
    session.stop()
    await session.wait_closed(timeout=2)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_initial_state(self) -> None:
        session = PTYSession(id="s")
        assert session.status == PTYStatus.PENDING
        assert session.is_running is False
        assert session.pid is None
        assert session.exit_code is None

    async def test_start_and_stop(self, tmp_path: Path) -> None:
        session = PTYSession(id="s", cwd=str(tmp_path), command=["cat"])
        await session.start()
        assert session.status == PTYStatus.RUNNING
        assert session.is_running
        assert session.pid is not None

        session.stop()
        assert session.status == PTYStatus.KILLED
        assert not session.is_running
        assert await session.wait_closed(timeout=2)

    async def test_stop_is_idempotent(self, cat_session: PTYSession) -> None:
        cat_session.stop()
        cat_session.stop()
        assert cat_session.status == PTYStatus.KILLED

    def test_stop_before_start(self) -> None:
        session = PTYSession(id="s")
        session.stop()
        assert session.status == PTYStatus.KILLED

    async def test_start_twice(self, cat_session: PTYSession) -> None:
        with pytest.raises(SpawnError, match="already started"):
            await cat_session.start()

    async def test_missing_program(self, tmp_path: Path) -> None:
        session = PTYSession(id="s", cwd=str(tmp_path), command=["/nonexistent/program"])
        with pytest.raises(SpawnError):
            await session.start()
        assert not session.is_running

    async def test_missing_workdir(self, tmp_path: Path) -> None:
        session = PTYSession(id="s", cwd=str(tmp_path / "gone"), command=["cat"])
        with pytest.raises(SpawnError):
            await session.start()

    async def test_runs_in_workdir(self, tmp_path: Path) -> None:
        session = PTYSession(id="s", cwd=str(tmp_path), command=["pwd"])
        await session.start()
        try:
            assert await wait_for_output(session, tmp_path.name)
        finally:
            session.stop()

    async def test_child_exit_detected(self, tmp_path: Path) -> None:
        wire = Wire()
        q = wire.subscribe()
        session = PTYSession(
            id="s",
            cwd=str(tmp_path),
            command=["sh", "-c", "echo done; exit 3"],
            title="short",
            wire=wire,
        )
        await session.start()
        assert await session.wait_closed(timeout=5)
        assert session.status == PTYStatus.EXITED
        assert session.exit_code == 3
        assert "done" in session.output()

        events = []
        while not q.empty():
            events.append(q.get_nowait())
        types = [e.type for e in events if e is not None]
        assert EventType.SESSION_OUTPUT in types
        assert types[-1] == EventType.SESSION_EXIT
        exit_event = events[-1]
        assert exit_event is not None
        assert exit_event.data["exit_code"] == 3
        assert exit_event.data["title"] == "short"
        assert "done" in exit_event.data["last_output"]

        with pytest.raises(ClosedError):
            session.write(b"x")
        session.stop()

    async def test_killed_session_sends_no_exit_event(self, tmp_path: Path) -> None:
        wire = Wire()
        q = wire.subscribe()
        session = PTYSession(id="s", cwd=str(tmp_path), command=["cat"], wire=wire)
        await session.start()
        session.stop()
        await session.wait_closed(timeout=2)
        while not q.empty():
            event = q.get_nowait()
            assert event is not None
            assert event.type != EventType.SESSION_EXIT


# ---------------------------------------------------------------------------
# Input and output
# ---------------------------------------------------------------------------


class TestIO:
    async def test_echo(self, cat_session: PTYSession) -> None:
        assert cat_session.write(b"hi\n") == 3
        assert await wait_for_output(cat_session, "hi")

    async def test_write_text(self, cat_session: PTYSession) -> None:
        cat_session.write_text("héllo\n")
        assert await wait_for_output(cat_session, "héllo")

    def test_write_before_start(self) -> None:
        with pytest.raises(ClosedError):
            PTYSession(id="s").write(b"x")

    async def test_write_after_stop(self, cat_session: PTYSession) -> None:
        cat_session.stop()
        with pytest.raises(ClosedError):
            cat_session.write(b"x")

    async def test_writes_arrive_in_order(self, tmp_path: Path) -> None:
        session = PTYSession(id="s", cwd=str(tmp_path), command=QUIET_CAT, rows=60)
        await session.start()
        try:
            assert await wait_for_output(session, "ready")
            for i in range(40):
                session.write(f"line{i}\n".encode())
            assert await wait_for_output(session, "line39")
            lines = [line for line in session.output().splitlines() if line.startswith("line")]
            assert lines == [f"line{i}" for i in range(40)]
        finally:
            session.stop()

    async def test_history_keeps_scrolled_lines(self, tmp_path: Path) -> None:
        session = PTYSession(id="s", cwd=str(tmp_path), command=QUIET_CAT, rows=5)
        await session.start()
        try:
            assert await wait_for_output(session, "ready")
            for i in range(20):
                session.write(f"row{i}\n".encode())
            assert await wait_for_output(session, "row19")
            assert "row0" not in session.output()
            assert "row0" in session.history_text()
        finally:
            session.stop()

    async def test_snapshot_matches_size(self, cat_session: PTYSession) -> None:
        grid = cat_session.snapshot()
        assert len(grid) == 24
        assert all(len(row) == 80 for row in grid)

    async def test_tail_buffer_terminal(self, tmp_path: Path) -> None:
        buffer = TailBuffer(max_bytes=1024)
        session = PTYSession(id="s", cwd=str(tmp_path), command=["cat"], terminal=buffer)
        await session.start()
        try:
            session.write(b"tail\n")
            assert await wait_for_output(session, "tail")
            assert buffer.total_bytes > 0
        finally:
            session.stop()


# ---------------------------------------------------------------------------
# Resize
# ---------------------------------------------------------------------------


class TestResize:
    def test_resize_before_start_records_size(self) -> None:
        session = PTYSession(id="s")
        session.resize(30, 100)
        assert (session.rows, session.cols) == (30, 100)
        assert session.status == PTYStatus.PENDING

    async def test_child_sees_initial_size(self, tmp_path: Path) -> None:
        session = PTYSession(id="s", cwd=str(tmp_path), command=["stty", "size"], rows=33, cols=101)
        await session.start()
        try:
            assert await wait_for_output(session, "33 101")
        finally:
            session.stop()

    async def test_child_sees_new_size(self, tmp_path: Path) -> None:
        session = PTYSession(id="s", cwd=str(tmp_path), command=["sh"])
        await session.start()
        try:
            session.resize(30, 100)
            session.write(b"stty size\n")
            assert await wait_for_output(session, "30 100")
            assert len(session.snapshot()) == 30
            assert len(session.snapshot()[0]) == 100
        finally:
            session.stop()


# ---------------------------------------------------------------------------
# Event loop responsiveness
# ---------------------------------------------------------------------------


class TestEventLoop:
    async def test_detached_child_does_not_stall_loop(self, tmp_path: Path) -> None:
        # Closes its tty right away but keeps running, so EOF comes long
        # before the child can be reaped.
        session = PTYSession(
            id="s",
            cwd=str(tmp_path),
            command=["sh", "-c", "exec </dev/null >/dev/null 2>&1; sleep 3"],
        )
        loop = asyncio.get_running_loop()
        gaps: list[float] = []

        async def ticker() -> None:
            last = loop.time()
            while True:
                await asyncio.sleep(0.01)
                now = loop.time()
                gaps.append(now - last)
                last = now

        task = asyncio.create_task(ticker())
        try:
            await session.start()
            assert await session.wait_closed(timeout=5)
            assert session.status == PTYStatus.EXITED
        finally:
            task.cancel()
            session.stop()
        assert gaps
        assert max(gaps) < 0.2
