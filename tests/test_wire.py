"""Tests for cwt.session.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio

from cwt.session.wire import EventType, Wire, WireEvent


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_all_variants_exist(self) -> None:
        expected = {
            "SESSION_OUTPUT",
            "SESSION_EXIT",
            "AGENT_STATUS",
            "ERROR",
            "STATUS",
        }
        assert {e.name for e in EventType} == expected

    def test_values_are_lowercase(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower()


# ---------------------------------------------------------------------------
# WireEvent
# ---------------------------------------------------------------------------


class TestWireEvent:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.STATUS)
        assert event.data == {}

    def test_with_data(self) -> None:
        event = WireEvent(type=EventType.STATUS, data={"message": "hello"})
        assert event.data["message"] == "hello"


# ---------------------------------------------------------------------------
# Wire: basic send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_subscriber(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send(WireEvent(type=EventType.STATUS, data={"message": "hi"}))
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.STATUS
        assert event.data["message"] == "hi"

    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send_status("ok")
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.STATUS

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send_status("x")
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)  # Should not raise


# ---------------------------------------------------------------------------
# Wire: bounded queues
# ---------------------------------------------------------------------------


class TestWireBackpressure:
    def test_full_queue_drops_instead_of_blocking(self) -> None:
        wire = Wire(maxsize=2)
        q = wire.subscribe()
        for i in range(5):
            wire.send_output(f"s{i}")
        assert q.qsize() == 2
        assert wire.dropped == 3

    def test_slow_subscriber_does_not_starve_fast_one(self) -> None:
        wire = Wire(maxsize=1)
        slow = wire.subscribe()
        fast = wire.subscribe()
        wire.send_status("one")
        fast.get_nowait()
        wire.send_status("two")
        event = fast.get_nowait()
        assert event is not None
        assert event.data["message"] == "two"
        assert slow.qsize() == 1

    def test_close_delivers_sentinel_to_full_queue(self) -> None:
        wire = Wire(maxsize=1)
        q = wire.subscribe()
        wire.send_status("fills the queue")
        wire.close()
        assert q.get_nowait() is None


# ---------------------------------------------------------------------------
# Wire: closed-state guard
# ---------------------------------------------------------------------------


class TestWireClosedGuard:
    def test_send_after_close_is_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        # Drain the None sentinel from close()
        assert q.get_nowait() is None
        wire.send_status("too late")
        assert q.empty()

    def test_close_sends_sentinel_to_all_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        q3 = wire.subscribe()
        wire.close()
        assert q1.get_nowait() is None
        assert q2.get_nowait() is None
        assert q3.get_nowait() is None

    def test_convenience_methods_respect_closed(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        q.get_nowait()  # drain sentinel
        wire.send_output("s")
        wire.send_status("nope")
        wire.send_error("nope")
        wire.send_agent_status("a", "running")
        wire.send_session_exit("s", "t", 0)
        assert q.empty()


# ---------------------------------------------------------------------------
# Wire: convenience methods
# ---------------------------------------------------------------------------


class TestWireConvenience:
    def test_send_output(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_output("main")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.SESSION_OUTPUT
        assert event.data == {"session_id": "main"}

    def test_send_error(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_error("something failed")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.ERROR
        assert event.data["error"] == "something failed"

    def test_send_agent_status(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_agent_status("cwt-20260101-abcd", "merged")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.AGENT_STATUS
        assert event.data == {"agent_id": "cwt-20260101-abcd", "status": "merged"}

    def test_send_session_exit(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_session_exit("main", "main", exit_code=0, last_output="done")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.SESSION_EXIT
        assert event.data["session_id"] == "main"
        assert event.data["exit_code"] == 0
        assert event.data["last_output"] == "done"

    def test_send_session_exit_truncates_output(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_session_exit("s", "t", exit_code=1, last_output="x" * 1000)
        event = q.get_nowait()
        assert event is not None
        assert len(event.data["last_output"]) == 500
