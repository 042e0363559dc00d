"""Tests for cursor assignment and viewer fan-out."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest

from loopd.broadcast import Broadcaster, Event
from loopd.recorder import Recorder, read_recording


async def _collect(bus: Broadcaster, since: int = 0) -> list[Event]:
    return [ev async for ev in bus.subscribe(since)]


@pytest.mark.asyncio
async def test_publish_records_and_assigns_cursors(tmp_path: Path):
    rec = Recorder(tmp_path / "events.log")
    bus = Broadcaster(rec)
    a = bus.publish("stdout", b"hello")
    b = bus.publish("turn_start", {"step": 0})
    assert (a.cursor, b.cursor) == (1, 2)
    assert b.payload == {"kind": "turn_start", "step": 0}
    rec.close()
    stored = list(read_recording(tmp_path / "events.log"))
    assert [r.type for r in stored] == ["stdout", "meta"]


@pytest.mark.asyncio
async def test_unknown_kind_rejected(tmp_path: Path):
    bus = Broadcaster(Recorder(tmp_path / "events.log"))
    with pytest.raises(ValueError):
        bus.publish("bogus", {})


@pytest.mark.asyncio
async def test_subscriber_sees_history_then_live_tail(tmp_path: Path):
    bus = Broadcaster(Recorder(tmp_path / "events.log"))
    bus.publish("stdout", b"one")
    task = asyncio.create_task(_collect(bus))
    await asyncio.sleep(0.01)
    bus.publish("stdout", b"two")
    bus.publish("session_end", {"status": "stopped"})
    bus.close()
    events = await asyncio.wait_for(task, 2)
    assert [e.cursor for e in events] == [1, 2, 3]
    assert events[-1].kind == "session_end"


@pytest.mark.asyncio
async def test_subscribe_since_cursor_skips_earlier_events(tmp_path: Path):
    bus = Broadcaster(Recorder(tmp_path / "events.log"))
    for n in range(5):
        bus.publish("stdout", str(n).encode())
    bus.close()
    events = await _collect(bus, since=3)
    assert [e.payload for e in events] == ["3", "4"]


@pytest.mark.asyncio
async def test_lagging_viewer_falls_back_to_recording(tmp_path: Path):
    bus = Broadcaster(Recorder(tmp_path / "events.log"), ring_size=4)
    for n in range(20):
        bus.publish("stdout", f"line {n}\n".encode())
    bus.close()
    events = await _collect(bus)
    assert [e.cursor for e in events] == list(range(1, 21))
    assert events[0].payload == "line 0\n"


@pytest.mark.asyncio
async def test_viewers_see_identical_sequences(tmp_path: Path):
    bus = Broadcaster(Recorder(tmp_path / "events.log"), ring_size=8)
    first = asyncio.create_task(_collect(bus))
    second = asyncio.create_task(_collect(bus))
    await asyncio.sleep(0.01)
    for n in range(30):
        bus.publish("stdout", f"{n}".encode())
        if n % 7 == 0:
            await asyncio.sleep(0)
    bus.close()
    a, b = await asyncio.wait_for(asyncio.gather(first, second), 2)
    assert [e.cursor for e in a] == [e.cursor for e in b] == list(range(1, 31))


@pytest.mark.asyncio
async def test_publish_from_worker_thread_wakes_subscriber(tmp_path: Path):
    bus = Broadcaster(Recorder(tmp_path / "events.log"))
    task = asyncio.create_task(_collect(bus))
    await asyncio.sleep(0.01)

    def worker() -> None:
        bus.publish("log", {"message": "from thread"})
        bus.close()

    thread = threading.Thread(target=worker)
    thread.start()
    events = await asyncio.wait_for(task, 2)
    thread.join()
    assert [e.kind for e in events] == ["log"]


@pytest.mark.asyncio
async def test_replayed_meta_events_keep_their_kind(tmp_path: Path):
    bus = Broadcaster(Recorder(tmp_path / "events.log"), ring_size=1)
    bus.publish("turn_end", {"exit_code": 3})
    bus.publish("stdout", b"x")
    bus.close()
    events = await _collect(bus)
    assert events[0].kind == "turn_end"
    assert events[0].payload["exit_code"] == 3
