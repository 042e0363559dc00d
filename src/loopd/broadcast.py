"""Cursor assignment and live fan-out of session events.

Every event goes through :meth:`Broadcaster.publish`, which appends it to the
recording (assigning the cursor) and to a bounded in-memory ring.  Viewers
pull: each subscription tracks the next cursor it wants and reads from the
ring, or from the recording when it has fallen behind the ring's oldest
entry.  A slow viewer therefore never blocks the publisher or other viewers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from loopd import protocol
from loopd.recorder import RecordedEvent, Recorder

log = logging.getLogger(__name__)

_REPLAY_BATCH = 1024


@dataclass(frozen=True)
class Event:
    cursor: int
    kind: str
    ts: str
    payload: Any

    def frame(self) -> dict[str, Any]:
        return protocol.event(self.cursor, self.kind, self.ts, self.payload)

    @classmethod
    def from_record(cls, rec: RecordedEvent) -> Event:
        kind = rec.type if rec.type in protocol.STDIO_KINDS else protocol.meta_kind(rec.payload)
        return cls(rec.cursor, kind, rec.ts, protocol.payload_for_wire(rec.type, rec.payload))


class Broadcaster:
    def __init__(self, recorder: Recorder, ring_size: int = 4096) -> None:
        self._recorder = recorder
        self._ring: deque[Event] = deque(maxlen=max(ring_size, 1))
        self._lock = threading.Lock()
        self._changed = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self._closed = False

    @property
    def last_cursor(self) -> int:
        return self._recorder.last_cursor

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, kind: str, payload: bytes | dict[str, Any] | None = None, *, durable: bool | None = None) -> Event:
        """Record and fan out one event.  Safe to call from any thread."""
        if kind not in protocol.EVENT_KINDS:
            raise ValueError(f"unknown event kind: {kind}")
        if durable is None:
            durable = kind in protocol.DURABLE_KINDS
        if kind in protocol.STDIO_KINDS:
            data = payload if isinstance(payload, bytes) else b""
            record_type = kind
            wire: Any = protocol.stdio_text(data)
        else:
            body = {"kind": kind, **(payload if isinstance(payload, dict) else {})}
            data = json.dumps(body, separators=(",", ":"), default=str).encode()
            record_type = "meta"
            wire = body
        with self._lock:
            rec = self._recorder.append(record_type, data, durable=durable)
            ev = Event(rec.cursor, kind, rec.ts, wire)
            self._ring.append(ev)
        self._notify()
        return ev

    def _wake(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()

    def _notify(self) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._wake()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wake)

    def close(self) -> None:
        """Mark the stream finished; subscribers drain what is left and stop."""
        self._closed = True
        self._notify()

    def _from_ring(self, next_cursor: int) -> list[Event] | None:
        """Events at or after *next_cursor* from the ring; None if the ring no longer has them."""
        with self._lock:
            if not self._ring:
                return [] if next_cursor > self._recorder.last_cursor else None
            first = self._ring[0].cursor
            if next_cursor < first:
                return None
            start = next_cursor - first
            return [self._ring[i] for i in range(start, len(self._ring))]

    async def _from_recording(self, next_cursor: int) -> list[Event]:
        records = await asyncio.to_thread(self._recorder.replay, next_cursor - 1, _REPLAY_BATCH)
        return [Event.from_record(r) for r in records]

    async def subscribe(self, since_cursor: int = 0) -> AsyncIterator[Event]:
        """Yield every event with cursor > *since_cursor*, then follow the live tail."""
        next_cursor = max(since_cursor, 0) + 1
        while True:
            waiter = self._changed
            batch = self._from_ring(next_cursor)
            if batch is None:
                log.debug("Viewer lagging at cursor %d, reading from recording", next_cursor)
                batch = await self._from_recording(next_cursor)
            if batch:
                for ev in batch:
                    yield ev
                next_cursor = batch[-1].cursor + 1
                continue
            if self._closed:
                return
            await waiter.wait()
