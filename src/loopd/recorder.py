"""Append-only session recording.

One file per session at ``<data-root>/records/<session-id>/events.log``.
Each event is a header line followed by a length-prefixed payload::

    2026-10-18T09:14:03.123456789Z stdout 6\\n
    hello\\n
    \\n

The header holds an RFC 3339 timestamp with nanoseconds, the type tag and the
payload length in bytes; the payload is written verbatim and terminated by a
newline so the file stays readable with ``less``.  Bytes are never rewritten:
the daemon opens the file in append mode and is its only writer.

An event's *cursor* is its 1-based position in the file.  The recorder keeps
a byte-offset index so replay from a cursor does not rescan the file.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from loopd import paths
from loopd.errors import RecordingCorrupted

log = logging.getLogger(__name__)

RECORD_TYPES = frozenset({"stdin", "stdout", "stderr", "meta"})
RECORDING_FILENAME = "events.log"


@dataclass(frozen=True)
class RecordedEvent:
    cursor: int
    ts: str
    type: str
    payload: bytes


def format_ts(ns: int) -> str:
    """RFC 3339 UTC timestamp with nanosecond precision."""
    seconds, frac = divmod(ns, 1_000_000_000)
    base = datetime.fromtimestamp(seconds, UTC).strftime("%Y-%m-%dT%H:%M:%S")
    return f"{base}.{frac:09d}Z"


def recording_path(session_id: int) -> Path:
    return paths.record_dir(session_id) / RECORDING_FILENAME


def _parse_header(line: bytes, offset: int) -> tuple[str, str, int]:
    try:
        ts, kind, length = line.decode("ascii").rstrip("\n").split(" ")
        size = int(length)
    except (UnicodeDecodeError, ValueError):
        raise RecordingCorrupted(f"malformed event header at byte {offset}") from None
    if kind not in RECORD_TYPES or size < 0:
        raise RecordingCorrupted(f"malformed event header at byte {offset}")
    return ts, kind, size


def _read_events(fh, start_cursor: int = 1) -> Iterator[tuple[int, RecordedEvent]]:
    """Yield ``(offset, event)`` pairs from the current file position."""
    cursor = start_cursor
    while True:
        offset = fh.tell()
        line = fh.readline()
        if not line:
            return
        if not line.endswith(b"\n"):
            raise RecordingCorrupted(f"truncated event header at byte {offset}")
        ts, kind, size = _parse_header(line, offset)
        payload = fh.read(size)
        if len(payload) < size:
            raise RecordingCorrupted(
                f"event {cursor} declares {size} bytes but only {len(payload)} remain"
            )
        trailer = fh.read(1)
        if trailer not in (b"\n", b""):
            raise RecordingCorrupted(f"event {cursor} is missing its terminator")
        yield offset, RecordedEvent(cursor, ts, kind, payload)
        cursor += 1


def read_recording(path: Path, since_cursor: int = 0) -> Iterator[RecordedEvent]:
    """Replay a recording file from disk, skipping events up to *since_cursor*."""
    with open(path, "rb") as fh:
        for _offset, event in _read_events(fh):
            if event.cursor > since_cursor:
                yield event


class Recorder:
    """Single-writer recording for one session."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._offsets: list[int] = []
        self._last_ns = 0
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            self._reindex()
        self._fh = open(path, "ab")  # noqa: SIM115

    @classmethod
    def for_session(cls, session_id: int) -> Recorder:
        return cls(recording_path(session_id))

    def _reindex(self) -> None:
        with open(self.path, "rb") as fh:
            for offset, _event in _read_events(fh):
                self._offsets.append(offset)

    @property
    def last_cursor(self) -> int:
        return len(self._offsets)

    def append(self, kind: str, payload: bytes | str, *, durable: bool = False) -> RecordedEvent:
        """Append one event and return it with its assigned cursor."""
        if kind not in RECORD_TYPES:
            raise ValueError(f"unknown record type: {kind}")
        data = payload.encode() if isinstance(payload, str) else bytes(payload)
        with self._lock:
            # Timestamps never go backwards even if the wall clock does.
            now = max(time.time_ns(), self._last_ns)
            self._last_ns = now
            ts = format_ts(now)
            offset = self._fh.tell()
            self._fh.write(f"{ts} {kind} {len(data)}\n".encode("ascii"))
            self._fh.write(data)
            self._fh.write(b"\n")
            self._fh.flush()
            if durable:
                os.fsync(self._fh.fileno())
            self._offsets.append(offset)
            return RecordedEvent(len(self._offsets), ts, kind, data)

    def replay(self, since_cursor: int = 0, limit: int | None = None) -> list[RecordedEvent]:
        """Return events with cursor > *since_cursor* (at most *limit*)."""
        with self._lock:
            if since_cursor >= len(self._offsets):
                return []
            start_offset = self._offsets[max(since_cursor, 0)]
            # Events past this point may still be mid-write.
            stop = len(self._offsets)
        events: list[RecordedEvent] = []
        with open(self.path, "rb") as fh:
            fh.seek(start_offset)
            for _offset, event in _read_events(fh, start_cursor=max(since_cursor, 0) + 1):
                events.append(event)
                if event.cursor >= stop or (limit is not None and len(events) >= limit):
                    break
        return events

    def close(self) -> None:
        with self._lock:
            if not self._fh.closed:
                self._fh.flush()
                os.fsync(self._fh.fileno())
                self._fh.close()
