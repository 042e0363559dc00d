"""Best-effort session telemetry on a Redis stream.

Daemons publish lifecycle events (session start/status/end, turn ends,
spawn transitions) to ``loopd:events:stream`` so dashboards and
``loopd sessions watch`` can follow every session on the machine without
attaching to each socket.  Telemetry is optional: with no Redis URL
configured nothing is published, and a Redis outage only logs a warning.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections import deque
from collections.abc import Iterable
from datetime import UTC, datetime

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

log = logging.getLogger(__name__)

REDIS_URL_ENV = "LOOPD_REDIS_URL"
EVENTS_STREAM = "loopd:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("LOOPD_EVENTS_STREAM_MAXLEN", "5000"))
EVENT_VERSION = 1  # Bump when payload shape changes
_READ_BATCH = 10

# Recorded meta events a daemon mirrors onto the stream.
FORWARDED_KINDS = frozenset(
    {
        "turn_start",
        "turn_end",
        "turn_failed",
        "turn_timeout",
        "spawn_started",
        "spawn_completed",
        "spawn_failed",
        "spawn_merged",
        "spawn_rejected",
    }
)

_configured_url: str | None = None
_pools: dict[str, ConnectionPool] = {}


def configure(redis_url: str | None) -> None:
    """Set the Redis URL from config; ``LOOPD_REDIS_URL`` is the fallback."""
    global _configured_url
    _configured_url = redis_url or None


def redis_url() -> str:
    return _configured_url or os.environ.get(REDIS_URL_ENV, "")


def get_redis() -> Redis | None:
    url = redis_url()
    if not url:
        return None
    pool = _pools.get(url)
    if pool is None:
        pool = _pools[url] = ConnectionPool.from_url(url)
    return Redis(connection_pool=pool)


def publish_event(
    kind: str,
    session_id: int,
    status: str = "",
    *,
    project: str = "",
    turn_id: str = "",
    extra: dict | None = None,
) -> None:
    """Publish a session event to the Redis stream. Best-effort, never raises RedisError."""
    event: dict = {
        "event_id": str(uuid.uuid4()),
        "kind": kind,
        "session_id": session_id,
        "turn_id": turn_id,
        "project": project,
        "status": status,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update({k: v for k, v in extra.items() if k not in event})
    try:
        r = get_redis()
        if r is None:
            return
        r.xadd(EVENTS_STREAM, {"data": json.dumps(event, default=str)}, maxlen=EVENTS_STREAM_MAXLEN, approximate=True)
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s session=%s", kind, session_id)


def decode_entry(entry_id: bytes | str, fields: dict) -> dict | None:
    """One stream entry as a telemetry event, or None if it is not one we understand."""
    raw = fields.get(b"data", fields.get("data"))
    try:
        event = json.loads(raw)
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        return None
    if not isinstance(event, dict) or not isinstance(event.get("session_id"), int) or not event.get("kind"):
        return None
    if int(event.get("v") or 0) > EVENT_VERSION:
        log.debug("Skipping event %s with newer payload version %s", entry_id, event.get("v"))
        return None
    event["stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else str(entry_id)
    return event


class EventSubscriber:
    """Iterator over telemetry events, filtered by session, turn, kind or project.

    Returns ``None`` on timeout so callers can poll other state.  With no
    Redis available, ``__next__`` sleeps for ``timeout`` and returns ``None``.
    """

    def __init__(
        self,
        *,
        session_id: int | None = None,
        turn_id: str | None = None,
        kinds: Iterable[str] = (),
        project: str | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ):
        self.session_id = session_id
        self.turn_id = turn_id
        self.kinds = frozenset(kinds)
        self.project = project
        self.timeout = timeout
        self._cursor = cursor  # "$" = only new entries, "0" = from beginning
        self._backlog: deque[dict] = deque()
        self._redis: Redis | None = None
        try:
            self._redis = get_redis()
            if self._redis is not None:
                self._redis.ping()
        except RedisError as exc:
            log.warning("Telemetry stream unavailable: %s", exc)
            self._redis = None

    @property
    def available(self) -> bool:
        return self._redis is not None

    def __iter__(self):
        return self

    def wants(self, event: dict) -> bool:
        if self.session_id is not None and event["session_id"] != self.session_id:
            return False
        if self.turn_id and event.get("turn_id") != self.turn_id:
            return False
        if self.kinds and event["kind"] not in self.kinds:
            return False
        return not self.project or event.get("project") == self.project

    def _fill(self) -> bool:
        """Read one batch past the cursor into the backlog; False on timeout."""
        assert self._redis is not None
        result = self._redis.xread({EVENTS_STREAM: self._cursor}, block=int(self.timeout * 1000), count=_READ_BATCH)
        if not result:
            return False
        for _stream, entries in result:
            for entry_id, fields in entries:
                self._cursor = entry_id
                event = decode_entry(entry_id, fields)
                if event is not None and self.wants(event):
                    self._backlog.append(event)
        return True

    def __next__(self) -> dict | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while not self._backlog:
            if not self._fill():
                return None
        return self._backlog.popleft()
