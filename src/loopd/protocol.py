"""Attach protocol spoken on a session's unix socket.

Frames are newline-delimited compact JSON objects with a ``type`` field:

  HELLO    client -> daemon  ``{since_cursor, version}``; subscribe as a viewer
  EVENT    daemon -> client  ``{cursor, kind, ts, payload}``
  CONTROL  client -> daemon  ``{id, verb, args}``
  ACK      daemon -> client  ``{id, verb, ok, err?, kind?, result?}``
  BYE      either            clean close

Stdio payloads are carried as text decoded with ``surrogateescape`` so
arbitrary agent bytes round-trip; meta payloads are JSON objects.

Event kinds form a closed set tied to :data:`PROTOCOL_VERSION`.  Adding a
kind means bumping the version; clients skip kinds they do not know.
"""

from __future__ import annotations

import json
from typing import Any

PROTOCOL_VERSION = 1

FRAME_TYPES = ("HELLO", "EVENT", "CONTROL", "ACK", "BYE")

STDIO_KINDS = frozenset({"stdin", "stdout", "stderr"})

META_KINDS = frozenset(
    {
        "session_start",
        "session_status",
        "session_end",
        "heartbeat",
        "step_start",
        "step_end",
        "turn_start",
        "turn_end",
        "turn_failed",
        "turn_timeout",
        "stop_requested",
        "message",
        "note",
        "notify",
        "push_failed",
        "spawn_requested",
        "spawn_started",
        "spawn_completed",
        "spawn_failed",
        "spawn_merged",
        "spawn_rejected",
        "stats",
        "log",
    }
)

EVENT_KINDS = STDIO_KINDS | META_KINDS

# Meta events that must hit disk before the engine moves on.
DURABLE_KINDS = frozenset({"turn_end", "session_end", "session_status"})

CONTROL_VERBS = frozenset(
    {
        "status",
        "cancel",
        "note",
        "detach",
        "spawn",
        "spawn-status",
        "spawn-wait",
        "spawn-diff",
        "spawn-merge",
        "spawn-reject",
        "loop-stop",
        "loop-message",
        "loop-notify",
    }
)

MAX_FRAME_BYTES = 16 * 1024 * 1024


def encode(msg: dict) -> bytes:
    return json.dumps(msg, separators=(",", ":")).encode() + b"\n"


def decode(line: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(parsed, dict) or parsed.get("type") not in FRAME_TYPES:
        return None
    return parsed


# -- Frame builders -------------------------------------------------------------


def hello(since_cursor: int = 0) -> dict[str, Any]:
    return {"type": "HELLO", "since_cursor": since_cursor, "version": PROTOCOL_VERSION}


def event(cursor: int, kind: str, ts: str, payload: Any) -> dict[str, Any]:
    return {"type": "EVENT", "cursor": cursor, "kind": kind, "ts": ts, "payload": payload}


def control(req_id: int, verb: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"type": "CONTROL", "id": req_id, "verb": verb, "args": args or {}}


def ack(
    req_id: int,
    verb: str,
    *,
    ok: bool = True,
    err: str = "",
    kind: str = "",
    result: Any = None,
) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": "ACK", "id": req_id, "verb": verb, "ok": ok}
    if not ok:
        frame["err"] = err
        frame["kind"] = kind or "internal"
    if result is not None:
        frame["result"] = result
    return frame


def bye(reason: str = "") -> dict[str, Any]:
    frame: dict[str, Any] = {"type": "BYE"}
    if reason:
        frame["reason"] = reason
    return frame


# -- Payload helpers ------------------------------------------------------------


def stdio_text(data: bytes) -> str:
    return data.decode("utf-8", errors="surrogateescape")


def stdio_bytes(text: str) -> bytes:
    return text.encode("utf-8", errors="surrogateescape")


def payload_for_wire(kind: str, data: bytes) -> Any:
    """Turn a recorded payload into its EVENT representation."""
    if kind in STDIO_KINDS:
        return stdio_text(data)
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {"raw": stdio_text(data)}


def meta_kind(data: bytes) -> str:
    """Event kind stored inside a ``meta`` record payload."""
    try:
        parsed = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return "log"
    kind = parsed.get("kind") if isinstance(parsed, dict) else None
    return kind if isinstance(kind, str) else "log"


# -- JSON schema ----------------------------------------------------------------

FRAME_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "oneOf": [
        {
            "type": "object",
            "required": ["type", "since_cursor", "version"],
            "properties": {
                "type": {"const": "HELLO"},
                "since_cursor": {"type": "integer", "minimum": 0},
                "version": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        {
            "type": "object",
            "required": ["type", "cursor", "kind", "ts", "payload"],
            "properties": {
                "type": {"const": "EVENT"},
                "cursor": {"type": "integer", "minimum": 1},
                "kind": {"enum": sorted(EVENT_KINDS)},
                "ts": {"type": "string"},
                "payload": {},
            },
            "additionalProperties": False,
        },
        {
            "type": "object",
            "required": ["type", "id", "verb", "args"],
            "properties": {
                "type": {"const": "CONTROL"},
                "id": {"type": "integer"},
                "verb": {"enum": sorted(CONTROL_VERBS)},
                "args": {"type": "object"},
            },
            "additionalProperties": False,
        },
        {
            "type": "object",
            "required": ["type", "id", "verb", "ok"],
            "properties": {
                "type": {"const": "ACK"},
                "id": {"type": "integer"},
                "verb": {"type": "string"},
                "ok": {"type": "boolean"},
                "err": {"type": "string"},
                "kind": {"type": "string"},
                "result": {},
            },
            "additionalProperties": False,
        },
        {
            "type": "object",
            "required": ["type"],
            "properties": {"type": {"const": "BYE"}, "reason": {"type": "string"}},
            "additionalProperties": False,
        },
    ],
}
