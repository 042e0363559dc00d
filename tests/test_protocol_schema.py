"""Protocol schema validation tests.

Every frame builder in :mod:`loopd.protocol`, and every frame the
broadcaster produces, must validate against ``FRAME_SCHEMA``.  Catches
contract drift (stray fields, wrong types) before a client sees it.
"""

from __future__ import annotations

import json

import pytest
from jsonschema import Draft202012Validator, ValidationError

from loopd import protocol
from loopd.broadcast import Broadcaster
from loopd.recorder import Recorder

VALIDATOR = Draft202012Validator(protocol.FRAME_SCHEMA)


def _validate(frame: dict) -> None:
    VALIDATOR.validate(frame)
    # The wire form must survive a compact encode/decode unchanged.
    assert protocol.decode(protocol.encode(frame)) == frame


def test_schema_itself_is_valid():
    Draft202012Validator.check_schema(protocol.FRAME_SCHEMA)


@pytest.mark.parametrize(
    "frame",
    [
        protocol.hello(),
        protocol.hello(42),
        protocol.control(1, "status"),
        protocol.control(2, "spawn", {"profile": "scout", "task": "look"}),
        protocol.ack(1, "status", result={"viewers": 1}),
        protocol.ack(3, "spawn", ok=False, err="denied", kind="spawn_denied"),
        protocol.bye(),
        protocol.bye("detach"),
        protocol.event(1, "stdout", "2026-01-01T00:00:00.000000000Z", "hi"),
    ],
)
def test_builders_match_schema(frame):
    _validate(frame)


def test_failed_ack_defaults_kind_to_internal():
    frame = protocol.ack(1, "status", ok=False, err="boom")
    assert frame["kind"] == "internal"
    _validate(frame)


def test_unknown_verb_rejected_by_schema():
    with pytest.raises(ValidationError):
        VALIDATOR.validate(protocol.control(1, "reboot"))


def test_unknown_event_kind_rejected_by_schema():
    with pytest.raises(ValidationError):
        VALIDATOR.validate(protocol.event(1, "telepathy", "ts", {}))


def test_stray_field_rejected():
    frame = protocol.hello()
    frame["extra"] = True
    with pytest.raises(ValidationError):
        VALIDATOR.validate(frame)


def test_decode_rejects_garbage():
    assert protocol.decode(b"not json\n") is None
    assert protocol.decode(b"[1, 2]\n") is None
    assert protocol.decode(b'{"type": "NOPE"}\n') is None


def test_stdio_round_trips_arbitrary_bytes():
    data = bytes(range(256))
    assert protocol.stdio_bytes(protocol.stdio_text(data)) == data
    # Surrogate-escaped text must still be JSON-encodable for the wire.
    frame = protocol.event(1, "stdout", "ts", protocol.stdio_text(data))
    assert protocol.stdio_bytes(json.loads(protocol.encode(frame))["payload"]) == data


def test_meta_kind_falls_back_to_log():
    assert protocol.meta_kind(b'{"kind": "turn_end"}') == "turn_end"
    assert protocol.meta_kind(b"plain text") == "log"
    assert protocol.payload_for_wire("meta", b"plain text") == {"raw": "plain text"}


def test_durable_kinds_are_meta_kinds():
    assert protocol.DURABLE_KINDS <= protocol.META_KINDS


@pytest.mark.asyncio
async def test_broadcast_frames_match_schema(tmp_path):
    recorder = Recorder(tmp_path / "events.log")
    bus = Broadcaster(recorder)
    events = [
        bus.publish("stdout", b"\xffraw"),
        bus.publish("turn_end", {"exit_code": 0, "ok": True, "stats": {"cost_usd": 0.1}}),
        bus.publish("session_end", {"status": "stopped"}),
    ]
    for ev in events:
        _validate(ev.frame())
    recorder.close()
