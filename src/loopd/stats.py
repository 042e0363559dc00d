"""Turn statistics inferred from agent stdout.

Agents that stream JSON lines (``claude --output-format stream-json``,
``codex exec --json``) report tool calls and cost inline.  :class:`TurnStats`
is fed raw stdout chunks as they arrive and picks those out; anything that
is not a JSON object line is ignored.
"""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from loopd.recorder import RecordedEvent

_MAX_PENDING = 1024 * 1024


@dataclass
class TurnStats:
    cost_usd: float = 0.0
    tool_calls: Counter[str] = field(default_factory=Counter)
    _pending: bytes = b""

    def feed(self, chunk: bytes) -> None:
        data = self._pending + chunk
        *lines, self._pending = data.split(b"\n")
        if len(self._pending) > _MAX_PENDING:
            # A line this long is not a telemetry record.
            self._pending = b""
        for line in lines:
            self._consume(line)

    def finish(self) -> None:
        if self._pending:
            self._consume(self._pending)
            self._pending = b""

    def _consume(self, line: bytes) -> None:
        line = line.strip()
        if not line.startswith(b"{"):
            return
        try:
            obj = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return
        if isinstance(obj, dict):
            self.observe(obj)

    def observe(self, obj: dict[str, Any]) -> None:
        kind = obj.get("type")
        if kind == "result":
            cost = obj.get("total_cost_usd", obj.get("cost_usd"))
            if isinstance(cost, (int, float)):
                self.cost_usd += float(cost)
        elif kind == "assistant":
            content = (obj.get("message") or {}).get("content") or []
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("name"):
                    self.tool_calls[str(block["name"])] += 1
        elif kind == "item.started":
            item = obj.get("item") or {}
            name = item.get("type")
            if name and name not in ("agent_message", "reasoning"):
                self.tool_calls[str(name)] += 1

    def to_dict(self) -> dict[str, Any]:
        return {"cost_usd": round(self.cost_usd, 6), "tool_calls": dict(self.tool_calls)}


def _meta_payloads(events: Iterable[RecordedEvent]) -> Iterator[dict[str, Any]]:
    for ev in events:
        if ev.type != "meta":
            continue
        try:
            obj = json.loads(ev.payload)
        except (json.JSONDecodeError, UnicodeDecodeError):
            continue
        if isinstance(obj, dict):
            yield obj


def replay_session(events: Iterable[RecordedEvent]) -> list[tuple[str, str, dict[str, Any]]]:
    """Stats updates implied by one session's recording.

    Returns ``(kind, name, counters)`` triples in the shape
    :meth:`loopd.store.Store.record_stats` takes.  Profile rows come from
    ``turn_end`` (matched to its ``turn_start`` for the profile name), the loop
    row from the closing ``stats`` and ``session_end`` events.
    """
    updates: list[tuple[str, str, dict[str, Any]]] = []
    profiles: dict[str, str] = {}
    loop_row: dict[str, Any] | None = None
    loop_name = ""
    for obj in _meta_payloads(events):
        kind = obj.get("kind")
        if kind == "turn_start":
            profiles[str(obj.get("turn_id", ""))] = str(obj.get("profile", ""))
        elif kind == "turn_end":
            name = profiles.get(str(obj.get("turn_id", "")))
            if not name:
                continue
            updates.append(
                (
                    "profile",
                    name,
                    {
                        "runs": 1,
                        "success": bool(obj.get("ok")),
                        "cost_usd": float(obj.get("cost_usd") or 0.0),
                        "tool_calls": dict(obj.get("tool_calls") or {}),
                    },
                )
            )
        elif kind == "stats" and obj.get("loop"):
            loop_name = str(obj["loop"])
            loop_row = {"runs": 1, "cycles": int(obj.get("cycles") or 0), "cost_usd": float(obj.get("cost_usd") or 0.0)}
        elif kind == "session_end" and loop_row is not None:
            loop_row["success"] = obj.get("outcome") in ("stopped_by_step", "max_cycles")
    if loop_row is not None:
        updates.append(("loop", loop_name, loop_row))
    return updates
