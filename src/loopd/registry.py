"""Session registry: one metadata file per session under ``<data-root>/sessions/``.

Each session's daemon is the only writer of its own ``<id>.json``; any
process may read.  Id allocation and the boot sweep take an ``fcntl`` lock
on ``sessions/.lock`` so two launchers never hand out the same id.
"""

from __future__ import annotations

import contextlib
import logging
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from loopd import paths
from loopd.config import LIVE_SESSION_STATUSES
from loopd.errors import NoParentSession, SessionNotFound
from loopd.store import file_lock, read_json, write_json_atomic

log = logging.getLogger(__name__)

SESSION_ENV = "LOOPD_SESSION_ID"
VALID_SESSION_STATUSES = {"starting", "running", "detached", "stopped", "crashed"}
TERMINAL_STATUSES = {"stopped", "crashed"}
# A launcher that has not handed over to its daemon by then is gone.
STARTING_STALE_AFTER = timedelta(seconds=60)
_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utcnow() -> str:
    return datetime.now(UTC).strftime(_TS_FORMAT)


def parse_ts(value: str) -> datetime | None:
    try:
        return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


def _lock_path() -> Path:
    return paths.sessions_dir() / ".lock"


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def allocate_id() -> int:
    """Next session id; monotonic and persisted across restarts."""
    counter = paths.sessions_dir() / ".counter"
    with file_lock(_lock_path()):
        try:
            last = int(counter.read_text().strip() or 0)
        except FileNotFoundError:
            last = 0
        except ValueError:
            log.warning("Corrupt session counter %s, rescanning", counter)
            last = 0
        # Never go below an id already on disk.
        on_disk = [m["id"] for m in list_sessions()]
        next_id = max([last, *on_disk]) + 1
        counter.write_text(f"{next_id}\n")
    return next_id


def publish(meta: dict[str, Any]) -> dict[str, Any]:
    """Persist metadata for ``meta["id"]``."""
    status = meta.get("status")
    if status not in VALID_SESSION_STATUSES:
        raise ValueError(f"invalid session status: {status}")
    meta["updated"] = utcnow()
    write_json_atomic(paths.session_meta_path(int(meta["id"])), meta)
    return meta


def lookup(session_id: int) -> dict[str, Any]:
    meta = read_json(paths.session_meta_path(session_id))
    if not isinstance(meta, dict):
        raise SessionNotFound(f"session {session_id} not found")
    return meta


def update(session_id: int, **changes: Any) -> dict[str, Any]:
    meta = lookup(session_id)
    meta.update(changes)
    return publish(meta)


def _remove_runtime_files(session_id: int) -> None:
    for path in (paths.session_socket_path(session_id), paths.session_pid_path(session_id)):
        with contextlib.suppress(FileNotFoundError):
            path.unlink()


def retire(session_id: int, status: str, **changes: Any) -> dict[str, Any]:
    """Move a session to a terminal status and remove its socket and PID file."""
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"retire needs a terminal status, got {status}")
    _remove_runtime_files(session_id)
    meta = lookup(session_id)
    meta.update(changes)
    meta["status"] = status
    meta.setdefault("ended", "")
    if not meta["ended"]:
        meta["ended"] = utcnow()
    return publish(meta)


def list_sessions() -> list[dict[str, Any]]:
    directory = paths.sessions_dir()
    if not directory.is_dir():
        return []
    out = []
    for entry in directory.glob("*.json"):
        if not entry.stem.isdigit() or entry.name.endswith(".launch.json"):
            continue
        meta = read_json(entry)
        if isinstance(meta, dict):
            out.append(meta)
    return sorted(out, key=lambda m: int(m.get("id", 0)))


def list_live() -> list[dict[str, Any]]:
    """Sessions in a live status whose daemon process still exists."""
    return [
        m
        for m in list_sessions()
        if m.get("status") in LIVE_SESSION_STATUSES and pid_alive(int(m.get("pid") or 0))
    ]


def count_live(profile: str, *, exclude: int = 0) -> int:
    key = profile.lower()
    return sum(
        1
        for m in list_live()
        if str(m.get("profile", "")).lower() == key and int(m.get("id", 0)) != exclude
    )


def sweep() -> list[dict[str, Any]]:
    """Mark sessions whose daemon died as ``crashed``; return them.

    A ``starting`` session with no PID yet belongs to a launcher that may
    still be running; it is only collected once it is older than
    :data:`STARTING_STALE_AFTER`.
    """
    crashed: list[dict[str, Any]] = []
    stale_before = datetime.now(UTC) - STARTING_STALE_AFTER
    with file_lock(_lock_path()):
        for meta in list_sessions():
            if meta.get("status") not in LIVE_SESSION_STATUSES:
                continue
            pid = int(meta.get("pid") or 0)
            if pid == 0 and meta.get("status") == "starting":
                updated = parse_ts(str(meta.get("updated", "")))
                if updated is None or updated > stale_before:
                    continue
                sid = int(meta["id"])
                log.warning("Session %d never left starting, marking crashed", sid)
                crashed.append(retire(sid, "crashed", exit_kind="internal", error="launcher never handed over"))
                continue
            if pid_alive(pid):
                continue
            sid = int(meta["id"])
            log.warning("Session %d (pid %d) is gone, marking crashed", sid, pid)
            crashed.append(retire(sid, "crashed", exit_kind="internal", error="daemon process disappeared"))
    return crashed


def cleanup(older_than_days: float = 7.0) -> list[int]:
    """Delete metadata of terminal sessions that ended more than N days ago."""
    cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
    removed = []
    for meta in list_sessions():
        if meta.get("status") not in TERMINAL_STATUSES:
            continue
        ended = parse_ts(str(meta.get("ended", "")))
        if ended is None or ended > cutoff:
            continue
        sid = int(meta["id"])
        for path in (paths.session_meta_path(sid), paths.session_launch_path(sid)):
            with contextlib.suppress(FileNotFoundError):
                path.unlink()
        removed.append(sid)
    return removed


def current_session_id() -> int:
    """Session id of the calling agent, from ``LOOPD_SESSION_ID``."""
    raw = os.environ.get(SESSION_ENV, "").strip()
    if not raw:
        raise NoParentSession(f"{SESSION_ENV} is not set; this command only works inside a loopd session")
    try:
        return int(raw)
    except ValueError:
        raise NoParentSession(f"{SESSION_ENV}={raw!r} is not a session id") from None
