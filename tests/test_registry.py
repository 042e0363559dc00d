"""Tests for the session registry."""

from __future__ import annotations

import json
import os
import threading

import pytest

from loopd import paths, registry
from loopd.errors import NoParentSession, SessionNotFound

DEAD_PID = 999_999_999


def _meta(sid: int, status: str = "running", pid: int | None = None, **extra) -> dict:
    meta = {"id": sid, "status": status, "pid": os.getpid() if pid is None else pid, "profile": "dev", "ended": ""}
    meta.update(extra)
    return registry.publish(meta)


def test_allocate_id_is_monotonic():
    assert [registry.allocate_id() for _ in range(3)] == [1, 2, 3]


def test_allocate_id_never_reuses_ids_on_disk():
    _meta(10)
    assert registry.allocate_id() == 11


def test_concurrent_allocation_yields_unique_ids():
    ids: list[int] = []

    def worker() -> None:
        for _ in range(5):
            ids.append(registry.allocate_id())

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(ids) == list(range(1, 21))


def test_publish_rejects_bad_status():
    with pytest.raises(ValueError):
        registry.publish({"id": 1, "status": "sleeping"})


def test_lookup_missing_session():
    with pytest.raises(SessionNotFound):
        registry.lookup(42)


def test_retire_removes_runtime_files():
    _meta(1)
    paths.session_socket_path(1).touch()
    paths.session_pid_path(1).write_text("123\n")
    meta = registry.retire(1, "stopped", exit_kind="completed")
    assert meta["status"] == "stopped"
    assert meta["ended"]
    assert not paths.session_socket_path(1).exists()
    assert not paths.session_pid_path(1).exists()
    with pytest.raises(ValueError):
        registry.retire(1, "running")


def test_list_live_checks_pid():
    _meta(1)
    _meta(2, pid=DEAD_PID)
    _meta(3, status="stopped")
    assert [m["id"] for m in registry.list_live()] == [1]


def test_count_live_by_profile_with_exclusion():
    _meta(1, profile="Scout")
    _meta(2, profile="scout")
    _meta(3, profile="dev")
    assert registry.count_live("scout") == 2
    assert registry.count_live("scout", exclude=2) == 1


def test_sweep_marks_dead_daemons_crashed():
    _meta(1, pid=DEAD_PID)
    _meta(2)
    _meta(3, status="starting", pid=0)
    crashed = registry.sweep()
    assert [m["id"] for m in crashed] == [1]
    assert registry.lookup(1)["status"] == "crashed"
    assert registry.lookup(2)["status"] == "running"
    assert registry.lookup(3)["status"] == "starting"


def test_sweep_collects_launches_stuck_in_starting():
    _meta(1, status="starting", pid=0)
    stale = {"id": 2, "status": "starting", "pid": 0, "profile": "dev", "ended": "", "updated": "2000-01-01T00:00:00Z"}
    paths.session_meta_path(2).write_text(json.dumps(stale))
    crashed = registry.sweep()
    assert [m["id"] for m in crashed] == [2]
    assert registry.lookup(2)["status"] == "crashed"
    assert registry.lookup(2)["exit_kind"] == "internal"
    assert registry.lookup(1)["status"] == "starting"


def test_cleanup_removes_old_terminal_sessions():
    _meta(1, status="stopped", ended="2000-01-01T00:00:00Z")
    _meta(2, status="crashed", ended=registry.utcnow())
    _meta(3)
    paths.session_launch_path(1).write_text("{}")
    assert registry.cleanup(7) == [1]
    assert not paths.session_launch_path(1).exists()
    assert [m["id"] for m in registry.list_sessions()] == [2, 3]


def test_launch_files_are_not_sessions():
    _meta(1)
    paths.session_launch_path(1).write_text('{"id": 99, "status": "running"}')
    assert [m["id"] for m in registry.list_sessions()] == [1]


def test_current_session_id(monkeypatch: pytest.MonkeyPatch):
    with pytest.raises(NoParentSession):
        registry.current_session_id()
    monkeypatch.setenv("LOOPD_SESSION_ID", "abc")
    with pytest.raises(NoParentSession):
        registry.current_session_id()
    monkeypatch.setenv("LOOPD_SESSION_ID", " 7 ")
    assert registry.current_session_id() == 7
