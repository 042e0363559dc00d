"""Tests for the MCP tool functions (called directly, without a transport)."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from loopd import mcp_server
from loopd.errors import LoopdError
from loopd.store import init_project


@pytest.fixture
def store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    st = init_project("demo", tmp_path)
    monkeypatch.setenv("LOOPD_PROJECT", "demo")
    return st


def test_issue_create_and_list(store):
    store.create_plan("v1", "First")
    store.set_active_plan("v1")
    created = json.loads(mcp_server.issue_create("Parser crashes", description="on empty input", priority="high"))
    assert created["ok"] is True
    assert created["issue"]["plan_id"] == "v1"
    assert created["issue"]["session_id"] == 0

    json.loads(mcp_server.issue_create("Shared thing", shared=True))
    listed = json.loads(mcp_server.issue_list())
    assert [i["title"] for i in listed["issues"]] == ["Parser crashes", "Shared thing"]

    store.update_issue(created["issue"]["id"], status="resolved")
    assert len(json.loads(mcp_server.issue_list())["issues"]) == 1
    assert len(json.loads(mcp_server.issue_list(include_resolved=True))["issues"]) == 2


def test_issue_create_inside_session(store, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LOOPD_SESSION_ID", "12")
    created = json.loads(mcp_server.issue_create("From agent"))
    assert created["issue"]["session_id"] == 12


def test_issue_create_bad_priority(store):
    result = json.loads(mcp_server.issue_create("x", priority="urgent"))
    assert result == {"ok": False, "error": "invalid issue priority 'urgent'", "kind": "config_invalid"}


def test_store_tools_without_project():
    result = json.loads(mcp_server.issue_list())
    assert result["ok"] is False
    assert result["kind"] == "config_invalid"


@pytest.mark.asyncio
async def test_session_tools_outside_session():
    for call in (mcp_server.status(), mcp_server.spawn("dev", "task"), mcp_server.loop_stop(), mcp_server.spawn_wait()):
        result = json.loads(await call)
        assert result["ok"] is False
        assert result["kind"] == "no_parent_session"


@pytest.mark.asyncio
async def test_spawn_forwards_to_daemon(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LOOPD_SESSION_ID", "3")
    fake = AsyncMock(return_value={"id": 1, "status": "running"})
    with patch("loopd.mcp_server.control_once", fake):
        result = json.loads(await mcp_server.spawn("scout", "map the code", read_only=True))
    assert result == {"ok": True, "spawn": {"id": 1, "status": "running"}}
    fake.assert_awaited_once_with(
        3,
        "spawn",
        {"profile": "scout", "task": "map the code", "role": "", "read_only": True, "wait": False},
        timeout=None,
    )


@pytest.mark.asyncio
async def test_loop_message_passes_step(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LOOPD_SESSION_ID", "3")
    fake = AsyncMock(return_value={"to_step": 2, "queued": 1})
    with patch("loopd.mcp_server.control_once", fake):
        result = json.loads(await mcp_server.loop_message("heads up", to_step=2))
    assert result == {"ok": True, "to_step": 2, "queued": 1}
    assert fake.await_args.args[2] == {"text": "heads up", "to_step": 2}


@pytest.mark.asyncio
async def test_daemon_errors_come_back_as_json(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("LOOPD_SESSION_ID", "3")
    fake = AsyncMock(side_effect=LoopdError("step 0 may not stop the loop", kind="permission_denied"))
    with patch("loopd.mcp_server.control_once", fake):
        result = json.loads(await mcp_server.loop_stop("done"))
    assert result == {"ok": False, "error": "step 0 may not stop the loop", "kind": "permission_denied"}


@pytest.mark.asyncio
async def test_note_add_targets_other_session():
    fake = AsyncMock(return_value={"id": 1, "note": "hi"})
    with patch("loopd.mcp_server.control_once", fake):
        result = json.loads(await mcp_server.note_add("hi", session_id=9))
    assert result["note"]["id"] == 1
    fake.assert_awaited_once_with(9, "note", {"note": "hi", "author": "agent"})


@pytest.mark.asyncio
async def test_tools_registered():
    names = {t.name for t in await mcp_server.server.list_tools()}
    assert {"status", "issue_list", "issue_create", "spawn", "spawn_wait", "loop_stop"} <= names
