"""In-agent surface as an MCP server (stdio transport).

MCP-capable agents can call these tools instead of shelling out to the
``loopd`` CLI.  Tools that talk to the session daemon resolve the calling
session from ``LOOPD_SESSION_ID``; store tools resolve the project from
``LOOPD_PROJECT`` or the working directory.  Every tool returns a JSON
string; failures come back as ``{"ok": false, "error": ..., "kind": ...}``.

Run with ``loopd mcp serve``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from loopd import registry
from loopd.client import control_once
from loopd.errors import LoopdError
from loopd.store import OPEN_ISSUE_STATUSES, resolve_project

log = logging.getLogger(__name__)

server = FastMCP("loopd")


def _ok(**data: Any) -> str:
    return json.dumps({"ok": True, **data}, default=str)


def _fail(exc: LoopdError) -> str:
    return json.dumps({"ok": False, **exc.to_dict()})


async def _control(verb: str, timeout: float | None = 30.0, **args: Any) -> Any:
    return await control_once(registry.current_session_id(), verb, args, timeout=timeout)


@server.tool()
async def status() -> str:
    """Status of the calling session: loop position, viewers and spawns."""
    try:
        return _ok(**await _control("status"))
    except LoopdError as exc:
        return _fail(exc)


@server.tool()
def issue_list(include_resolved: bool = False) -> str:
    """List issues of the active plan plus shared issues.

    Args:
        include_resolved: Also list resolved and wontfix issues.
    """
    try:
        store = resolve_project()
        plan = store.active_plan()
        issues = store.list_issues(
            plan_id=plan["id"] if plan else None,
            status=None if include_resolved else OPEN_ISSUE_STATUSES,
        )
        return _ok(issues=issues)
    except LoopdError as exc:
        return _fail(exc)


@server.tool()
def issue_create(title: str, description: str = "", priority: str = "medium", shared: bool = False) -> str:
    """Create an issue, bound to the active plan unless shared.

    Args:
        title: One-line summary.
        description: Details, reproduction steps, file paths.
        priority: critical, high, medium or low.
        shared: Do not bind the issue to the active plan.
    """
    try:
        store = resolve_project()
        plan = None if shared else store.active_plan()
        session_id = 0
        try:
            session_id = registry.current_session_id()
        except LoopdError:
            log.debug("issue_create outside a session")
        issue = store.create_issue(
            title,
            description=description,
            priority=priority,
            plan_id=plan["id"] if plan else "",
            session_id=session_id,
        )
        return _ok(issue=issue)
    except LoopdError as exc:
        return _fail(exc)


@server.tool()
async def note_add(note: str, session_id: int = 0) -> str:
    """Leave a supervisor note; it appears in the session's next prompt.

    Args:
        note: The note text.
        session_id: Target session (defaults to the calling session).
    """
    try:
        target = session_id or registry.current_session_id()
        row = await control_once(target, "note", {"note": note, "author": "agent"})
        return _ok(note=row)
    except LoopdError as exc:
        return _fail(exc)


@server.tool()
async def spawn(profile: str, task: str, role: str = "", read_only: bool = False, wait: bool = False) -> str:
    """Delegate a task to a child session.

    Args:
        profile: Profile allowed by the current step's delegation tree.
        task: What the child should do (becomes its instructions).
        role: One of the roles the delegation node allows (default: its first).
        read_only: Share this workdir instead of getting a worktree.
        wait: Return only after the child has finished.
    """
    try:
        row = await _control(
            "spawn", timeout=None, profile=profile, task=task, role=role, read_only=read_only, wait=wait
        )
        return _ok(spawn=row)
    except LoopdError as exc:
        return _fail(exc)


@server.tool()
async def spawn_status(spawn_id: int | None = None) -> str:
    """Spawn records of the calling session (or one of them)."""
    try:
        args = {"spawn_id": spawn_id} if spawn_id is not None else {}
        return _ok(spawns=await _control("spawn-status", **args))
    except LoopdError as exc:
        return _fail(exc)


@server.tool()
async def spawn_wait(spawn_ids: list[int] | None = None, timeout: float = 0) -> str:
    """Wait for spawns to finish (default: all running ones).

    Args:
        spawn_ids: Spawn ids to wait for.
        timeout: Seconds to wait at most (0 waits indefinitely).
    """
    try:
        rows = await control_once(
            registry.current_session_id(),
            "spawn-wait",
            {"spawn_ids": spawn_ids or [], "timeout": timeout or None},
            timeout=None,
        )
        return _ok(spawns=rows)
    except LoopdError as exc:
        return _fail(exc)


@server.tool()
async def loop_message(text: str, to_step: int | None = None) -> str:
    """Send a message to a later step of the loop (default: the next one)."""
    try:
        args: dict[str, Any] = {"text": text}
        if to_step is not None:
            args["to_step"] = to_step
        return _ok(**await _control("loop-message", **args))
    except LoopdError as exc:
        return _fail(exc)


@server.tool()
async def loop_stop(reason: str = "") -> str:
    """Stop the loop after the current turn (needs stop permission)."""
    try:
        return _ok(**await _control("loop-stop", reason=reason))
    except LoopdError as exc:
        return _fail(exc)


def run() -> None:
    server.run(transport="stdio")
