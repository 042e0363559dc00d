from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any

import click

from loopd import __version__, paths, registry, worktree
from loopd.agents import family_table
from loopd.broadcast import Event
from loopd.client import AttachClient, send_control
from loopd.config import (
    GlobalConfig,
    Profile,
    VALID_EFFORTS,
    VALID_SPEEDS,
    add_profile,
    config_to_dict,
    load_config,
    loop_to_dict,
    profile_to_dict,
    remove_loop,
    remove_profile,
    resolve_loop,
    save_config,
    single_step_loop,
)
from loopd.errors import EXIT_CANCELLED, EXIT_SYSTEM_ERROR, EXIT_USER_ERROR, ConfigInvalid, LoopdError, RecordingCorrupted
from loopd.events import EventSubscriber
from loopd.recorder import read_recording, recording_path
from loopd.stats import replay_session
from loopd.store import (
    OPEN_ISSUE_STATUSES,
    SESSION_LOG_FIELDS,
    VALID_ISSUE_PRIORITIES,
    VALID_ISSUE_STATUSES,
    VALID_PHASE_STATUSES,
    VALID_PLAN_STATUSES,
    Store,
    find_project_for_path,
    init_project,
    open_project,
    resolve_project,
)

log = logging.getLogger(__name__)


def _emit(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _store(project: str | None) -> Store:
    return open_project(project) if project else resolve_project()


project_option = click.option(
    "--project", "-p", "project", default=None, help="Project name (default: LOOPD_PROJECT or the current directory)."
)


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click usage errors and :class:`LoopdError` both become a JSON object on
    stdout; the process exits with the error kind's exit code.  Unknown
    commands get fuzzy-matched suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(cmd_name, self.list_commands(ctx), n=2, cutoff=0.5)
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except LoopdError as e:
            click.echo(json.dumps({"ok": False, "error": str(e), "kind": e.kind}))
            if standalone_mode:
                raise SystemExit(e.exit_code) from None
            return e.exit_code
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", EXIT_USER_ERROR)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(EXIT_CANCELLED) from None
            raise


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging to stderr.")
def main(verbose: bool):
    """Run AI coding agents in detachable loop sessions.

    \b
    Quick start:
      loopd init                          Register the current repo as a project
      loopd profile add dev --agent claude
      loopd run dev                       Start a session and attach to it
      loopd sessions list                 See what is running
      loopd attach 3                      Reattach (Ctrl-C detaches again)

    \b
    Inside a session (LOOPD_SESSION_ID is set):
      loopd status | issue list | spawn PROFILE TASK | loop-stop | ...
    """
    if verbose:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr, format="%(asctime)s %(levelname)s %(name)s %(message)s")


# -- init --


@main.command()
@click.argument("path", required=False, type=click.Path(exists=True, file_okay=False, resolve_path=True))
@click.option("--name", "-n", default=None, help="Project name (default: directory name).")
def init(path: str | None, name: str | None):
    """Register a repository as a loopd project."""
    target = Path(path) if path else Path.cwd()
    try:
        target = Path(worktree.repo_root(target))
    except RuntimeError:
        log.info("%s is not a git repository; registering it as is", target)
    store = init_project(name or target.name, target)
    _emit({"ok": True, **store.load_project(), "data_dir": str(store.root)})


# -- Sessions: run / attach / detach / cancel --


def _render_event(ev: Event, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(ev.frame(), default=str))
        return
    if ev.kind == "stdout":
        click.echo(str(ev.payload).encode("utf-8", "surrogateescape"), nl=False)
    elif ev.kind == "stderr":
        click.echo(str(ev.payload).encode("utf-8", "surrogateescape"), nl=False, err=True)
    elif ev.kind == "stdin":
        click.echo(f"[loopd #{ev.cursor}] prompt ({len(str(ev.payload))} chars)", err=True)
    else:
        payload = ev.payload if isinstance(ev.payload, dict) else {}
        detail = " ".join(f"{k}={v}" for k, v in payload.items() if k != "kind" and not isinstance(v, (dict, list)))
        click.echo(f"[loopd #{ev.cursor}] {ev.kind} {detail}".rstrip(), err=True)


async def _follow(session_id: int, since_cursor: int, as_json: bool) -> str:
    client = AttachClient(session_id, since_cursor=since_cursor)
    await client.start()
    try:
        async for ev in client.events():
            _render_event(ev, as_json)
    finally:
        await client.detach()
    return client.closed_reason


def _attach(session_id: int, since_cursor: int, as_json: bool) -> int:
    """Stream a session until it ends or the user detaches.  Returns an exit code."""
    try:
        reason = asyncio.run(_follow(session_id, since_cursor, as_json))
    except KeyboardInterrupt:
        click.echo(f"\n[loopd] detached from session {session_id} (still running)", err=True)
        return 0
    if reason == "detach":
        click.echo(f"[loopd] detached from session {session_id} (still running)", err=True)
        return 0
    meta = registry.lookup(session_id)
    if meta.get("status") not in registry.TERMINAL_STATUSES:
        return 0
    click.echo(f"[loopd] session {session_id} {meta['status']} ({meta.get('exit_kind', '')})", err=True)
    if meta.get("exit_kind") == "cancelled":
        return EXIT_CANCELLED
    return 0 if meta["status"] == "stopped" else EXIT_SYSTEM_ERROR


@main.command()
@click.argument("target")
@click.option("--detach", "-d", "detached", is_flag=True, help="Start in the background and print the session id.")
@click.option("--max-cycles", type=int, default=0, show_default=True, help="Stop after N cycles (0 = until a step stops the loop).")
@click.option("--workdir", "-w", type=click.Path(exists=True, file_okay=False, resolve_path=True), default=None)
@click.option("--role", default="", help="Role for a single-profile run.")
@click.option("--instructions", "-i", default="", help="Instructions for a single-profile run.")
@click.option("--keep-worktrees", is_flag=True, help="Keep worktrees of crashed sessions found at boot.")
@click.option("--json", "as_json", is_flag=True, help="Print raw event frames instead of agent output.")
@project_option
@click.pass_context
def run(
    ctx: click.Context,
    target: str,
    detached: bool,
    max_cycles: int,
    workdir: str | None,
    role: str,
    instructions: str,
    keep_worktrees: bool,
    as_json: bool,
    project: str | None,
):
    """Start a session running loop TARGET (or a one-step loop of profile TARGET)."""
    from loopd.daemon import start_session

    cfg = load_config()
    if cfg.find_loop(target) is not None:
        loop, _ = resolve_loop(cfg, target)
        if role or instructions:
            raise ConfigInvalid("--role and --instructions only apply to single-profile runs")
    else:
        prof = cfg.find_profile(target)
        if prof is None:
            raise LoopdError(f"'{target}' is neither a loop nor a profile", kind="profile_not_found")
        loop = single_step_loop(prof, role=role, instructions=instructions)

    workdir = workdir or os.getcwd()
    store = open_project(project) if project else find_project_for_path(workdir)
    project_name = store.load_project()["name"] if store else ""
    plan = store.active_plan() if store else None
    session_id = start_session(
        cfg,
        loop,
        workdir=workdir,
        project=project_name,
        plan_id=plan["id"] if plan else "",
        max_cycles=max_cycles,
        keep_worktrees=keep_worktrees,
    )
    if detached:
        _emit({"ok": True, "session_id": session_id, "loop": loop.name, "socket": str(paths.session_socket_path(session_id))})
        return
    click.echo(f"[loopd] session {session_id} started (Ctrl-C detaches)", err=True)
    ctx.exit(_attach(session_id, 0, as_json))


@main.command()
@click.argument("session_id", type=int)
@click.option("--since", "since_cursor", type=int, default=0, help="Replay only events after this cursor.")
@click.option("--json", "as_json", is_flag=True, help="Print raw event frames instead of agent output.")
@click.pass_context
def attach(ctx: click.Context, session_id: int, since_cursor: int, as_json: bool):
    """Reattach to a running session (history first, then the live tail)."""
    registry.lookup(session_id)
    ctx.exit(_attach(session_id, since_cursor, as_json))


def _session_arg(session_id: int | None) -> int:
    return session_id if session_id is not None else registry.current_session_id()


def _calling_session() -> int:
    """Session id of the calling agent, or 0 when run by a human."""
    try:
        return registry.current_session_id()
    except LoopdError:
        return 0


@main.command()
@click.argument("session_id", type=int, required=False)
def detach(session_id: int | None):
    """Disconnect every viewer of a session; the session keeps running."""
    sid = _session_arg(session_id)
    _emit({"ok": True, "session_id": sid, **send_control(sid, "detach")})


@main.command()
@click.argument("session_id", type=int)
@click.option("--wait", "wait_s", type=float, default=0, help="Wait up to N seconds for the session to stop.")
def cancel(session_id: int, wait_s: float):
    """Cancel a session cooperatively (the agent gets SIGTERM, then SIGKILL)."""
    send_control(session_id, "cancel")
    meta = registry.lookup(session_id)
    deadline = time.monotonic() + wait_s
    while meta.get("status") not in registry.TERMINAL_STATUSES and time.monotonic() < deadline:
        time.sleep(0.2)
        meta = registry.lookup(session_id)
    _emit({"ok": True, "session_id": session_id, "status": meta.get("status"), "exit_kind": meta.get("exit_kind", "")})


@main.command()
@click.argument("session_id", type=int, required=False)
def status(session_id: int | None):
    """Status of a session (default: the calling session)."""
    sid = _session_arg(session_id)
    try:
        _emit({"ok": True, **send_control(sid, "status")})
    except LoopdError as exc:
        if exc.kind != "socket_unavailable":
            raise
        _emit({"ok": True, "session": registry.lookup(sid), "live": False})


# -- sessions --


@main.group()
def sessions():
    """Inspect and clean up the session registry."""


@sessions.command("list")
@click.option("--live", is_flag=True, help="Only sessions whose daemon is alive.")
def sessions_list(live: bool):
    """List known sessions."""
    rows = registry.list_live() if live else registry.list_sessions()
    _emit(
        [
            {k: m.get(k) for k in ("id", "status", "loop_name", "profile", "project", "parent_session_id", "started", "ended", "exit_kind")}
            for m in rows
        ]
    )


@sessions.command("show")
@click.argument("session_id", type=int)
def sessions_show(session_id: int):
    """Show one session's metadata."""
    _emit(registry.lookup(session_id))


@sessions.command("cleanup")
@click.option("--older-than-days", type=float, default=7.0, show_default=True)
def sessions_cleanup(older_than_days: float):
    """Mark dead sessions crashed and forget terminated ones older than N days."""
    crashed = registry.sweep()
    removed = registry.cleanup(older_than_days)
    _emit({"ok": True, "crashed": [m["id"] for m in crashed], "removed": removed})


@sessions.command("watch")
@click.option("--session", "session_id", type=int, default=None)
@click.option("--turn", "turn_id", default=None, help="Only events of one turn.")
@click.option("--kind", "kinds", multiple=True, help="Only these event kinds (repeatable).")
@click.option("--project", "project", default=None)
@click.option("--count", type=int, default=0, help="Exit after N events (0 = until Ctrl-C).")
@click.option("--timeout", type=float, default=5.0, show_default=True, help="Poll interval in seconds.")
def sessions_watch(session_id: int | None, turn_id: str | None, kinds: tuple[str, ...], project: str | None, count: int, timeout: float):
    """Tail session telemetry from the Redis event stream (one JSON object per line)."""
    from loopd import events

    events.configure(load_config().events_redis_url)
    subscriber = EventSubscriber(session_id=session_id, turn_id=turn_id, kinds=kinds, project=project, timeout=timeout)
    if not subscriber.available:
        raise LoopdError("telemetry is disabled (set events.redis_url or LOOPD_REDIS_URL)", kind="config_invalid")
    seen = 0
    try:
        for event in subscriber:
            if event is None:
                continue
            click.echo(json.dumps(event, default=str))
            seen += 1
            if count and seen >= count:
                break
    except KeyboardInterrupt:
        return


# -- plan --


@main.group()
def plan():
    """Plans and their phases."""


@plan.command("show")
@click.argument("plan_id", required=False)
@project_option
def plan_show(plan_id: str | None, project: str | None):
    """Show a plan (default: the active plan)."""
    store = _store(project)
    row = store.get_plan(plan_id) if plan_id else store.active_plan()
    if row is None:
        raise LoopdError(f"plan '{plan_id}' not found" if plan_id else "no active plan", kind="config_invalid")
    _emit(row)


@plan.command("list")
@project_option
def plan_list(project: str | None):
    """List plans."""
    store = _store(project)
    active = store.load_project().get("active_plan_id", "")
    _emit([{"id": p["id"], "title": p["title"], "status": p["status"], "active": p["id"] == active} for p in store.list_plans()])


@plan.command("create")
@click.argument("plan_id")
@click.argument("title")
@click.option("--description", "-d", default="")
@click.option("--activate", is_flag=True, help="Make it the active plan.")
@project_option
def plan_create(plan_id: str, title: str, description: str, activate: bool, project: str | None):
    """Create a plan."""
    store = _store(project)
    row = store.create_plan(plan_id, title, description)
    if activate:
        row = store.set_active_plan(row["id"])
    _emit(row)


@plan.command("set-active")
@click.argument("plan_id")
@project_option
def plan_set_active(plan_id: str, project: str | None):
    """Select the plan agents work on."""
    _emit(_store(project).set_active_plan(plan_id))


@plan.command("set-status")
@click.argument("plan_id")
@click.argument("status", type=click.Choice(sorted(VALID_PLAN_STATUSES)))
@project_option
def plan_set_status(plan_id: str, status: str, project: str | None):
    """Change a plan's status (done/cancelled also settle its open issues)."""
    _emit(_store(project).set_plan_status(plan_id, status))


@plan.command("phase-add")
@click.argument("plan_id")
@click.argument("phase_id")
@click.argument("title")
@click.option("--description", "-d", default="")
@click.option("--priority", type=int, default=0)
@click.option("--depends-on", multiple=True)
@project_option
def plan_phase_add(plan_id: str, phase_id: str, title: str, description: str, priority: int, depends_on: tuple[str, ...], project: str | None):
    """Append a phase to a plan."""
    _emit(_store(project).add_phase(plan_id, phase_id, title, description=description, priority=priority, depends_on=list(depends_on)))


@plan.command("phase-status")
@click.argument("plan_id")
@click.argument("phase_id")
@click.argument("status", type=click.Choice(sorted(VALID_PHASE_STATUSES)))
@project_option
def plan_phase_status(plan_id: str, phase_id: str, status: str, project: str | None):
    """Update a phase's status."""
    _emit(_store(project).set_phase_status(plan_id, phase_id, status))


# -- issue --


@main.group()
def issue():
    """Issues of the active plan and the shared pool."""


@issue.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include resolved and wontfix issues.")
@click.option("--plan", "plan_id", default=None, help="Plan to scope to (default: the active plan).")
@project_option
def issue_list(show_all: bool, plan_id: str | None, project: str | None):
    """List issues."""
    store = _store(project)
    if plan_id is None:
        active = store.active_plan()
        plan_id = active["id"] if active else None
    _emit(store.list_issues(plan_id=plan_id, status=None if show_all else OPEN_ISSUE_STATUSES))


@issue.command("create")
@click.argument("title")
@click.option("--description", "-d", default="")
@click.option("--priority", type=click.Choice(sorted(VALID_ISSUE_PRIORITIES)), default="medium", show_default=True)
@click.option("--label", "labels", multiple=True)
@click.option("--shared", is_flag=True, help="Do not bind the issue to the active plan.")
@project_option
def issue_create(title: str, description: str, priority: str, labels: tuple[str, ...], shared: bool, project: str | None):
    """Create an issue."""
    store = _store(project)
    active = None if shared else store.active_plan()
    session_id = _calling_session()
    _emit(
        store.create_issue(
            title,
            description=description,
            priority=priority,
            labels=list(labels),
            plan_id=active["id"] if active else "",
            session_id=session_id,
        )
    )


@issue.command("update")
@click.argument("issue_id", type=int)
@click.option("--status", type=click.Choice(sorted(VALID_ISSUE_STATUSES)), default=None)
@click.option("--priority", type=click.Choice(sorted(VALID_ISSUE_PRIORITIES)), default=None)
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@project_option
def issue_update(issue_id: int, status: str | None, priority: str | None, title: str | None, description: str | None, project: str | None):
    """Update an issue."""
    _emit(_store(project).update_issue(issue_id, status=status, priority=priority, title=title, description=description))


# -- log --


@main.group("log")
def log_group():
    """Session logs: what each turn did and what comes next."""


@log_group.command("latest")
@project_option
def log_latest(project: str | None):
    """Show the most recent session log."""
    _emit(_store(project).latest_log())


@log_group.command("show")
@click.argument("log_id", type=int)
@project_option
def log_show(log_id: int, project: str | None):
    """Show one session log."""
    row = _store(project).get_log(log_id)
    if row is None:
        raise LoopdError(f"log #{log_id} not found", kind="config_invalid")
    _emit(row)


def _log_field_options(fn):
    for name in reversed(SESSION_LOG_FIELDS):
        fn = click.option(f"--{name.replace('_', '-')}", name, default="")(fn)
    return fn


@log_group.command("create")
@_log_field_options
@project_option
def log_create(project: str | None, **fields: str):
    """Record a session log for the current turn."""
    store = _store(project)
    active = store.active_plan()
    _emit(
        store.create_log(
            session_id=_calling_session(),
            profile=os.environ.get("LOOPD_PROFILE", ""),
            plan_id=active["id"] if active else "",
            **{k: v for k, v in fields.items() if v},
        )
    )


# -- doc --


@main.group()
def doc():
    """Project documents."""


@doc.command("list")
@project_option
def doc_list(project: str | None):
    """List documents."""
    _emit([{"id": d["id"], "title": d["title"], "plan_id": d.get("plan_id", "")} for d in _store(project).list_docs()])


@doc.command("show")
@click.argument("doc_id")
@project_option
def doc_show(doc_id: str, project: str | None):
    """Show a document."""
    row = _store(project).get_doc(doc_id)
    if row is None:
        raise LoopdError(f"doc '{doc_id}' not found", kind="config_invalid")
    _emit(row)


@doc.command("save")
@click.argument("doc_id")
@click.argument("title")
@click.option("--file", "source", type=click.File("r"), default="-", help="Read content from a file (default: stdin).")
@project_option
def doc_save(doc_id: str, title: str, source, project: str | None):
    """Create or replace a document."""
    _emit(_store(project).save_doc(doc_id, title, source.read()))


# -- note --


@main.group()
def note():
    """Supervisor notes shown in a session's next prompt."""


@note.command("add")
@click.argument("text")
@click.option("--session", "session_id", type=int, default=None, help="Target session (default: the calling session).")
@click.option("--author", default="supervisor", show_default=True)
def note_add(text: str, session_id: int | None, author: str):
    """Leave a note for a session."""
    sid = _session_arg(session_id)
    _emit(send_control(sid, "note", {"note": text, "author": author}))


@note.command("list")
@click.option("--session", "session_id", type=int, default=None)
@project_option
def note_list(session_id: int | None, project: str | None):
    """List notes (of one session, or all)."""
    _emit(_store(project).list_notes(session_id))


# -- delegation (in-agent) --


@main.command()
@click.argument("profile")
@click.argument("task")
@click.option("--role", default="", help="Role for the child (default: the delegation node's first role).")
@click.option("--read-only", is_flag=True, help="Share this workdir instead of creating a worktree.")
@click.option("--wait", is_flag=True, help="Block until the child has finished.")
@click.option("--path", "parent_path", multiple=True, help="Delegation node path to spawn under.")
def spawn(profile: str, task: str, role: str, read_only: bool, wait: bool, parent_path: tuple[str, ...]):
    """Delegate TASK to a child session running PROFILE."""
    sid = registry.current_session_id()
    row = send_control(
        sid,
        "spawn",
        {"profile": profile, "task": task, "role": role, "read_only": read_only, "wait": wait, "parent_path": list(parent_path)},
        timeout=None,
    )
    _emit({"ok": True, **row})


@main.command("spawn-status")
@click.argument("spawn_id", type=int, required=False)
def spawn_status(spawn_id: int | None):
    """Spawn records of the calling session."""
    args = {"spawn_id": spawn_id} if spawn_id is not None else {}
    _emit(send_control(registry.current_session_id(), "spawn-status", args))


@main.command("spawn-wait")
@click.argument("spawn_ids", type=int, nargs=-1)
@click.option("--timeout", type=float, default=0, help="Give up after N seconds (0 = wait indefinitely).")
def spawn_wait(spawn_ids: tuple[int, ...], timeout: float):
    """Wait for spawns to finish (default: all running ones)."""
    rows = send_control(
        registry.current_session_id(),
        "spawn-wait",
        {"spawn_ids": list(spawn_ids), "timeout": timeout or None},
        timeout=None,
    )
    _emit(rows)


@main.command("spawn-diff")
@click.argument("spawn_id", type=int)
def spawn_diff(spawn_id: int):
    """Show what a write-capable spawn changed."""
    result = send_control(registry.current_session_id(), "spawn-diff", {"spawn_id": spawn_id})
    click.echo(result["diff"], nl=False)


@main.command("spawn-merge")
@click.argument("spawn_id", type=int)
@click.option("--squash", is_flag=True, help="Squash the child's commits into one.")
def spawn_merge(spawn_id: int, squash: bool):
    """Merge a finished spawn's branch into this workdir."""
    _emit({"ok": True, **send_control(registry.current_session_id(), "spawn-merge", {"spawn_id": spawn_id, "squash": squash}, timeout=None)})


@main.command("spawn-reject")
@click.argument("spawn_id", type=int)
def spawn_reject(spawn_id: int):
    """Discard a finished spawn's worktree and branch."""
    _emit({"ok": True, **send_control(registry.current_session_id(), "spawn-reject", {"spawn_id": spawn_id})})


# -- stats --


def _stats_rows(store: Store, kind: str) -> list[dict[str, Any]]:
    return [{"name": name, **row} for name, row in sorted(store.load_stats(kind).items())]


def _stats_detail(kind: str, name: str, project: str | None) -> None:
    rows = _store(project).load_stats(kind)
    match = next((key for key in rows if key.lower() == name.lower()), None)
    if match is None:
        raise LoopdError(f"no stats for {kind} '{name}'; run 'loopd stats migrate' to rebuild them", kind="config_invalid")
    row = rows[match]
    runs = row["success_count"] + row["failure_count"]
    _emit({"name": match, **row, "success_rate": round(row["success_count"] / runs, 3) if runs else None})


@main.group(invoke_without_command=True)
@project_option
@click.pass_context
def stats(ctx: click.Context, project: str | None):
    """Accumulated profile and loop statistics."""
    if ctx.invoked_subcommand is not None:
        return
    store = _store(project)
    _emit({"profiles": _stats_rows(store, "profile"), "loops": _stats_rows(store, "loop")})


@stats.command("profile")
@click.argument("name")
@project_option
def stats_profile(name: str, project: str | None):
    """Counters for one profile."""
    _stats_detail("profile", name, project)


@stats.command("loop")
@click.argument("name")
@project_option
def stats_loop(name: str, project: str | None):
    """Counters for one loop."""
    _stats_detail("loop", name, project)


@stats.command("migrate")
@project_option
def stats_migrate(project: str | None):
    """Rebuild statistics from the recordings of the project's finished sessions."""
    store = _store(project)
    name = store.load_project()["name"]
    sessions = [
        m for m in registry.list_sessions()
        if m.get("project") == name and m.get("status") in registry.TERMINAL_STATUSES
    ]
    store.reset_stats()
    replayed, skipped = [], []
    for meta in sessions:
        sid = int(meta["id"])
        path = recording_path(sid)
        if not path.exists():
            skipped.append(sid)
            continue
        try:
            updates = replay_session(read_recording(path))
        except RecordingCorrupted as exc:
            log.warning("Skipping session %d: %s", sid, exc)
            skipped.append(sid)
            continue
        for kind, row_name, counters in updates:
            store.record_stats(kind, row_name, **counters)
        replayed.append(sid)
    _emit({"ok": True, "sessions": replayed, "skipped": skipped, "profiles": len(store.load_stats("profile")), "loops": len(store.load_stats("loop"))})


# -- worktree --


@main.group("worktree")
def worktree_group():
    """Child worktrees of the current repository."""


@worktree_group.command("list")
def worktree_list():
    """List child worktrees and the state of their parent session."""
    repo = _repo_or_fail()
    statuses = {int(m["id"]): m.get("status", "") for m in registry.list_sessions()}
    _emit(
        [
            {
                "path": wt.path,
                "branch": wt.branch,
                "head": wt.head,
                "parent_session_id": wt.parent_session_id,
                "child_index": wt.child_index,
                "parent_status": statuses.get(wt.parent_session_id, "unknown"),
            }
            for wt in worktree.list_worktrees(repo)
        ]
    )


@worktree_group.command("cleanup")
@click.option("--all", "remove_all", is_flag=True, help="Also remove worktrees of live sessions.")
def worktree_cleanup(remove_all: bool):
    """Remove worktrees whose parent session has terminated."""
    repo = _repo_or_fail()
    registry.sweep()
    live = {int(m["id"]) for m in registry.list_live()}
    removed = worktree.cleanup_worktrees(repo, live_session_ids=live, remove_all=remove_all)
    _emit({"ok": True, "removed": removed})


def _repo_or_fail() -> str:
    try:
        return worktree.common_repo_root(Path.cwd())
    except RuntimeError as exc:
        raise LoopdError(str(exc), kind="config_invalid") from None


# -- loop control (in-agent) --


@main.command("loop-stop")
@click.option("--reason", default="")
def loop_stop(reason: str):
    """Stop the loop after the current turn (needs stop permission)."""
    _emit({"ok": True, **send_control(registry.current_session_id(), "loop-stop", {"reason": reason})})


@main.command("loop-message")
@click.argument("text")
@click.option("--to-step", type=int, default=None, help="Destination step index (default: the next step).")
def loop_message(text: str, to_step: int | None):
    """Pass a message to a later step; it is placed at the head of that step's prompt."""
    args: dict[str, Any] = {"text": text}
    if to_step is not None:
        args["to_step"] = to_step
    _emit({"ok": True, **send_control(registry.current_session_id(), "loop-message", args)})


@main.command("loop-notify")
@click.argument("title")
@click.argument("message", required=False, default="")
@click.option("--priority", type=click.IntRange(-2, 1), default=0, show_default=True)
def loop_notify(title: str, message: str, priority: int):
    """Send a push notification (needs push permission)."""
    result = send_control(
        registry.current_session_id(), "loop-notify", {"title": title, "message": message, "priority": priority}
    )
    _emit({"ok": True, **result})


# -- config / profile / loop / role --


@main.group()
def config():
    """Global configuration (profiles.yaml)."""


@config.command("validate")
@click.argument("path", required=False, type=click.Path(exists=True, dir_okay=False))
def config_validate(path: str | None):
    """Validate a config file (default: the global one)."""
    cfg = load_config(Path(path) if path else None)
    _emit(
        {
            "ok": True,
            "path": path or str(paths.config_path()),
            "profiles": len(cfg.profiles),
            "loops": len(cfg.loops),
            "roles": len(cfg.roles),
        }
    )


@config.command("show")
def config_show():
    """Print the effective configuration."""
    _emit(config_to_dict(load_config()))


@main.group()
def profile():
    """Agent profiles."""


@profile.command("list")
def profile_list():
    """List profiles."""
    _emit([profile_to_dict(p) for p in load_config().profiles])


@profile.command("add")
@click.argument("name")
@click.option("--agent", "-a", required=True, help="Agent family (claude, codex, gemini, opencode, vibe, generic, ...).")
@click.option("--model", "-m", default="")
@click.option("--effort", type=click.Choice(sorted(VALID_EFFORTS)), default=None)
@click.option("--role", default="")
@click.option("--intelligence", type=int, default=0)
@click.option("--max-instances", type=int, default=0, help="Live session cap for this profile (0 = unlimited).")
@click.option("--speed", type=click.Choice(sorted(VALID_SPEEDS)), default=None)
@click.option("--description", default="")
def profile_add(
    name: str,
    agent: str,
    model: str,
    effort: str | None,
    role: str,
    intelligence: int,
    max_instances: int,
    speed: str | None,
    description: str,
):
    """Add a profile to the global config."""
    cfg = load_config()
    if agent not in family_table(cfg.agents):
        raise ConfigInvalid(f"unknown agent family '{agent}' (known: {', '.join(sorted(family_table(cfg.agents)))})")
    if role:
        cfg.effective_role(role)
    prof = Profile(
        name=name,
        agent=agent,
        model=model,
        reasoning_effort=effort or "",
        role=role,
        intelligence=intelligence,
        description=description,
        max_instances=max_instances,
        speed=speed or "",
    )
    path = save_config(add_profile(cfg, prof))
    _emit({"ok": True, "profile": profile_to_dict(prof), "path": str(path)})


@profile.command("remove")
@click.argument("name")
def profile_remove(name: str):
    """Remove a profile (refused while a live session uses it)."""
    cfg = remove_profile(load_config(), name, registry.list_live())
    _emit({"ok": True, "removed": name, "path": str(save_config(cfg))})


@main.group("loop")
def loop_group():
    """Loop definitions."""


@loop_group.command("list")
def loop_list():
    """List loops."""
    _emit([loop_to_dict(lp) for lp in load_config().loops])


@loop_group.command("remove")
@click.argument("name")
def loop_remove(name: str):
    """Remove a loop (refused while a live session runs it)."""
    cfg = remove_loop(load_config(), name, registry.list_live())
    _emit({"ok": True, "removed": name, "path": str(save_config(cfg))})


@main.group()
def role():
    """Roles used in prompt composition."""


@role.command("list")
def role_list():
    """List roles (built-in and configured)."""
    cfg: GlobalConfig = load_config()
    _emit(
        [
            {
                "name": r.name,
                "title": r.title,
                "can_write_code": r.can_write_code,
                "rule_ids": list(r.rule_ids),
                "default": r.name.lower() == cfg.default_role.lower(),
            }
            for r in cfg.roles
        ]
    )


# -- mcp --


@main.group()
def mcp():
    """MCP server exposing the in-agent surface."""


@mcp.command("serve")
def mcp_serve():
    """Serve loopd tools over stdio."""
    from loopd.mcp_server import run as run_server

    run_server()
