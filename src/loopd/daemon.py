"""Session daemon: one detached process per session.

The daemon owns the session's loop engine, recording and unix socket.
Viewers connect to the socket, send ``HELLO`` and get the recorded history
followed by the live tail; control connections send ``CONTROL`` frames
(cancel, note, spawn, loop-stop, ...) and get an ``ACK`` back.  Closing
every viewer leaves the session running in the ``detached`` state.

:func:`start_session` is the launcher used by the CLI and by the delegation
manager: it allocates an id, writes ``starting`` metadata and a launch
file, forks ``python -m loopd.daemon --session <id>`` into its own process
group and waits for the socket to appear.

Run directly::

    python -m loopd.daemon --session 12
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any

import click

from loopd import events, paths, protocol, registry, worktree
from loopd.broadcast import Broadcaster
from loopd.config import GlobalConfig, LoopDef, load_config, loop_from_dict, loop_to_dict, resolve_steps
from loopd.delegation import DelegationManager
from loopd.errors import LoopdError, SessionNotFound
from loopd.loop import LoopEngine, Outcome
from loopd.recorder import Recorder
from loopd.store import Store, find_project_for_path, open_project, read_json, write_json_atomic

log = logging.getLogger(__name__)

LAUNCH_TIMEOUT = 10.0
VIEWER_DRAIN_TIMEOUT = 5.0


# -- Log records into the recording --------------------------------------


class RecordingLogHandler(logging.Handler):
    """Copy WARNING-and-above records into the session recording as ``log`` events."""

    def __init__(self, broadcaster: Broadcaster, level: int = logging.WARNING) -> None:
        super().__init__(level)
        self._bus = broadcaster
        self._emitting = False

    def emit(self, record: logging.LogRecord) -> None:
        if self._emitting or self._bus.closed:
            return
        self._emitting = True
        try:
            payload = {"level": record.levelname, "logger": record.name, "message": record.getMessage()}
            if record.exc_info:
                payload["exc"] = logging.Formatter().formatException(record.exc_info)
            self._bus.publish("log", payload)
        except Exception:
            self.handleError(record)
        finally:
            self._emitting = False


# -- Connections -----------------------------------------------------------


class _Viewer:
    """State for one socket connection (viewer or control-only)."""

    __slots__ = ("reader", "writer", "pusher", "tasks", "addr")

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.pusher: asyncio.Task[None] | None = None
        self.tasks: set[asyncio.Task[None]] = set()
        self.addr = writer.get_extra_info("peername") or "local"

    @property
    def viewing(self) -> bool:
        return self.pusher is not None and not self.pusher.done()

    def send(self, frame: dict) -> None:
        if self.writer.is_closing():
            return
        try:
            self.writer.write(protocol.encode(frame))
        except (ConnectionError, RuntimeError) as exc:
            log.debug("Failed to write to %s: %s", self.addr, exc)

    def close(self) -> None:
        self.writer.close()


# -- Daemon ----------------------------------------------------------------


class SessionDaemon:
    """Runs one session: engine, delegation, recording and socket."""

    def __init__(
        self,
        session_id: int,
        launch: dict[str, Any],
        cfg: GlobalConfig,
        *,
        keep_worktrees: bool = False,
        launcher: Any = None,
    ) -> None:
        self.session_id = session_id
        self.cfg = cfg
        self.keep_worktrees = keep_worktrees
        self.loop_def: LoopDef = loop_from_dict(launch["loop"], cfg.default_role)
        self.profiles = resolve_steps(cfg, self.loop_def)
        self.workdir = str(launch.get("workdir") or os.getcwd())
        self.read_only = bool(launch.get("read_only"))
        self.max_cycles = int(launch.get("max_cycles") or 0)
        self.parent_session_id = int(launch.get("parent_session_id") or 0)
        self.project_name = str(launch.get("project") or "")
        self.plan_id = str(launch.get("plan_id") or "")
        self._launcher = launcher or start_session
        self._socket_path = paths.session_socket_path(session_id)
        self._server: asyncio.AbstractServer | None = None
        self._viewers: set[_Viewer] = set()
        self._status = "starting"
        self._turn_started = False
        self._log_handler: RecordingLogHandler | None = None
        self._forwarder: asyncio.Task[None] | None = None
        self.store: Store | None = None
        self.recorder: Recorder | None = None
        self.bus: Broadcaster | None = None
        self.engine: LoopEngine | None = None
        self.delegation: DelegationManager | None = None
        self._verbs = {
            "status": self._verb_status,
            "cancel": self._verb_cancel,
            "note": self._verb_note,
            "detach": self._verb_detach,
            "spawn": self._verb_spawn,
            "spawn-status": self._verb_spawn_status,
            "spawn-wait": self._verb_spawn_wait,
            "spawn-diff": self._verb_spawn_diff,
            "spawn-merge": self._verb_spawn_merge,
            "spawn-reject": self._verb_spawn_reject,
            "loop-stop": self._verb_loop_stop,
            "loop-message": self._verb_loop_message,
            "loop-notify": self._verb_loop_notify,
        }

    # -- Boot ---------------------------------------------------------------

    def _open_store(self) -> Store | None:
        try:
            if self.project_name:
                return open_project(self.project_name)
            return find_project_for_path(self.workdir)
        except LoopdError as exc:
            log.warning("Session %d runs without a project store: %s", self.session_id, exc)
            return None

    def _collect_worktrees(self, crashed: list[dict[str, Any]]) -> None:
        for meta in crashed:
            repo = meta.get("repo_path")
            if not repo or not Path(repo).is_dir():
                continue
            try:
                owned = [w for w in worktree.list_worktrees(repo) if w.parent_session_id == int(meta["id"])]
            except RuntimeError as exc:
                log.warning("Cannot list worktrees of %s: %s", repo, exc)
                continue
            for wt in owned:
                log.info("Removing worktree %s of crashed session %s", wt.path, meta["id"])
                worktree.remove_worktree(repo, wt.path, wt.branch)

    async def start(self) -> None:
        """Sweep the registry, open the recording and listen on the session socket."""
        registry.update(self.session_id, pid=os.getpid())
        crashed = await asyncio.to_thread(registry.sweep)
        if crashed and not self.keep_worktrees:
            await asyncio.to_thread(self._collect_worktrees, crashed)

        self.recorder = Recorder.for_session(self.session_id)
        self.bus = Broadcaster(self.recorder, self.cfg.runtime.ring_size)
        self._log_handler = RecordingLogHandler(self.bus)
        logging.getLogger("loopd").addHandler(self._log_handler)
        events.configure(self.cfg.events_redis_url)

        self.store = self._open_store()
        if self.store is not None:
            self.project_name = self.project_name or self.store.load_project()["name"]
            if not self.plan_id:
                plan = self.store.active_plan()
                self.plan_id = plan["id"] if plan else ""
        extra_env = {"LOOPD_PARENT_SESSION_ID": str(self.parent_session_id)} if self.parent_session_id else {}
        self.engine = LoopEngine(
            self.session_id,
            self.loop_def,
            self.profiles,
            self.cfg,
            self.bus,
            store=self.store,
            workdir=self.workdir,
            project_name=self.project_name,
            plan_id=self.plan_id,
            max_cycles=self.max_cycles,
            read_only=self.read_only,
            extra_env=extra_env,
            on_turn_start=self._on_turn_start,
        )
        self.delegation = DelegationManager(
            self.session_id,
            self.cfg,
            self.store,
            self.bus,
            self.engine,
            workdir=self.workdir,
            profile_name=self.profiles[0].name,
            launcher=self._launcher,
            project_name=self.project_name,
            plan_id=self.plan_id,
        )

        try:
            self._socket_path.parent.mkdir(parents=True, exist_ok=True)
            if self._socket_path.exists():
                self._socket_path.unlink()
            self._server = await asyncio.start_unix_server(
                self._handle_client, path=str(self._socket_path), limit=protocol.MAX_FRAME_BYTES
            )
            self._socket_path.chmod(0o600)
            paths.session_pid_path(self.session_id).write_text(str(os.getpid()))
        except OSError as exc:
            log.error("Session %d: cannot listen on %s: %s", self.session_id, self._socket_path, exc)
            registry.retire(self.session_id, "crashed", exit_kind="socket_unavailable", error=str(exc))
            raise LoopdError(f"cannot create session socket: {exc}", kind="socket_unavailable") from exc

        self.bus.publish(
            "session_start",
            {
                "session_id": self.session_id,
                "loop": self.loop_def.name,
                "profiles": [p.name for p in self.profiles],
                "workdir": self.workdir,
                "parent_session_id": self.parent_session_id,
                "read_only": self.read_only,
                "protocol_version": protocol.PROTOCOL_VERSION,
            },
        )
        log.info("Session %d listening on %s", self.session_id, self._socket_path)
        if events.redis_url():
            self._forwarder = asyncio.create_task(self._forward_telemetry(self.bus.last_cursor))

    # -- Status --------------------------------------------------------------

    def _telemetry(self, kind: str, status: str = "", *, turn_id: str = "", extra: dict[str, Any] | None = None) -> None:
        asyncio.get_running_loop().run_in_executor(
            None,
            functools.partial(
                events.publish_event,
                kind,
                self.session_id,
                status,
                project=self.project_name,
                turn_id=turn_id,
                extra=extra or None,
            ),
        )

    async def _forward_telemetry(self, since_cursor: int) -> None:
        """Mirror turn and spawn events from the recording onto the telemetry stream."""
        assert self.bus is not None
        async for ev in self.bus.subscribe(since_cursor):
            if ev.kind not in events.FORWARDED_KINDS or not isinstance(ev.payload, dict):
                continue
            extra = {k: v for k, v in ev.payload.items() if k not in ("kind", "turn_id")}
            extra["cursor"] = ev.cursor
            self._telemetry(ev.kind, self._status, turn_id=str(ev.payload.get("turn_id", "")), extra=extra)

    def _set_status(self, status: str) -> None:
        if status == self._status:
            return
        self._status = status
        registry.update(self.session_id, status=status)
        if self.bus is not None:
            self.bus.publish("session_status", {"status": status})
        self._telemetry("session_status", status)
        log.info("Session %d is %s", self.session_id, status)

    def _on_turn_start(self) -> None:
        if self._turn_started:
            return
        self._turn_started = True
        self._set_status("running" if self._viewer_count() else "detached")

    def _viewer_count(self) -> int:
        return sum(1 for v in self._viewers if v.viewing)

    def _viewers_changed(self) -> None:
        if not self._turn_started or self._status not in ("running", "detached"):
            return
        self._set_status("running" if self._viewer_count() else "detached")

    # -- Connections ---------------------------------------------------------

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = _Viewer(reader, writer)
        self._viewers.add(conn)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    log.warning("Frame from %s exceeds %d bytes, closing", conn.addr, protocol.MAX_FRAME_BYTES)
                    break
                if not line:
                    break
                frame = protocol.decode(line)
                if frame is None:
                    log.debug("Ignoring malformed frame from %s", conn.addr)
                    continue
                kind = frame["type"]
                if kind == "HELLO":
                    if not await self._check_version(conn, frame.get("version")):
                        break
                    self._subscribe(conn, int(frame.get("since_cursor") or 0))
                elif kind == "CONTROL":
                    task = asyncio.create_task(self._serve_control(conn, frame))
                    conn.tasks.add(task)
                    task.add_done_callback(conn.tasks.discard)
                elif kind == "BYE":
                    break
        except ConnectionResetError:
            log.debug("Connection reset by %s", conn.addr)
        finally:
            await self._disconnect(conn)

    async def _check_version(self, conn: _Viewer, version: Any) -> bool:
        if version == protocol.PROTOCOL_VERSION:
            return True
        log.warning("Viewer %s speaks protocol %r, expected %d", conn.addr, version, protocol.PROTOCOL_VERSION)
        err = f"protocol version {version!r} not supported (daemon speaks {protocol.PROTOCOL_VERSION})"
        conn.send(protocol.ack(0, "hello", ok=False, err=err, kind="socket_unavailable"))
        with contextlib.suppress(ConnectionError, BrokenPipeError):
            await conn.writer.drain()
        return False

    def _subscribe(self, conn: _Viewer, since_cursor: int) -> None:
        if conn.viewing:
            return
        conn.pusher = asyncio.create_task(self._push_events(conn, since_cursor))
        log.info("Viewer attached from cursor %d (viewers: %d)", since_cursor, self._viewer_count())
        self._viewers_changed()

    async def _push_events(self, conn: _Viewer, since_cursor: int) -> None:
        assert self.bus is not None
        try:
            async for ev in self.bus.subscribe(since_cursor):
                conn.send(ev.frame())
                await conn.writer.drain()
            conn.send(protocol.bye("session_end"))
            await conn.writer.drain()
        except (ConnectionError, BrokenPipeError) as exc:
            log.debug("Viewer %s went away: %s", conn.addr, exc)

    async def _disconnect(self, conn: _Viewer) -> None:
        self._viewers.discard(conn)
        if conn.pusher is not None and not conn.pusher.done():
            conn.pusher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await conn.pusher
        conn.close()
        log.info("Connection closed: %s (viewers: %d)", conn.addr, self._viewer_count())
        self._viewers_changed()

    # -- Control -------------------------------------------------------------

    async def _serve_control(self, conn: _Viewer, frame: dict[str, Any]) -> None:
        req_id = frame.get("id", 0)
        verb = str(frame.get("verb", ""))
        args = frame.get("args") or {}
        handler = self._verbs.get(verb)
        try:
            if handler is None:
                raise LoopdError(f"unknown control verb '{verb}'", kind="internal")
            if not isinstance(args, dict):
                raise LoopdError("control args must be an object", kind="config_invalid")
            reply = protocol.ack(req_id, verb, result=await handler(args))
        except LoopdError as exc:
            reply = protocol.ack(req_id, verb, ok=False, err=str(exc), kind=exc.kind)
        except Exception as exc:
            log.exception("Control %s failed", verb)
            reply = protocol.ack(req_id, verb, ok=False, err=f"internal error: {exc}", kind="internal")
        conn.send(reply)
        with contextlib.suppress(ConnectionError, BrokenPipeError):
            await conn.writer.drain()

    @staticmethod
    def _arg(args: dict[str, Any], name: str, typ: type = str, default: Any = None) -> Any:
        value = args.get(name, default)
        if value is None:
            raise LoopdError(f"missing argument '{name}'", kind="config_invalid")
        if typ is int and isinstance(value, str) and value.lstrip("-").isdigit():
            value = int(value)
        if not isinstance(value, typ) or (typ is int and isinstance(value, bool)):
            raise LoopdError(f"argument '{name}' must be {typ.__name__}", kind="config_invalid")
        return value

    async def _verb_status(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.engine and self.delegation and self.bus
        spawns = self.delegation.status() if self.store is not None else []
        return {
            "session": registry.lookup(self.session_id),
            "position": self.engine.position(),
            "viewers": self._viewer_count(),
            "last_cursor": self.bus.last_cursor,
            "spawns": spawns,
        }

    async def _verb_cancel(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.engine and self.delegation
        self.engine.cancel()
        await self.delegation.cancel_all()
        return {"cancelling": True}

    async def _verb_note(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.bus
        if self.store is None:
            raise LoopdError("this session has no project store", kind="config_invalid")
        note = self._arg(args, "note")
        row = self.store.add_note(self.session_id, note, author=str(args.get("author") or "supervisor"))
        self.bus.publish("note", {"note_id": row["id"], "author": row["author"], "note": note})
        return dict(row)

    async def _verb_detach(self, args: dict[str, Any]) -> dict[str, Any]:
        viewers = [v for v in self._viewers if v.viewing]
        for viewer in viewers:
            viewer.send(protocol.bye("detach"))
            with contextlib.suppress(ConnectionError, BrokenPipeError):
                await viewer.writer.drain()
            viewer.close()
        return {"detached": len(viewers)}

    async def _verb_spawn(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.delegation
        row = await self.delegation.spawn(
            self._arg(args, "profile"),
            self._arg(args, "task"),
            role=str(args.get("role") or ""),
            read_only=bool(args.get("read_only")),
            wait=bool(args.get("wait")),
            parent_path=[str(p) for p in args.get("parent_path") or []],
        )
        return dict(row)

    async def _verb_spawn_status(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        assert self.delegation
        spawn_id = args.get("spawn_id")
        return [dict(r) for r in self.delegation.status(int(spawn_id) if spawn_id is not None else None)]

    async def _verb_spawn_wait(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        assert self.delegation
        ids = [int(i) for i in args.get("spawn_ids") or []]
        timeout = args.get("timeout")
        rows = await self.delegation.wait(ids, timeout=float(timeout) if timeout else None)
        return [dict(r) for r in rows]

    async def _verb_spawn_diff(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.delegation
        spawn_id = self._arg(args, "spawn_id", int)
        return {"spawn_id": spawn_id, "diff": await self.delegation.diff(spawn_id)}

    async def _verb_spawn_merge(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.delegation
        row = await self.delegation.merge(self._arg(args, "spawn_id", int), squash=bool(args.get("squash")))
        return dict(row)

    async def _verb_spawn_reject(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.delegation
        return dict(await self.delegation.reject(self._arg(args, "spawn_id", int)))

    async def _verb_loop_stop(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.engine
        return self.engine.request_stop(str(args.get("reason") or ""))

    async def _verb_loop_message(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.engine
        to_step = args.get("to_step")
        return self.engine.post_message(self._arg(args, "text"), int(to_step) if to_step is not None else None)

    async def _verb_loop_notify(self, args: dict[str, Any]) -> dict[str, Any]:
        assert self.engine
        return await self.engine.notify(
            self._arg(args, "title"),
            str(args.get("message") or ""),
            int(args.get("priority") or 0),
        )

    # -- Run / shutdown ------------------------------------------------------

    async def run(self) -> int:
        """Run the loop to completion, then retire the session.  Returns the process exit code."""
        assert self.engine and self.delegation and self.bus and self.recorder
        status, exit_kind, error = "crashed", "internal", ""
        outcome: Outcome | None = None
        try:
            outcome = await self.engine.run()
            status = "crashed" if outcome.kind == "fatal_agent_failures" else "stopped"
            exit_kind, error = outcome.kind, outcome.error
        except LoopdError as exc:
            log.error("Session %d failed: %s", self.session_id, exc)
            exit_kind, error = exc.kind, str(exc)
        except OSError as exc:
            log.error("Session %d: recording I/O failed: %s", self.session_id, exc)
            exit_kind, error = "recording_corrupted", str(exc)
        finally:
            await self.delegation.shutdown(self.cfg.runtime.cancel_grace + VIEWER_DRAIN_TIMEOUT)
            await self._finish(status, exit_kind, error, outcome)
        return 0 if status == "stopped" else 1

    async def _finish(self, status: str, exit_kind: str, error: str, outcome: Outcome | None) -> None:
        assert self.bus and self.recorder
        self._status = status
        summary = {
            "status": status,
            "outcome": exit_kind,
            "error": error,
            "cycles": outcome.cycles if outcome else 0,
            "turns": outcome.turns if outcome else 0,
        }
        try:
            self.bus.publish("session_end", summary)
        except OSError as exc:
            log.error("Session %d: could not record session_end: %s", self.session_id, exc)
        if self._log_handler is not None:
            logging.getLogger("loopd").removeHandler(self._log_handler)
        self.bus.close()
        if self._forwarder is not None:
            await asyncio.wait({self._forwarder}, timeout=VIEWER_DRAIN_TIMEOUT)
            self._forwarder.cancel()
        pushers = [v.pusher for v in self._viewers if v.pusher is not None and not v.pusher.done()]
        if pushers:
            await asyncio.wait(pushers, timeout=VIEWER_DRAIN_TIMEOUT)
        await self.stop()
        registry.retire(self.session_id, status, exit_kind=exit_kind, error=error, cycles=summary["cycles"], turns=summary["turns"])
        self._telemetry("session_end", status, extra={"exit_kind": exit_kind})
        self.recorder.close()
        log.info("Session %d %s (%s)", self.session_id, status, exit_kind)

    async def stop(self) -> None:
        """Close every connection and the listening socket."""
        for conn in list(self._viewers):
            conn.send(protocol.bye("session_end"))
            conn.close()
        self._viewers.clear()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        for path in (self._socket_path, paths.session_pid_path(self.session_id)):
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

    async def serve(self) -> int:
        """Run until the loop ends; SIGTERM/SIGINT cancel the session cooperatively."""
        assert self.engine is not None
        engine = self.engine

        def on_signal() -> None:
            log.info("Signal received, cancelling session %d", self.session_id)
            engine.cancel()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
        return await self.run()


# -- Launcher --------------------------------------------------------------


def start_session(
    cfg: GlobalConfig,
    loop: LoopDef,
    *,
    workdir: str | Path,
    project: str = "",
    plan_id: str = "",
    parent_session_id: int = 0,
    child_index: int = 0,
    spawn_id: int = 0,
    read_only: bool = False,
    max_cycles: int = 0,
    keep_worktrees: bool = False,
    timeout: float = LAUNCH_TIMEOUT,
) -> int:
    """Start a detached daemon for *loop* and return its session id once the socket is up."""
    profiles = resolve_steps(cfg, loop)
    workdir = str(Path(workdir).resolve())
    try:
        repo = worktree.common_repo_root(workdir)
    except RuntimeError:
        repo = ""

    session_id = registry.allocate_id()
    registry.publish(
        {
            "id": session_id,
            "pid": 0,
            "socket_path": str(paths.session_socket_path(session_id)),
            "status": "starting",
            "started": registry.utcnow(),
            "ended": "",
            "project": project,
            "workdir": workdir,
            "repo_path": repo,
            "plan_id": plan_id,
            "profile": profiles[0].name,
            "profiles": sorted({p.name for p in profiles}),
            "roles": sorted({s.role or p.role or cfg.default_role for s, p in zip(loop.steps, profiles, strict=True)}),
            "agent": profiles[0].agent,
            "loop_name": loop.name,
            "step_count": len(loop.steps),
            "read_only": read_only,
            "parent_session_id": parent_session_id,
            "child_index": child_index,
            "spawn_id": spawn_id,
            "exit_kind": "",
        }
    )
    write_json_atomic(
        paths.session_launch_path(session_id),
        {
            "loop": loop_to_dict(loop),
            "workdir": workdir,
            "project": project,
            "plan_id": plan_id,
            "read_only": read_only,
            "max_cycles": max_cycles,
            "parent_session_id": parent_session_id,
        },
    )

    log_path = paths.daemon_log_path(session_id)
    log_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    cmd = [sys.executable, "-m", "loopd.daemon", "--session", str(session_id)]
    if keep_worktrees:
        cmd.append("--keep-worktrees")
    log_fh = open(log_path, "a")  # noqa: SIM115
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=workdir,
            stdin=subprocess.DEVNULL,
            stdout=log_fh,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as exc:
        registry.retire(session_id, "crashed", exit_kind="internal", error=str(exc))
        raise LoopdError(f"cannot start session daemon: {exc}", kind="internal") from exc
    finally:
        log_fh.close()  # child keeps its own copy

    socket_path = paths.session_socket_path(session_id)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if socket_path.exists():
            log.info("Started session %d (pid %d) for %s", session_id, proc.pid, loop.name)
            return session_id
        if proc.poll() is not None:
            break
        time.sleep(0.05)

    if proc.poll() is None:
        proc.terminate()
    with contextlib.suppress(SessionNotFound):
        if registry.lookup(session_id).get("status") not in registry.TERMINAL_STATUSES:
            registry.retire(session_id, "crashed", exit_kind="socket_unavailable", error="daemon did not come up")
    raise LoopdError(f"session {session_id} failed to start; see {log_path}", kind="socket_unavailable")


# -- Entry point -----------------------------------------------------------


async def _main(session_id: int, keep_worktrees: bool) -> int:
    try:
        cfg = load_config()
        launch = read_json(paths.session_launch_path(session_id))
        if not isinstance(launch, dict):
            raise LoopdError(f"launch file for session {session_id} is missing", kind="internal")
        daemon = SessionDaemon(session_id, launch, cfg, keep_worktrees=keep_worktrees)
        await daemon.start()
    except LoopdError as exc:
        log.error("Session %d failed to start: %s", session_id, exc)
        with contextlib.suppress(SessionNotFound):
            if registry.lookup(session_id).get("status") not in registry.TERMINAL_STATUSES:
                registry.retire(session_id, "crashed", exit_kind=exc.kind, error=str(exc))
        return exc.exit_code
    return await daemon.serve()


@click.command()
@click.option("--session", "session_id", type=int, required=True, help="Session id allocated by the launcher.")
@click.option("--keep-worktrees", is_flag=True, help="Keep worktrees of crashed sessions found at boot.")
def main(session_id: int, keep_worktrees: bool) -> None:
    """Run the daemon for one session (normally started by the launcher)."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(asyncio.run(_main(session_id, keep_worktrees)))


if __name__ == "__main__":
    main()
