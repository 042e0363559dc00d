"""Delegation manager: spawn, monitor, merge and reject child sessions.

A running agent asks its session daemon to spawn a child through the
in-agent CLI.  The manager authorizes the request against the current
step's delegation tree, waits for capacity (``max_instances`` of the node or
profile across all live sessions, plus ``max_parallel`` of the delegation
block the node sits in and of the step itself), gives
write-capable children their own git worktree, and starts the child as a new
session running a one-turn loop whose instructions are the task.

Acceptances are serialized per parent.  The capacity check and the child
launch happen under a cross-process lock, so two parents cannot both see
the last free slot.  Each started child gets a monitor task that follows
its event stream and records the outcome in the spawn record.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable
from pathlib import Path
from typing import Any

from loopd import paths, registry, worktree
from loopd.broadcast import Broadcaster, Event
from loopd.client import AttachClient, control_once
from loopd.config import Delegation, DelegationNode, GlobalConfig, LoopDef, LoopStep, Profile
from loopd.errors import Cancelled, LoopdError, SessionNotFound, SpawnDenied, SpawnQueueTimeout, WorktreeBusy
from loopd.loop import LoopEngine
from loopd.recorder import read_recording, recording_path
from loopd.store import SPAWN_TERMINAL_STATUSES, SpawnRow, Store, file_lock

log = logging.getLogger(__name__)

RESULT_TAIL_CHARS = 4000
_RECHECK_INTERVAL = 0.5
_REATTACH_INTERVAL = 0.5

Launcher = Callable[..., int]


def _match(nodes: list[DelegationNode], profile: str) -> DelegationNode | None:
    key = profile.strip().lower()
    return next((n for n in nodes if n.profile.lower() == key), None)


class _ChildResult:
    """What a monitor learns from a child's event stream."""

    def __init__(self) -> None:
        self.tail: deque[str] = deque()
        self.tail_len = 0
        self.exit_code: int | None = None
        self.status = ""
        self.outcome = ""
        self.ended = False

    def observe(self, kind: str, payload: Any) -> None:
        if kind == "stdout" and isinstance(payload, str):
            self.tail.append(payload)
            self.tail_len += len(payload)
            while self.tail_len > RESULT_TAIL_CHARS and len(self.tail) > 1:
                self.tail_len -= len(self.tail.popleft())
        elif kind == "turn_end" and isinstance(payload, dict):
            self.exit_code = int(payload.get("exit_code", -1))
        elif kind == "session_end" and isinstance(payload, dict):
            self.status = str(payload.get("status", ""))
            self.outcome = str(payload.get("outcome", ""))
            self.ended = True

    @property
    def text(self) -> str:
        return "".join(self.tail)[-RESULT_TAIL_CHARS:]

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.status == "stopped" and self.outcome != "cancelled"


class DelegationManager:
    def __init__(
        self,
        session_id: int,
        cfg: GlobalConfig,
        store: Store | None,
        broadcaster: Broadcaster,
        engine: LoopEngine,
        *,
        workdir: str,
        profile_name: str,
        launcher: Launcher,
        project_name: str = "",
        plan_id: str = "",
    ) -> None:
        self.session_id = session_id
        self.cfg = cfg
        self.store = store
        self.engine = engine
        self.workdir = workdir
        self.profile_name = profile_name
        self.project_name = project_name
        self.plan_id = plan_id
        self._bus = broadcaster
        self._launcher = launcher
        self._accept_lock = asyncio.Lock()
        self._merge_lock = asyncio.Lock()
        self._slot_freed = asyncio.Event()
        self._cancel_generation = 0
        self._running: dict[int, int] = {}  # spawn id -> child session id
        self._scope_of: dict[int, Delegation] = {}  # spawn id -> delegation block it was spawned under
        self._done: dict[int, asyncio.Event] = {}
        self._monitors: dict[int, asyncio.Task[None]] = {}
        self._next_index = 0

    # -- Helpers --

    def _require_store(self) -> Store:
        if self.store is None:
            raise LoopdError("this session has no project; spawns need a registered project", kind="config_invalid")
        return self.store

    def _own(self, spawn_id: int) -> SpawnRow:
        row = self._require_store().get_spawn(spawn_id)
        if row is None or row["parent_session_id"] != self.session_id:
            raise LoopdError(f"spawn #{spawn_id} does not belong to session {self.session_id}", kind="config_invalid")
        return row

    def _repo(self) -> str:
        try:
            return worktree.common_repo_root(self.workdir)
        except RuntimeError as exc:
            raise SpawnDenied(f"{self.workdir} is not a git repository ({exc}); spawn read-only instead") from None

    def _allocate_index(self, store: Store) -> int:
        if not self._next_index:
            existing = [r["child_index"] for r in store.list_spawns(self.session_id)]
            self._next_index = max(existing, default=0)
        self._next_index += 1
        return self._next_index

    # -- Authorization --

    def authorize(self, profile: str, role: str = "", parent_path: list[str] | None = None) -> tuple[Profile, DelegationNode, str, Delegation]:
        """Find the delegation node for *profile*; raises SpawnDenied with the reason."""
        if self.engine.cancelling:
            raise SpawnDenied(f"session {self.session_id} is cancelling")
        step = self.engine.current_step
        delegation = step.delegation
        if delegation is None or not delegation.profiles:
            raise SpawnDenied(f"step {self.engine.step_index} ({step.profile}) has no delegation tree")
        scope = delegation
        for hop in parent_path or []:
            node = _match(scope.profiles, hop)
            if node is None:
                raise SpawnDenied(f"delegation path element '{hop}' is not in the tree")
            scope = node.delegation or Delegation()
        node = _match(scope.profiles, profile)
        if node is None:
            allowed = ", ".join(n.profile for n in scope.profiles) or "none"
            raise SpawnDenied(f"profile '{profile}' may not be spawned here (allowed: {allowed})")
        prof = self.cfg.find_profile(node.profile)
        if prof is None:
            raise SpawnDenied(f"profile '{node.profile}' is not defined")
        chosen = role.strip() or (node.roles[0] if node.roles else self.cfg.default_role)
        if chosen.lower() not in {r.lower() for r in node.roles or [self.cfg.default_role]}:
            raise SpawnDenied(f"role '{chosen}' is not allowed for '{node.profile}' (allowed: {', '.join(node.roles)})")
        return prof, node, chosen, scope

    # -- Spawning --

    async def spawn(
        self,
        profile: str,
        task: str,
        *,
        role: str = "",
        read_only: bool = False,
        wait: bool = False,
        parent_path: list[str] | None = None,
    ) -> SpawnRow:
        """Start a child session; with *wait*, return only once it has finished."""
        if not task.strip():
            raise LoopdError("spawn needs a task", kind="config_invalid")
        store = self._require_store()
        async with self._accept_lock:
            prof, node, role_name, delegation = self.authorize(profile, role, parent_path)
            if not self.cfg.effective_role(role_name).can_write_code:
                read_only = True
            generation = self._cancel_generation
            row = store.create_spawn(
                parent_session_id=self.session_id,
                parent_profile=self.profile_name,
                child_profile=prof.name,
                role=role_name,
                task=task,
                read_only=read_only,
            )
            self._bus.publish(
                "spawn_requested",
                {"spawn_id": row["id"], "profile": prof.name, "role": role_name, "read_only": read_only},
            )
            try:
                row = await self._start_when_free(row, prof, node, delegation, generation)
            except LoopdError as exc:
                store.update_spawn(row["id"], status="failed", result=f"{exc.kind}: {exc}")
                self._bus.publish("spawn_failed", {"spawn_id": row["id"], "error_kind": exc.kind, "error": str(exc)})
                raise
        self._bus.publish(
            "spawn_started",
            {
                "spawn_id": row["id"],
                "child_session_id": row["child_session_id"],
                "profile": prof.name,
                "worktree": row["worktree_path"],
                "branch": row["branch"],
            },
        )
        if wait:
            return (await self.wait([row["id"]]))[0]
        return row

    async def _start_when_free(
        self,
        row: SpawnRow,
        prof: Profile,
        node: DelegationNode,
        delegation: Delegation,
        generation: int,
    ) -> SpawnRow:
        timeout = self.cfg.runtime.spawn_queue_timeout
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            if self.engine.cancelling or generation != self._cancel_generation:
                raise Cancelled(f"spawn #{row['id']} dropped: session {self.session_id} is cancelling")
            self._slot_freed.clear()
            started = await asyncio.to_thread(self._try_start, row, prof, node, delegation)
            if started is not None:
                break
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                raise SpawnQueueTimeout(
                    f"no free slot for profile '{prof.name}' within {timeout:.0f}s "
                    f"(max_instances={node.max_instances or prof.max_instances or 'unlimited'}, max_parallel={delegation.max_parallel})"
                )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._slot_freed.wait(), timeout=min(_RECHECK_INTERVAL, remaining))
        spawn_id = started["id"]
        self._running[spawn_id] = started["child_session_id"]
        self._scope_of[spawn_id] = delegation
        self._done[spawn_id] = asyncio.Event()
        self._monitors[spawn_id] = asyncio.create_task(self._monitor(started))
        return started

    def _has_capacity(self, prof: Profile, node: DelegationNode, scope: Delegation) -> bool:
        limit = node.max_instances or prof.max_instances
        if limit and registry.count_live(prof.name, exclude=self.session_id) >= limit:
            return False
        root = self.engine.current_step.delegation
        if root is not None and root is not scope and len(self._running) >= max(root.max_parallel, 1):
            return False
        in_scope = sum(1 for s in self._scope_of.values() if s is scope)
        return in_scope < max(scope.max_parallel, 1)

    def _try_start(self, row: SpawnRow, prof: Profile, node: DelegationNode, delegation: Delegation) -> SpawnRow | None:
        """Launch the child if there is capacity.  Runs in a worker thread."""
        store = self._require_store()
        with file_lock(paths.sessions_dir() / "spawn.lock"):
            if not self._has_capacity(prof, node, delegation):
                return None
            index = self._allocate_index(store)
            branch = path = ""
            repo = ""
            if not row["read_only"]:
                repo = self._repo()
                try:
                    base = worktree.head_sha(self.workdir)
                    branch, path = worktree.create_worktree(repo, self.session_id, index, prof.name, base)
                except RuntimeError as exc:
                    raise LoopdError(f"cannot create worktree for spawn #{row['id']}: {exc}", kind="internal") from None
            child_loop = LoopDef(
                name=f"spawn-{row['id']}",
                steps=[
                    LoopStep(
                        profile=prof.name,
                        role=row["role"],
                        turns=1,
                        instructions=row["task"],
                        delegation=node.delegation if node.children else None,
                    )
                ],
            )
            try:
                child_id = self._launcher(
                    self.cfg,
                    child_loop,
                    workdir=path or self.workdir,
                    project=self.project_name,
                    plan_id=self.plan_id,
                    parent_session_id=self.session_id,
                    child_index=index,
                    spawn_id=row["id"],
                    read_only=row["read_only"],
                    max_cycles=1,
                )
            except LoopdError:
                if path:
                    worktree.remove_worktree(repo, path, branch)
                raise
            log.info("Spawn #%d: started session %d (%s) in %s", row["id"], child_id, prof.name, path or self.workdir)
            return store.update_spawn(
                row["id"],
                status="running",
                child_session_id=child_id,
                child_index=index,
                branch=branch,
                worktree_path=path,
            )

    # -- Monitoring --

    async def _follow(self, child_id: int) -> _ChildResult:
        result = _ChildResult()
        client = AttachClient(child_id)
        while not result.ended:
            try:
                await client.start()
            except LoopdError:
                try:
                    meta = registry.lookup(child_id)
                except SessionNotFound:
                    break
                if meta.get("status") in registry.TERMINAL_STATUSES or not registry.pid_alive(int(meta.get("pid") or 0)):
                    break
                await asyncio.sleep(_REATTACH_INTERVAL)
                continue
            try:
                async for ev in client.events():
                    result.observe(ev.kind, ev.payload)
            finally:
                await client.stop()
        if not result.ended:
            await asyncio.to_thread(self._replay_child, child_id, client.last_cursor, result)
        return result

    @staticmethod
    def _replay_child(child_id: int, since_cursor: int, result: _ChildResult) -> None:
        """Fill in whatever the live stream missed from the child's recording."""
        path = recording_path(child_id)
        if path.exists():
            for rec in read_recording(path, since_cursor):
                ev = Event.from_record(rec)
                result.observe(ev.kind, ev.payload)
        if not result.ended:
            with contextlib.suppress(SessionNotFound):
                meta = registry.lookup(child_id)
                result.status = str(meta.get("status", ""))
                result.outcome = str(meta.get("exit_kind", ""))

    async def _monitor(self, row: SpawnRow) -> None:
        spawn_id, child_id = row["id"], row["child_session_id"]
        store = self._require_store()
        try:
            result = await self._follow(child_id)
            if row["worktree_path"]:
                try:
                    sha = await asyncio.to_thread(
                        worktree.auto_commit, row["worktree_path"], f"loopd: spawn #{spawn_id} ({row['child_profile']})"
                    )
                    if sha:
                        log.info("Spawn #%d: auto-committed leftovers as %s", spawn_id, sha[:10])
                except RuntimeError as exc:
                    log.warning("Spawn #%d: auto-commit failed: %s", spawn_id, exc)
            status = "completed" if result.succeeded else "failed"
            exit_code = result.exit_code if result.exit_code is not None else -1
            store.update_spawn(spawn_id, status=status, result=result.text, exit_code=exit_code)
            self._bus.publish(
                "spawn_completed" if status == "completed" else "spawn_failed",
                {
                    "spawn_id": spawn_id,
                    "child_session_id": child_id,
                    "exit_code": exit_code,
                    "outcome": result.outcome,
                    "result": result.text[-500:],
                },
            )
        except (LoopdError, OSError) as exc:
            log.warning("Spawn #%d: monitor failed: %s", spawn_id, exc)
            with contextlib.suppress(LoopdError, OSError):
                store.update_spawn(spawn_id, status="failed", result=f"monitor failed: {exc}", exit_code=-1)
        finally:
            self._running.pop(spawn_id, None)
            self._scope_of.pop(spawn_id, None)
            done = self._done.get(spawn_id)
            if done is not None:
                done.set()
            self._slot_freed.set()

    # -- Queries --

    def status(self, spawn_id: int | None = None) -> list[SpawnRow]:
        if spawn_id is not None:
            return [self._own(spawn_id)]
        return self._require_store().list_spawns(self.session_id)

    async def wait(self, spawn_ids: list[int] | None = None, timeout: float | None = None) -> list[SpawnRow]:
        """Block until the given spawns (default: all running ones) have finished."""
        ids = list(spawn_ids) if spawn_ids else list(self._running)
        for spawn_id in ids:
            self._own(spawn_id)
        waiters = [self._done[i].wait() for i in ids if i in self._done]
        if waiters:
            try:
                await asyncio.wait_for(asyncio.gather(*waiters), timeout=timeout)
            except TimeoutError:
                log.info("spawn-wait timed out after %.0fs", timeout or 0)
        return [self._own(i) for i in ids]

    async def diff(self, spawn_id: int) -> str:
        row = self._own(spawn_id)
        if not row["branch"]:
            raise WorktreeBusy(f"spawn #{spawn_id} is read-only and has no branch")
        try:
            return await asyncio.to_thread(worktree.diff, self.workdir, row["branch"])
        except RuntimeError as exc:
            raise LoopdError(str(exc), kind="internal") from None

    # -- Merge / reject --

    def _check_mergeable(self, row: SpawnRow) -> None:
        if row["status"] in ("merged", "rejected"):
            raise WorktreeBusy(f"spawn #{row['id']} is already {row['status']}")
        if row["status"] not in SPAWN_TERMINAL_STATUSES:
            raise WorktreeBusy(f"spawn #{row['id']} is still {row['status']}")
        if row["read_only"] or not row["worktree_path"]:
            raise WorktreeBusy(f"spawn #{row['id']} has no worktree")

    def _merge_sync(self, row: SpawnRow, squash: bool) -> str:
        repo = self._repo()
        lock = Path(repo) / ".loopd" / "merge.lock"
        message = f"loopd: merge spawn #{row['id']} ({row['child_profile']}): {row['task'][:60]}"
        with file_lock(lock):
            try:
                sha = worktree.merge_branch(self.workdir, row["branch"], message, squash=squash)
            except RuntimeError as exc:
                raise LoopdError(f"{exc} (worktree kept at {row['worktree_path']})", kind="merge_failed") from None
            worktree.remove_worktree(repo, row["worktree_path"], row["branch"])
        return sha

    async def merge(self, spawn_id: int, *, squash: bool = False) -> SpawnRow:
        async with self._merge_lock:
            row = self._own(spawn_id)
            self._check_mergeable(row)
            sha = await asyncio.to_thread(self._merge_sync, row, squash)
            row = self._require_store().update_spawn(spawn_id, status="merged", merge_commit=sha)
        self._bus.publish("spawn_merged", {"spawn_id": spawn_id, "merge_commit": sha, "squash": squash})
        return row

    async def reject(self, spawn_id: int) -> SpawnRow:
        async with self._merge_lock:
            row = self._own(spawn_id)
            if row["status"] in ("merged", "rejected"):
                raise WorktreeBusy(f"spawn #{spawn_id} is already {row['status']}")
            if row["status"] not in SPAWN_TERMINAL_STATUSES:
                raise WorktreeBusy(f"spawn #{spawn_id} is still {row['status']}")
            if row["worktree_path"]:
                await asyncio.to_thread(worktree.remove_worktree, self._repo(), row["worktree_path"], row["branch"])
            row = self._require_store().update_spawn(spawn_id, status="rejected")
        self._bus.publish("spawn_rejected", {"spawn_id": spawn_id})
        return row

    # -- Cancellation --

    async def cancel_all(self) -> None:
        """Drop queued requests and ask running children to cancel."""
        self._cancel_generation += 1
        self._slot_freed.set()
        for spawn_id, child_id in list(self._running.items()):
            try:
                await control_once(child_id, "cancel", timeout=5.0)
            except LoopdError as exc:
                log.warning("Spawn #%d: could not cancel session %d: %s", spawn_id, child_id, exc)

    async def shutdown(self, grace: float = 10.0) -> None:
        """Cancel children still running and wait briefly for their monitors."""
        if self._running:
            await self.cancel_all()
        pending = [t for t in self._monitors.values() if not t.done()]
        if not pending:
            return
        _, still = await asyncio.wait(pending, timeout=grace)
        for task in still:
            task.cancel()
        if still:
            await asyncio.gather(*still, return_exceptions=True)
