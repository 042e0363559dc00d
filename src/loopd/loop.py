"""Loop engine: cycles of steps, steps of turns, one agent process per turn.

The engine runs inside the session daemon.  It owns scheduling state
``(cycle, step, turn)`` and the pending inter-step messages; the daemon
feeds it control requests from the in-agent CLI (``loop-stop``,
``loop-message``, ``loop-notify``) and cancellation.

Turns are strictly serial.  A turn's ``turn_end`` event is fsynced before
the next turn starts.  Launch failures and timeouts count against a retry
budget; reaching it ends the loop with ``fatal_agent_failures``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loopd import agents, paths, prompt, pushover
from loopd.broadcast import Broadcaster
from loopd.config import GlobalConfig, LoopDef, LoopStep, Profile
from loopd.errors import AgentLaunchFailed, LoopdError, PushDeliveryFailed
from loopd.stats import TurnStats
from loopd.store import Store

log = logging.getLogger(__name__)

OUTCOME_KINDS = {"stopped_by_step", "max_cycles", "cancelled", "fatal_agent_failures"}


@dataclass
class Outcome:
    kind: str
    cycles: int = 0
    turns: int = 0
    error: str = ""
    step: int | None = None


@dataclass
class TurnResult:
    exit_code: int
    cause: str
    failed: bool = False
    timed_out: bool = False
    cancelled: bool = False
    stats: TurnStats = field(default_factory=TurnStats)


@dataclass
class PendingMessage:
    from_step: int
    text: str


class LoopEngine:
    def __init__(
        self,
        session_id: int,
        loop: LoopDef,
        profiles: list[Profile],
        cfg: GlobalConfig,
        broadcaster: Broadcaster,
        *,
        store: Store | None = None,
        workdir: str = "",
        project_name: str = "",
        plan_id: str = "",
        max_cycles: int = 0,
        read_only: bool = False,
        extra_env: dict[str, str] | None = None,
        on_turn_start: Callable[[], None] | None = None,
    ) -> None:
        if len(profiles) != len(loop.steps):
            raise ValueError("one profile per loop step is required")
        self.session_id = session_id
        self.loop = loop
        self.profiles = profiles
        self.cfg = cfg
        self.store = store
        self.workdir = workdir
        self.project_name = project_name
        self.plan_id = plan_id
        self.max_cycles = max(max_cycles, 0)
        self.read_only = read_only
        self.extra_env = dict(extra_env or {})
        self._bus = broadcaster
        self._on_turn_start = on_turn_start
        self._cancel = asyncio.Event()
        self._stop_requested = False
        self._messages: dict[int, deque[PendingMessage]] = {i: deque() for i in range(len(loop.steps))}
        self.cycle = 0
        self.step_index = 0
        self.turn = 0
        self.turns_run = 0
        self.total_cost = 0.0

    # -- State seen by the daemon and delegation manager --

    @property
    def current_step(self) -> LoopStep:
        return self.loop.steps[self.step_index]

    @property
    def current_profile(self) -> Profile:
        return self.profiles[self.step_index]

    @property
    def cancelling(self) -> bool:
        return self._cancel.is_set()

    def position(self) -> dict[str, Any]:
        return {
            "loop": self.loop.name,
            "cycle": self.cycle,
            "step": self.step_index,
            "turn": self.turn,
            "total_steps": len(self.loop.steps),
            "profile": self.current_profile.name,
            "turns_run": self.turns_run,
        }

    # -- Control requests --

    def cancel(self) -> None:
        if not self._cancel.is_set():
            log.info("Session %d: cancel requested", self.session_id)
        self._cancel.set()

    def _require(self, flag: str, verb: str) -> LoopStep:
        step = self.current_step
        if not getattr(step, flag):
            raise LoopdError(
                f"step {self.step_index} ({step.profile}) is not allowed to {verb}",
                kind="permission_denied",
            )
        return step

    def request_stop(self, reason: str = "") -> dict[str, Any]:
        self._require("can_stop", "stop the loop")
        self._stop_requested = True
        self._bus.publish("stop_requested", {"step": self.step_index, "reason": reason})
        return {"stopping_after_turn": True, "step": self.step_index}

    def post_message(self, text: str, to_step: int | None = None) -> dict[str, Any]:
        self._require("can_message", "send loop messages")
        if not text.strip():
            raise LoopdError("message is empty", kind="config_invalid")
        count = len(self.loop.steps)
        dest = (self.step_index + 1) % count if to_step is None else to_step
        if not 0 <= dest < count:
            raise LoopdError(f"step {dest} does not exist (loop has {count} steps)", kind="config_invalid")
        self._messages[dest].append(PendingMessage(self.step_index, text))
        self._bus.publish("message", {"from_step": self.step_index, "to_step": dest, "text": text})
        return {"to_step": dest, "queued": len(self._messages[dest])}

    async def notify(self, title: str, message: str, priority: int = 0) -> dict[str, Any]:
        self._require("can_pushover", "send push notifications")
        lo, hi = pushover.PRIORITY_RANGE
        if not lo <= priority <= hi:
            raise LoopdError(f"priority must be between {lo} and {hi}", kind="config_invalid")
        self._bus.publish("notify", {"step": self.step_index, "title": title, "message": message, "priority": priority})
        return {"sent": await self._push(title, message, priority)}

    async def _push(self, title: str, message: str, priority: int = 0) -> bool:
        try:
            await asyncio.to_thread(pushover.send, self.cfg.pushover, title, message, priority)
        except PushDeliveryFailed as exc:
            log.warning("Push notification failed: %s", exc)
            self._bus.publish("push_failed", {"title": title, "error": str(exc)})
            return False
        return True

    # -- Running --

    def _turn_env(self, profile: Profile, turn_id: str) -> dict[str, str]:
        env = {
            "LOOPD_SESSION_ID": str(self.session_id),
            "LOOPD_AGENT": profile.agent,
            "LOOPD_TURN_ID": turn_id,
            "LOOPD_PROFILE": profile.name,
            "LOOPD_CYCLE": str(self.cycle),
            "LOOPD_STEP_INDEX": str(self.step_index),
            "LOOPD_HOME": str(paths.data_root()),
        }
        if self.project_name:
            env["LOOPD_PROJECT"] = self.project_name
        if self.plan_id:
            env["LOOPD_PLAN_ID"] = self.plan_id
        if self.read_only:
            env["LOOPD_READ_ONLY"] = "1"
        env.update(self.extra_env)
        return env

    def _compose(self, step: LoopStep, profile: Profile, messages: list[PendingMessage]) -> str:
        return prompt.build_prompt(
            self.cfg,
            self.store,
            profile=profile,
            role_name=step.role,
            session_id=self.session_id,
            workdir=self.workdir,
            instructions=step.instructions,
            read_only=self.read_only,
            messages=[f"[from step {m.from_step}] {m.text}" for m in messages],
            loop=prompt.LoopPosition(
                loop_name=self.loop.name,
                cycle=self.cycle,
                step_index=self.step_index,
                total_steps=len(self.loop.steps),
                can_stop=step.can_stop,
                can_message=step.can_message,
                can_pushover=step.can_pushover,
            ),
            delegation=step.delegation,
        )

    async def _drive(self, proc: agents.AgentProcess, stats: TurnStats) -> tuple[int, str]:
        async for kind, chunk in proc.output():
            self._bus.publish(kind, chunk)
            if kind == "stdout":
                stats.feed(chunk)
        return await proc.wait()

    async def _run_turn(self, step: LoopStep, profile: Profile) -> TurnResult:
        turn_id = uuid.uuid4().hex
        pending = self._messages[self.step_index]
        messages = list(pending)
        pending.clear()
        text = self._compose(step, profile, messages)
        where = {"cycle": self.cycle, "step": self.step_index, "turn": self.turn, "turn_id": turn_id}
        self._bus.publish("turn_start", {**where, "profile": profile.name, "messages": len(messages)})
        if self._on_turn_start is not None:
            self._on_turn_start()
        self._bus.publish("stdin", text.encode())
        started = time.monotonic()
        stats = TurnStats()

        try:
            launch = agents.prepare(profile, families=self.cfg.agents).with_context(
                workdir=self.workdir, env=self._turn_env(profile, turn_id)
            )
            proc = await launch.start(text)
        except AgentLaunchFailed as exc:
            log.warning("Turn %s: %s", turn_id, exc)
            self._bus.publish("turn_failed", {**where, "error_kind": exc.kind, "error": str(exc)})
            self._bus.publish("turn_end", {**where, "exit_code": -1, "cause": "launch_failed", "ok": False})
            return TurnResult(-1, "launch_failed", failed=True, stats=stats)

        result = TurnResult(0, "exited", stats=stats)
        drive = asyncio.create_task(self._drive(proc, stats))
        exited = asyncio.create_task(proc.exited())
        cancel_wait = asyncio.create_task(self._cancel.wait())
        timeout = self.cfg.runtime.turn_timeout or None
        try:
            done, _ = await asyncio.wait(
                {drive, exited, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if exited in done and drive not in done and not self._cancel.is_set():
                # The agent is gone; only helpers it forked can still hold its pipes.
                done, _ = await asyncio.wait(
                    {drive, cancel_wait}, timeout=agents.DRAIN_TIMEOUT, return_when=asyncio.FIRST_COMPLETED
                )
        finally:
            cancel_wait.cancel()
            exited.cancel()
        if drive not in done:
            if self._cancel.is_set():
                result.cancelled = True
            elif proc.returncode is not None:
                log.warning(
                    "Turn %s: agent exited but its output stayed open for %.0fs, killing its process group",
                    turn_id,
                    agents.DRAIN_TIMEOUT,
                )
            else:
                result.timed_out = result.failed = True
                log.warning("Turn %s exceeded %.0fs, terminating agent", turn_id, timeout)
                self._bus.publish("turn_timeout", {**where, "timeout_s": timeout})
            await proc.terminate(self.cfg.runtime.cancel_grace)
            try:
                await asyncio.wait_for(drive, timeout=agents.DRAIN_TIMEOUT)
            except TimeoutError:
                log.warning("Agent pipes still open %.0fs after exit, closing", agents.DRAIN_TIMEOUT)
                proc.abandon_output()
        if drive.done() and not drive.cancelled():
            code, cause = drive.result()
        else:
            code, cause = await proc.wait()
        stats.finish()
        result.exit_code, result.cause = code, cause
        if result.cancelled:
            result.cause = "cancelled"
        elif result.timed_out:
            result.cause = "turn_timeout"

        ok = code == 0 and not (result.cancelled or result.timed_out)
        self.total_cost += stats.cost_usd
        self._bus.publish(
            "turn_end",
            {
                **where,
                "exit_code": code,
                "cause": result.cause,
                "ok": ok,
                "duration_s": round(time.monotonic() - started, 3),
                **stats.to_dict(),
            },
        )
        self._record_profile_stats(profile, ok, stats)
        return result

    def _record_profile_stats(self, profile: Profile, ok: bool, stats: TurnStats) -> None:
        if self.store is None:
            return
        try:
            self.store.record_stats(
                "profile",
                profile.name,
                runs=1,
                success=ok,
                cost_usd=stats.cost_usd,
                tool_calls=dict(stats.tool_calls),
            )
        except (LoopdError, OSError) as exc:
            log.warning("Could not record stats for %s: %s", profile.name, exc)

    async def run(self) -> Outcome:
        """Run until a stop, cycle limit, cancellation or fatal failure."""
        budget = self.cfg.runtime.retry_budget
        consecutive_failures = 0
        outcome: Outcome | None = None
        self.cycle = 0
        while outcome is None:
            if self._cancel.is_set():
                outcome = Outcome("cancelled")
                break
            if self.max_cycles and self.cycle >= self.max_cycles:
                outcome = Outcome("max_cycles")
                break
            if self.cfg.runtime.heartbeat:
                self._bus.publish("heartbeat", {"cycle": self.cycle, "turns_run": self.turns_run})
            for idx, step in enumerate(self.loop.steps):
                self.step_index = idx
                profile = self.profiles[idx]
                self._bus.publish("step_start", {"cycle": self.cycle, "step": idx, "profile": profile.name, "turns": step.turns})
                for turn in range(max(step.turns, 1)):
                    if self._cancel.is_set():
                        break
                    self.turn = turn
                    result = await self._run_turn(step, profile)
                    self.turns_run += 1
                    if result.cancelled:
                        break
                    consecutive_failures = consecutive_failures + 1 if result.failed else 0
                    if consecutive_failures >= budget:
                        outcome = Outcome(
                            "fatal_agent_failures",
                            error=f"{consecutive_failures} consecutive failed turns (budget {budget})",
                        )
                        break
                    if self._stop_requested:
                        outcome = Outcome("stopped_by_step", step=idx)
                        break
                self._bus.publish("step_end", {"cycle": self.cycle, "step": idx, "profile": profile.name})
                if outcome is not None or self._cancel.is_set():
                    break
            else:
                self.cycle += 1
                continue
            if outcome is None:
                outcome = Outcome("cancelled")

        outcome.cycles = self.cycle if outcome.kind != "stopped_by_step" else self.cycle + 1
        outcome.turns = self.turns_run
        if outcome.kind == "stopped_by_step" and outcome.step is not None:
            if self.loop.steps[outcome.step].can_pushover and self.cfg.pushover.configured:
                await self._push("Loop stopped", f"{self.loop.name}: stopped by step {outcome.step} after {outcome.cycles} cycle(s)")
        self._record_loop_stats(outcome)
        return outcome

    def _record_loop_stats(self, outcome: Outcome) -> None:
        self._bus.publish("stats", {"loop": self.loop.name, "cycles": outcome.cycles, "turns": outcome.turns, "cost_usd": round(self.total_cost, 6)})
        if self.store is None:
            return
        try:
            self.store.record_stats(
                "loop",
                self.loop.name,
                runs=1,
                cycles=outcome.cycles,
                success=outcome.kind in ("stopped_by_step", "max_cycles"),
                cost_usd=self.total_cost,
            )
        except (LoopdError, OSError) as exc:
            log.warning("Could not record stats for loop %s: %s", self.loop.name, exc)
