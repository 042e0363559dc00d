"""Loop engine tests with fake agents (small python programs as the agent CLI)."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest

from loopd.broadcast import Broadcaster, Event
from loopd.config import parse_config, resolve_loop
from loopd.errors import LoopdError
from loopd.loop import LoopEngine
from loopd.recorder import Recorder
from loopd.store import init_project

pytestmark = pytest.mark.slow

READ_AND_ECHO = "import sys; data = sys.stdin.read(); print('turn ok'); print(len(data))"
SLEEPER = "import sys, time; sys.stdin.read(); print('sleeping', flush=True); time.sleep(30)"


def _config(code: str, steps: list[dict] | None = None, runtime: dict | None = None, agent_command: str | None = None):
    return parse_config(
        {
            "profiles": [{"name": "fake", "agent": "py"}, {"name": "other", "agent": "py"}],
            "loops": [{"name": "test", "steps": steps or [{"profile": "fake"}]}],
            "runtime": {"cancel_grace": 0.5, "heartbeat": True, **(runtime or {})},
            "agents": {"py": {"command": agent_command or sys.executable, "args": ["-c", code], "prompt": "stdin"}},
        }
    )


class Harness:
    def __init__(self, tmp_path: Path, cfg, **engine_kwargs) -> None:
        self.recorder = Recorder(tmp_path / "events.log")
        self.bus = Broadcaster(self.recorder)
        loop, profiles = resolve_loop(cfg, "test")
        self.engine = LoopEngine(1, loop, profiles, cfg, self.bus, workdir=str(tmp_path), **engine_kwargs)

    def events(self, kind: str | None = None) -> list[Event]:
        evs = [Event.from_record(r) for r in self.recorder.replay()]
        return [e for e in evs if kind is None or e.kind == kind]

    async def run(self, timeout: float = 30):
        return await asyncio.wait_for(self.engine.run(), timeout)


@pytest.mark.asyncio
async def test_max_cycles_runs_each_step(tmp_path: Path):
    cfg = _config(READ_AND_ECHO, steps=[{"profile": "fake", "turns": 2}, {"profile": "other"}])
    h = Harness(tmp_path, cfg, max_cycles=2)
    outcome = await h.run()
    assert outcome.kind == "max_cycles"
    assert outcome.cycles == 2
    assert outcome.turns == 6
    ends = h.events("turn_end")
    assert len(ends) == 6
    assert all(e.payload["ok"] for e in ends)
    assert [e.payload["step"] for e in h.events("step_start")] == [0, 1, 0, 1]
    assert len(h.events("heartbeat")) == 2
    assert b"turn ok" in b"".join(e.payload.encode() for e in h.events("stdout"))
    assert h.events("stats")[0].payload["turns"] == 6


@pytest.mark.asyncio
async def test_prompt_is_recorded_before_output(tmp_path: Path):
    h = Harness(tmp_path, _config(READ_AND_ECHO), max_cycles=1)
    await h.run()
    kinds = [e.kind for e in h.events()]
    assert kinds.index("turn_start") < kinds.index("stdin") < kinds.index("stdout") < kinds.index("turn_end")
    prompt_text = h.events("stdin")[0].payload
    assert 'loop "test"' in prompt_text
    # The agent printed the prompt length it read from stdin.
    out = "".join(e.payload for e in h.events("stdout"))
    assert str(len(prompt_text)) in out


@pytest.mark.asyncio
async def test_agent_sees_session_environment(tmp_path: Path):
    code = (
        "import os, sys; sys.stdin.read(); "
        "print(os.environ['LOOPD_SESSION_ID'], os.environ['LOOPD_PROFILE'], os.environ['LOOPD_CYCLE'], "
        "os.environ['LOOPD_STEP_INDEX'], os.environ.get('LOOPD_PROJECT', '-'), os.environ['LOOPD_AGENT'])"
    )
    h = Harness(tmp_path, _config(code), max_cycles=1, project_name="demo")
    await h.run()
    out = "".join(e.payload for e in h.events("stdout"))
    assert out.split() == ["1", "fake", "0", "0", "demo", "py"]


@pytest.mark.asyncio
async def test_nonzero_exit_is_reported_but_not_fatal(tmp_path: Path):
    code = "import sys; sys.stdin.read(); sys.exit(3)"
    h = Harness(tmp_path, _config(code, runtime={"retry_budget": 1}), max_cycles=2)
    outcome = await h.run()
    assert outcome.kind == "max_cycles"
    end = h.events("turn_end")[0].payload
    assert end["exit_code"] == 3
    assert end["ok"] is False
    assert end["cause"] == "exited"


@pytest.mark.asyncio
async def test_stop_request_ends_loop_after_turn(tmp_path: Path):
    cfg = _config(READ_AND_ECHO, steps=[{"profile": "fake", "turns": 3, "can_stop": True}, {"profile": "other"}])
    h = Harness(tmp_path, cfg)
    h.engine._on_turn_start = lambda: h.engine.request_stop("done")
    outcome = await h.run()
    assert outcome.kind == "stopped_by_step"
    assert outcome.step == 0
    assert outcome.cycles == 1
    assert outcome.turns == 1
    assert h.events("stop_requested")[0].payload["reason"] == "done"


@pytest.mark.asyncio
async def test_stop_without_permission_is_denied(tmp_path: Path):
    h = Harness(tmp_path, _config(READ_AND_ECHO))
    with pytest.raises(LoopdError) as exc:
        h.engine.request_stop()
    assert exc.value.kind == "permission_denied"


@pytest.mark.asyncio
async def test_message_reaches_next_step_prompt_head(tmp_path: Path):
    cfg = _config(READ_AND_ECHO, steps=[{"profile": "fake", "can_message": True}, {"profile": "other"}])
    h = Harness(tmp_path, cfg, max_cycles=1)
    posted: list[dict] = []

    def on_start() -> None:
        if h.engine.step_index == 0 and not posted:
            posted.append(h.engine.post_message("parser is flaky"))

    h.engine._on_turn_start = on_start
    await h.run()
    assert posted == [{"to_step": 1, "queued": 1}]
    prompts = [e.payload for e in h.events("stdin")]
    assert "parser is flaky" not in prompts[0]
    assert prompts[1].startswith("# Messages from Previous Steps")
    assert "[from step 0] parser is flaky" in prompts[1]


@pytest.mark.asyncio
async def test_message_validation(tmp_path: Path):
    cfg = _config(READ_AND_ECHO, steps=[{"profile": "fake", "can_message": True}])
    h = Harness(tmp_path, cfg)
    with pytest.raises(LoopdError, match="does not exist"):
        h.engine.post_message("x", to_step=5)
    with pytest.raises(LoopdError, match="empty"):
        h.engine.post_message("   ")
    # Single-step loops message themselves.
    assert h.engine.post_message("note to self")["to_step"] == 0


@pytest.mark.asyncio
async def test_launch_failures_exhaust_retry_budget(tmp_path: Path):
    cfg = _config("", runtime={"retry_budget": 2}, agent_command="/nonexistent/agent")
    h = Harness(tmp_path, cfg)
    outcome = await h.run()
    assert outcome.kind == "fatal_agent_failures"
    assert outcome.turns == 2
    failed = h.events("turn_failed")
    assert len(failed) == 2
    assert failed[0].payload["error_kind"] == "agent_launch_failed"
    assert all(e.payload["cause"] == "launch_failed" for e in h.events("turn_end"))


@pytest.mark.asyncio
async def test_turn_start_is_signalled_even_when_launch_fails(tmp_path: Path):
    cfg = _config("", runtime={"retry_budget": 1}, agent_command="/nonexistent/agent")
    h = Harness(tmp_path, cfg)
    starts: list[int] = []
    h.engine._on_turn_start = lambda: starts.append(len(h.events("turn_start")))
    outcome = await h.run()
    assert outcome.kind == "fatal_agent_failures"
    assert starts == [1]


@pytest.mark.asyncio
async def test_turn_timeout_terminates_agent(tmp_path: Path):
    cfg = _config(SLEEPER, runtime={"turn_timeout": 0.5, "retry_budget": 1})
    h = Harness(tmp_path, cfg)
    outcome = await h.run()
    assert outcome.kind == "fatal_agent_failures"
    assert len(h.events("turn_timeout")) == 1
    end = h.events("turn_end")[0].payload
    assert end["cause"] == "turn_timeout"
    assert end["ok"] is False


@pytest.mark.asyncio
async def test_cancel_interrupts_running_turn(tmp_path: Path):
    h = Harness(tmp_path, _config(SLEEPER))
    h.engine._on_turn_start = lambda: asyncio.get_running_loop().call_later(0.3, h.engine.cancel)
    outcome = await h.run()
    assert outcome.kind == "cancelled"
    end = h.events("turn_end")[0].payload
    assert end["cause"] == "cancelled"
    assert end["ok"] is False


@pytest.mark.asyncio
async def test_cancel_before_start(tmp_path: Path):
    h = Harness(tmp_path, _config(READ_AND_ECHO))
    h.engine.cancel()
    outcome = await h.run()
    assert outcome.kind == "cancelled"
    assert outcome.turns == 0


@pytest.mark.asyncio
async def test_notify_without_credentials_reports_failure(tmp_path: Path):
    cfg = _config(READ_AND_ECHO, steps=[{"profile": "fake", "can_pushover": True}])
    h = Harness(tmp_path, cfg)
    assert await h.engine.notify("Heads up", "tests broke") == {"sent": False}
    assert h.events("notify")[0].payload["title"] == "Heads up"
    assert "not configured" in h.events("push_failed")[0].payload["error"]
    with pytest.raises(LoopdError, match="priority"):
        await h.engine.notify("x", "y", priority=5)


@pytest.mark.asyncio
async def test_stats_recorded_in_store(tmp_path: Path):
    repo = tmp_path / "repo"
    repo.mkdir()
    store = init_project("demo", repo)
    code = (
        "import json, sys; sys.stdin.read(); "
        "print(json.dumps({'type': 'assistant', 'message': {'content': [{'type': 'tool_use', 'name': 'Bash'}]}})); "
        "print(json.dumps({'type': 'result', 'total_cost_usd': 0.5}))"
    )
    h = Harness(tmp_path, _config(code), max_cycles=2, store=store)
    await h.run()
    prof = store.load_stats("profile")["fake"]
    assert prof["total_runs"] == 2
    assert prof["success_count"] == 2
    assert prof["tool_calls"] == {"Bash": 2}
    assert prof["total_cost_usd"] == 1.0
    loop_row = store.load_stats("loop")["test"]
    assert loop_row["total_cycles"] == 2
    assert h.events("turn_end")[0].payload["cost_usd"] == 0.5


@pytest.mark.asyncio
async def test_position_reports_current_step(tmp_path: Path):
    h = Harness(tmp_path, _config(READ_AND_ECHO, steps=[{"profile": "fake"}, {"profile": "other"}]))
    pos = h.engine.position()
    assert pos["loop"] == "test"
    assert pos["total_steps"] == 2
    assert pos["profile"] == "fake"


@pytest.mark.asyncio
async def test_turn_ends_soon_after_agent_exits_despite_forked_helper(tmp_path: Path):
    code = (
        "import subprocess, sys; sys.stdin.read(); "
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)']); "
        "print('bye', flush=True)"
    )
    h = Harness(tmp_path, _config(code), max_cycles=1)
    started = time.monotonic()
    outcome = await h.run(timeout=20)
    assert time.monotonic() - started < 10
    assert outcome.kind == "max_cycles"
    end = h.events("turn_end")[0].payload
    assert end["exit_code"] == 0
    assert end["ok"] is True
    assert "bye" in "".join(e.payload for e in h.events("stdout"))
