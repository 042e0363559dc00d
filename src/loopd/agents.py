"""Agent adapter: turn a profile into a running vendor CLI process.

Vendor differences live in :data:`AGENT_FAMILIES`, a plain data table.  A
family entry names the executable, fixed arguments, how the model and the
reasoning effort are passed, and how the prompt reaches the agent:

  stdin   prompt is written to the process's stdin, then stdin is closed
  arg     prompt is appended as the final positional argument
  flag    prompt follows ``prompt_flag`` (e.g. ``-p``)

``effort`` is either ``{"env": NAME}`` (value exported in the environment)
or ``{"flag": FLAG, "template": "...{effort}..."}`` (rendered into argv).
``model_env`` exports the model instead of passing ``model_flag``.

Config can add or override families under ``agents:`` in profiles.yaml, so a
new vendor is a config entry rather than new code.

The agent runs in its own process group; :meth:`AgentProcess.terminate`
signals the whole group so helper processes the agent forks die with it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from loopd.config import Profile
from loopd.errors import AgentLaunchFailed

log = logging.getLogger(__name__)

PROMPT_MODES = {"stdin", "arg", "flag"}
_READ_CHUNK = 64 * 1024
# How long pipes may stay open after the agent itself has exited.
DRAIN_TIMEOUT = 2.0
_STREAM_QUEUE_SIZE = 256

# -- Family table ---------------------------------------------------------------

AGENT_FAMILIES: dict[str, dict[str, Any]] = {
    "claude": {
        "command": "claude",
        "args": ["-p", "--output-format", "stream-json", "--verbose", "--dangerously-skip-permissions"],
        "model_flag": "--model",
        "effort": {"env": "CLAUDE_CODE_EFFORT_LEVEL"},
        "prompt": "stdin",
    },
    "codex": {
        "command": "codex",
        "args": ["exec", "--skip-git-repo-check", "--json", "--dangerously-bypass-approvals-and-sandbox"],
        "model_flag": "--model",
        "effort": {"flag": "-c", "template": 'model_reasoning_effort="{effort}"'},
        "prompt": "arg",
    },
    "gemini": {
        "command": "gemini",
        "args": ["-y"],
        "model_flag": "--model",
        "prompt": "stdin",
    },
    "opencode": {
        "command": "opencode",
        "args": ["run"],
        "model_flag": "--model",
        "prompt": "arg",
    },
    "vibe": {
        "command": "vibe",
        "args": [],
        "model_env": "VIBE_ACTIVE_MODEL",
        "prompt": "stdin",
    },
    "generic": {
        "command": "",
        "args": [],
        "prompt": "stdin",
    },
}


def family_table(overrides: Mapping[str, Mapping[str, Any]] | None = None) -> dict[str, dict[str, Any]]:
    """Built-in families merged with config overrides (override keys win)."""
    table = {name: dict(entry) for name, entry in AGENT_FAMILIES.items()}
    for name, entry in (overrides or {}).items():
        merged = dict(table.get(name, {"command": name, "args": [], "prompt": "stdin"}))
        merged.update(entry)
        table[name] = merged
    return table


# -- Launch ---------------------------------------------------------------------


@dataclass(frozen=True)
class Launch:
    """A fully resolved command line for one agent turn."""

    family: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    workdir: str = ""
    prompt_mode: str = "stdin"
    prompt_flag: str = ""

    def with_context(self, *, workdir: str | None = None, env: Mapping[str, str] | None = None) -> Launch:
        merged = dict(self.env)
        merged.update(env or {})
        return replace(self, workdir=workdir if workdir is not None else self.workdir, env=merged)

    def argv(self, prompt: str) -> list[str]:
        argv = [self.command, *self.args]
        if self.prompt_mode == "arg":
            argv.append(prompt)
        elif self.prompt_mode == "flag":
            argv.extend([self.prompt_flag, prompt])
        return argv

    async def start(self, prompt: str) -> AgentProcess:
        """Spawn the agent, feeding *prompt* the way the family expects."""
        argv = self.argv(prompt)
        env = {**os.environ, **self.env}
        wants_stdin = self.prompt_mode == "stdin"
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.workdir or None,
                env=env,
                stdin=asyncio.subprocess.PIPE if wants_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise AgentLaunchFailed(f"cannot start {self.command!r}: {exc}") from exc
        log.info("Started %s agent pid=%d in %s", self.family, proc.pid, self.workdir or os.getcwd())
        return AgentProcess(proc, prompt.encode() if wants_stdin else None)


def prepare(
    profile: Profile,
    model_override: str = "",
    reasoning_override: str = "",
    *,
    families: Mapping[str, Mapping[str, Any]] | None = None,
) -> Launch:
    """Resolve a profile into a :class:`Launch` using the family table."""
    table = family_table(families)
    entry = table.get(profile.agent)
    if entry is None:
        raise AgentLaunchFailed(
            f"profile '{profile.name}': unknown agent family '{profile.agent}' "
            f"(known: {', '.join(sorted(table))})"
        )
    command = str(entry.get("command") or "")
    if not command:
        raise AgentLaunchFailed(
            f"profile '{profile.name}': agent family '{profile.agent}' has no command configured"
        )

    args: list[str] = [str(a) for a in entry.get("args") or []]
    env: dict[str, str] = {str(k): str(v) for k, v in (entry.get("env") or {}).items()}

    model = (model_override or profile.model).strip()
    if model:
        if entry.get("model_env"):
            env[entry["model_env"]] = model
        elif entry.get("model_flag"):
            args.extend([entry["model_flag"], model])

    effort = (reasoning_override or profile.reasoning_effort).strip()
    effort_spec = entry.get("effort") or {}
    if effort and effort_spec:
        if "env" in effort_spec:
            env[effort_spec["env"]] = effort
        elif "flag" in effort_spec:
            template = effort_spec.get("template", "{effort}")
            args.extend([effort_spec["flag"], template.format(effort=effort)])

    prompt_mode = str(entry.get("prompt") or "stdin")
    if prompt_mode not in PROMPT_MODES:
        raise AgentLaunchFailed(f"agent family '{profile.agent}': unknown prompt mode '{prompt_mode}'")
    return Launch(
        family=profile.agent,
        command=command,
        args=tuple(args),
        env=env,
        prompt_mode=prompt_mode,
        prompt_flag=str(entry.get("prompt_flag") or ""),
    )


# -- Running process ------------------------------------------------------------------


def describe_returncode(code: int | None) -> tuple[int, str]:
    """Map an asyncio returncode to ``(exit_code, cause)``."""
    if code is None:
        return -1, "unknown"
    if code < 0:
        try:
            name = signal.Signals(-code).name
        except ValueError:
            name = f"signal {-code}"
        return 128 - code, f"killed by {name}"
    return code, "exited"


class AgentProcess:
    """A running agent turn.

    :meth:`output` is a lazy, non-restartable stream of ``(kind, chunk)``
    pairs (``kind`` is ``"stdout"`` or ``"stderr"``) fed by two reader tasks
    through a bounded queue; it ends when both pipes reach EOF.
    """

    def __init__(self, proc: asyncio.subprocess.Process, stdin_data: bytes | None) -> None:
        self._proc = proc
        self._queue: asyncio.Queue[tuple[str, bytes] | None] = asyncio.Queue(_STREAM_QUEUE_SIZE)
        self._readers = [
            asyncio.create_task(self._pump("stdout", proc.stdout)),
            asyncio.create_task(self._pump("stderr", proc.stderr)),
        ]
        self._stdin_task = (
            asyncio.create_task(self._feed_stdin(stdin_data)) if stdin_data is not None else None
        )
        self._open_streams = 2
        self._consumed = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def _feed_stdin(self, data: bytes) -> None:
        stdin = self._proc.stdin
        if stdin is None:
            return
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            log.debug("Agent pid=%d closed stdin before reading the prompt", self.pid)
        finally:
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                stdin.close()

    async def _pump(self, kind: str, stream: asyncio.StreamReader | None) -> None:
        if stream is not None:
            try:
                while True:
                    chunk = await stream.read(_READ_CHUNK)
                    if not chunk:
                        break
                    await self._queue.put((kind, chunk))
            except asyncio.CancelledError:
                # Abandoned: nobody may be draining the queue any more.
                with contextlib.suppress(asyncio.QueueFull):
                    self._queue.put_nowait(None)
                raise
        await self._queue.put(None)

    async def output(self) -> AsyncIterator[tuple[str, bytes]]:
        if self._consumed:
            raise RuntimeError("agent output stream already consumed")
        self._consumed = True
        while self._open_streams:
            item = await self._queue.get()
            if item is None:
                self._open_streams -= 1
                continue
            yield item

    async def exited(self) -> int:
        """Wait for the agent process itself, ignoring anything still holding its pipes."""
        return await self._proc.wait()

    async def wait(self, drain: float = DRAIN_TIMEOUT) -> tuple[int, str]:
        """Wait for exit; returns ``(exit_code, cause)``.

        Readers get *drain* seconds after exit to reach EOF, then are abandoned.
        """
        code = await self._proc.wait()
        _, pending = await asyncio.wait(self._readers, timeout=drain)
        if pending:
            log.warning("Agent pid=%d exited but its pipes stayed open for %.1fs", self.pid, drain)
            self.abandon_output()
            await asyncio.gather(*pending, return_exceptions=True)
        if self._stdin_task is not None:
            await asyncio.gather(self._stdin_task, return_exceptions=True)
        return describe_returncode(code)

    def abandon_output(self) -> None:
        """Stop reading the pipes (a grandchild may hold them open after exit)."""
        for task in self._readers:
            task.cancel()

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                self._proc.send_signal(sig)

    async def terminate(self, grace: float = 5.0) -> tuple[int, str]:
        """SIGTERM the process group, escalate to SIGKILL after *grace* seconds."""
        if self._proc.returncode is None:
            self._signal_group(signal.SIGTERM)
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=grace)
            except TimeoutError:
                log.warning("Agent pid=%d ignored SIGTERM for %.1fs, killing", self.pid, grace)
        # Helpers the agent forked into its group go too.
        self._signal_group(signal.SIGKILL)
        return await self.wait()
