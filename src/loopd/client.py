"""Attach client for a session daemon.

Communication uses newline-delimited JSON over the session's unix socket
(see :mod:`loopd.protocol`).  A client is either a *viewer*, which sends
``HELLO`` and receives the event stream, or a control-only connection,
which just sends ``CONTROL`` frames and awaits their ``ACK``.

Events are delivered in daemon cursor order.  The client remembers the last
cursor it handed out, so :meth:`AttachClient.reconnect` resumes without gaps
or duplicates.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from loopd import paths, protocol
from loopd.broadcast import Event
from loopd.errors import LoopdError, from_ack

log = logging.getLogger(__name__)

DEFAULT_CONTROL_TIMEOUT = 30.0
_QUEUE_SIZE = 1024


class AttachClient:
    """Async client for one session socket."""

    def __init__(
        self,
        session_id: int,
        *,
        since_cursor: int = 0,
        subscribe: bool = True,
        socket_path: Path | None = None,
    ) -> None:
        self.session_id = session_id
        self._socket_path = socket_path or paths.session_socket_path(session_id)
        self._subscribe = subscribe
        self._last_cursor = since_cursor
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._events: asyncio.Queue[Event | None] = asyncio.Queue(_QUEUE_SIZE)
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._closed_reason = ""

    @property
    def last_cursor(self) -> int:
        return self._last_cursor

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def start(self) -> None:
        """Connect and, for viewers, subscribe from the current cursor."""
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(
                str(self._socket_path), limit=protocol.MAX_FRAME_BYTES
            )
        except (FileNotFoundError, ConnectionRefusedError) as exc:
            raise LoopdError(
                f"session {self.session_id} is not running (no socket at {self._socket_path})",
                kind="socket_unavailable",
            ) from exc
        self._events = asyncio.Queue(_QUEUE_SIZE)
        self._closed_reason = ""
        if self._subscribe:
            await self._send(protocol.hello(self._last_cursor))
        self._reader_task = asyncio.create_task(self._read_loop())

    async def stop(self) -> None:
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        if self._writer:
            self._writer.close()
            with contextlib.suppress(ConnectionError, BrokenPipeError):
                await self._writer.wait_closed()
        self._fail_pending(LoopdError("connection closed", kind="socket_unavailable"))
        self._reader = None
        self._writer = None
        self._reader_task = None

    async def detach(self) -> None:
        """Leave cleanly; the session keeps running."""
        if self.connected:
            with contextlib.suppress(ConnectionError, BrokenPipeError):
                await self._send(protocol.bye("detach"))
        await self.stop()

    async def reconnect(self) -> None:
        """Drop the connection and resume from the last delivered cursor."""
        await self.stop()
        await self.start()

    async def _send(self, frame: dict[str, Any]) -> None:
        if not self._writer:
            raise LoopdError("attach client not connected", kind="socket_unavailable")
        self._writer.write(protocol.encode(frame))
        await self._writer.drain()

    # -- Events ----------------------------------------------------------------

    async def events(self) -> AsyncIterator[Event]:
        """Lazy event stream; ends when the daemon says BYE or the socket closes."""
        while True:
            item = await self._events.get()
            if item is None:
                return
            if item.cursor <= self._last_cursor:
                continue
            self._last_cursor = item.cursor
            if item.kind not in protocol.EVENT_KINDS:
                log.warning("Skipping unknown event kind %r at cursor %d", item.kind, item.cursor)
                continue
            yield item

    @property
    def closed_reason(self) -> str:
        return self._closed_reason

    # -- Control ---------------------------------------------------------------

    async def control(
        self, verb: str, args: dict[str, Any] | None = None, *, timeout: float | None = DEFAULT_CONTROL_TIMEOUT
    ) -> Any:
        """Send a control request and return its result; failures raise LoopdError."""
        if verb not in protocol.CONTROL_VERBS:
            raise LoopdError(f"unknown control verb '{verb}'", kind="internal")
        req_id = self._next_id
        self._next_id += 1
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            await self._send(protocol.control(req_id, verb, args))
        except (ConnectionError, BrokenPipeError) as exc:
            self._pending.pop(req_id, None)
            raise LoopdError(f"session {self.session_id}: {exc}", kind="socket_unavailable") from exc
        try:
            if timeout is not None:
                frame = await asyncio.wait_for(future, timeout=timeout)
            else:
                frame = await future
        except TimeoutError:
            self._pending.pop(req_id, None)
            raise LoopdError(f"{verb} timed out after {timeout:.0f}s", kind="socket_unavailable") from None
        except asyncio.CancelledError:
            self._pending.pop(req_id, None)
            raise
        if not frame.get("ok"):
            raise from_ack(frame)
        return frame.get("result")

    # -- Internal read loop ------------------------------------------------------

    async def _read_loop(self) -> None:
        assert self._reader is not None
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except (ConnectionError, ValueError) as exc:
                    log.warning("Session %d connection error: %s", self.session_id, exc)
                    break
                if not line:
                    break
                frame = protocol.decode(line)
                if frame is None:
                    log.debug("Ignoring malformed frame from session %d", self.session_id)
                    continue
                kind = frame["type"]
                if kind == "EVENT":
                    await self._events.put(
                        Event(int(frame["cursor"]), str(frame["kind"]), str(frame.get("ts", "")), frame.get("payload"))
                    )
                elif kind == "ACK":
                    self._handle_ack(frame)
                elif kind == "BYE":
                    self._closed_reason = str(frame.get("reason", "")) or "bye"
                    break
            self._fail_pending(self._eof_error())
            await self._events.put(None)
        finally:
            self._handle_eof()

    def _handle_ack(self, frame: dict[str, Any]) -> None:
        if frame.get("verb") == "hello" and not frame.get("ok"):
            log.error("Session %d refused to attach: %s", self.session_id, frame.get("err", ""))
            self._closed_reason = f"rejected: {frame.get('err', '')}"
            return
        req_id = frame.get("id")
        if not isinstance(req_id, int) or req_id not in self._pending:
            return
        future = self._pending.pop(req_id)
        if not future.done():
            future.set_result(frame)

    def _fail_pending(self, err: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(err)
        self._pending.clear()

    def _eof_error(self) -> LoopdError:
        return LoopdError(f"session {self.session_id} closed the connection", kind="socket_unavailable")

    def _handle_eof(self) -> None:
        """Fail pending controls and make sure a waiting consumer sees the end of the stream."""
        self._fail_pending(self._eof_error())
        if not self._closed_reason:
            self._closed_reason = "eof"
        with contextlib.suppress(asyncio.QueueFull):
            self._events.put_nowait(None)

    # -- Context manager --------------------------------------------------------

    async def __aenter__(self) -> AttachClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()


async def control_once(session_id: int, verb: str, args: dict[str, Any] | None = None, timeout: float | None = DEFAULT_CONTROL_TIMEOUT) -> Any:
    async with AttachClient(session_id, subscribe=False) as client:
        return await client.control(verb, args, timeout=timeout)


def send_control(session_id: int, verb: str, args: dict[str, Any] | None = None, timeout: float | None = DEFAULT_CONTROL_TIMEOUT) -> Any:
    """Synchronous one-shot control request (used by the CLI)."""
    return asyncio.run(control_once(session_id, verb, args, timeout))
