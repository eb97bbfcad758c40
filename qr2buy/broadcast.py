"""
Live state fan-out to connected displays and dashboards.

Two transports share one `publish()`:

  - stream (Server-Sent Events): every published message carries a
    sequence number from one global counter, so a client spotting a gap
    knows it missed something and re-polls its config. Keep-alive comments
    are unnumbered.
  - socket (WebSocket): liveness is the server's protocol-level ping/pong
    (see `server.main`). Here sockets get an app-level `ping` frame every
    `ping_seconds`; one whose send fails or times out is dropped. Silence
    from a client is fine, displays are receive-only.

Delivery is fire-and-forget. A dead or slow observer is dropped; it never
delays the others and never raises into the mutating request.
"""
from __future__ import annotations
import asyncio
import itertools
import logging
from typing import Any, Dict, Optional, Protocol, Set

import orjson

from .helpers import now_ms

log = logging.getLogger(__name__)

EVENT_READY = "ready"
EVENT_UPDATE = "update"
EVENT_VERSION = "version"
EVENT_PING = "ping"


class SocketLike(Protocol):
    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


def sse_frame(event: str, payload: Any, id: Optional[int] = None,
              retry_ms: Optional[int] = None) -> str:
    lines = []
    if id is not None:
        lines.append(f"id: {id}")
    if retry_ms is not None:
        lines.append(f"retry: {retry_ms}")
    lines.append(f"event: {event}")
    lines.append(f"data: {orjson.dumps(payload).decode()}")
    return "\n".join(lines) + "\n\n"


def sse_comment(text: str) -> str:
    return f": {text}\n\n"


class StreamObserver:
    __slots__ = ("queue", "keepalive", "closed")

    def __init__(self, maxsize: int) -> None:
        # None is the end-of-stream sentinel
        self.queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize)
        self.keepalive: Optional[asyncio.Task] = None
        self.closed = False


class Broadcaster:
    def __init__(
        self, *,
        keepalive_seconds: float = 15.0,
        retry_ms: int = 5000,
        ping_seconds: float = 20.0,
        send_timeout: float = 5.0,
        queue_size: int = 256,
    ) -> None:
        self.keepalive_seconds = keepalive_seconds
        self.retry_ms = retry_ms
        self.ping_seconds = ping_seconds
        self.send_timeout = send_timeout
        self.queue_size = queue_size

        self._seq = itertools.count(1)
        self._streams: Set[StreamObserver] = set()
        self._sockets: Set[SocketLike] = set()
        self._sends: Set[asyncio.Task] = set()
        self._ping_task: Optional[asyncio.Task] = None

    # ----------------------------
    # lifecycle
    # ----------------------------
    def start(self) -> None:
        if self._ping_task is None:
            self._ping_task = asyncio.create_task(self._ping_loop())

    async def stop(self) -> None:
        if self._ping_task is not None:
            self._ping_task.cancel()
            try:
                await self._ping_task
            except asyncio.CancelledError:
                pass
            self._ping_task = None
        for obs in list(self._streams):
            self.close_stream(obs)
        for sock in list(self._sockets):
            await self._terminate(sock)
        await self.drain()

    async def drain(self) -> None:
        """Wait for in-flight socket sends."""
        while self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)

    @property
    def stream_count(self) -> int:
        return len(self._streams)

    @property
    def socket_count(self) -> int:
        return len(self._sockets)

    # ----------------------------
    # stream transport
    # ----------------------------
    def open_stream(self) -> StreamObserver:
        obs = StreamObserver(self.queue_size)
        self._streams.add(obs)
        seq = next(self._seq)
        obs.queue.put_nowait(sse_frame(
            EVENT_READY, {"ok": True, "ts": now_ms(), "seq": seq},
            id=seq, retry_ms=self.retry_ms,
        ))
        obs.keepalive = asyncio.create_task(self._keepalive(obs))
        return obs

    def close_stream(self, obs: StreamObserver) -> None:
        if obs.keepalive is not None:
            obs.keepalive.cancel()
            obs.keepalive = None
        self._streams.discard(obs)
        if not obs.closed:
            obs.closed = True
            # wake the reader; drop whatever it had not consumed yet
            while not obs.queue.empty():
                obs.queue.get_nowait()
            obs.queue.put_nowait(None)

    async def iter_stream(self, obs: StreamObserver):
        while True:
            frame = await obs.queue.get()
            if frame is None:
                return
            yield frame

    def _offer(self, obs: StreamObserver, frame: str) -> None:
        if obs.closed:
            return
        try:
            obs.queue.put_nowait(frame)
        except asyncio.QueueFull:
            log.warning("dropping slow stream observer")
            self.close_stream(obs)

    async def _keepalive(self, obs: StreamObserver) -> None:
        while not obs.closed:
            await asyncio.sleep(self.keepalive_seconds)
            self._offer(obs, sse_comment(f"ping {now_ms()}"))

    # ----------------------------
    # socket transport
    # ----------------------------
    async def open_socket(self, sock: SocketLike) -> None:
        self._sockets.add(sock)
        await self._send(sock, orjson.dumps(
            {"type": EVENT_READY, "ts": now_ms()}
        ).decode())

    def close_socket(self, sock: SocketLike) -> None:
        self._sockets.discard(sock)

    async def _send(self, sock: SocketLike, data: str) -> None:
        try:
            await asyncio.wait_for(sock.send_text(data), self.send_timeout)
        except Exception as e:
            log.debug("socket send failed, dropping observer: %r", e)
            await self._terminate(sock)

    async def _terminate(self, sock: SocketLike) -> None:
        self._sockets.discard(sock)
        try:
            await sock.close(code=1001)
        except Exception:
            # already gone
            pass

    async def sweep_sockets(self) -> None:
        """Ping every socket; `_send` drops the ones that fail."""
        ping = orjson.dumps({"type": EVENT_PING, "ts": now_ms()}).decode()
        for sock in list(self._sockets):
            self._spawn(self._send(sock, ping))

    async def _ping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ping_seconds)
            try:
                await self.sweep_sockets()
            except Exception:
                log.exception("socket sweep failed")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    # ----------------------------
    # fan-out
    # ----------------------------
    def publish(self, event: str, payload: Any) -> int:
        """Queue `event` for every observer. Returns its sequence number."""
        seq = next(self._seq)
        frame = sse_frame(event, payload, id=seq, retry_ms=self.retry_ms)
        for obs in list(self._streams):
            self._offer(obs, frame)

        if self._sockets:
            data = orjson.dumps({"type": event, "payload": payload}).decode()
            for sock in list(self._sockets):
                self._spawn(self._send(sock, data))
        return seq

    def publish_state(self, update: Dict[str, Any],
                      version: Dict[str, Any]) -> None:
        # some observers only listen for one of the two
        self.publish(EVENT_UPDATE, update)
        self.publish(EVENT_VERSION, version)
