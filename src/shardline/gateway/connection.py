"""
gateway/connection.py — Per-Shard Connection State Machine

One ShardConnection owns one socket's full lifecycle:

    DISCONNECTED → CONNECTING → AWAITING_HELLO → IDENTIFYING | RESUMING
                 → READY → RECONNECTING → DISCONNECTED → ...

The ``state`` field is only changed through ``_transition()``. Everything a
shard mutates is mutated by its own tasks (reader, heartbeat, one pending
reconnect) on the owning event loop, so no locking is needed.

Faults never reach the caller of ``connect()``: transport errors and
invalid sessions retry after 5 s, server-initiated closes after 10 s, and a
missed heartbeat acknowledgement resumes immediately. A socket lost while
a resume is outstanding discards the session, so the retry identifies.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from shardline.exceptions import (
    GatewayProtocolError,
    PayloadDecodeError,
    ShardNotConnectedError,
)
from shardline.gateway.codec import JSON_CODEC, Codec
from shardline.gateway.events import ShardListener
from shardline.gateway.protocol import (
    LARGE_THRESHOLD,
    READY,
    RESUMED,
    GatewayPayload,
    OpCode,
    make_heartbeat,
    make_identify,
    make_resume,
)
from shardline.gateway.timing import Clock, IdentifyLimiter, ShardTimings, SystemClock
from shardline.observability.logger import get_logger

ConnectFn = Callable[[str], Awaitable[Any]]
Continuation = Callable[[], Awaitable[None]]

CLOSE_GOING_AWAY = 1001


class ShardState(str, Enum):
    DISCONNECTED   = "disconnected"
    CONNECTING     = "connecting"
    AWAITING_HELLO = "awaiting_hello"
    IDENTIFYING    = "identifying"
    RESUMING       = "resuming"
    READY          = "ready"
    RECONNECTING   = "reconnecting"


@dataclass(frozen=True)
class ReadyInfo:
    """Result of ShardConnection.connect()."""
    ready_at: float
    connection: "ShardConnection"


def default_connect(url: str) -> Awaitable[Any]:
    """Open a websocket with library pings off; the gateway heartbeat replaces them."""
    return ws_connect(url, ping_interval=None, max_size=None, close_timeout=10)


class ShardConnection:
    """
    Gateway connection for a single shard.

    Usage::

        conn = ShardConnection(0, 1, token=..., gateway_url=..., listener=...,
                               limiter=IdentifyLimiter(SystemClock()))
        info = await conn.connect()     # resolves once READY
        await conn.send({"op": 3, "d": {...}})
        await conn.shutdown()
    """

    def __init__(
        self,
        shard_id: int,
        shard_count: int,
        *,
        token: str,
        gateway_url: str,
        listener: ShardListener,
        limiter: IdentifyLimiter,
        codec: Codec = JSON_CODEC,
        clock: Optional[Clock] = None,
        timings: Optional[ShardTimings] = None,
        connect_fn: Optional[ConnectFn] = None,
        properties: Optional[dict[str, str]] = None,
        large_threshold: int = LARGE_THRESHOLD,
    ):
        self.shard_id = shard_id
        self.shard_count = shard_count
        self._token = token
        self._gateway_url = gateway_url
        self._listener = listener
        self._limiter = limiter
        self._codec = codec
        self._clock = clock or SystemClock()
        self._timings = timings or ShardTimings()
        self._connect_fn = connect_fn or default_connect
        self._properties = dict(properties or {})
        self._large_threshold = large_threshold

        # Session state
        self.session_id: Optional[str] = None
        self.last_sequence: Optional[int] = None
        self.heartbeat_interval: Optional[float] = None   # seconds
        self.ack_pending = False

        self._state = ShardState.DISCONNECTED
        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._closing = False
        self._shut_down = False

        self._log = get_logger(__name__, shard_id=shard_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ShardState:
        return self._state

    @property
    def url(self) -> str:
        return f"{self._gateway_url}?encoding={self._codec.name}"

    @property
    def can_resume(self) -> bool:
        return self.session_id is not None

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self, continuation: Optional[Continuation] = None) -> ReadyInfo:
        """
        Open the socket, handshake, and wait until the shard is READY.

        ``continuation`` replaces identify() after the hello/delay step; the
        reconnect path passes the resume sender here.
        """
        self._shut_down = False
        self._cancel_reconnect()
        if self._ws is not None and self._ws.close_code is None:
            await self.close()

        if self._ready is None or self._ready.done():
            self._ready = asyncio.get_running_loop().create_future()
        ready = self._ready

        await self._open(continuation)
        return await asyncio.shield(ready)

    async def identify(self) -> None:
        """Start a fresh session. Forgets any previous session and sequence."""
        self.session_id = None
        self.last_sequence = None
        await self._transition(ShardState.IDENTIFYING, "sent identify packet")
        await self._send(
            make_identify(
                self._token,
                self.shard_id,
                self.shard_count,
                properties=self._properties,
                large_threshold=self._large_threshold,
            )
        )

    async def resume(self) -> None:
        """Send RESUME for the held session on the current socket."""
        await self._transition(ShardState.RESUMING, "sent resume packet")
        await self._send(make_resume(self._token, self.session_id, self.last_sequence))

    async def close(self) -> None:
        """
        Stop heartbeating and close the socket with 1001.

        Idempotent, and safe to call from any of this shard's own tasks.
        Returns once the closing handshake finished; never raises.
        """
        self._stop_heartbeat()
        self._closing = True

        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        ws = self._ws
        if ws is not None and ws.close_code is None:
            await self._debug("client attempting to close connection")
            try:
                await ws.close(code=CLOSE_GOING_AWAY, reason="Closed connection")
            except (OSError, WebSocketException) as e:
                self._log.warning("shard.close.failed", error=str(e))
            await self._debug("client closed connection")

        if self._state is not ShardState.DISCONNECTED:
            await self._transition(ShardState.DISCONNECTED, "disconnected")

    async def shutdown(self) -> None:
        """Close for good: cancel pending reconnects and ignore future faults."""
        self._shut_down = True
        self._cancel_reconnect()
        await self.close()
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()

    async def send(self, payload: dict[str, Any]) -> None:
        """Encode and send an application payload on this shard's socket."""
        ws = self._ws
        if ws is None or ws.close_code is not None:
            raise ShardNotConnectedError(f"shard {self.shard_id} has no open socket")
        try:
            await ws.send(self._codec.encode(payload))
        except ConnectionClosed as e:
            raise ShardNotConnectedError(f"shard {self.shard_id} socket closed: {e}") from e

    # ─────────────────────────────────────────────────────────────────────────
    # Handshake
    # ─────────────────────────────────────────────────────────────────────────

    async def _open(self, continuation: Optional[Continuation]) -> None:
        if self._shut_down:
            return
        self._closing = False
        await self._transition(ShardState.CONNECTING, "starting connection")
        try:
            ws = await self._connect_fn(self.url)
            self._ws = ws
            await self._transition(ShardState.AWAITING_HELLO, "opened connection")
            interval = await self._await_hello(ws)
        except (OSError, asyncio.TimeoutError, WebSocketException, GatewayProtocolError) as e:
            await self._on_transport_error(e)
            return

        self._start_heartbeat(interval)
        self._reader_task = asyncio.create_task(
            self._read_loop(ws), name=f"shard-{self.shard_id}-reader"
        )

        delay = self._limiter.delay()
        if delay > 0:
            await self._debug(f"waiting {delay:.2f}s before identifying")
            await self._clock.sleep(delay)
        if self._closing or self._ws is not ws:
            return

        try:
            if continuation is not None:
                await continuation()
            else:
                await self.identify()
        except (OSError, WebSocketException) as e:
            # The reader sees the same closed socket and schedules the retry.
            self._log.warning("shard.handshake.send_failed", error=str(e))

    async def _await_hello(self, ws: Any) -> float:
        payload = self._decode(await ws.recv())
        if payload is None or payload.op != OpCode.HELLO:
            raise GatewayProtocolError(
                f"expected HELLO, got op {payload.op if payload else 'undecodable'}"
            )
        data = payload.d if isinstance(payload.d, dict) else {}
        interval_ms = data.get("heartbeat_interval")
        if not isinstance(interval_ms, (int, float)) or interval_ms <= 0:
            raise GatewayProtocolError(f"HELLO carried invalid heartbeat_interval {interval_ms!r}")
        await self._debug(f"received heartbeat info {data}")
        return interval_ms / 1000

    # ─────────────────────────────────────────────────────────────────────────
    # Heartbeat
    # ─────────────────────────────────────────────────────────────────────────

    def _start_heartbeat(self, interval: float) -> None:
        self._stop_heartbeat()
        self.heartbeat_interval = interval
        self.ack_pending = False
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(interval), name=f"shard-{self.shard_id}-heartbeat"
        )

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _heartbeat_loop(self, interval: float) -> None:
        while True:
            await self._clock.sleep(interval)
            if self.ack_pending:
                self._log.warning("shard.heartbeat.zombie", interval=interval)
                self._stop_heartbeat()
                await self._schedule_reconnect(
                    0.0, resume=True, reason="heartbeat not acknowledged"
                )
                return
            await self._send_heartbeat()

    async def _send_heartbeat(self, *, expect_ack: bool = True) -> None:
        try:
            await self._send(make_heartbeat(self.last_sequence))
        except (OSError, WebSocketException) as e:
            self._log.warning("shard.heartbeat.send_failed", error=str(e))
            return
        if expect_ack:
            self.ack_pending = True
        await self._debug(f"sent heartbeat (seq={self.last_sequence})")

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────────

    async def _read_loop(self, ws: Any) -> None:
        try:
            while True:
                payload = self._decode(await ws.recv())
                if payload is not None:
                    await self._handle(payload)
        except ConnectionClosed as e:
            if self._closing or ws is not self._ws or self._reconnect_task is not None:
                return
            if e.rcvd is not None:
                await self._debug(
                    f"server closed connection. code: {e.rcvd.code}, reason: {e.rcvd.reason}"
                )
                resume = not await self._abandon_failed_resume()
                await self._schedule_reconnect(
                    self._timings.close_reconnect, resume=resume, reason="server closed connection"
                )
            else:
                await self._on_transport_error(e)
        except (OSError, WebSocketException) as e:
            if not self._closing:
                await self._on_transport_error(e)
        except Exception as e:
            self._log.exception("shard.reader.crashed", error=str(e))
            if not self._closing:
                await self._on_transport_error(e)

    def _decode(self, raw: Any) -> Optional[GatewayPayload]:
        try:
            return GatewayPayload.from_raw(self._codec.decode(raw))
        except (PayloadDecodeError, ValueError) as e:
            self._log.warning("shard.payload.dropped", error=str(e))
            return None

    async def _handle(self, payload: GatewayPayload) -> None:
        if payload.s is not None:
            self._observe_sequence(payload.s)
        await self._listener.on_payload(self.shard_id, payload.to_dict())

        op = payload.op
        if op == OpCode.DISPATCH:
            await self._handle_dispatch(payload)
        elif op == OpCode.HEARTBEAT_ACK:
            self.ack_pending = False
            await self._debug("heartbeat acknowledged")
        elif op == OpCode.HEARTBEAT:
            await self._debug("server requested a heartbeat")
            await self._send_heartbeat(expect_ack=False)
        elif op == OpCode.RECONNECT:
            await self._schedule_reconnect(0.0, resume=True, reason="server requested reconnect")
        elif op == OpCode.INVALID_SESSION:
            # identify() resets the sequence once the new socket is up.
            self._stop_heartbeat()
            self.session_id = None
            await self._schedule_reconnect(
                self._timings.invalid_session, resume=False, reason="invalid session"
            )
        else:
            self._log.debug("shard.payload.unhandled", op=op)

    async def _handle_dispatch(self, payload: GatewayPayload) -> None:
        event_type = payload.t
        if event_type == READY:
            data = payload.d if isinstance(payload.d, dict) else {}
            self.session_id = data.get("session_id")
        if event_type:
            await self._listener.on_dispatch(self.shard_id, event_type, payload.d)

        if event_type == READY:
            await self._transition(ShardState.READY, "is ready")
            self._resolve_ready()
        elif event_type == RESUMED:
            await self._transition(ShardState.READY, "successfully resumed")
            self._resolve_ready()

    def _observe_sequence(self, seq: int) -> None:
        if self.last_sequence is not None and seq < self.last_sequence:
            self._log.warning("shard.sequence.regressed", received=seq, last=self.last_sequence)
            return
        self.last_sequence = seq

    def _resolve_ready(self) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(ReadyInfo(ready_at=self._clock.monotonic(), connection=self))

    # ─────────────────────────────────────────────────────────────────────────
    # Reconnect
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_transport_error(self, error: BaseException) -> None:
        self._log.warning("shard.transport_error", error=str(error) or type(error).__name__)
        resume = not await self._abandon_failed_resume()
        await self._schedule_reconnect(
            self._timings.error_reconnect,
            resume=resume,
            reason=f"received error {str(error) or type(error).__name__}",
        )

    async def _abandon_failed_resume(self) -> bool:
        """
        A socket lost while RESUMING means the server refused the session.
        Drop it so the next attempt identifies. Returns True if dropped.
        """
        if self._state is not ShardState.RESUMING:
            return False
        self._log.info("shard.resume.failed", session_id=self.session_id)
        self.session_id = None
        self.last_sequence = None
        await self._debug("resume failed, falling back to identify")
        return True

    async def _schedule_reconnect(self, delay: float, *, resume: bool, reason: str) -> None:
        """Replace any pending reconnect with close() + reopen after ``delay``."""
        if self._shut_down:
            return
        self._cancel_reconnect()
        await self._transition(ShardState.RECONNECTING, f"{reason}, reconnecting in {delay:g}s")
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay, resume), name=f"shard-{self.shard_id}-reconnect"
        )

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _reconnect_after(self, delay: float, resume: bool) -> None:
        if delay > 0:
            await self._clock.sleep(delay)
        # Fired: from here on this attempt is no longer cancellable as a timer.
        self._reconnect_task = None
        await self.close()
        if resume and self.can_resume:
            await self._debug("attempting to resume session")
            await self._open(self.resume)
        else:
            await self._open(None)

    # ─────────────────────────────────────────────────────────────────────────
    # Output
    # ─────────────────────────────────────────────────────────────────────────

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._ws is None:
            raise ShardNotConnectedError(f"shard {self.shard_id} has no socket")
        await self._ws.send(self._codec.encode(payload))

    async def _transition(self, state: ShardState, message: str) -> None:
        previous = self._state
        self._state = state
        self._log.info("shard.state", state=state.value, previous=previous.value, detail=message)
        await self._listener.on_debug(self.shard_id, message)

    async def _debug(self, message: str) -> None:
        self._log.debug("shard.debug", detail=message)
        await self._listener.on_debug(self.shard_id, message)
