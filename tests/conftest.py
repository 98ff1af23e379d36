"""
tests/conftest.py — Shared gateway fakes

FakeClock     virtual monotonic clock; sleepers wake only when advance() is
              awaited, in deadline order
FakeWebSocket in-memory socket with the attributes the connection reads
              (send, recv, close, close_code)
FakeServer    connect() stand-in that hands out FakeWebSockets pre-loaded
              with HELLO and optionally answers identify/resume/heartbeat
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
from typing import Any, Optional

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close


async def settle(rounds: int = 100) -> None:
    """Let every runnable task make progress."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []
        self._waiters: list[tuple[float, int, asyncio.Future]] = []
        self._counter = itertools.count()

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (self.now + seconds, next(self._counter), fut))
        await fut

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        await settle()
        while self._waiters and self._waiters[0][0] <= target:
            deadline, _, fut = heapq.heappop(self._waiters)
            self.now = max(self.now, deadline)
            if not fut.done():
                fut.set_result(None)
            await settle()
        self.now = target
        await settle()


class FakeWebSocket:
    def __init__(self, url: str):
        self.url = url
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.close_calls = 0
        self.responder = None

    async def send(self, frame: str | bytes) -> None:
        if self.close_code is not None:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""))
        payload = json.loads(frame)
        self.sent.append(payload)
        if self.responder is not None:
            self.responder(self, payload)

    async def recv(self) -> Any:
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            if self.close_code is None:
                rcvd = getattr(item, "rcvd", None)
                self.close_code = rcvd.code if rcvd is not None else 1006
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls += 1
        self.close_code = code
        self.close_reason = reason

    # ── Server side ──────────────────────────────────────────────────────────

    def feed(self, payload: dict[str, Any]) -> None:
        self.inbox.put_nowait(json.dumps(payload))

    def feed_raw(self, frame: Any) -> None:
        self.inbox.put_nowait(frame)

    def server_close(self, code: int = 4000, reason: str = "unknown error") -> None:
        self.inbox.put_nowait(ConnectionClosedError(Close(code, reason), None))

    def transport_error(self) -> None:
        self.inbox.put_nowait(ConnectionClosedError(None, None))

    def sent_ops(self) -> list[int]:
        return [p["op"] for p in self.sent]


class FakeServer:
    """
    Hands out sockets through ``connect(url)``.

    auto_ready     answer IDENTIFY with a READY dispatch (s=1)
    auto_resumed   answer RESUME with a RESUMED dispatch
    auto_ack       answer HEARTBEAT with HEARTBEAT_ACK
    fail_next      number of upcoming connect() calls that raise OSError
    first_frames   frames handed out instead of HELLO, one per upcoming socket
    """

    def __init__(
        self,
        clock: FakeClock,
        *,
        heartbeat_interval: int = 41250,
        auto_ready: bool = True,
        auto_resumed: bool = True,
        auto_ack: bool = False,
    ):
        self.clock = clock
        self.heartbeat_interval = heartbeat_interval
        self.auto_ready = auto_ready
        self.auto_resumed = auto_resumed
        self.auto_ack = auto_ack
        self.fail_next = 0
        self.first_frames: list[dict[str, Any]] = []
        self.urls: list[str] = []
        self.sockets: list[FakeWebSocket] = []
        self.identifies: list[tuple[float, dict[str, Any]]] = []
        self.resumes: list[tuple[float, dict[str, Any]]] = []
        self._sessions = itertools.count(1)

    async def connect(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(url)
        ws.responder = self._respond
        if self.first_frames:
            ws.feed(self.first_frames.pop(0))
        else:
            ws.feed({"op": 10, "d": {"heartbeat_interval": self.heartbeat_interval}})
        self.sockets.append(ws)
        return ws

    def _respond(self, ws: FakeWebSocket, payload: dict[str, Any]) -> None:
        op = payload["op"]
        if op == 2:
            self.identifies.append((self.clock.monotonic(), payload["d"]))
            if self.auto_ready:
                ws.feed({
                    "op": 0,
                    "t": "READY",
                    "s": 1,
                    "d": {"session_id": f"session-{next(self._sessions)}", "v": 10},
                })
        elif op == 6:
            self.resumes.append((self.clock.monotonic(), payload["d"]))
            if self.auto_resumed:
                seq = payload["d"].get("seq") or 0
                ws.feed({"op": 0, "t": "RESUMED", "s": seq + 1, "d": {}})
        elif op == 1 and self.auto_ack:
            ws.feed({"op": 11})


class RecordingListener:
    def __init__(self):
        self.debug: list[tuple[int, str]] = []
        self.payloads: list[tuple[int, dict[str, Any]]] = []
        self.dispatches: list[tuple[int, str, Any]] = []

    async def on_debug(self, shard_id: int, message: str) -> None:
        self.debug.append((shard_id, message))

    async def on_payload(self, shard_id: int, payload: dict[str, Any]) -> None:
        self.payloads.append((shard_id, payload))

    async def on_dispatch(self, shard_id: int, event_type: str, data: Any) -> None:
        self.dispatches.append((shard_id, event_type, data))

    def messages(self) -> list[str]:
        return [m for _, m in self.debug]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def server(clock: FakeClock) -> FakeServer:
    return FakeServer(clock)


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def drain():
    """The ``settle`` coroutine, for tests that need the loop to run dry."""
    return settle
