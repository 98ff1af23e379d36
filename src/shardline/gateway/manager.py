"""
gateway/manager.py — Shard Coordinator

ShardManager owns every ShardConnection for one credential, fetches the
gateway metadata, brings shards up strictly one at a time (identify shares
a global rate limit), routes outbound sends, and re-emits every shard's
events tagged with its index.

Shard tasks only enqueue events; a single delivery task drains the queue
and runs handlers, so a slow handler never holds up heartbeats or acks.
Events keep the order in which the shards produced them.

Usage::

    manager = ShardManager.from_settings(get_settings())
    manager.on("MESSAGE_CREATE", handle_message)
    manager.on("DEBUG", lambda shard, msg: print(shard, msg))
    await manager.connect()          # all shards, sequentially
    await manager.send({"op": 3, "d": {...}}, shard_id=0)
    await manager.close()
"""

from __future__ import annotations

import asyncio
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Mapping, Optional, Union

from shardline.exceptions import ShardNotFoundError
from shardline.gateway.codec import JSON_CODEC, Codec, select_codec
from shardline.gateway.connection import ConnectFn, ShardConnection
from shardline.gateway.events import DEBUG, PAYLOAD, EventBus, Handler
from shardline.gateway.info import DEFAULT_API_BASE, GatewayInfo, GatewayInfoClient
from shardline.gateway.protocol import LARGE_THRESHOLD, READY
from shardline.gateway.timing import Clock, IdentifyLimiter, ShardTimings, SystemClock
from shardline.observability.logger import get_logger

if TYPE_CHECKING:
    from shardline.config.settings import Settings

log = get_logger(__name__)

ShardCount = Union[int, Literal["auto"]]
GatewayLookup = Callable[[], Awaitable[GatewayInfo]]


class ShardManager:
    """
    Coordinator for all shards of one bot credential.

    The shard map is owned here and only mutated by this class; ``shards``
    exposes a read-only view.
    """

    def __init__(
        self,
        token: str,
        *,
        shard_count: ShardCount = "auto",
        codec: Codec = JSON_CODEC,
        gateway_lookup: Optional[GatewayLookup] = None,
        api_base: str = DEFAULT_API_BASE,
        timings: Optional[ShardTimings] = None,
        clock: Optional[Clock] = None,
        connect_fn: Optional[ConnectFn] = None,
        properties: Optional[dict[str, str]] = None,
        large_threshold: int = LARGE_THRESHOLD,
    ):
        if shard_count != "auto" and (not isinstance(shard_count, int) or shard_count < 1):
            raise ValueError(f"shard_count must be 'auto' or a positive integer, got {shard_count!r}")
        self._token = token
        self._configured_count = shard_count
        self._codec = codec
        self._lookup: GatewayLookup = gateway_lookup or GatewayInfoClient(token, api_base=api_base)
        self._timings = timings or ShardTimings()
        self._clock = clock or SystemClock()
        self._connect_fn = connect_fn
        self._properties = dict(properties or {})
        self._large_threshold = large_threshold

        self._limiter = IdentifyLimiter(self._clock, self._timings.identify_spacing)
        self._bus = EventBus()
        self._events: asyncio.Queue = asyncio.Queue()   # (event, shard_id, data)
        self._delivery_task: Optional[asyncio.Task] = None
        self._connections: dict[int, ShardConnection] = {}
        self._gateway: Optional[GatewayInfo] = None
        self._shard_count: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides: Any) -> "ShardManager":
        """Build a manager from Settings; keyword overrides win (tests inject fakes)."""
        gw = settings.gateway
        kwargs: dict[str, Any] = {
            "shard_count": gw.shard_count,
            "codec": select_codec(gw.encoding),
            "api_base": gw.api_base,
            "timings": settings.timings.to_shard_timings(),
            "properties": gw.client_properties.model_dump(),
            "large_threshold": gw.large_threshold,
        }
        kwargs.update(overrides)
        return cls(settings.token or "", **kwargs)

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def gateway(self) -> Optional[GatewayInfo]:
        return self._gateway

    @property
    def shard_count(self) -> Optional[int]:
        """Effective shard count; None until the gateway has been looked up."""
        return self._shard_count

    @property
    def shards(self) -> Mapping[int, ShardConnection]:
        return MappingProxyType(self._connections)

    @property
    def codec(self) -> Codec:
        return self._codec

    @property
    def last_ready(self) -> Optional[float]:
        return self._limiter.last_ready

    # ─────────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ─────────────────────────────────────────────────────────────────────────

    def on(self, event: str, handler: Handler) -> Handler:
        """Register a handler called with ``(shard_id, data)`` for ``event``."""
        return self._bus.on(event, handler)

    def off(self, event: str, handler: Handler) -> bool:
        return self._bus.off(event, handler)

    def subscribe(self, event: str, maxsize: int = 0) -> asyncio.Queue:
        """
        Queue of ``(shard_id, data)`` tuples for ``event``.

        With ``maxsize`` > 0, events arriving while the queue is full are
        dropped (and logged) instead of growing it.
        """
        return self._bus.subscribe(event, maxsize)

    def unsubscribe(self, event: str, queue: asyncio.Queue) -> bool:
        return self._bus.unsubscribe(event, queue)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(
        self,
        start: int = 0,
        end: Optional[int] = None,
        *,
        refresh: bool = False,
    ) -> None:
        """
        Bring shards ``start`` .. ``end - 1`` to READY, one after another.

        The gateway lookup happens once per manager (or again with
        ``refresh=True``); failures raise GatewayInfoError. Each shard waits
        out the identify spacing measured from the previous shard's READY.
        """
        if self._gateway is None or self._shard_count is None or refresh:
            gateway, total = await self._load_gateway()
        else:
            gateway, total = self._gateway, self._shard_count

        if end is None:
            end = total
        if not (0 <= start < end <= total):
            raise ValueError(f"invalid shard range [{start}, {end}) for {total} shard(s)")

        log.info("manager.connect.start", start=start, end=end, total=total, codec=self._codec.name)
        for shard_id in range(start, end):
            existing = self._connections.pop(shard_id, None)
            if existing is not None:
                await existing.shutdown()

            conn = self._create_connection(shard_id, total, gateway.url)
            self._connections[shard_id] = conn
            info = await conn.connect()
            self._limiter.record_ready(info.ready_at)
            log.info("manager.shard.ready", shard_id=shard_id, ready_at=info.ready_at)
        log.info("manager.connect.done", start=start, end=end)

    async def send(self, payload: dict[str, Any], shard_id: int = 0) -> None:
        """Send an application payload through the addressed shard."""
        conn = self._connections.get(shard_id)
        if conn is None:
            raise ShardNotFoundError(shard_id)
        await conn.send(payload)

    async def close(self) -> None:
        """
        Shut every shard down, then wait for queued events to reach their
        handlers. Safe to call more than once.
        """
        connections = list(self._connections.values())
        self._connections.clear()
        for conn in connections:
            await conn.shutdown()
        await self._stop_delivery()
        log.info("manager.closed", shards=len(connections))

    # ─────────────────────────────────────────────────────────────────────────
    # Delivery
    # ─────────────────────────────────────────────────────────────────────────

    def _enqueue(self, event: str, shard_id: int, data: Any) -> None:
        self._events.put_nowait((event, shard_id, data))
        if self._delivery_task is None or self._delivery_task.done():
            self._delivery_task = asyncio.create_task(
                self._deliver(), name="shardline-event-delivery"
            )

    async def _deliver(self) -> None:
        while True:
            event, shard_id, data = await self._events.get()
            try:
                await self._bus.emit(event, shard_id, data)
            finally:
                self._events.task_done()

    async def _stop_delivery(self) -> None:
        task = self._delivery_task
        # A handler closing the manager can't wait on its own delivery.
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            await self._events.join()
        self._delivery_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _load_gateway(self) -> tuple[GatewayInfo, int]:
        info = await self._lookup()
        count = info.shards if self._configured_count == "auto" else self._configured_count
        if self._shard_count is not None and count != self._shard_count:
            # Existing shards identified with the old total; they can't be kept.
            log.info("manager.reshard", old=self._shard_count, new=count)
            await self.close()
        self._gateway = info
        self._shard_count = count
        log.info(
            "manager.gateway",
            url=info.url,
            recommended=info.shards,
            effective=count,
        )
        return info, count

    def _create_connection(self, shard_id: int, total: int, gateway_url: str) -> ShardConnection:
        return ShardConnection(
            shard_id,
            total,
            token=self._token,
            gateway_url=gateway_url,
            listener=self,
            limiter=self._limiter,
            codec=self._codec,
            clock=self._clock,
            timings=self._timings,
            connect_fn=self._connect_fn,
            properties=self._properties,
            large_threshold=self._large_threshold,
        )

    # ── ShardListener ────────────────────────────────────────────────────────

    async def on_debug(self, shard_id: int, message: str) -> None:
        self._enqueue(DEBUG, shard_id, message)

    async def on_payload(self, shard_id: int, payload: dict[str, Any]) -> None:
        self._enqueue(PAYLOAD, shard_id, payload)

    async def on_dispatch(self, shard_id: int, event_type: str, data: Any) -> None:
        if event_type == READY:
            # Also covers re-identifies after invalid sessions.
            self._limiter.record_ready(self._clock.monotonic())
        self._enqueue(event_type, shard_id, data)
