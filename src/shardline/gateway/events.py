"""
gateway/events.py — Event Subscription Bus

Decouples shard state-machine mutation from event delivery. Connections
report to a ShardListener; the ShardManager implements it by queueing each
event, and its delivery task fans them out through an EventBus.

Every event carries ``(shard_id, data)``. Event names:
    DEBUG       data = human-readable lifecycle description
    PAYLOAD     data = raw decoded envelope (dict)
    <TYPE>      one per dispatch type, data = the dispatch's ``d``
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Protocol, Union

from shardline.observability.logger import get_logger

log = get_logger(__name__)

DEBUG = "DEBUG"
PAYLOAD = "PAYLOAD"

Handler = Callable[[int, Any], Union[None, Awaitable[None]]]


class ShardListener(Protocol):
    """What a ShardConnection reports to its owner."""

    async def on_debug(self, shard_id: int, message: str) -> None: ...

    async def on_payload(self, shard_id: int, payload: dict[str, Any]) -> None: ...

    async def on_dispatch(self, shard_id: int, event_type: str, data: Any) -> None: ...


class EventBus:
    """
    Named-event pub/sub. Handlers may be plain callables or coroutine
    functions; coroutines are awaited in registration order so events for
    one shard are delivered in the order they were received.

    A failing handler is logged and skipped; it never reaches the shard
    that produced the event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._queues: dict[str, list[asyncio.Queue]] = {}

    def on(self, event: str, handler: Handler) -> Handler:
        """Register ``handler`` for ``event``. Returns it, so usable as a decorator."""
        self._handlers.setdefault(event, []).append(handler)
        return handler

    def off(self, event: str, handler: Handler) -> bool:
        """Remove a handler. Returns True if it was registered."""
        handlers = self._handlers.get(event, [])
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        return True

    def subscribe(self, event: str, maxsize: int = 0) -> asyncio.Queue:
        """
        Return a queue that receives ``(shard_id, data)`` for every ``event``.

        Useful for consumers that prefer pulling over callbacks. A bounded
        queue (``maxsize`` > 0) drops events while it is full.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._queues.setdefault(event, []).append(queue)
        return queue

    def unsubscribe(self, event: str, queue: asyncio.Queue) -> bool:
        """Stop feeding ``queue``. Returns True if it was subscribed."""
        queues = self._queues.get(event, [])
        try:
            queues.remove(queue)
        except ValueError:
            return False
        return True

    async def emit(self, event: str, shard_id: int, data: Any) -> None:
        for queue in self._queues.get(event, ()):
            try:
                queue.put_nowait((shard_id, data))
            except asyncio.QueueFull:
                log.warning(
                    "events.queue_full",
                    event_name=event,
                    shard_id=shard_id,
                    maxsize=queue.maxsize,
                )
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(shard_id, data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.warning(
                    "events.handler_failed",
                    event_name=event,
                    shard_id=shard_id,
                    error=str(e),
                )
