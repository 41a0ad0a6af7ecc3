"""
broadcaster.py: Change Broadcaster: publish/subscribe for portfolio change events.

Channel naming (one logical channel per portfolio):
  portfolio:{portfolio_id}   → ChangeEvent JSON

Delivery contract:
  - at-least-once while a session is subscribed; a disconnected session misses
    events and reconciles by re-fetching the document and comparing `version`
  - FIFO per portfolio for a single publishing process; every document event
    carries the post-commit `version` so subscribers can detect gaps
  - presence events (user-joined, cursor-moved, ...) share the channel and
    carry no version
  - publishing never blocks or fails the commit path (see publish_safely)

Backends:
  - RedisBroadcaster  redis.asyncio PUBLISH / SUBSCRIBE: fan-out across API processes
  - LocalBroadcaster  in-process asyncio queues: single worker and tests
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Optional

import redis.asyncio as aioredis

from foliosync.config import settings
from foliosync.portfolio.blocks import CamelModel
from foliosync.portfolio.schemas import utcnow

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "portfolio"
LOCAL_QUEUE_SIZE = 256


def make_channel(portfolio_id: str) -> str:
    """Build pub/sub channel name: portfolio:{portfolio_id}"""
    return f"{CHANNEL_PREFIX}:{portfolio_id}"


# ---------------------------------------------------------------------------
# Event contract
# ---------------------------------------------------------------------------

class EventKind(str, Enum):
    portfolio_updated = "portfolio-updated"
    block_added = "block-added"
    block_updated = "block-updated"
    block_deleted = "block-deleted"
    blocks_reordered = "blocks-reordered"
    portfolio_published = "portfolio-published"
    portfolio_unpublished = "portfolio-unpublished"
    portfolio_archived = "portfolio-archived"
    # The owner's document now lives under another portfolio id (clone)
    portfolio_replaced = "portfolio-replaced"
    # Presence: no document version attached
    user_joined = "user-joined"
    user_left = "user-left"
    cursor_moved = "cursor-moved"
    selection_changed = "selection-changed"
    user_typing = "user-typing"
    user_stopped_typing = "user-stopped-typing"

    @property
    def is_presence(self) -> bool:
        return self in PRESENCE_KINDS


PRESENCE_KINDS = frozenset({
    EventKind.user_joined,
    EventKind.user_left,
    EventKind.cursor_moved,
    EventKind.selection_changed,
    EventKind.user_typing,
    EventKind.user_stopped_typing,
})


class ChangeEvent(CamelModel):
    """
    {portfolioId, kind, payload, version, timestamp}: version is post-commit
    for document changes and None for presence events.
    """
    portfolio_id: str
    kind: EventKind
    payload: dict[str, Any] = {}
    version: Optional[int] = None
    timestamp: datetime


def make_event(
    portfolio_id: str,
    kind: EventKind,
    version: Optional[int],
    payload: Optional[dict[str, Any]] = None,
) -> ChangeEvent:
    return ChangeEvent(
        portfolio_id=portfolio_id,
        kind=kind,
        payload=payload or {},
        version=version,
        timestamp=utcnow(),
    )


# ---------------------------------------------------------------------------
# Broadcaster interface
# ---------------------------------------------------------------------------

class Broadcaster(ABC):
    """Explicit publish/subscribe seam the API Surface calls after a commit."""

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """Deliver `event` to every subscriber of its portfolio channel."""

    @abstractmethod
    def subscribe(self, portfolio_id: str):
        """
        Async context manager yielding an async iterator of ChangeEvents:

            async with broadcaster.subscribe(pid) as events:
                async for event in events: ...
        """

    async def close(self) -> None:
        return None


class LocalBroadcaster(Broadcaster):
    """
    In-process fan-out: one bounded asyncio.Queue per subscriber.
    A subscriber that falls LOCAL_QUEUE_SIZE events behind starts dropping;
    it will see the version gap on the next event and re-fetch.
    """

    def __init__(self, queue_size: int = LOCAL_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, portfolio_id: str) -> int:
        return len(self._subscribers.get(portfolio_id, ()))

    async def publish(self, event: ChangeEvent) -> None:
        for queue in list(self._subscribers.get(event.portfolio_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber queue full, dropping event portfolio_id=%s version=%s",
                    event.portfolio_id, event.version,
                )

    @asynccontextmanager
    async def subscribe(self, portfolio_id: str) -> AsyncIterator[AsyncIterator[ChangeEvent]]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[portfolio_id].add(queue)
        logger.debug("Local subscribe portfolio_id=%s", portfolio_id)

        async def _events() -> AsyncIterator[ChangeEvent]:
            while True:
                yield await queue.get()

        try:
            yield _events()
        finally:
            subscribers = self._subscribers.get(portfolio_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[portfolio_id]
            logger.debug("Local unsubscribe portfolio_id=%s", portfolio_id)


class RedisBroadcaster(Broadcaster):
    """
    Redis pub/sub fan-out. The client is the shared pool created in the
    lifespan (cache.create_redis_pool): decode_responses=True, so payloads
    arrive as str.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    async def publish(self, event: ChangeEvent) -> None:
        channel = make_channel(event.portfolio_id)
        receivers = await self._client.publish(channel, event.model_dump_json(by_alias=True))
        logger.debug(
            "Published %s portfolio_id=%s version=%s receivers=%s",
            event.kind.value, event.portfolio_id, event.version, receivers,
        )

    @asynccontextmanager
    async def subscribe(self, portfolio_id: str) -> AsyncIterator[AsyncIterator[ChangeEvent]]:
        channel = make_channel(portfolio_id)
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        logger.debug("Redis subscribe channel=%s", channel)

        async def _events() -> AsyncIterator[ChangeEvent]:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield ChangeEvent.model_validate_json(message["data"])
                except ValueError:
                    logger.warning("Discarding malformed event on channel=%s", channel)

        try:
            yield _events()
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            logger.debug("Redis unsubscribe channel=%s", channel)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def publish_safely(broadcaster: Optional[Broadcaster], event: ChangeEvent) -> bool:
    """
    Publish after a successful commit. Failures are logged and reported as
    False: never raised into, or retried on, the request path.
    """
    if broadcaster is None:
        logger.warning("No broadcaster configured; event %s not delivered", event.kind.value)
        return False
    try:
        await broadcaster.publish(event)
    except Exception:
        logger.error(
            "Broadcast failed kind=%s portfolio_id=%s version=%s",
            event.kind.value, event.portfolio_id, event.version,
            exc_info=True,
        )
        return False
    return True


def create_broadcaster(redis_client: Optional[aioredis.Redis]) -> Broadcaster:
    """Pick the backend from settings.broadcast_backend (falls back to local without Redis)."""
    if settings.broadcast_backend == "redis" and redis_client is not None:
        logger.info("Using Redis broadcaster")
        return RedisBroadcaster(redis_client)
    logger.info("Using in-process broadcaster")
    return LocalBroadcaster()
