"""
Change broadcaster and presence tests: in-process fan-out and the Redis backends (mocked).
Run: pytest foliosync/tests/test_broadcaster.py -v
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import RedisError

from foliosync.cache import make_viewer_key, mark_viewer
from foliosync.sync.broadcaster import (
    ChangeEvent,
    EventKind,
    LocalBroadcaster,
    RedisBroadcaster,
    create_broadcaster,
    make_channel,
    make_event,
    publish_safely,
)
from foliosync.sync.presence import (
    PRESENCE_TTL,
    LocalPresence,
    Participant,
    RedisPresence,
    create_presence,
    make_presence_key,
)

PORTFOLIO_ID = "3f1c2a9e-0000-4000-8000-000000000001"


async def _next(events, timeout: float = 1.0) -> ChangeEvent:
    return await asyncio.wait_for(events.__anext__(), timeout)


# ---------------------------------------------------------------------------
# LocalBroadcaster
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_local_fan_out_to_every_subscriber() -> None:
    broadcaster = LocalBroadcaster()
    event = make_event(PORTFOLIO_ID, EventKind.block_added, 2, {"block": {"id": "block_1"}})

    async with broadcaster.subscribe(PORTFOLIO_ID) as first, broadcaster.subscribe(PORTFOLIO_ID) as second:
        assert broadcaster.subscriber_count(PORTFOLIO_ID) == 2
        await broadcaster.publish(event)

        assert (await _next(first)).version == 2
        assert (await _next(second)).payload["block"]["id"] == "block_1"

    assert broadcaster.subscriber_count(PORTFOLIO_ID) == 0


@pytest.mark.asyncio
async def test_local_events_are_per_portfolio_and_ordered() -> None:
    broadcaster = LocalBroadcaster()

    async with broadcaster.subscribe(PORTFOLIO_ID) as events:
        await broadcaster.publish(make_event("other-portfolio", EventKind.portfolio_updated, 7))
        for version in (2, 3, 4):
            await broadcaster.publish(make_event(PORTFOLIO_ID, EventKind.portfolio_updated, version))

        received = [(await _next(events)).version for _ in range(3)]

    assert received == [2, 3, 4]


@pytest.mark.asyncio
async def test_local_full_queue_drops_instead_of_blocking() -> None:
    broadcaster = LocalBroadcaster(queue_size=1)

    async with broadcaster.subscribe(PORTFOLIO_ID) as events:
        await broadcaster.publish(make_event(PORTFOLIO_ID, EventKind.portfolio_updated, 2))
        await broadcaster.publish(make_event(PORTFOLIO_ID, EventKind.portfolio_updated, 3))

        assert (await _next(events)).version == 2


# ---------------------------------------------------------------------------
# RedisBroadcaster
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_redis_publish_uses_portfolio_channel() -> None:
    client = MagicMock()
    client.publish = AsyncMock(return_value=1)
    event = make_event(PORTFOLIO_ID, EventKind.portfolio_published, 5)

    await RedisBroadcaster(client).publish(event)

    channel, payload = client.publish.call_args.args
    assert channel == make_channel(PORTFOLIO_ID) == f"portfolio:{PORTFOLIO_ID}"
    decoded = ChangeEvent.model_validate_json(payload)
    assert decoded.kind == EventKind.portfolio_published
    assert '"portfolioId"' in payload, "wire format is camelCase"


@pytest.mark.asyncio
async def test_redis_subscribe_decodes_messages_and_unsubscribes() -> None:
    event = make_event(PORTFOLIO_ID, EventKind.block_deleted, 9, {"blockId": "block_1"})

    async def listen():
        yield {"type": "subscribe", "data": 1}
        yield {"type": "message", "data": "not json"}
        yield {"type": "message", "data": event.model_dump_json(by_alias=True)}

    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.listen = listen
    client = MagicMock()
    client.pubsub.return_value = pubsub

    async with RedisBroadcaster(client).subscribe(PORTFOLIO_ID) as events:
        received = await _next(events)

    assert received.version == 9
    assert received.payload == {"blockId": "block_1"}
    pubsub.subscribe.assert_awaited_once_with(make_channel(PORTFOLIO_ID))
    pubsub.unsubscribe.assert_awaited_once_with(make_channel(PORTFOLIO_ID))
    pubsub.aclose.assert_awaited_once()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_publish_safely_swallows_backend_failure() -> None:
    broadcaster = MagicMock()
    broadcaster.publish = AsyncMock(side_effect=RedisError("connection reset"))

    delivered = await publish_safely(broadcaster, make_event(PORTFOLIO_ID, EventKind.portfolio_updated, 2))

    assert delivered is False


@pytest.mark.asyncio
async def test_publish_safely_without_broadcaster() -> None:
    assert await publish_safely(None, make_event(PORTFOLIO_ID, EventKind.portfolio_updated, 2)) is False


def test_create_broadcaster_falls_back_to_local_without_redis() -> None:
    assert isinstance(create_broadcaster(None), LocalBroadcaster)


# ---------------------------------------------------------------------------
# Unique-view markers
# ---------------------------------------------------------------------------

def test_viewer_key_hashes_fingerprint() -> None:
    key = make_viewer_key(PORTFOLIO_ID, "203.0.113.7|Mozilla/5.0")
    assert key.startswith(f"viewer:{PORTFOLIO_ID}:")
    assert "203.0.113.7" not in key


@pytest.mark.asyncio
async def test_mark_viewer_first_visit_only() -> None:
    client = MagicMock()
    client.set = AsyncMock(side_effect=[True, None])

    assert await mark_viewer(client, PORTFOLIO_ID, "viewer") is True
    assert await mark_viewer(client, PORTFOLIO_ID, "viewer") is False
    assert client.set.call_args.kwargs["nx"] is True


@pytest.mark.asyncio
async def test_mark_viewer_tolerates_redis_outage() -> None:
    client = MagicMock()
    client.set = AsyncMock(side_effect=RedisError("down"))
    assert await mark_viewer(client, PORTFOLIO_ID, "viewer") is False
    assert await mark_viewer(None, PORTFOLIO_ID, "viewer") is False


# ---------------------------------------------------------------------------
# Presence registry and presence events
# ---------------------------------------------------------------------------

def test_presence_events_carry_no_version() -> None:
    event = make_event(PORTFOLIO_ID, EventKind.user_joined, None, {"sessionId": "s-1"})

    assert event.kind.is_presence
    assert not EventKind.block_added.is_presence
    assert ChangeEvent.model_validate_json(event.model_dump_json(by_alias=True)).version is None


@pytest.mark.asyncio
async def test_local_presence_tracks_sessions_in_join_order() -> None:
    presence = LocalPresence()
    first = Participant.new("s-1", "user-1", "alice")
    second = Participant.new("s-2", "user-1", "alice")

    await presence.join(PORTFOLIO_ID, first)
    await presence.join(PORTFOLIO_ID, second)
    assert [p.session_id for p in await presence.online(PORTFOLIO_ID)] == ["s-1", "s-2"]

    await presence.leave(PORTFOLIO_ID, "s-1")
    await presence.leave(PORTFOLIO_ID, "s-unknown")
    assert [p.session_id for p in await presence.online(PORTFOLIO_ID)] == ["s-2"]
    assert await presence.online("other-portfolio") == []


@pytest.mark.asyncio
async def test_redis_presence_uses_one_hash_per_portfolio() -> None:
    participant = Participant.new("s-1", "user-1", "alice")
    client = MagicMock()
    client.hset = AsyncMock(return_value=1)
    client.expire = AsyncMock(return_value=True)
    client.hdel = AsyncMock(return_value=1)
    client.hgetall = AsyncMock(return_value={
        "s-1": participant.model_dump_json(by_alias=True),
        "s-bad": "not json",
    })
    presence = RedisPresence(client)

    await presence.join(PORTFOLIO_ID, participant)
    online = await presence.online(PORTFOLIO_ID)
    await presence.leave(PORTFOLIO_ID, "s-1")

    key = make_presence_key(PORTFOLIO_ID)
    assert key == f"presence:{PORTFOLIO_ID}"
    assert client.hset.call_args.args[:2] == (key, "s-1")
    client.expire.assert_awaited_once_with(key, PRESENCE_TTL)
    assert [p.session_id for p in online] == ["s-1"], "malformed entries are skipped"
    client.hdel.assert_awaited_once_with(key, "s-1")


@pytest.mark.asyncio
async def test_redis_presence_outage_reports_nobody() -> None:
    client = MagicMock()
    client.hgetall = AsyncMock(side_effect=RedisError("down"))
    client.hset = AsyncMock(side_effect=RedisError("down"))

    presence = RedisPresence(client)
    await presence.join(PORTFOLIO_ID, Participant.new("s-1", "user-1"))

    assert await presence.online(PORTFOLIO_ID) == []


def test_create_presence_falls_back_to_local_without_redis() -> None:
    assert isinstance(create_presence(None), LocalPresence)
