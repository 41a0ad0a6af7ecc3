"""
Live-sync WebSocket tests (Starlette TestClient).

The client is entered as a context manager so HTTP calls and sockets share
one event loop, and the engine has a single pooled connection: an open
socket that kept its session checked out would starve every HTTP request.
Run: pytest foliosync/tests/test_sync_socket.py -v
"""
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool
from starlette.websockets import WebSocketDisconnect

from foliosync.database import Base, get_db
from foliosync.sync.broadcaster import LocalBroadcaster
from foliosync.sync.presence import LocalPresence
from foliosync.sync.routes import (
    FEED_FAILED_CLOSE_CODE,
    PORTFOLIO_REPLACED_CLOSE_CODE,
    UNAUTHENTICATED_CLOSE_CODE,
)

WS_URL = "/api/portfolio/ws"
OWNER_HEADERS = {"X-User-Id": "user-1", "X-Username": "alice"}
OTHER_HEADERS = {"X-User-Id": "user-2", "X-Username": "bob"}
BIO = {"type": "bio", "content": {"title": "Hello", "description": "About me"}}


async def _create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class FailingFeedBroadcaster(LocalBroadcaster):
    """Publishing works; the subscription dies like a dropped pub/sub connection."""

    @asynccontextmanager
    async def subscribe(self, portfolio_id: str):
        async def _events():
            raise RedisConnectionError("pubsub connection lost")
            yield

        yield _events()


@pytest.fixture
def socket_client(tmp_path, monkeypatch):
    from foliosync import cache
    from foliosync.config import settings
    from foliosync.main import app

    async def _redis_unavailable():
        raise RedisConnectionError("no redis in tests")

    monkeypatch.setattr(settings, "run_migrations", False)
    monkeypatch.setattr(settings, "broadcast_backend", "local")
    monkeypatch.setattr(cache, "create_redis_pool", _redis_unavailable)

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}",
        poolclass=AsyncAdaptedQueuePool,
        pool_size=1,
        max_overflow=0,
        pool_timeout=2,
    )
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_get_db():
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    with TestClient(app) as client:
        client.portal.call(_create_schema, engine)
        app.dependency_overrides[get_db] = _override_get_db
        app.state.session_factory = factory
        app.state.broadcaster = LocalBroadcaster()
        app.state.presence = LocalPresence()
        yield client
        app.dependency_overrides.clear()
        client.portal.call(engine.dispose)


# ---------------------------------------------------------------------------
# Connection basics
# ---------------------------------------------------------------------------

def test_snapshot_on_connect_and_heartbeat(socket_client: TestClient) -> None:
    with socket_client.websocket_connect(WS_URL, headers=OWNER_HEADERS) as ws:
        state = ws.receive_json()
        assert state["type"] == "portfolio-state"
        assert state["version"] == 1
        assert state["portfolio"]["ownerId"] == "user-1"
        assert state["sessionId"]

        ws.send_json({"type": "heartbeat"})
        ack = ws.receive_json()
        assert ack["type"] == "heartbeat-ack"
        assert ack["timestamp"]


def test_query_params_identify_browser_clients(socket_client: TestClient) -> None:
    with socket_client.websocket_connect(f"{WS_URL}?user_id=user-9&username=zed") as ws:
        state = ws.receive_json()
        assert state["portfolio"]["ownerId"] == "user-9"
        assert state["portfolio"]["username"] == "zed"


def test_connection_without_identity_is_closed(socket_client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with socket_client.websocket_connect(WS_URL) as ws:
            ws.receive_json()
    assert exc_info.value.code == UNAUTHENTICATED_CLOSE_CODE


def test_malformed_message_gets_error_reply(socket_client: TestClient) -> None:
    with socket_client.websocket_connect(WS_URL, headers=OWNER_HEADERS) as ws:
        ws.receive_json()
        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "heartbeat"})
        assert ws.receive_json()["type"] == "heartbeat-ack", "session survives a bad message"


def test_open_sockets_hold_no_database_connection(socket_client: TestClient) -> None:
    with socket_client.websocket_connect(WS_URL, headers=OWNER_HEADERS) as first, \
            socket_client.websocket_connect(WS_URL, headers=OWNER_HEADERS) as second:
        first.receive_json()
        second.receive_json()

        response = socket_client.get("/api/portfolio", headers=OWNER_HEADERS)
        assert response.status_code == 200, response.text

        added = socket_client.post("/api/portfolio/blocks", json=BIO, headers=OWNER_HEADERS)
        assert added.status_code == 201, added.text


# ---------------------------------------------------------------------------
# Change events
# ---------------------------------------------------------------------------

def test_http_write_reaches_open_socket(socket_client: TestClient) -> None:
    with socket_client.websocket_connect(WS_URL, headers=OWNER_HEADERS) as ws:
        state = ws.receive_json()

        added = socket_client.post("/api/portfolio/blocks", json={**BIO, "version": 1}, headers=OWNER_HEADERS)
        assert added.status_code == 201, added.text

        message = ws.receive_json()

    assert message["type"] == "change"
    event = message["event"]
    assert event["kind"] == "block-added"
    assert event["version"] == 2
    assert event["portfolioId"] == state["portfolio"]["id"]
    assert event["payload"]["block"]["id"] == added.json()["block"]["id"]


def test_feed_failure_closes_socket_for_reconnect(socket_client: TestClient) -> None:
    from foliosync.main import app

    app.state.broadcaster = FailingFeedBroadcaster()

    with socket_client.websocket_connect(WS_URL, headers=OWNER_HEADERS) as ws:
        assert ws.receive_json()["type"] == "portfolio-state"
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()

    assert exc_info.value.code == FEED_FAILED_CLOSE_CODE


def test_clone_replaces_portfolio_and_closes_old_session(socket_client: TestClient) -> None:
    with socket_client.websocket_connect(WS_URL, headers=OTHER_HEADERS) as ws:
        default_id = ws.receive_json()["portfolio"]["id"]

        socket_client.post("/api/portfolio/blocks", json=BIO, headers=OWNER_HEADERS)
        source_id = socket_client.post("/api/portfolio/publish", json={}, headers=OWNER_HEADERS).json()["portfolio"]["id"]
        cloned = socket_client.post("/api/portfolio/clone", json={"portfolioId": source_id}, headers=OTHER_HEADERS)
        assert cloned.status_code == 201, cloned.text

        message = ws.receive_json()
        assert message["type"] == "change"
        assert message["event"]["kind"] == "portfolio-replaced"
        assert message["event"]["portfolioId"] == default_id
        assert message["event"]["payload"]["portfolioId"] == cloned.json()["portfolio"]["id"]

        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()

    assert exc_info.value.code == PORTFOLIO_REPLACED_CLOSE_CODE


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------

def test_presence_join_online_users_relays_and_leave(socket_client: TestClient) -> None:
    with socket_client.websocket_connect(WS_URL, headers=OWNER_HEADERS) as first:
        first_id = first.receive_json()["sessionId"]

        with socket_client.websocket_connect(WS_URL, headers=OWNER_HEADERS) as second:
            second_id = second.receive_json()["sessionId"]

            joined = first.receive_json()
            assert joined["type"] == "presence"
            assert joined["event"]["kind"] == "user-joined"
            assert joined["event"]["version"] is None
            assert joined["event"]["payload"]["sessionId"] == second_id
            assert joined["event"]["payload"]["username"] == "alice"

            second.send_json({"type": "get-online-users"})
            online = second.receive_json()
            assert online["type"] == "online-users"
            assert online["count"] == 2
            assert [u["sessionId"] for u in online["users"]] == [first_id, second_id]

            second.send_json({"type": "cursor-move", "position": {"blockId": "block_1", "offset": 4}})
            moved = first.receive_json()
            assert moved["event"]["kind"] == "cursor-moved"
            assert moved["event"]["payload"]["position"] == {"blockId": "block_1", "offset": 4}
            assert moved["event"]["payload"]["sessionId"] == second_id

            second.send_json({"type": "typing-start", "blockId": "block_1"})
            typing = first.receive_json()
            assert typing["event"]["kind"] == "user-typing"
            assert typing["event"]["payload"]["blockId"] == "block_1"

        left = first.receive_json()
        assert left["event"]["kind"] == "user-left"
        assert left["event"]["payload"]["sessionId"] == second_id

        first.send_json({"type": "get-online-users"})
        assert first.receive_json()["count"] == 1
