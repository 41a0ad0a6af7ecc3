"""
Live-sync WebSocket: one connection per editing session.

  WS /api/portfolio/ws

On connect the session receives the current document and its session id:
  {"type": "portfolio-state", "portfolio": {...}, "version": n, "sessionId": "..."}
then every ChangeEvent for the portfolio:
  {"type": "change",   "event": {portfolioId, kind, payload, version, timestamp}}
and the presence of the owner's other sessions (never its own):
  {"type": "presence", "event": {portfolioId, kind, payload, timestamp}}
      kind: user-joined | user-left | cursor-moved | selection-changed
            | user-typing | user-stopped-typing

Client → server messages:
  {"type": "heartbeat"}                           → {"type": "heartbeat-ack", "timestamp": ...}
  {"type": "get-online-users"}                    → {"type": "online-users", "users": [...], "count": n}
  {"type": "cursor-move", "position": {...}}      → cursor-moved to the other sessions
  {"type": "selection-change", "selectedBlocks": [...]}
  {"type": "typing-start" | "typing-stop", "blockId": "..."}

Close codes the client acts on:
  4401  no identity on the upgrade request
  4410  the portfolio was replaced (clone): reconnect to get the new one
  1011  the event feed failed: reconnect and re-fetch
  1012  the event feed ended (server shutting down): reconnect

Writes never travel over the socket; sessions use the HTTP endpoints and
reconcile by comparing event versions with their own. The database session
used for the snapshot is closed before the socket starts waiting, so an
idle editor holds no pooled connection.
"""
import asyncio
import contextlib
import logging
import uuid
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from foliosync.database import AsyncSessionLocal
from foliosync.identity import Identity, identity_from_websocket
from foliosync.portfolio.schemas import Portfolio, utcnow
from foliosync.store import get_or_create_portfolio
from foliosync.sync.broadcaster import Broadcaster, ChangeEvent, EventKind, make_event, publish_safely
from foliosync.sync.presence import LocalPresence, Participant, Presence

router = APIRouter(prefix="/api/portfolio", tags=["sync"])
logger = logging.getLogger(__name__)

# Application-defined close codes
UNAUTHENTICATED_CLOSE_CODE = 4401
PORTFOLIO_REPLACED_CLOSE_CODE = 4410
# RFC 6455: internal error / service restart
FEED_FAILED_CLOSE_CODE = 1011
FEED_ENDED_CLOSE_CODE = 1012

# client message type → (presence event kind, payload keys relayed as-is)
_RELAYS: dict[str, tuple[EventKind, tuple[str, ...]]] = {
    "cursor-move": (EventKind.cursor_moved, ("position",)),
    "selection-change": (EventKind.selection_changed, ("selectedBlocks",)),
    "typing-start": (EventKind.user_typing, ("blockId",)),
    "typing-stop": (EventKind.user_stopped_typing, ("blockId",)),
}


async def _load_snapshot(websocket: WebSocket, identity: Identity) -> Portfolio:
    """Short-lived session: committed and returned to the pool before the socket idles."""
    session_factory = getattr(websocket.app.state, "session_factory", AsyncSessionLocal)
    async with session_factory() as session:
        portfolio = await get_or_create_portfolio(session, identity.owner_id, identity.username)
        await session.commit()
    return portfolio


def _presence_of(websocket: WebSocket) -> Presence:
    presence = getattr(websocket.app.state, "presence", None)
    if presence is None:
        presence = websocket.app.state.presence = LocalPresence()
    return presence


async def _forward_events(
    websocket: WebSocket,
    events: AsyncIterator[ChangeEvent],
    session_id: str,
) -> Optional[int]:
    """
    Relay the feed to the client. Returns the close code the socket should
    end with, or None when the client is already gone.
    """
    try:
        async for event in events:
            if event.kind.is_presence:
                if event.payload.get("sessionId") == session_id:
                    continue
                message_type = "presence"
            else:
                message_type = "change"
            await websocket.send_json({
                "type": message_type,
                "event": event.model_dump(mode="json", by_alias=True),
            })
            if event.kind == EventKind.portfolio_replaced:
                return PORTFOLIO_REPLACED_CLOSE_CODE
    except WebSocketDisconnect:
        return None
    return FEED_ENDED_CLOSE_CODE


async def _receive_messages(
    websocket: WebSocket,
    portfolio_id: str,
    participant: Participant,
    broadcaster: Broadcaster,
    presence: Presence,
) -> None:
    """Answer client messages until the client disconnects."""
    while True:
        try:
            message = await websocket.receive_json()
        except WebSocketDisconnect:
            return
        except ValueError:
            await websocket.send_json({"type": "error", "message": "Messages must be JSON objects"})
            continue
        message_type = message.get("type") if isinstance(message, dict) else None

        if message_type == "heartbeat":
            await websocket.send_json({"type": "heartbeat-ack", "timestamp": utcnow().isoformat()})
        elif message_type == "get-online-users":
            users = [p.to_payload() for p in await presence.online(portfolio_id)]
            await websocket.send_json({
                "type": "online-users",
                "portfolioId": portfolio_id,
                "users": users,
                "count": len(users),
            })
        elif message_type in _RELAYS:
            kind, keys = _RELAYS[message_type]
            payload: dict[str, Any] = participant.to_payload()
            payload.update({key: message.get(key) for key in keys})
            await publish_safely(broadcaster, make_event(portfolio_id, kind, None, payload))
        else:
            logger.debug("Ignoring client message portfolio_id=%s type=%s", portfolio_id, message_type)


async def _close(websocket: WebSocket, code: int) -> None:
    if (
        websocket.application_state == WebSocketState.CONNECTED
        and websocket.client_state == WebSocketState.CONNECTED
    ):
        await websocket.close(code=code)


@router.websocket("/ws")
async def portfolio_socket(websocket: WebSocket) -> None:
    identity = identity_from_websocket(websocket)
    if identity is None:
        await websocket.close(code=UNAUTHENTICATED_CLOSE_CODE)
        return

    await websocket.accept()
    portfolio = await _load_snapshot(websocket, identity)
    broadcaster: Broadcaster = websocket.app.state.broadcaster
    presence = _presence_of(websocket)
    participant = Participant.new(uuid.uuid4().hex, identity.owner_id, identity.username)

    async with broadcaster.subscribe(portfolio.id) as events:
        await websocket.send_json({
            "type": "portfolio-state",
            "portfolio": portfolio.owner_view(),
            "version": portfolio.version,
            "sessionId": participant.session_id,
        })
        await presence.join(portfolio.id, participant)
        await publish_safely(
            broadcaster,
            make_event(portfolio.id, EventKind.user_joined, None, participant.to_payload()),
        )
        logger.info(
            "Sync session opened portfolio_id=%s owner_id=%s session_id=%s",
            portfolio.id, identity.owner_id, participant.session_id,
        )

        forwarder = asyncio.create_task(_forward_events(websocket, events, participant.session_id))
        receiver = asyncio.create_task(
            _receive_messages(websocket, portfolio.id, participant, broadcaster, presence)
        )
        try:
            done, _ = await asyncio.wait({forwarder, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if forwarder in done:
                await _end_feed(websocket, forwarder, portfolio.id, participant.session_id)
            else:
                # Re-raises anything other than a client disconnect
                receiver.result()
        finally:
            for task in (forwarder, receiver):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            await presence.leave(portfolio.id, participant.session_id)
            await publish_safely(
                broadcaster,
                make_event(portfolio.id, EventKind.user_left, None, participant.to_payload()),
            )
            logger.info("Sync session closed portfolio_id=%s session_id=%s", portfolio.id, participant.session_id)


async def _end_feed(websocket: WebSocket, forwarder: asyncio.Task, portfolio_id: str, session_id: str) -> None:
    """The event feed stopped while the client was still connected: tell it to reconnect."""
    exc = forwarder.exception()
    if exc is not None:
        logger.error(
            "Event feed failed portfolio_id=%s session_id=%s",
            portfolio_id, session_id, exc_info=exc,
        )
        await _close(websocket, FEED_FAILED_CLOSE_CODE)
        return
    code = forwarder.result()
    if code is not None:
        logger.info("Ending sync session portfolio_id=%s session_id=%s code=%d", portfolio_id, session_id, code)
        await _close(websocket, code)
