"""
presence.py: who has a live sync session open on a portfolio.

Every WebSocket session registers a Participant on connect and removes it on
disconnect; `online()` answers the `get-online-users` request. The join and
leave notifications themselves travel over the change broadcaster as
presence events (user-joined / user-left), so they reach sessions on every
API process.

Backends:
  - LocalPresence  dict per process: single worker and tests
  - RedisPresence  one hash per portfolio, shared by all processes:
        presence:{portfolio_id}  field = session_id, value = Participant JSON
    The hash expires PRESENCE_TTL seconds after the last join, so entries left
    by a crashed worker do not linger forever.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from foliosync.config import settings
from foliosync.portfolio.blocks import CamelModel
from foliosync.portfolio.schemas import utcnow

logger = logging.getLogger(__name__)

PRESENCE_PREFIX = "presence"
PRESENCE_TTL = 86400


def make_presence_key(portfolio_id: str) -> str:
    """Build Redis hash key: presence:{portfolio_id}"""
    return f"{PRESENCE_PREFIX}:{portfolio_id}"


class Participant(CamelModel):
    """One open editing session. A user with two tabs is two participants."""
    session_id: str
    user_id: str
    username: str = ""
    joined_at: datetime

    @classmethod
    def new(cls, session_id: str, user_id: str, username: str = "") -> "Participant":
        return cls(session_id=session_id, user_id=user_id, username=username, joined_at=utcnow())

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Presence(ABC):

    @abstractmethod
    async def join(self, portfolio_id: str, participant: Participant) -> None:
        ...

    @abstractmethod
    async def leave(self, portfolio_id: str, session_id: str) -> None:
        ...

    @abstractmethod
    async def online(self, portfolio_id: str) -> list[Participant]:
        """Participants currently connected, oldest first."""


class LocalPresence(Presence):

    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Participant]] = defaultdict(dict)

    async def join(self, portfolio_id: str, participant: Participant) -> None:
        self._sessions[portfolio_id][participant.session_id] = participant

    async def leave(self, portfolio_id: str, session_id: str) -> None:
        sessions = self._sessions.get(portfolio_id)
        if sessions is None:
            return
        sessions.pop(session_id, None)
        if not sessions:
            del self._sessions[portfolio_id]

    async def online(self, portfolio_id: str) -> list[Participant]:
        sessions = self._sessions.get(portfolio_id, {})
        return sorted(sessions.values(), key=lambda p: p.joined_at)


class RedisPresence(Presence):
    """
    Presence is advisory: Redis failures are logged and the session carries
    on without it (an empty list is reported rather than an error).
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    async def join(self, portfolio_id: str, participant: Participant) -> None:
        key = make_presence_key(portfolio_id)
        try:
            await self._client.hset(key, participant.session_id, participant.model_dump_json(by_alias=True))
            await self._client.expire(key, PRESENCE_TTL)
        except RedisError as exc:
            logger.warning("Presence join failed portfolio_id=%s: %s", portfolio_id, exc)

    async def leave(self, portfolio_id: str, session_id: str) -> None:
        try:
            await self._client.hdel(make_presence_key(portfolio_id), session_id)
        except RedisError as exc:
            logger.warning("Presence leave failed portfolio_id=%s: %s", portfolio_id, exc)

    async def online(self, portfolio_id: str) -> list[Participant]:
        try:
            entries = await self._client.hgetall(make_presence_key(portfolio_id))
        except RedisError as exc:
            logger.warning("Presence lookup failed portfolio_id=%s: %s", portfolio_id, exc)
            return []
        participants = []
        for session_id, raw in entries.items():
            try:
                participants.append(Participant.model_validate_json(raw))
            except PydanticValidationError:
                logger.warning("Discarding malformed presence entry session_id=%s", session_id)
        return sorted(participants, key=lambda p: p.joined_at)


def create_presence(redis_client: Optional[aioredis.Redis]) -> Presence:
    """Same backend choice as the broadcaster: Redis when configured and reachable."""
    if settings.broadcast_backend == "redis" and redis_client is not None:
        return RedisPresence(redis_client)
    return LocalPresence()
