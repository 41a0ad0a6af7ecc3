"""
cache.py: Redis layer for FolioSync.

Namespace conventions:
  portfolio:{portfolio_id}                  → pub/sub change channel (sync/broadcaster.py)
  viewer:{portfolio_id}:{sha256(viewer)}    → unique-view marker     TTL 24h (86400s)

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x: do NOT use aioredis separately)
  - Pool created once in lifespan, stored on app.state.redis
  - Helper functions take the client as a param: no module-level global state
  - Viewer key hashes the fingerprint (IP + user agent): no raw IPs in Redis or logs
"""
import hashlib
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from foliosync.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
VIEWER_PREFIX = "viewer"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_viewer_key(portfolio_id: str, fingerprint: str) -> str:
    """
    Build Redis key marking that a viewer has already been counted.
    Key format: viewer:{portfolio_id}:{sha256hex}
    """
    digest = hashlib.sha256(fingerprint.strip().lower().encode("utf-8")).hexdigest()
    return f"{VIEWER_PREFIX}:{portfolio_id}:{digest}"


# ---------------------------------------------------------------------------
# Pool factory: called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup: stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# Unique-view helpers
# ---------------------------------------------------------------------------

async def mark_viewer(
    client: Optional[aioredis.Redis],
    portfolio_id: str,
    fingerprint: str,
) -> bool:
    """
    Record a viewer for the unique-view window.

    Returns True the first time a fingerprint is seen within unique_view_ttl
    (SET NX EX), False on repeats. Without Redis, or when Redis errors,
    the view is counted but not as unique.
    """
    if client is None:
        return False
    key = make_viewer_key(portfolio_id, fingerprint)
    try:
        first = await client.set(key, "1", nx=True, ex=settings.unique_view_ttl)
    except RedisError as exc:
        logger.warning("Unique-view check failed portfolio_id=%s: %s", portfolio_id, exc)
        return False
    return bool(first)
