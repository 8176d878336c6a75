"""Client-supplied Idempotency-Key guard for money-moving requests.

Keys live in Redis under ``idempotent:<scope>`` with a TTL. A request
that fails after claiming its key releases it so the client can retry.
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from marketplace.core.config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


def _key(scope: str) -> str:
    return f"idempotent:{scope}"


async def _get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def check_idempotency(key: str, ttl: int = 300) -> bool:
    """Claim ``key``. True means first use (proceed), False means duplicate.

    Fails open when Redis is unreachable; the guarded balance updates still
    prevent overdrafts.
    """
    try:
        r = await _get_redis()
        return bool(await r.set(_key(key), "1", nx=True, ex=ttl))
    except RedisError:
        logger.exception("Idempotency check failed for key=%s, allowing through", key)
        return True


async def release_idempotency(key: str) -> None:
    try:
        r = await _get_redis()
        await r.delete(_key(key))
    except RedisError:
        logger.warning("Could not release idempotency key=%s", key)
