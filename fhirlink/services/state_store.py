"""
OAuth state consumption store.

The state token itself is self-contained; this store only records which
state ids have been consumed so each callback succeeds at most once.

Redis ``SET NX EX`` is the atomic test-and-set across instances. When Redis
is unavailable an in-process TTL cache is used instead, which only protects
a single instance.
"""

from typing import Optional

import redis.asyncio as redis
from cachetools import TTLCache
from fhirlink.core.config import settings
from fhirlink.core.logging import get_logger
from redis.exceptions import RedisError

logger = get_logger(__name__)

STATE_KEY_PREFIX = "oauth_state"


class StateStore:
    """Single-use marker for OAuth state ids."""

    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds or settings.OAUTH_STATE_TTL_SECONDS
        self._local: TTLCache = TTLCache(maxsize=100_000, ttl=self.ttl_seconds)

    async def connect(self, redis_client: Optional[redis.Redis]) -> None:
        """Attach the shared Redis client (call during app startup)."""
        self.redis_client = redis_client
        if redis_client is None:
            logger.warning("oauth_state_store_in_process", reason="redis_unavailable")

    async def disconnect(self) -> None:
        self.redis_client = None

    @property
    def backend(self) -> str:
        return "redis" if self.redis_client is not None else "memory"

    async def consume(self, state_id: str) -> bool:
        """
        Mark a state id consumed.

        Returns:
            True for the first caller, False if the id was already consumed
        """
        if self.redis_client is not None:
            try:
                created = await self.redis_client.set(
                    f"{STATE_KEY_PREFIX}:{state_id}", "1", nx=True, ex=self.ttl_seconds
                )
                return bool(created)
            except RedisError as e:
                logger.warning("oauth_state_store_redis_error", error=str(e))

        # Check and insert without awaiting in between
        if state_id in self._local:
            return False
        self._local[state_id] = True
        return True


# Global state store instance
state_store = StateStore()


def get_state_store() -> StateStore:
    return state_store
