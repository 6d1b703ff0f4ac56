"""
Rate Limiter

Sliding-window request budgets per (identity, category):
- Redis sorted set per key, pruned/counted/inserted in one MULTI transaction
- In-process fallback when Redis is unreachable (per-instance only)

Every result says which backend produced it. Enforcement is an explicit
setting (RATE_LIMIT_ENFORCE); when it is off, over-budget requests are
logged and annotated but allowed through.
"""

import time
import uuid
from collections import deque
from dataclasses import dataclass
from math import ceil
from typing import Callable, Deque, Dict, Optional

import redis.asyncio as redis
from fastapi import Request, Response
from fhirlink.core.config import settings
from fhirlink.core.exceptions import RateLimitExceeded
from fhirlink.core.logging import get_logger
from redis.exceptions import RedisError

logger = get_logger(__name__)

RATE_LIMIT_PREFIX = "ratelimit"

CATEGORY_MESSAGES = {
    "default": "Too many requests, please try again later",
    "widget": "Widget token rate limit exceeded",
    "oauth": "OAuth rate limit exceeded",
    "sensitive": "Rate limit exceeded for sensitive operation",
}


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_seconds: int


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    window_seconds: int
    backend: str
    retry_after: Optional[int] = None
    enforced: bool = True

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Window": str(self.window_seconds),
            "X-RateLimit-Backend": self.backend,
        }
        if self.retry_after:
            reset = int((now if now is not None else time.time()) + self.retry_after)
            headers["X-RateLimit-Reset"] = str(reset)
            headers["Retry-After"] = str(self.retry_after)
        return headers


class InMemorySlidingWindow:
    """
    Per-process sliding window.

    Timestamps arrive in non-decreasing order, so each key's deque stays
    sorted and pruning pops from the left. Check-and-insert never awaits,
    which makes it atomic under asyncio.
    """

    def __init__(self):
        self._windows: Dict[str, Deque[float]] = {}

    def _prune(self, key: str, now: float, window_seconds: int) -> Deque[float]:
        window = self._windows.setdefault(key, deque())
        cutoff = now - window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def hit(self, key: str, now: float, policy: RateLimitPolicy) -> RateLimitResult:
        window = self._prune(key, now, policy.window_seconds)
        if len(window) >= policy.max_requests:
            retry_after = max(1, ceil(window[0] + policy.window_seconds - now))
            return RateLimitResult(False, policy.max_requests, 0, policy.window_seconds, "memory", retry_after)
        window.append(now)
        remaining = policy.max_requests - len(window)
        return RateLimitResult(True, policy.max_requests, remaining, policy.window_seconds, "memory")

    def peek(self, key: str, now: float, policy: RateLimitPolicy) -> RateLimitResult:
        window = self._prune(key, now, policy.window_seconds)
        remaining = max(0, policy.max_requests - len(window))
        retry_after = None
        if remaining == 0 and window:
            retry_after = max(1, ceil(window[0] + policy.window_seconds - now))
        return RateLimitResult(
            remaining > 0, policy.max_requests, remaining, policy.window_seconds, "memory", retry_after
        )

    def cleanup(self, now: float, max_window_seconds: int) -> int:
        stale = [k for k, w in self._windows.items() if not w or w[-1] <= now - max_window_seconds]
        for key in stale:
            del self._windows[key]
        return len(stale)


class RateLimiter:
    """
    Sliding-window limiter with Redis and in-process backends.

    Args:
        redis_client: Shared Redis client, or None for in-process only
        policies: category -> max requests (default: settings.rate_limit_policies)
        window_seconds: Window length for every category
        enforce: Block over-budget requests (default: settings.RATE_LIMIT_ENFORCE)
        clock: Wall-clock source in seconds
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        policies: Optional[Dict[str, int]] = None,
        window_seconds: Optional[int] = None,
        enforce: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_client = redis_client
        window = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS
        self.policies: Dict[str, RateLimitPolicy] = {
            category: RateLimitPolicy(max_requests, window)
            for category, max_requests in (policies or settings.rate_limit_policies).items()
        }
        self.enforce = settings.RATE_LIMIT_ENFORCE if enforce is None else enforce
        self.clock = clock
        self._memory = InMemorySlidingWindow()
        if not self.enforce:
            logger.warning("rate_limit_enforcement_disabled")

    async def connect(self, redis_client: Optional[redis.Redis]) -> None:
        """Attach the shared Redis client (call during app startup)."""
        self.redis_client = redis_client
        if redis_client is None:
            logger.warning("rate_limiter_in_process", reason="redis_unavailable")

    async def disconnect(self) -> None:
        self.redis_client = None

    @property
    def backend(self) -> str:
        return "redis" if self.redis_client is not None else "memory"

    def policy_for(self, category: str) -> RateLimitPolicy:
        return self.policies.get(category) or self.policies["default"]

    @staticmethod
    def key_for(identity: str, category: str) -> str:
        return f"{RATE_LIMIT_PREFIX}:{category}:{identity}"

    async def _hit_redis(self, key: str, now: float, policy: RateLimitPolicy) -> RateLimitResult:
        now_ms = int(now * 1000)
        window_ms = policy.window_seconds * 1000
        member = f"{now_ms}:{uuid.uuid4().hex[:8]}"

        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now_ms - window_ms)
            pipe.zcard(key)
            pipe.zadd(key, {member: now_ms})
            pipe.expire(key, policy.window_seconds)
            results = await pipe.execute()
        count = int(results[1])

        if count >= policy.max_requests:
            # Rejected requests do not consume budget
            await self.redis_client.zrem(key, member)
            oldest = await self.redis_client.zrange(key, 0, 0, withscores=True)
            retry_after = policy.window_seconds
            if oldest:
                retry_after = ceil((float(oldest[0][1]) + window_ms - now_ms) / 1000)
            return RateLimitResult(
                False, policy.max_requests, 0, policy.window_seconds, "redis", max(1, retry_after)
            )

        remaining = max(0, policy.max_requests - count - 1)
        return RateLimitResult(True, policy.max_requests, remaining, policy.window_seconds, "redis")

    async def check(self, identity: str, category: str = "default") -> RateLimitResult:
        """Count one request against the budget and report the outcome."""
        policy = self.policy_for(category)
        key = self.key_for(identity, category)
        now = self.clock()

        result = None
        if self.redis_client is not None:
            try:
                result = await self._hit_redis(key, now, policy)
            except (RedisError, OSError) as e:
                logger.warning("rate_limit_redis_error", category=category, error=str(e), fallback="memory")
        if result is None:
            result = self._memory.hit(key, now, policy)

        result.enforced = self.enforce
        if not result.allowed:
            logger.warning(
                "rate_limit_exceeded",
                identity=identity,
                category=category,
                backend=result.backend,
                enforced=self.enforce,
                retry_after=result.retry_after,
            )
        return result

    async def status(self, identity: str, category: str = "default") -> RateLimitResult:
        """Current budget without consuming a request."""
        policy = self.policy_for(category)
        key = self.key_for(identity, category)
        now = self.clock()

        if self.redis_client is not None:
            try:
                now_ms = int(now * 1000)
                await self.redis_client.zremrangebyscore(key, 0, now_ms - policy.window_seconds * 1000)
                count = int(await self.redis_client.zcard(key))
                remaining = max(0, policy.max_requests - count)
                retry_after = None
                if remaining == 0:
                    oldest = await self.redis_client.zrange(key, 0, 0, withscores=True)
                    if oldest:
                        retry_after = max(
                            1, ceil((float(oldest[0][1]) + policy.window_seconds * 1000 - now_ms) / 1000)
                        )
                return RateLimitResult(
                    remaining > 0,
                    policy.max_requests,
                    remaining,
                    policy.window_seconds,
                    "redis",
                    retry_after,
                    self.enforce,
                )
            except (RedisError, OSError) as e:
                logger.warning("rate_limit_redis_error", category=category, error=str(e), fallback="memory")

        result = self._memory.peek(key, now, policy)
        result.enforced = self.enforce
        return result

    def cleanup_memory(self) -> int:
        longest = max(p.window_seconds for p in self.policies.values())
        return self._memory.cleanup(self.clock(), longest)


# Global limiter instance
rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


# ==============================================================================
# FastAPI dependency
# ==============================================================================


def request_identity(request: Request) -> str:
    """
    Authenticated API key id, else the client IP.

    Unverified request headers never pick the bucket: X-API-Key only counts
    once get_api_key has run, and X-Forwarded-For only when
    TRUST_PROXY_HEADERS is set.
    """
    api_key_id = getattr(request.state, "api_key_id", None)
    if api_key_id:
        return f"key:{api_key_id}"
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


class RateLimit:
    """
    Route dependency enforcing a category budget.

    List it after get_api_key so authenticated callers are bucketed by key id:
        @router.post("/token", dependencies=[Depends(get_api_key), Depends(RateLimit("widget"))])
    """

    def __init__(self, category: str = "default", limiter: Optional[RateLimiter] = None):
        self.category = category
        self._limiter = limiter

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter or get_rate_limiter()

    async def __call__(self, request: Request, response: Response) -> RateLimitResult:
        result = await self.limiter.check(request_identity(request), self.category)
        headers = result.headers()
        response.headers.update(headers)
        request.state.rate_limit = result

        if not result.allowed and result.enforced:
            raise RateLimitExceeded(
                CATEGORY_MESSAGES.get(self.category, CATEGORY_MESSAGES["default"]),
                retry_after=result.retry_after or 1,
                headers=headers,
            )
        return result
