"""Fixed-window rate limiting for abuse prevention.

Each rate-limit category (ip, session, debate_creation, api) has a static
``(max_requests, window_seconds)`` pair. Counters live in a pluggable
store; the default is an in-process map that is swept periodically.

A separate registry caps how many debates a session may have running at
once, independent of the time-windowed counters.

Usage:
    limiter = RateLimiter(MemoryRateLimitStore())
    result = await limiter.check_rate_limit(ip_hash, RateLimitType.DEBATE_CREATION)
    if not result.allowed:
        raise HTTPException(429, headers=limiter.headers_for(result))
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class RateLimitType(str, Enum):
    IP = "ip"
    SESSION = "session"
    DEBATE_CREATION = "debate_creation"
    API = "api"


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: int
    key_prefix: str


DEFAULT_RATE_LIMITS: dict[RateLimitType, RateLimitConfig] = {
    RateLimitType.IP: RateLimitConfig(max_requests=100, window_seconds=60, key_prefix="rl:ip:"),
    RateLimitType.SESSION: RateLimitConfig(max_requests=200, window_seconds=60, key_prefix="rl:session:"),
    RateLimitType.DEBATE_CREATION: RateLimitConfig(
        max_requests=10, window_seconds=60 * 60, key_prefix="rl:debate:"
    ),
    RateLimitType.API: RateLimitConfig(max_requests=50, window_seconds=60, key_prefix="rl:api:"),
}

MAX_ACTIVE_DEBATES_PER_SESSION = 5


@dataclass
class RateLimitState:
    count: int
    reset_at: float  # epoch seconds


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_ms: Optional[int] = None
    count: int = 0


class RateLimitStore(Protocol):
    """Counter persistence. ``increment`` must be atomic per key."""

    async def get(self, key: str) -> Optional[RateLimitState]: ...

    async def set(self, key: str, state: RateLimitState) -> None: ...

    async def increment(self, key: str, window_seconds: int) -> RateLimitState: ...


class MemoryRateLimitStore:
    """In-process counter store.

    Expired windows are purged by a sweep that runs at most once every
    ``sweep_interval`` seconds, piggybacked on increments.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._entries: dict[str, RateLimitState] = {}
        self._lock = asyncio.Lock()
        self._last_sweep = clock()

    async def get(self, key: str) -> Optional[RateLimitState]:
        state = self._entries.get(key)
        if state is None or state.reset_at <= self._clock():
            return None
        return replace(state)

    async def set(self, key: str, state: RateLimitState) -> None:
        async with self._lock:
            self._entries[key] = replace(state)

    async def increment(self, key: str, window_seconds: int) -> RateLimitState:
        async with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)

            state = self._entries.get(key)
            if state is None or state.reset_at <= now:
                state = RateLimitState(count=1, reset_at=now + window_seconds)
            else:
                state.count += 1
            self._entries[key] = state
            return replace(state)

    def _sweep(self, now: float) -> int:
        expired = [key for key, state in self._entries.items() if state.reset_at <= now]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        if expired:
            logger.debug(f"Rate limit sweep removed {len(expired)} expired entries")
        return len(expired)

    def cleanup_expired(self) -> int:
        """Force a sweep now. Returns number of entries removed."""
        return self._sweep(self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RateLimiter:
    """Fixed-window limiter over a RateLimitStore."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        configs: Optional[dict[RateLimitType, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or MemoryRateLimitStore(clock=clock)
        self._configs = dict(configs or DEFAULT_RATE_LIMITS)
        self._clock = clock

    def get_config(self, limit_type: RateLimitType) -> RateLimitConfig:
        # Frozen dataclass, safe to hand out
        return self._configs[RateLimitType(limit_type)]

    def update_config(
        self,
        limit_type: RateLimitType,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateLimitConfig:
        limit_type = RateLimitType(limit_type)
        current = self._configs[limit_type]
        updated = replace(
            current,
            max_requests=current.max_requests if max_requests is None else max_requests,
            window_seconds=current.window_seconds if window_seconds is None else window_seconds,
        )
        self._configs[limit_type] = updated
        logger.info(
            f"Rate limit for {limit_type.value} updated: "
            f"{updated.max_requests} requests / {updated.window_seconds}s"
        )
        return updated

    def _key(self, identifier: str, config: RateLimitConfig) -> str:
        return f"{config.key_prefix}{identifier}"

    async def check_rate_limit(self, identifier: str, limit_type: RateLimitType) -> RateLimitResult:
        """Count one request against the identifier's current window.

        Returns:
            RateLimitResult; ``retry_after_ms`` is set only when denied.
        """
        config = self.get_config(limit_type)
        state = await self.store.increment(self._key(identifier, config), config.window_seconds)

        allowed = state.count <= config.max_requests
        remaining = max(0, config.max_requests - state.count)
        retry_after_ms = None
        if not allowed:
            retry_after_ms = max(1, math.ceil((state.reset_at - self._clock()) * 1000))

        return RateLimitResult(
            allowed=allowed,
            limit=config.max_requests,
            remaining=remaining,
            reset_at=state.reset_at,
            retry_after_ms=retry_after_ms,
            count=state.count,
        )

    async def is_rate_limited(self, identifier: str, limit_type: RateLimitType) -> bool:
        """Peek without counting a request."""
        config = self.get_config(limit_type)
        state = await self.store.get(self._key(identifier, config))
        return state is not None and state.count >= config.max_requests

    @staticmethod
    def headers_for(result: RateLimitResult) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(math.ceil(result.reset_at)),
        }
        if not result.allowed and result.retry_after_ms is not None:
            headers["Retry-After"] = str(math.ceil(result.retry_after_ms / 1000))
        return headers

    async def get_rate_limit_headers(self, identifier: str, limit_type: RateLimitType) -> dict[str, str]:
        """Headers describing the identifier's current window, without counting."""
        config = self.get_config(limit_type)
        state = await self.store.get(self._key(identifier, config))
        now = self._clock()
        if state is None:
            state = RateLimitState(count=0, reset_at=now + config.window_seconds)

        allowed = state.count <= config.max_requests
        return self.headers_for(
            RateLimitResult(
                allowed=allowed,
                limit=config.max_requests,
                remaining=max(0, config.max_requests - state.count),
                reset_at=state.reset_at,
                retry_after_ms=None if allowed else max(1, math.ceil((state.reset_at - now) * 1000)),
            )
        )


class ActiveDebateRegistry:
    """Caps concurrently running debates per session.

    Re-tracking an already tracked debate id is a no-op that succeeds.
    """

    def __init__(self, max_active: int = MAX_ACTIVE_DEBATES_PER_SESSION):
        self.max_active = max_active
        self._active: dict[str, set[str]] = {}

    def track(self, session_id: str, debate_id: str) -> bool:
        debates = self._active.setdefault(session_id, set())
        if debate_id in debates:
            return True
        if len(debates) >= self.max_active:
            logger.info(f"Session {session_id} hit active debate cap ({self.max_active})")
            return False
        debates.add(debate_id)
        return True

    def release(self, session_id: str, debate_id: str) -> None:
        debates = self._active.get(session_id)
        if not debates:
            return
        debates.discard(debate_id)
        if not debates:
            del self._active[session_id]

    def count(self, session_id: str) -> int:
        return len(self._active.get(session_id, ()))

    def clear(self, session_id: Optional[str] = None) -> None:
        if session_id is None:
            self._active.clear()
        else:
            self._active.pop(session_id, None)


_default_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter used when no explicit instance is wired in."""
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = RateLimiter()
    return _default_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    global _default_limiter
    _default_limiter = limiter
