import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

logger = logging.getLogger("uvicorn.error")

CHAT_RATE_LIMIT_MAX = int(os.getenv("CHAT_RATE_LIMIT_MAX", "20"))
CHAT_RATE_LIMIT_WINDOW_SECONDS = float(os.getenv("CHAT_RATE_LIMIT_WINDOW_SECONDS", "300"))
RATE_LIMIT_MAX_ENTRIES = int(os.getenv("RATE_LIMIT_MAX_ENTRIES", "10000"))
RATE_LIMIT_SWEEP_INTERVAL_SECONDS = float(os.getenv("RATE_LIMIT_SWEEP_INTERVAL_SECONDS", "60"))


@dataclass(frozen=True)
class WindowCounter:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None


class RateLimitStore(Protocol):
    async def increment(self, key: str, window_seconds: float) -> WindowCounter:
        ...

    async def reset(self, key: str) -> None:
        ...


class InMemoryRateLimitStore:
    """Fixed-window counters for a single process.

    Counters live in a dict keyed by identifier. Expired windows are swept on
    an interval or when the dict grows past ``max_entries``. Several worker
    processes each get their own dict, so deployments with more than one
    process need a shared store implementing ``RateLimitStore``.
    """

    def __init__(
        self,
        max_entries: int = RATE_LIMIT_MAX_ENTRIES,
        sweep_interval_seconds: float = RATE_LIMIT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, WindowCounter] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._entries)

    async def increment(self, key: str, window_seconds: float) -> WindowCounter:
        # No await between read and write, so increments are serialized by the event loop.
        now = self._clock()
        self._maybe_sweep(now)
        entry = self._entries.get(key)
        if entry is None or entry.reset_at <= now:
            entry = WindowCounter(count=1, reset_at=now + window_seconds)
        else:
            entry = WindowCounter(count=entry.count + 1, reset_at=entry.reset_at)
        self._entries[key] = entry
        return entry

    async def reset(self, key: str) -> None:
        self._entries.pop(key, None)

    def _maybe_sweep(self, now: float) -> None:
        oversized = len(self._entries) >= self.max_entries
        if not oversized and now - self._last_sweep < self.sweep_interval_seconds:
            return
        self._last_sweep = now
        expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
        for key in expired:
            del self._entries[key]
        overflow = len(self._entries) - self.max_entries + 1
        if overflow > 0:
            # Still full of live windows: drop the ones closest to expiry.
            oldest = sorted(self._entries.items(), key=lambda item: item[1].reset_at)[:overflow]
            for key, _ in oldest:
                del self._entries[key]
        if expired or overflow > 0:
            logger.debug(
                "rate_limit_sweep expired=%s evicted=%s remaining=%s",
                len(expired),
                max(overflow, 0),
                len(self._entries),
            )


class FixedWindowRateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        max_requests: int = CHAT_RATE_LIMIT_MAX,
        window_seconds: float = CHAT_RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

    async def check(self, identifier: str) -> RateLimitResult:
        counter = await self.store.increment(identifier, self.window_seconds)
        remaining = max(0, self.max_requests - counter.count)
        if counter.count > self.max_requests:
            retry_after = max(1, math.ceil(counter.reset_at - self._clock()))
            return RateLimitResult(
                success=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=counter.reset_at,
                retry_after=retry_after,
            )
        return RateLimitResult(
            success=True,
            limit=self.max_requests,
            remaining=remaining,
            reset_at=counter.reset_at,
        )

    async def reset(self, identifier: str) -> None:
        await self.store.reset(identifier)


def rate_limit_identifier(user_id: Optional[int], client_address: Optional[str]) -> str:
    if user_id is not None:
        return f"user:{user_id}"
    return f"ip:{client_address or 'unknown'}"


_chat_rate_limiter: Optional[FixedWindowRateLimiter] = None


def get_rate_limiter() -> FixedWindowRateLimiter:
    global _chat_rate_limiter
    if _chat_rate_limiter is None:
        _chat_rate_limiter = FixedWindowRateLimiter(InMemoryRateLimitStore())
    return _chat_rate_limiter
