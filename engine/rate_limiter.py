"""
In-process keyed rate limiter with bounded capacity and a periodic sweep.

Counters live in this process only; several engine instances each keep
their own map and therefore each admit `max_requests` per window.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from core.exceptions import RateLimitExceeded

logger = logging.getLogger(__name__)

GLOBAL_KEY = "global"


@dataclass(frozen=True)
class RateLimitKey:
    """Composite key; empty components are left out"""
    ip: Optional[str] = None
    pipeline_code: Optional[str] = None
    identifier: Optional[str] = None

    def compose(self) -> str:
        parts = []
        if self.ip:
            parts.append(f"ip:{self.ip}")
        if self.pipeline_code:
            parts.append(f"pipeline:{self.pipeline_code}")
        if self.identifier:
            parts.append(f"id:{self.identifier}")
        return "|".join(parts) or GLOBAL_KEY


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass
class RateLimitResult:
    limited: bool
    reset_at: float
    retry_after: float
    remaining: int = 0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """
    Fixed-window counters per composite key.

    Lifecycle: `start()` schedules the expiry sweep on an APScheduler
    AsyncIOScheduler; `stop()` removes it. The limiter works without
    being started, it just relies on eviction alone to bound memory.
    """

    def __init__(
        self,
        max_keys: Optional[int] = None,
        eviction_ratio: Optional[float] = None,
        sweep_interval_seconds: Optional[int] = None,
        clock: Callable[[], float] = _monotonic_ms,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.max_keys = max_keys or settings.RATE_LIMIT_MAX_KEYS
        self.eviction_ratio = eviction_ratio if eviction_ratio is not None else settings.RATE_LIMIT_EVICTION_RATIO
        self.sweep_interval_seconds = sweep_interval_seconds or settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS
        self.clock = clock

        self._entries: Dict[str, RateLimitEntry] = {}
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._job_id = f"rate-limit-sweep-{id(self)}"
        self._running = False

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _key(key) -> str:
        if isinstance(key, RateLimitKey):
            return key.compose()
        return key or GLOBAL_KEY

    def is_rate_limited(
        self,
        key,
        max_requests: Optional[int] = None,
        window_ms: Optional[float] = None,
    ) -> RateLimitResult:
        """
        Count one request against `key` and report whether it is over the limit.

        The counter is incremented before the comparison, so the request
        that pushes the count past `max_requests` is the one reported as
        limited. The method never awaits, which makes the read-modify-write
        of an entry atomic on the event loop.
        """
        if max_requests is None:
            max_requests = settings.DEFAULT_RATE_LIMIT_MAX_REQUESTS
        if window_ms is None:
            window_ms = settings.DEFAULT_RATE_LIMIT_WINDOW_MS
        composed = self._key(key)
        now = self.clock()

        entry = self._entries.get(composed)
        if entry is None or now >= entry.reset_at:
            if entry is None and len(self._entries) >= self.max_keys:
                self._evict()
            entry = RateLimitEntry(count=0, reset_at=now + window_ms)
            self._entries[composed] = entry

        entry.count += 1
        limited = entry.count > max_requests
        return RateLimitResult(
            limited=limited,
            reset_at=entry.reset_at,
            retry_after=max(0.0, entry.reset_at - now) if limited else 0.0,
            remaining=max(0, max_requests - entry.count),
        )

    def check(self, key, max_requests: Optional[int] = None, window_ms: Optional[float] = None) -> RateLimitResult:
        """Like is_rate_limited, but raises RateLimitExceeded when limited"""
        result = self.is_rate_limited(key, max_requests, window_ms)
        if result.limited:
            raise RateLimitExceeded(
                f"Rate limit exceeded for '{self._key(key)}'",
                context={"key": self._key(key), "max_requests": max_requests},
                retry_after_ms=result.retry_after,
                reset_at=result.reset_at,
            )
        return result

    async def acquire(self, key, max_requests: int, window_ms: float) -> None:
        """Wait until a request against `key` is admitted"""
        while True:
            result = self.is_rate_limited(key, max_requests, window_ms)
            if not result.limited:
                return
            await asyncio.sleep(max(result.retry_after, 1.0) / 1000)

    async def acquire_rps(self, key, requests_per_second: float) -> None:
        """Pace calls against `key` to at most `requests_per_second`"""
        if requests_per_second is None or requests_per_second <= 0:
            return
        if requests_per_second >= 1:
            await self.acquire(key, int(math.floor(requests_per_second)), 1000)
        else:
            await self.acquire(key, 1, 1000 / requests_per_second)

    def reset(self, key=None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(self._key(key), None)

    def _evict(self) -> int:
        """Drop the oldest-reset_at share of entries to make room"""
        count = max(1, int(self.max_keys * self.eviction_ratio))
        oldest = sorted(self._entries.items(), key=lambda item: item[1].reset_at)[:count]
        for composed, _ in oldest:
            del self._entries[composed]
        logger.debug(f"Rate limiter full, evicted {len(oldest)} entries")
        return len(oldest)

    def sweep(self) -> int:
        """Remove every entry whose window has elapsed"""
        now = self.clock()
        expired = [k for k, entry in self._entries.items() if now >= entry.reset_at]
        for composed in expired:
            del self._entries[composed]
        if expired:
            logger.debug(f"Rate limiter sweep removed {len(expired)} expired entries")
        return len(expired)

    def start(self) -> None:
        """Schedule the periodic sweep; needs a running event loop"""
        if self._running:
            return
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.sweep_interval_seconds),
            id=self._job_id,
            replace_existing=True
        )
        if self._owns_scheduler:
            self._scheduler.start()
        self._running = True
        logger.info(f"Rate limiter sweep started (every {self.sweep_interval_seconds}s)")

    def stop(self) -> None:
        if not self._running:
            return
        if self._owns_scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        else:
            self._scheduler.remove_job(self._job_id)
        self._running = False
        logger.info("Rate limiter sweep stopped")

    @property
    def running(self) -> bool:
        return self._running
