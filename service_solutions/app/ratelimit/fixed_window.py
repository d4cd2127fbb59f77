"""
Fixed-window rate limiter.

Every identifier gets a counter that resets wholesale when its window ends.
Unlike a sliding window or token bucket this lets up to ``2 * max_requests``
through across a window boundary; the limiter is for abuse prevention, so
that burst is accepted.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import yaml
from pydantic import BaseModel, Field

from shared.logging import get_logger
from .stores import RateLimitEntry, RateLimitStore


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimitProfile(BaseModel):
    """A named window/ceiling pair."""
    window_ms: int = Field(..., gt=0, description="Window length in milliseconds")
    max_requests: int = Field(..., gt=0, description="Requests allowed per window")


DEFAULT_PROFILES: Dict[str, RateLimitProfile] = {
    "api": RateLimitProfile(window_ms=15 * 60 * 1000, max_requests=100),
    "auth": RateLimitProfile(window_ms=15 * 60 * 1000, max_requests=5),
    "upload": RateLimitProfile(window_ms=60 * 1000, max_requests=10),
    "solutionAccess": RateLimitProfile(window_ms=60 * 1000, max_requests=20),
    "email": RateLimitProfile(window_ms=60 * 60 * 1000, max_requests=50),
}

DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60


def load_profiles(path: Optional[str] = None) -> Dict[str, RateLimitProfile]:
    """Default profiles, overlaid with any profiles defined in a YAML file.

    The file maps profile names to ``window_ms``/``max_requests``::

        upload:
          window_ms: 60000
          max_requests: 5
    """
    profiles = dict(DEFAULT_PROFILES)
    if not path:
        return profiles

    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    for name, values in data.items():
        profiles[name] = RateLimitProfile(**values)
    return profiles


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds

    def retry_after_seconds(self, now_ms: int) -> int:
        return max(0, -(-(self.reset_time - now_ms) // 1000))


class FixedWindowRateLimiter:
    """Fixed-window request counter over a pluggable store."""

    def __init__(self, store: RateLimitStore,
                 profiles: Optional[Dict[str, RateLimitProfile]] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.store = store
        self.profiles = profiles if profiles is not None else dict(DEFAULT_PROFILES)
        self.clock = clock or _now_ms
        self.logger = get_logger("solutions.rate_limiter")
        self._sweeper: Optional[asyncio.Task] = None

    async def check(self, identifier: str, window_ms: int, max_requests: int) -> RateLimitResult:
        """Count one request against ``identifier`` and report whether it is allowed."""
        now = self.clock()
        entry = await self.store.get(identifier)

        if entry is None or now > entry.reset_time:
            entry = RateLimitEntry(count=1, reset_time=now + window_ms)
            await self.store.set_with_reset(identifier, entry)
            return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_time=entry.reset_time)

        if entry.count < max_requests:
            entry.count += 1
            await self.store.set_with_reset(identifier, entry)
            return RateLimitResult(
                allowed=True,
                remaining=max_requests - entry.count,
                reset_time=entry.reset_time
            )

        self.logger.warning(
            "Rate limit exceeded",
            identifier=identifier,
            count=entry.count,
            limit=max_requests,
            reset_time=entry.reset_time
        )
        return RateLimitResult(allowed=False, remaining=0, reset_time=entry.reset_time)

    async def check_profile(self, profile_name: str, subject: str) -> RateLimitResult:
        """Check ``subject`` against a named profile, keyed ``"{profile}:{subject}"``."""
        profile = self.get_profile(profile_name)
        return await self.check(f"{profile_name}:{subject}", profile.window_ms, profile.max_requests)

    async def peek(self, identifier: str, window_ms: int, max_requests: int) -> RateLimitResult:
        """Report the current window without counting a request."""
        now = self.clock()
        entry = await self.store.get(identifier)

        if entry is None or now > entry.reset_time:
            return RateLimitResult(allowed=True, remaining=max_requests, reset_time=now + window_ms)

        remaining = max(0, max_requests - entry.count)
        return RateLimitResult(allowed=remaining > 0, remaining=remaining, reset_time=entry.reset_time)

    def get_profile(self, profile_name: str) -> RateLimitProfile:
        try:
            return self.profiles[profile_name]
        except KeyError:
            raise KeyError(f"Unknown rate limit profile: {profile_name}") from None

    async def sweep(self) -> int:
        """Drop windows that have ended."""
        removed = await self.store.sweep(self.clock())
        if removed:
            self.logger.debug("Rate limit entries swept", removed=removed)
        return removed

    async def run_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS):
        """Sweep forever, every ``interval_seconds``."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                self.logger.error("Rate limit sweep failed", error=str(e))

    def start_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self.run_sweeper(interval_seconds))
        return self._sweeper

    async def stop_sweeper(self):
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
