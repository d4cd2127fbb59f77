"""
Usage tracking and grant lifecycle for gated solutions.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from shared.errors import NotFoundError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..persistence.store import EntitlementStore
from ..ratelimit.fixed_window import FixedWindowRateLimiter
from .models import COUNTED_EVENTS, AccessEvent, EventType, Grant, utcnow

DEFAULT_RATE_LIMITED_EVENTS = frozenset({EventType.CONVERSION, EventType.SIGNUP})
TRACKING_PROFILE = "solutionAccess"


class UsageTracker:
    """Appends access events and maintains grant usage counters.

    ``record`` writes the event and then, for views and conversions, bumps
    the grant counter. The two writes are independent: a failed counter
    update is logged and the appended event stays. Nothing in ``record``
    raises to the caller. ``dispatch`` runs ``record`` as a background task
    so request handlers never wait on tracking.
    """

    def __init__(self, store: EntitlementStore,
                 rate_limiter: Optional[FixedWindowRateLimiter] = None,
                 metrics: Optional[MetricsCollector] = None,
                 rate_limited_events: Iterable[EventType] = DEFAULT_RATE_LIMITED_EVENTS,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.rate_limited_events = frozenset(rate_limited_events)
        self.clock = clock or utcnow
        self.logger = get_logger("solutions.usage_tracker")
        self._pending: Set[asyncio.Task] = set()

    async def record(self, event: AccessEvent) -> None:
        """Append ``event`` and update usage counters. Never raises."""
        try:
            await self.store.append_event(event)
        except Exception as e:
            self._tracking_failed("append", event, e)
            return

        try:
            if not await self._within_rate_limit(event):
                return

            counter = COUNTED_EVENTS.get(event.event)
            if counter is None:
                return
            updated = await self.store.increment_usage(
                event.org_id, event.solution_key, counter, self.clock()
            )
            if not updated:
                self.logger.debug(
                    "No grant to update usage stats",
                    org_id=event.org_id,
                    solution_key=event.solution_key
                )
        except Exception as e:
            self._tracking_failed("usage", event, e)

    async def _within_rate_limit(self, event: AccessEvent) -> bool:
        if self.rate_limiter is None or event.event not in self.rate_limited_events:
            return True

        result = await self.rate_limiter.check_profile(
            TRACKING_PROFILE, f"{event.org_id}:{event.event.value}"
        )
        if not result.allowed:
            self.logger.warning(
                "Usage update rate limited",
                org_id=event.org_id,
                solution_key=event.solution_key,
                tracked_event=event.event.value,
                reset_time=result.reset_time
            )
            if self.metrics:
                self.metrics.increment_counter("rate_limit_rejections_total", profile=TRACKING_PROFILE)
        return result.allowed

    def _tracking_failed(self, stage: str, event: AccessEvent, error: Exception):
        self.logger.error(
            "Error tracking solution event",
            stage=stage,
            org_id=event.org_id,
            solution_key=event.solution_key,
            tracked_event=event.event.value,
            error=str(error)
        )
        if self.metrics:
            self.metrics.increment_counter("tracking_failures_total", stage=stage)

    def dispatch(self, event: AccessEvent) -> asyncio.Task:
        """Record ``event`` in the background."""
        task = asyncio.get_running_loop().create_task(self.record(event))
        self._pending.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error("Background tracking task failed", error=str(error))

    async def drain(self):
        """Wait for dispatched events to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    # Grant lifecycle

    async def grant(self, org_id: str, solution_key: str, granted_by: str,
                    expires_at: Optional[datetime] = None,
                    settings: Optional[Dict[str, Any]] = None) -> Grant:
        """Create an enabled grant. Raises ConflictError if the pair already has one."""
        grant = Grant(
            org_id=org_id,
            solution_key=solution_key,
            enabled=True,
            granted_by=granted_by,
            granted_at=self.clock(),
            expires_at=expires_at,
            settings=dict(settings or {})
        )
        await self.store.insert_grant(grant)
        self.logger.info(
            "Solution access granted",
            org_id=org_id,
            solution_key=solution_key,
            granted_by=granted_by,
            expires_at=expires_at.isoformat() if expires_at else None
        )
        return grant

    async def revoke(self, org_id: str, solution_key: str) -> None:
        """Delete the grant. Raises NotFoundError if there is none."""
        if not await self.store.delete_grant(org_id, solution_key):
            raise NotFoundError("Access not found", {"org_id": org_id, "solution_key": solution_key})
        self.logger.info("Solution access revoked", org_id=org_id, solution_key=solution_key)

    async def set_enabled(self, org_id: str, solution_key: str, enabled: bool) -> Grant:
        return await self._update_grant(org_id, solution_key, {"enabled": enabled})

    async def update_settings(self, org_id: str, solution_key: str, settings: Dict[str, Any]) -> Grant:
        return await self._update_grant(org_id, solution_key, {"settings": dict(settings)})

    async def _update_grant(self, org_id: str, solution_key: str, changes: Dict[str, Any]) -> Grant:
        grant = await self.store.update_grant(org_id, solution_key, changes)
        if grant is None:
            raise NotFoundError("Access not found", {"org_id": org_id, "solution_key": solution_key})
        self.logger.info("Grant updated", org_id=org_id, solution_key=solution_key, fields=sorted(changes))
        return grant

    async def list_grants(self, org_id: str) -> List[Grant]:
        return await self.store.list_grants(org_id)

    async def list_events(self, solution_key: str, org_id: Optional[str] = None,
                          limit: int = 100) -> List[AccessEvent]:
        return await self.store.query_events(solution_key, org_id=org_id, limit=limit)
