"""
Test factories and fakes for the Solutions service tests.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone

from service_solutions.app.catalog.models import (
    AccessEvent, EventType, Grant, Solution, SolutionCategory
)
from service_solutions.app.persistence.store import InMemoryEntitlementStore

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for datetime and epoch-millisecond consumers."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def millis(self) -> int:
        return int(self.now.timestamp() * 1000)

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class TestDataFactory:
    """Factory for creating test data."""

    __test__ = False

    @staticmethod
    def create_solution(key: str = "hr_app", allowed_orgs: Optional[List[str]] = None,
                        active: bool = True, **kwargs) -> Solution:
        return Solution(
            key=key,
            name=kwargs.pop("name", key.replace("_", " ").title()),
            description=kwargs.pop("description", "Gated internal application"),
            category=kwargs.pop("category", SolutionCategory.HR),
            active=active,
            route_reader=kwargs.pop("route_reader", f"/solutions/{key}/start"),
            allowed_orgs=list(allowed_orgs if allowed_orgs is not None else ["org1"]),
            created_by=kwargs.pop("created_by", "admin"),
            **kwargs
        )

    @staticmethod
    def create_grant(org_id: str = "org1", solution_key: str = "hr_app", enabled: bool = True,
                     expires_at: Optional[datetime] = None, **kwargs) -> Grant:
        return Grant(
            org_id=org_id,
            solution_key=solution_key,
            enabled=enabled,
            granted_by=kwargs.pop("granted_by", "admin"),
            granted_at=kwargs.pop("granted_at", FIXED_NOW - timedelta(days=30)),
            expires_at=expires_at,
            **kwargs
        )

    @staticmethod
    def create_event(event: EventType = EventType.VIEW, org_id: str = "org1",
                     solution_key: str = "hr_app", **kwargs) -> AccessEvent:
        return AccessEvent(solution_key=solution_key, org_id=org_id, event=event, **kwargs)

    @staticmethod
    def create_solution_payload(key: str = "ceps_reader", **overrides) -> Dict[str, Any]:
        payload = {
            "key": key,
            "name": "CEPS Reader",
            "description": "Reading assessment",
            "category": "assessment",
            "route_reader": f"/solutions/{key}/start",
            "allowed_orgs": ["org1", "org2"],
            "created_by": "admin-1",
        }
        payload.update(overrides)
        return payload


async def seeded_store(solutions: List[Solution] = (), grants: List[Grant] = ()) -> InMemoryEntitlementStore:
    """In-memory store pre-loaded with records."""
    store = InMemoryEntitlementStore()
    for solution in solutions:
        await store.insert_solution(solution)
    for grant in grants:
        await store.insert_grant(grant)
    return store
