"""
Administrator operations on the solution catalog.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from ..persistence.store import EntitlementStore
from .models import Solution, SolutionCategory, utcnow

MUTABLE_FIELDS = {
    "name", "description", "category", "active", "route_reader",
    "allowed_orgs", "icon", "color", "metadata",
}


class SolutionCatalog:
    """Create, update and retire Solution records."""

    def __init__(self, store: EntitlementStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utcnow
        self.logger = get_logger("solutions.catalog")

    async def create_solution(self, key: str, name: str, created_by: str,
                              route_reader: str = "", description: str = "",
                              category: SolutionCategory = SolutionCategory.OTHER,
                              allowed_orgs: Optional[List[str]] = None,
                              icon: Optional[str] = None, color: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> Solution:
        """Add a solution. New solutions start active; duplicate keys raise ConflictError."""
        if not key or not key.strip():
            raise ValidationError("Solution key is required")

        now = self.clock()
        solution = Solution(
            key=key,
            name=name,
            description=description,
            category=SolutionCategory(category),
            active=True,
            route_reader=route_reader,
            allowed_orgs=list(dict.fromkeys(allowed_orgs or [])),
            created_by=created_by,
            icon=icon,
            color=color,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now
        )
        await self.store.insert_solution(solution)
        self.logger.info("Solution created", key=key, name=name, created_by=created_by)
        return solution

    async def get_solution(self, key: str) -> Solution:
        solution = await self.store.get_solution(key)
        if solution is None:
            raise NotFoundError("Solution not found", {"key": key})
        return solution

    async def list_solutions(self) -> List[Solution]:
        return await self.store.list_solutions()

    async def update_solution(self, key: str, changes: Dict[str, Any]) -> Solution:
        """Apply ``changes``; the key is immutable."""
        if "key" in changes and changes["key"] != key:
            raise ValidationError("Solution key cannot be changed", {"key": key})

        unknown = set(changes) - MUTABLE_FIELDS - {"key"}
        if unknown:
            raise ValidationError("Unknown solution fields", {"fields": sorted(unknown)})

        updates = {name: value for name, value in changes.items() if name != "key"}
        if "category" in updates:
            updates["category"] = SolutionCategory(updates["category"])
        if "allowed_orgs" in updates:
            updates["allowed_orgs"] = list(dict.fromkeys(updates["allowed_orgs"]))
        updates["updated_at"] = self.clock()

        solution = await self.store.update_solution(key, updates)
        if solution is None:
            raise NotFoundError("Solution not found", {"key": key})

        self.logger.info("Solution updated", key=key, fields=sorted(changes))
        return solution

    async def set_active(self, key: str, active: bool) -> Solution:
        return await self.update_solution(key, {"active": active})

    async def delete_solution(self, key: str) -> None:
        if not await self.store.delete_solution(key):
            raise NotFoundError("Solution not found", {"key": key})
        self.logger.info("Solution deleted", key=key)
