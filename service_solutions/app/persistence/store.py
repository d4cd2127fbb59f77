"""
EntitlementStore interface and in-memory implementation.

Stores hold three record kinds: Solutions keyed by ``key``, Grants keyed by
``(org_id, solution_key)``, and an append-only AccessEvent log. Missing
records are reported as ``None``/``False``; duplicate inserts raise
``ConflictError``; backend failures raise ``PersistenceError``.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from shared.errors import ConflictError
from shared.logging import get_logger
from ..catalog.models import AccessEvent, Grant, Solution, UsageCounter, as_utc


class EntitlementStore(ABC):
    """Persistence contract for solutions, grants and access events."""

    async def start(self):
        """Open connections."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def get_solution(self, key: str) -> Optional[Solution]:
        ...

    @abstractmethod
    async def list_solutions(self) -> List[Solution]:
        ...

    @abstractmethod
    async def insert_solution(self, solution: Solution) -> None:
        ...

    @abstractmethod
    async def update_solution(self, key: str, changes: Dict[str, Any]) -> Optional[Solution]:
        ...

    @abstractmethod
    async def delete_solution(self, key: str) -> bool:
        ...

    @abstractmethod
    async def get_grant(self, org_id: str, solution_key: str) -> Optional[Grant]:
        ...

    @abstractmethod
    async def list_grants(self, org_id: str) -> List[Grant]:
        ...

    @abstractmethod
    async def insert_grant(self, grant: Grant) -> None:
        ...

    @abstractmethod
    async def update_grant(self, org_id: str, solution_key: str, changes: Dict[str, Any]) -> Optional[Grant]:
        ...

    @abstractmethod
    async def delete_grant(self, org_id: str, solution_key: str) -> bool:
        ...

    @abstractmethod
    async def increment_usage(self, org_id: str, solution_key: str,
                              counter: UsageCounter, used_at: datetime) -> bool:
        """Atomically add one to ``counter`` and set ``last_used``.

        Returns False when no grant exists for the pair.
        """

    @abstractmethod
    async def append_event(self, event: AccessEvent) -> None:
        ...

    @abstractmethod
    async def query_events(self, solution_key: str, org_id: Optional[str] = None,
                           limit: int = 100) -> List[AccessEvent]:
        """Events for a solution, newest first."""


class InMemoryEntitlementStore(EntitlementStore):
    """Process-local store for local runs and tests."""

    def __init__(self):
        self.logger = get_logger("solutions.persistence.memory")
        self.solutions: Dict[str, Solution] = {}
        self.grants: Dict[Tuple[str, str], Grant] = {}
        self.events: List[AccessEvent] = []

    async def get_solution(self, key: str) -> Optional[Solution]:
        solution = self.solutions.get(key)
        return copy.deepcopy(solution) if solution else None

    async def list_solutions(self) -> List[Solution]:
        return [copy.deepcopy(s) for s in sorted(self.solutions.values(), key=lambda s: s.name)]

    async def insert_solution(self, solution: Solution) -> None:
        if solution.key in self.solutions:
            raise ConflictError("Solution with this key already exists", {"key": solution.key})
        self.solutions[solution.key] = copy.deepcopy(solution)

    async def update_solution(self, key: str, changes: Dict[str, Any]) -> Optional[Solution]:
        solution = self.solutions.get(key)
        if solution is None:
            return None
        for name, value in changes.items():
            setattr(solution, name, value)
        return copy.deepcopy(solution)

    async def delete_solution(self, key: str) -> bool:
        return self.solutions.pop(key, None) is not None

    async def get_grant(self, org_id: str, solution_key: str) -> Optional[Grant]:
        grant = self.grants.get((org_id, solution_key))
        return copy.deepcopy(grant) if grant else None

    async def list_grants(self, org_id: str) -> List[Grant]:
        grants = [g for (org, _), g in self.grants.items() if org == org_id]
        grants.sort(key=lambda g: as_utc(g.granted_at), reverse=True)
        return [copy.deepcopy(g) for g in grants]

    async def insert_grant(self, grant: Grant) -> None:
        pair = (grant.org_id, grant.solution_key)
        if pair in self.grants:
            raise ConflictError(
                "Organization already has access to this solution",
                {"org_id": grant.org_id, "solution_key": grant.solution_key}
            )
        self.grants[pair] = copy.deepcopy(grant)

    async def update_grant(self, org_id: str, solution_key: str, changes: Dict[str, Any]) -> Optional[Grant]:
        grant = self.grants.get((org_id, solution_key))
        if grant is None:
            return None
        for name, value in changes.items():
            setattr(grant, name, value)
        return copy.deepcopy(grant)

    async def delete_grant(self, org_id: str, solution_key: str) -> bool:
        return self.grants.pop((org_id, solution_key), None) is not None

    async def increment_usage(self, org_id: str, solution_key: str,
                              counter: UsageCounter, used_at: datetime) -> bool:
        grant = self.grants.get((org_id, solution_key))
        if grant is None:
            return False
        # No await between read and write, so this is atomic under asyncio
        setattr(grant.usage, counter.value, getattr(grant.usage, counter.value) + 1)
        grant.usage.last_used = used_at
        return True

    async def append_event(self, event: AccessEvent) -> None:
        self.events.append(copy.deepcopy(event))

    async def query_events(self, solution_key: str, org_id: Optional[str] = None,
                           limit: int = 100) -> List[AccessEvent]:
        matches = [
            e for e in self.events
            if e.solution_key == solution_key and (org_id is None or e.org_id == org_id)
        ]
        matches.sort(key=lambda e: as_utc(e.timestamp), reverse=True)
        return [copy.deepcopy(e) for e in matches[:limit]]
