"""
Access decision pipeline for gated solutions.
"""

from datetime import datetime
from typing import Callable, Optional

from shared.errors import PersistenceError, ServiceError
from shared.logging import get_logger
from ..persistence.store import EntitlementStore
from .models import AccessDecision, AccessReason, utcnow


class AccessValidator:
    """Decides whether an organization may currently open a solution.

    Checks run in a fixed order and the first failing one names the
    reason, so a retired solution reports ``not_enabled`` even for an org
    holding a valid grant, and ``org_not_allowed`` wins over grant state.
    Denials are returned, never raised; a store failure is raised as
    ``ServiceError``.
    """

    def __init__(self, store: EntitlementStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utcnow
        self.logger = get_logger("solutions.access_validator")

    async def validate(self, org_id: str, solution_key: str) -> AccessDecision:
        try:
            decision = await self._decide(org_id, solution_key)
        except PersistenceError as e:
            self.logger.error(
                "Error validating solution access",
                org_id=org_id,
                solution_key=solution_key,
                error=e.message
            )
            raise ServiceError(
                "Failed to validate solution access",
                {"org_id": org_id, "solution_key": solution_key, "cause": e.code}
            ) from e

        self.logger.debug(
            "Access decision",
            org_id=org_id,
            solution_key=solution_key,
            has_access=decision.has_access,
            reason=decision.reason.value if decision.reason else None
        )
        return decision

    async def _decide(self, org_id: str, solution_key: str) -> AccessDecision:
        solution = await self.store.get_solution(solution_key)
        if solution is None:
            return AccessDecision.denied(AccessReason.NOT_FOUND)

        if not solution.active:
            return AccessDecision.denied(AccessReason.NOT_ENABLED, solution)

        if not solution.allows_org(org_id):
            return AccessDecision.denied(AccessReason.ORG_NOT_ALLOWED, solution)

        grant = await self.store.get_grant(org_id, solution_key)
        if grant is None:
            return AccessDecision.denied(AccessReason.NOT_ENABLED, solution)

        if not grant.enabled:
            return AccessDecision.denied(AccessReason.NOT_ENABLED, solution, grant)

        if grant.is_expired(self.clock()):
            return AccessDecision.denied(AccessReason.EXPIRED, solution, grant)

        return AccessDecision(has_access=True, solution=solution, grant=grant)
