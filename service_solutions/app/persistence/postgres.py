"""
PostgreSQL persistence layer for the Solutions service.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import AccessLayerException, ConflictError, PersistenceError
from shared.logging import get_logger
from ..catalog.models import (
    AccessEvent, EventType, Grant, Solution, SolutionCategory, UsageCounter, UsageStats
)
from .store import EntitlementStore

SOLUTION_COLUMNS = {
    "name", "description", "category", "active", "route_reader", "allowed_orgs",
    "icon", "color", "metadata", "updated_at",
}
GRANT_COLUMNS = {"enabled", "settings", "expires_at"}

_CONNECTION_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class PostgreSQLEntitlementStore(EntitlementStore):
    """PostgreSQL persistence layer for solutions, grants and events."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("solutions.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
                init=self._init_connection
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except _CONNECTION_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise PersistenceError("Failed to start PostgreSQL persistence", {"error": str(e)}) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    @asynccontextmanager
    async def _connection(self, operation: str, **fields):
        """Acquire a connection, translating driver errors into PersistenceError."""
        if self.pool is None:
            raise PersistenceError("PostgreSQL persistence not started")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except AccessLayerException:
            raise
        except _CONNECTION_ERRORS as e:
            self.logger.error(f"Error during {operation}", error=str(e), **fields)
            raise PersistenceError(f"Failed to {operation}", {"error": str(e), **fields}) from e

    async def _create_tables(self):
        """Create database tables."""
        async with self._connection("create tables") as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS solutions (
                    key VARCHAR(255) PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    category VARCHAR(32) NOT NULL,
                    active BOOLEAN NOT NULL DEFAULT TRUE,
                    route_reader TEXT NOT NULL DEFAULT '',
                    allowed_orgs TEXT[] NOT NULL DEFAULT '{}',
                    created_by VARCHAR(255) NOT NULL DEFAULT '',
                    icon TEXT,
                    color VARCHAR(32),
                    metadata JSONB NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS solution_grants (
                    org_id VARCHAR(255) NOT NULL,
                    solution_key VARCHAR(255) NOT NULL,
                    enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    granted_by VARCHAR(255) NOT NULL DEFAULT '',
                    granted_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    expires_at TIMESTAMP WITH TIME ZONE,
                    settings JSONB NOT NULL DEFAULT '{}',
                    total_views BIGINT NOT NULL DEFAULT 0,
                    total_conversions BIGINT NOT NULL DEFAULT 0,
                    last_used TIMESTAMP WITH TIME ZONE,
                    PRIMARY KEY (org_id, solution_key)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS solution_events (
                    event_id VARCHAR(64) PRIMARY KEY,
                    solution_key VARCHAR(255) NOT NULL,
                    org_id VARCHAR(255) NOT NULL,
                    user_id VARCHAR(255),
                    event VARCHAR(32) NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{}',
                    session_id VARCHAR(255),
                    ip_address VARCHAR(64),
                    occurred_at TIMESTAMP WITH TIME ZONE NOT NULL
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_solution_time
                ON solution_events(solution_key, occurred_at DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_org ON solution_events(org_id);
            """)

    # Solutions

    async def get_solution(self, key: str) -> Optional[Solution]:
        async with self._connection("fetch solution", key=key) as conn:
            row = await conn.fetchrow("SELECT * FROM solutions WHERE key = $1", key)
        return self._row_to_solution(row) if row else None

    async def list_solutions(self) -> List[Solution]:
        async with self._connection("fetch solutions") as conn:
            rows = await conn.fetch("SELECT * FROM solutions ORDER BY name ASC")
        return [self._row_to_solution(row) for row in rows]

    async def insert_solution(self, solution: Solution) -> None:
        async with self._connection("save solution", key=solution.key) as conn:
            try:
                await conn.execute("""
                    INSERT INTO solutions (
                        key, name, description, category, active, route_reader, allowed_orgs,
                        created_by, icon, color, metadata, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                """,
                    solution.key, solution.name, solution.description, solution.category.value,
                    solution.active, solution.route_reader, list(solution.allowed_orgs),
                    solution.created_by, solution.icon, solution.color, solution.metadata,
                    solution.created_at, solution.updated_at
                )
            except asyncpg.UniqueViolationError as e:
                raise ConflictError("Solution with this key already exists", {"key": solution.key}) from e

        self.logger.info("Solution saved", key=solution.key, name=solution.name)

    async def update_solution(self, key: str, changes: Dict[str, Any]) -> Optional[Solution]:
        if not changes:
            return await self.get_solution(key)
        assignments, values = self._assignments(changes, SOLUTION_COLUMNS, offset=2)
        async with self._connection("update solution", key=key) as conn:
            row = await conn.fetchrow(
                f"UPDATE solutions SET {assignments} WHERE key = $1 RETURNING *",
                key, *values
            )
        return self._row_to_solution(row) if row else None

    async def delete_solution(self, key: str) -> bool:
        async with self._connection("delete solution", key=key) as conn:
            result = await conn.execute("DELETE FROM solutions WHERE key = $1", key)
        return result == "DELETE 1"

    # Grants

    async def get_grant(self, org_id: str, solution_key: str) -> Optional[Grant]:
        async with self._connection("fetch grant", org_id=org_id, solution_key=solution_key) as conn:
            row = await conn.fetchrow("""
                SELECT * FROM solution_grants WHERE org_id = $1 AND solution_key = $2
            """, org_id, solution_key)
        return self._row_to_grant(row) if row else None

    async def list_grants(self, org_id: str) -> List[Grant]:
        async with self._connection("fetch grants", org_id=org_id) as conn:
            rows = await conn.fetch("""
                SELECT * FROM solution_grants WHERE org_id = $1 ORDER BY granted_at DESC
            """, org_id)
        return [self._row_to_grant(row) for row in rows]

    async def insert_grant(self, grant: Grant) -> None:
        async with self._connection("save grant", org_id=grant.org_id, solution_key=grant.solution_key) as conn:
            try:
                await conn.execute("""
                    INSERT INTO solution_grants (
                        org_id, solution_key, enabled, granted_by, granted_at, expires_at,
                        settings, total_views, total_conversions, last_used
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                    grant.org_id, grant.solution_key, grant.enabled, grant.granted_by,
                    grant.granted_at, grant.expires_at, grant.settings,
                    grant.usage.total_views, grant.usage.total_conversions, grant.usage.last_used
                )
            except asyncpg.UniqueViolationError as e:
                raise ConflictError(
                    "Organization already has access to this solution",
                    {"org_id": grant.org_id, "solution_key": grant.solution_key}
                ) from e

        self.logger.info("Grant saved", org_id=grant.org_id, solution_key=grant.solution_key)

    async def update_grant(self, org_id: str, solution_key: str, changes: Dict[str, Any]) -> Optional[Grant]:
        if not changes:
            return await self.get_grant(org_id, solution_key)
        assignments, values = self._assignments(changes, GRANT_COLUMNS, offset=3)
        async with self._connection("update grant", org_id=org_id, solution_key=solution_key) as conn:
            row = await conn.fetchrow(
                f"UPDATE solution_grants SET {assignments} "
                f"WHERE org_id = $1 AND solution_key = $2 RETURNING *",
                org_id, solution_key, *values
            )
        return self._row_to_grant(row) if row else None

    async def delete_grant(self, org_id: str, solution_key: str) -> bool:
        async with self._connection("delete grant", org_id=org_id, solution_key=solution_key) as conn:
            result = await conn.execute("""
                DELETE FROM solution_grants WHERE org_id = $1 AND solution_key = $2
            """, org_id, solution_key)
        return result == "DELETE 1"

    async def increment_usage(self, org_id: str, solution_key: str,
                              counter: UsageCounter, used_at: datetime) -> bool:
        column = UsageCounter(counter).value
        async with self._connection("update usage stats", org_id=org_id, solution_key=solution_key) as conn:
            result = await conn.execute(
                f"UPDATE solution_grants SET {column} = {column} + 1, last_used = $3 "
                f"WHERE org_id = $1 AND solution_key = $2",
                org_id, solution_key, used_at
            )
        return result == "UPDATE 1"

    # Events

    async def append_event(self, event: AccessEvent) -> None:
        async with self._connection("track solution event", solution_key=event.solution_key) as conn:
            await conn.execute("""
                INSERT INTO solution_events (
                    event_id, solution_key, org_id, user_id, event, metadata,
                    session_id, ip_address, occurred_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
                event.event_id, event.solution_key, event.org_id, event.user_id,
                event.event.value, event.metadata, event.session_id, event.ip_address,
                event.timestamp
            )

    async def query_events(self, solution_key: str, org_id: Optional[str] = None,
                           limit: int = 100) -> List[AccessEvent]:
        async with self._connection("fetch solution events", solution_key=solution_key) as conn:
            if org_id:
                rows = await conn.fetch("""
                    SELECT * FROM solution_events
                    WHERE solution_key = $1 AND org_id = $2
                    ORDER BY occurred_at DESC LIMIT $3
                """, solution_key, org_id, limit)
            else:
                rows = await conn.fetch("""
                    SELECT * FROM solution_events
                    WHERE solution_key = $1
                    ORDER BY occurred_at DESC LIMIT $2
                """, solution_key, limit)
        return [self._row_to_event(row) for row in rows]

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self._connection("health check") as conn:
                await conn.fetchval("SELECT 1")
            return True
        except PersistenceError:
            return False

    @staticmethod
    def _assignments(changes: Dict[str, Any], allowed: set, offset: int):
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unsupported columns: {sorted(unknown)}")
        names = sorted(changes)
        assignments = ", ".join(f"{name} = ${offset + i}" for i, name in enumerate(names))
        values = [
            changes[name].value if isinstance(changes[name], SolutionCategory) else changes[name]
            for name in names
        ]
        return assignments, values

    def _row_to_solution(self, row) -> Solution:
        """Convert database row to Solution object."""
        return Solution(
            key=row['key'],
            name=row['name'],
            description=row['description'],
            category=SolutionCategory(row['category']),
            active=row['active'],
            route_reader=row['route_reader'],
            allowed_orgs=list(row['allowed_orgs'] or []),
            created_by=row['created_by'],
            icon=row['icon'],
            color=row['color'],
            metadata=row['metadata'] or {},
            created_at=row['created_at'],
            updated_at=row['updated_at']
        )

    def _row_to_grant(self, row) -> Grant:
        """Convert database row to Grant object."""
        return Grant(
            org_id=row['org_id'],
            solution_key=row['solution_key'],
            enabled=row['enabled'],
            granted_by=row['granted_by'],
            granted_at=row['granted_at'],
            expires_at=row['expires_at'],
            settings=row['settings'] or {},
            usage=UsageStats(
                total_views=row['total_views'],
                total_conversions=row['total_conversions'],
                last_used=row['last_used']
            )
        )

    def _row_to_event(self, row) -> AccessEvent:
        """Convert database row to AccessEvent object."""
        return AccessEvent(
            event_id=row['event_id'],
            solution_key=row['solution_key'],
            org_id=row['org_id'],
            user_id=row['user_id'],
            event=EventType(row['event']),
            metadata=row['metadata'] or {},
            session_id=row['session_id'],
            ip_address=row['ip_address'],
            timestamp=row['occurred_at']
        )
