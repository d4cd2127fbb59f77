"""
Unit tests for the PostgreSQL entitlement store.
"""

import pytest
import asyncpg
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from service_solutions.app.catalog.models import EventType, SolutionCategory, UsageCounter
from service_solutions.app.persistence.postgres import PostgreSQLEntitlementStore
from service_solutions.tests.factories import FIXED_NOW, TestDataFactory
from shared.errors import ConflictError, PersistenceError


def grant_row(**overrides):
    row = {
        "org_id": "org1",
        "solution_key": "hr_app",
        "enabled": True,
        "granted_by": "admin",
        "granted_at": FIXED_NOW - timedelta(days=30),
        "expires_at": None,
        "settings": {"seats": 5},
        "total_views": 7,
        "total_conversions": 2,
        "last_used": FIXED_NOW,
    }
    row.update(overrides)
    return row


def solution_row(**overrides):
    row = {
        "key": "hr_app",
        "name": "HR App",
        "description": "",
        "category": "hr",
        "active": True,
        "route_reader": "/solutions/hr_app/start",
        "allowed_orgs": ["org1"],
        "created_by": "admin",
        "icon": None,
        "color": None,
        "metadata": None,
        "created_at": FIXED_NOW,
        "updated_at": FIXED_NOW,
    }
    row.update(overrides)
    return row


class TestPostgreSQLEntitlementStore:
    """Test cases for PostgreSQLEntitlementStore."""

    @pytest.fixture
    def mock_conn(self):
        """Mock asyncpg connection."""
        return AsyncMock()

    @pytest.fixture
    def store(self, mock_conn):
        """Store wired to a mock pool."""
        acquire_cm = MagicMock()
        acquire_cm.__aenter__ = AsyncMock(return_value=mock_conn)
        acquire_cm.__aexit__ = AsyncMock(return_value=False)
        pool = MagicMock()
        pool.acquire = MagicMock(return_value=acquire_cm)
        pool.close = AsyncMock()

        store = PostgreSQLEntitlementStore("postgres://test/solutions")
        store.pool = pool
        return store

    @pytest.mark.asyncio
    async def test_not_started(self):
        store = PostgreSQLEntitlementStore("postgres://test/solutions")

        with pytest.raises(PersistenceError):
            await store.get_solution("hr_app")

    @pytest.mark.asyncio
    async def test_get_solution(self, store, mock_conn):
        mock_conn.fetchrow.return_value = solution_row()

        solution = await store.get_solution("hr_app")

        assert solution.category == SolutionCategory.HR
        assert solution.allowed_orgs == ["org1"]
        assert solution.metadata == {}
        mock_conn.fetchrow.assert_awaited_once_with("SELECT * FROM solutions WHERE key = $1", "hr_app")

    @pytest.mark.asyncio
    async def test_get_missing_grant(self, store, mock_conn):
        mock_conn.fetchrow.return_value = None

        assert await store.get_grant("org1", "hr_app") is None

    @pytest.mark.asyncio
    async def test_get_grant_maps_usage(self, store, mock_conn):
        mock_conn.fetchrow.return_value = grant_row()

        grant = await store.get_grant("org1", "hr_app")

        assert grant.settings == {"seats": 5}
        assert grant.usage.total_views == 7
        assert grant.usage.total_conversions == 2
        assert grant.usage.last_used == FIXED_NOW

    @pytest.mark.asyncio
    async def test_driver_error_becomes_persistence_error(self, store, mock_conn):
        mock_conn.fetchrow.side_effect = asyncpg.PostgresError("connection lost")

        with pytest.raises(PersistenceError) as exc_info:
            await store.get_grant("org1", "hr_app")

        assert exc_info.value.message == "Failed to fetch grant"
        assert exc_info.value.details["org_id"] == "org1"

    @pytest.mark.asyncio
    async def test_os_error_becomes_persistence_error(self, store, mock_conn):
        mock_conn.fetch.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(PersistenceError):
            await store.list_solutions()

    @pytest.mark.asyncio
    async def test_duplicate_grant_conflicts(self, store, mock_conn):
        mock_conn.execute.side_effect = asyncpg.UniqueViolationError("duplicate key")

        with pytest.raises(ConflictError):
            await store.insert_grant(TestDataFactory.create_grant())

    @pytest.mark.asyncio
    async def test_duplicate_solution_conflicts(self, store, mock_conn):
        mock_conn.execute.side_effect = asyncpg.UniqueViolationError("duplicate key")

        with pytest.raises(ConflictError):
            await store.insert_solution(TestDataFactory.create_solution())

    @pytest.mark.asyncio
    async def test_increment_usage_is_single_update(self, store, mock_conn):
        mock_conn.execute.return_value = "UPDATE 1"

        updated = await store.increment_usage("org1", "hr_app", UsageCounter.VIEWS, FIXED_NOW)

        assert updated is True
        query, *args = mock_conn.execute.await_args[0]
        assert "total_views = total_views + 1" in query
        assert args == ["org1", "hr_app", FIXED_NOW]

    @pytest.mark.asyncio
    async def test_increment_usage_without_grant(self, store, mock_conn):
        mock_conn.execute.return_value = "UPDATE 0"

        assert await store.increment_usage("org1", "hr_app", UsageCounter.CONVERSIONS, FIXED_NOW) is False

    @pytest.mark.asyncio
    async def test_update_solution_builds_assignments(self, store, mock_conn):
        mock_conn.fetchrow.return_value = solution_row(name="HR Portal", active=False)

        solution = await store.update_solution("hr_app", {"name": "HR Portal", "active": False})

        query, *args = mock_conn.fetchrow.await_args[0]
        assert "active = $2, name = $3" in query
        assert args == ["hr_app", False, "HR Portal"]
        assert solution.active is False

    @pytest.mark.asyncio
    async def test_update_grant_rejects_unknown_columns(self, store):
        with pytest.raises(ValueError):
            await store.update_grant("org1", "hr_app", {"total_views": 0})

    @pytest.mark.asyncio
    async def test_delete_grant(self, store, mock_conn):
        mock_conn.execute.return_value = "DELETE 1"
        assert await store.delete_grant("org1", "hr_app") is True

        mock_conn.execute.return_value = "DELETE 0"
        assert await store.delete_grant("org1", "hr_app") is False

    @pytest.mark.asyncio
    async def test_query_events_filters_by_org(self, store, mock_conn):
        mock_conn.fetch.return_value = [{
            "event_id": "e1",
            "solution_key": "hr_app",
            "org_id": "org1",
            "user_id": "user-1",
            "event": "view",
            "metadata": {},
            "session_id": None,
            "ip_address": "10.0.0.1",
            "occurred_at": FIXED_NOW,
        }]

        events = await store.query_events("hr_app", org_id="org1", limit=10)

        assert events[0].event == EventType.VIEW
        assert events[0].timestamp == FIXED_NOW
        assert mock_conn.fetch.await_args[0][1:] == ("hr_app", "org1", 10)

    @pytest.mark.asyncio
    async def test_health_check(self, store, mock_conn):
        mock_conn.fetchval.return_value = 1
        assert await store.health_check() is True

        mock_conn.fetchval.side_effect = asyncpg.InterfaceError("closed")
        assert await store.health_check() is False

    @pytest.mark.asyncio
    async def test_stop_closes_pool(self, store):
        pool = store.pool

        await store.stop()

        pool.close.assert_awaited_once()
        assert store.pool is None
