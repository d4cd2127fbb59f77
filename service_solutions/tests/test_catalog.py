"""
Unit tests for the solution catalog.
"""

import pytest

from service_solutions.app.catalog.catalog import SolutionCatalog
from service_solutions.app.catalog.models import SolutionCategory
from service_solutions.app.persistence.store import InMemoryEntitlementStore
from service_solutions.tests.factories import FIXED_NOW, FakeClock
from shared.errors import ConflictError, NotFoundError, ValidationError


class TestSolutionCatalog:
    """Test cases for SolutionCatalog."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def catalog(self, clock):
        return SolutionCatalog(InMemoryEntitlementStore(), clock=clock)

    @pytest.mark.asyncio
    async def test_create_solution(self, catalog):
        solution = await catalog.create_solution(
            key="ceps_reader",
            name="CEPS Reader",
            created_by="admin-1",
            route_reader="/solutions/ceps_reader/start",
            category="assessment",
            allowed_orgs=["org1", "org2", "org1"]
        )

        assert solution.active is True
        assert solution.category == SolutionCategory.ASSESSMENT
        assert solution.allowed_orgs == ["org1", "org2"]
        assert solution.created_at == FIXED_NOW
        assert (await catalog.get_solution("ceps_reader")).name == "CEPS Reader"

    @pytest.mark.asyncio
    async def test_duplicate_key(self, catalog):
        await catalog.create_solution(key="hr_app", name="HR", created_by="admin")

        with pytest.raises(ConflictError):
            await catalog.create_solution(key="hr_app", name="HR again", created_by="admin")

    @pytest.mark.asyncio
    async def test_blank_key_rejected(self, catalog):
        with pytest.raises(ValidationError):
            await catalog.create_solution(key="  ", name="Blank", created_by="admin")

    @pytest.mark.asyncio
    async def test_get_missing(self, catalog):
        with pytest.raises(NotFoundError):
            await catalog.get_solution("missing")

    @pytest.mark.asyncio
    async def test_list_sorted_by_name(self, catalog):
        await catalog.create_solution(key="b", name="Zeta", created_by="admin")
        await catalog.create_solution(key="a", name="Alpha", created_by="admin")

        solutions = await catalog.list_solutions()

        assert [s.name for s in solutions] == ["Alpha", "Zeta"]

    @pytest.mark.asyncio
    async def test_update_solution(self, catalog, clock):
        await catalog.create_solution(key="hr_app", name="HR", created_by="admin", allowed_orgs=["org1"])
        clock.advance(minutes=5)

        updated = await catalog.update_solution("hr_app", {
            "name": "HR Portal",
            "allowed_orgs": ["org1", "org3"],
            "category": "hr"
        })

        assert updated.name == "HR Portal"
        assert updated.allowed_orgs == ["org1", "org3"]
        assert updated.category == SolutionCategory.HR
        assert updated.created_at == FIXED_NOW
        assert updated.updated_at > updated.created_at

    @pytest.mark.asyncio
    async def test_key_is_immutable(self, catalog):
        await catalog.create_solution(key="hr_app", name="HR", created_by="admin")

        with pytest.raises(ValidationError):
            await catalog.update_solution("hr_app", {"key": "hr_portal"})

        assert (await catalog.update_solution("hr_app", {"key": "hr_app", "name": "HR"})).key == "hr_app"

    @pytest.mark.asyncio
    async def test_unknown_fields_rejected(self, catalog):
        await catalog.create_solution(key="hr_app", name="HR", created_by="admin")

        with pytest.raises(ValidationError) as exc_info:
            await catalog.update_solution("hr_app", {"created_by": "someone-else"})

        assert exc_info.value.details == {"fields": ["created_by"]}

    @pytest.mark.asyncio
    async def test_update_missing(self, catalog):
        with pytest.raises(NotFoundError):
            await catalog.update_solution("missing", {"name": "x"})

    @pytest.mark.asyncio
    async def test_set_active(self, catalog):
        await catalog.create_solution(key="hr_app", name="HR", created_by="admin")

        retired = await catalog.set_active("hr_app", False)

        assert retired.active is False
        assert (await catalog.get_solution("hr_app")).active is False

    @pytest.mark.asyncio
    async def test_delete_solution(self, catalog):
        await catalog.create_solution(key="hr_app", name="HR", created_by="admin")

        await catalog.delete_solution("hr_app")

        with pytest.raises(NotFoundError):
            await catalog.delete_solution("hr_app")
