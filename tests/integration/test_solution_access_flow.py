"""
Integration tests for the solution access flow.
"""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from service_solutions.app.main import SolutionsService
from service_solutions.app.ratelimit.fixed_window import RateLimitProfile
from service_solutions.app.ratelimit.stores import InMemoryRateLimitStore
from service_solutions.tests.factories import FIXED_NOW, FakeClock, TestDataFactory
from shared.config import get_config


class TestSolutionAccessFlow:
    """End-to-end flow from catalog setup to usage reporting."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def service(self, clock):
        service = SolutionsService(
            config=get_config("solutions", 8013, env="test"),
            rate_limit_store=InMemoryRateLimitStore(),
            clock=clock,
            rate_limit_clock=clock.millis
        )
        service.rate_limiter.profiles["solutionAccess"] = RateLimitProfile(window_ms=60000, max_requests=5)
        return service

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as client:
            yield client

    def _check(self, client, org_id, solution_key="ceps_reader"):
        response = client.post("/solutions/access/validate", json={
            "org_id": org_id,
            "solution_key": solution_key
        })
        assert response.status_code == 200
        return response.json()

    def _track(self, client, service, event, org_id="org1", solution_key="ceps_reader"):
        response = client.post("/solutions/events", json={
            "solution_key": solution_key,
            "org_id": org_id,
            "event": event,
            "user_id": "user-1"
        })
        assert response.status_code == 202
        client.portal.call(service.tracker.drain)

    def test_complete_access_flow(self, client, service, clock):
        """Catalog, grant, access, usage, retirement."""
        created = client.post("/solutions", json=TestDataFactory.create_solution_payload())
        assert created.status_code == 201

        # Allowed org without a grant
        assert self._check(client, "org1")["reason"] == "not_enabled"
        # Org outside the allow-list
        assert self._check(client, "org3")["reason"] == "org_not_allowed"

        granted = client.post("/orgs/org1/grants", json={
            "solution_key": "ceps_reader",
            "granted_by": "admin-1",
            "expires_at": (FIXED_NOW + timedelta(days=30)).isoformat()
        })
        assert granted.status_code == 201

        decision = self._check(client, "org1")
        assert decision["has_access"] is True
        assert decision["solution"]["route_reader"] == "/solutions/ceps_reader/start"

        for _ in range(3):
            self._track(client, service, "view")
        self._track(client, service, "conversion")
        self._track(client, service, "signup")

        grant = client.get("/orgs/org1/grants").json()["grants"][0]
        assert grant["usage"]["total_views"] == 3
        assert grant["usage"]["total_conversions"] == 1

        events = client.get("/solutions/ceps_reader/events", params={"org_id": "org1"}).json()
        assert events["total"] == 5

        # Retiring the solution overrides the valid grant
        client.patch("/solutions/ceps_reader", json={"active": False})
        assert self._check(client, "org1")["reason"] == "not_enabled"

        client.patch("/solutions/ceps_reader", json={"active": True})
        assert self._check(client, "org1")["has_access"] is True

        clock.advance(days=31)
        assert self._check(client, "org1")["reason"] == "expired"

    def test_conversion_abuse_is_capped(self, client, service):
        """Conversions over the per-org budget are logged but not counted."""
        client.post("/solutions", json=TestDataFactory.create_solution_payload())
        client.post("/orgs/org1/grants", json={"solution_key": "ceps_reader", "granted_by": "admin-1"})

        for _ in range(8):
            self._track(client, service, "conversion")

        grant = client.get("/orgs/org1/grants").json()["grants"][0]
        events = client.get("/solutions/ceps_reader/events").json()
        assert grant["usage"]["total_conversions"] == 5
        assert events["total"] == 8

    def test_access_checks_rate_limited_per_org(self, client, clock):
        client.post("/solutions", json=TestDataFactory.create_solution_payload())

        statuses = [
            client.post("/solutions/access/validate", json={"org_id": "org1", "solution_key": "ceps_reader"}).status_code
            for _ in range(6)
        ]
        assert statuses == [200] * 5 + [429]
        assert self._check(client, "org2")["reason"] == "not_enabled"

        clock.advance(seconds=61)
        assert self._check(client, "org1")["reason"] == "not_enabled"

    def test_revoked_grant_loses_access(self, client, service):
        client.post("/solutions", json=TestDataFactory.create_solution_payload())
        client.post("/orgs/org2/grants", json={"solution_key": "ceps_reader", "granted_by": "admin-1"})
        assert self._check(client, "org2")["has_access"] is True

        assert client.delete("/orgs/org2/grants/ceps_reader").status_code == 200

        decision = self._check(client, "org2")
        assert decision["has_access"] is False
        assert decision["reason"] == "not_enabled"
        assert decision["grant"] is None
