"""
Solutions service for the Solutions access layer.
"""

from typing import Callable, Optional
from datetime import datetime

from fastapi import File, Form, Query, Request, UploadFile

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import NotFoundError, RateLimitError
from shared.logging import set_user_context

from .catalog.catalog import SolutionCatalog
from .catalog.models import (
    AccessCheckRequest, AccessCheckResponse, AccessEvent, EventCreateRequest, EventResponse,
    EventType, GrantCreateRequest, GrantResponse, GrantUpdateRequest, SolutionCreateRequest,
    SolutionResponse, SolutionUpdateRequest
)
from .catalog.tracker import UsageTracker
from .catalog.validator import AccessValidator
from .persistence.postgres import PostgreSQLEntitlementStore
from .persistence.store import EntitlementStore, InMemoryEntitlementStore
from .ratelimit.fixed_window import FixedWindowRateLimiter, load_profiles
from .ratelimit.stores import InMemoryRateLimitStore, RateLimitStore, RedisRateLimitStore
from .security.content import ContentSecurityConfig, ContentSecurityValidator, UploadedFile
from .security.models import (
    ContactValidationRequest, EmbedUrlRequest, HtmlSanitizeRequest, SlugRequest,
    TextSanitizeRequest, ValidationResponse
)

NULLABLE_SOLUTION_FIELDS = {"icon", "color"}


class SolutionsService(BaseService):
    """Solutions service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 store: Optional[EntitlementStore] = None,
                 rate_limit_store: Optional[RateLimitStore] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 rate_limit_clock: Optional[Callable[[], int]] = None):
        super().__init__("solutions", 8013, config=config)

        self.store = store or self._build_store()
        self.rate_limiter = FixedWindowRateLimiter(
            rate_limit_store or self._build_rate_limit_store(),
            profiles=load_profiles(self.config.rate_limits_file),
            clock=rate_limit_clock
        )
        self.validator = AccessValidator(self.store, clock=clock)
        self.tracker = UsageTracker(
            self.store,
            rate_limiter=self.rate_limiter,
            metrics=self.metrics,
            clock=clock
        )
        self.catalog = SolutionCatalog(self.store, clock=clock)
        self.content = ContentSecurityValidator(ContentSecurityConfig(
            max_file_size=self.config.max_upload_bytes,
            allowed_mime_types=self.config.allowed_upload_types,
            allowed_embed_domains=self.config.allowed_embed_domains,
            max_input_length=self.config.max_input_length
        ))

        self._setup_solutions_routes()

    def _build_store(self) -> EntitlementStore:
        if self.config.storage_backend == "postgres":
            return PostgreSQLEntitlementStore(
                self.config.postgres_dsn,
                min_size=self.config.postgres_min_pool,
                max_size=self.config.postgres_max_pool
            )
        return InMemoryEntitlementStore()

    def _build_rate_limit_store(self) -> RateLimitStore:
        if self.config.rate_limit_backend == "redis":
            return RedisRateLimitStore(self.config.redis_url)
        return InMemoryRateLimitStore()

    async def _enforce(self, profile: str, subject: str):
        """Raise RateLimitError when ``subject`` is over ``profile``."""
        result = await self.rate_limiter.check_profile(profile, subject)
        if not result.allowed:
            self.metrics.increment_counter("rate_limit_rejections_total", profile=profile)
            raise RateLimitError(details={
                "profile": profile,
                "reset_time": result.reset_time,
                "retry_after_seconds": result.retry_after_seconds(self.rate_limiter.clock())
            })

    def _setup_solutions_routes(self):
        """Set up solutions-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "solutions",
                "message": "Solutions Access Layer - Solutions Service",
                "version": "1.0.0",
                "capabilities": ["access_validation", "usage_tracking", "rate_limiting", "content_security"]
            }

        # Access

        @self.app.post("/solutions/access/validate", response_model=AccessCheckResponse)
        async def validate_access(body: AccessCheckRequest, request: Request):
            """Decide whether an organization may open a solution."""
            await self._enforce("solutionAccess", body.org_id)
            set_user_context(user_id=body.user_id, org_id=body.org_id)

            with self.metrics.time_operation("access_check_duration_seconds"):
                decision = await self.validator.validate(body.org_id, body.solution_key)

            reason = decision.reason.value if decision.reason else "none"
            self.metrics.increment_counter(
                "access_decisions_total",
                decision="allow" if decision.has_access else "deny",
                reason=reason
            )

            if body.track:
                self.tracker.dispatch(AccessEvent(
                    solution_key=body.solution_key,
                    org_id=body.org_id,
                    user_id=body.user_id,
                    session_id=body.session_id,
                    ip_address=request.client.host if request.client else None,
                    event=EventType.ACCESS_GRANTED if decision.has_access else EventType.ACCESS_DENIED,
                    metadata={} if decision.has_access else {"reason": reason}
                ))

            return AccessCheckResponse.from_decision(decision)

        @self.app.post("/solutions/events", status_code=202)
        async def track_event(body: EventCreateRequest, request: Request):
            """Queue an event for the usage log."""
            event = AccessEvent(
                solution_key=body.solution_key,
                org_id=body.org_id,
                event=body.event,
                user_id=body.user_id,
                session_id=body.session_id,
                metadata=body.metadata,
                ip_address=request.client.host if request.client else None
            )
            self.tracker.dispatch(event)
            self.metrics.record_business_event(f"solution_{body.event.value}")
            return {"accepted": True, "event_id": event.event_id}

        @self.app.get("/solutions/{solution_key}/events")
        async def list_events(
            solution_key: str,
            org_id: Optional[str] = Query(None, description="Filter by organization"),
            limit: int = Query(100, ge=1, le=500, description="Max events")
        ):
            """Most recent events for a solution."""
            events = await self.tracker.list_events(solution_key, org_id=org_id, limit=limit)
            return {"events": [EventResponse.from_event(e) for e in events], "total": len(events)}

        # Catalog

        @self.app.get("/solutions")
        async def list_solutions():
            solutions = await self.catalog.list_solutions()
            return {"solutions": [SolutionResponse.from_solution(s) for s in solutions], "total": len(solutions)}

        @self.app.post("/solutions", status_code=201, response_model=SolutionResponse)
        async def create_solution(body: SolutionCreateRequest):
            solution = await self.catalog.create_solution(
                key=body.key,
                name=body.name,
                created_by=body.created_by,
                route_reader=body.route_reader,
                description=self.content.sanitize_text(body.description),
                category=body.category,
                allowed_orgs=body.allowed_orgs,
                icon=body.icon,
                color=body.color,
                metadata=body.metadata
            )
            return SolutionResponse.from_solution(solution)

        @self.app.get("/solutions/{solution_key}", response_model=SolutionResponse)
        async def get_solution(solution_key: str):
            return SolutionResponse.from_solution(await self.catalog.get_solution(solution_key))

        @self.app.patch("/solutions/{solution_key}", response_model=SolutionResponse)
        async def update_solution(solution_key: str, body: SolutionUpdateRequest):
            changes = {
                name: value for name, value in body.model_dump(exclude_unset=True).items()
                if value is not None or name in NULLABLE_SOLUTION_FIELDS
            }
            if "description" in changes:
                changes["description"] = self.content.sanitize_text(changes["description"])
            solution = await self.catalog.update_solution(solution_key, changes)
            return SolutionResponse.from_solution(solution)

        @self.app.delete("/solutions/{solution_key}")
        async def delete_solution(solution_key: str):
            await self.catalog.delete_solution(solution_key)
            return {"success": True, "message": "Solution deleted successfully"}

        # Grants

        @self.app.get("/orgs/{org_id}/grants")
        async def list_grants(org_id: str):
            grants = await self.tracker.list_grants(org_id)
            return {"grants": [GrantResponse.from_grant(g) for g in grants], "total": len(grants)}

        @self.app.post("/orgs/{org_id}/grants", status_code=201, response_model=GrantResponse)
        async def grant_access(org_id: str, body: GrantCreateRequest):
            grant = await self.tracker.grant(
                org_id,
                body.solution_key,
                granted_by=body.granted_by,
                expires_at=body.expires_at,
                settings=body.settings
            )
            return GrantResponse.from_grant(grant)

        @self.app.patch("/orgs/{org_id}/grants/{solution_key}", response_model=GrantResponse)
        async def update_grant(org_id: str, solution_key: str, body: GrantUpdateRequest):
            grant = None
            if body.enabled is not None:
                grant = await self.tracker.set_enabled(org_id, solution_key, body.enabled)
            if body.settings is not None:
                grant = await self.tracker.update_settings(org_id, solution_key, body.settings)
            if grant is None:
                grant = await self._require_grant(org_id, solution_key)
            return GrantResponse.from_grant(grant)

        @self.app.delete("/orgs/{org_id}/grants/{solution_key}")
        async def revoke_access(org_id: str, solution_key: str):
            await self.tracker.revoke(org_id, solution_key)
            return {"success": True, "message": "Access revoked successfully"}

        # Content security

        @self.app.post("/content/sanitize-html")
        async def sanitize_html(body: HtmlSanitizeRequest):
            return {"html": self.content.sanitize_html(body.html)}

        @self.app.post("/content/sanitize-text")
        async def sanitize_text(body: TextSanitizeRequest):
            return {"text": self.content.sanitize_text(body.text, body.max_length)}

        @self.app.post("/content/validate-embed", response_model=ValidationResponse)
        async def validate_embed(body: EmbedUrlRequest):
            result = self.content.validate_embed_url(body.url)
            if not result.valid:
                self.metrics.increment_counter("content_rejections_total", kind="embed_url")
            return ValidationResponse(valid=result.valid, error=result.error)

        @self.app.post("/content/validate-upload", response_model=ValidationResponse)
        async def validate_upload(
            request: Request,
            file: UploadFile = File(...),
            org_id: Optional[str] = Form(None)
        ):
            subject = org_id or (request.client.host if request.client else "unknown")
            await self._enforce("upload", subject)

            data = await file.read()
            result = self.content.validate_file(UploadedFile(
                filename=file.filename or "",
                content_type=file.content_type,
                size=len(data)
            ))
            if not result.valid:
                self.metrics.increment_counter("content_rejections_total", kind="upload")
            return ValidationResponse(valid=result.valid, error=result.error)

        @self.app.post("/content/validate-contact")
        async def validate_contact(body: ContactValidationRequest):
            response = {}
            if body.email is not None:
                response["email_valid"] = self.content.validate_email(body.email)
            if body.phone is not None:
                response["phone_valid"] = self.content.validate_phone(body.phone)
            return response

        @self.app.post("/content/slug")
        async def slug(body: SlugRequest):
            return {"slug": self.content.generate_slug(body.text)}

    async def _require_grant(self, org_id: str, solution_key: str):
        grant = await self.store.get_grant(org_id, solution_key)
        if grant is None:
            raise NotFoundError("Access not found", {"org_id": org_id, "solution_key": solution_key})
        return grant

    async def _check_dependencies(self):
        """Check solutions service dependencies."""
        dependencies = {}

        try:
            dependencies["store"] = "ok" if await self.store.health_check() else "error"
        except Exception:
            dependencies["store"] = "error"

        return dependencies

    async def start(self):
        """Start solutions service components."""
        await self.store.start()
        self.rate_limiter.start_sweeper(self.config.rate_limit_sweep_interval_seconds)
        self.logger.info(
            "Solutions service started",
            storage_backend=self.config.storage_backend,
            rate_limit_backend=self.config.rate_limit_backend
        )

    async def stop(self):
        """Stop solutions service components."""
        await self.tracker.drain()
        await self.rate_limiter.stop_sweeper()
        await self.rate_limiter.store.close()
        await self.store.stop()

        self.logger.info("Solutions service stopped")


def create_app():
    """Create solutions service application."""
    service = SolutionsService()
    return service.app


if __name__ == "__main__":
    service = SolutionsService()
    service.run()
