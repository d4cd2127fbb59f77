"""
Data models for the Solutions service.
"""

import uuid
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SolutionCategory(str, Enum):
    """Solution catalog categories."""
    ASSESSMENT = "assessment"
    HR = "hr"
    MARKETING = "marketing"
    ANALYTICS = "analytics"
    OTHER = "other"


class AccessReason(str, Enum):
    """Why an access check was denied."""
    NOT_FOUND = "not_found"
    NOT_ENABLED = "not_enabled"
    ORG_NOT_ALLOWED = "org_not_allowed"
    EXPIRED = "expired"


class EventType(str, Enum):
    """Tracked solution events."""
    VIEW = "view"
    SIGNUP = "signup"
    REDIRECT = "redirect"
    CONVERSION = "conversion"
    ERROR = "error"
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"


class UsageCounter(str, Enum):
    """Grant usage counters that tracking may increment."""
    VIEWS = "total_views"
    CONVERSIONS = "total_conversions"


COUNTED_EVENTS = {
    EventType.VIEW: UsageCounter.VIEWS,
    EventType.CONVERSION: UsageCounter.CONVERSIONS,
}


@dataclass
class Solution:
    """Catalog entry for a gated internal application."""
    key: str
    name: str
    description: str = ""
    category: SolutionCategory = SolutionCategory.OTHER
    active: bool = True
    route_reader: str = ""
    allowed_orgs: List[str] = field(default_factory=list)
    created_by: str = ""
    icon: Optional[str] = None
    color: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def allows_org(self, org_id: str) -> bool:
        return org_id in self.allowed_orgs


@dataclass
class UsageStats:
    """Running counters kept on a grant."""
    total_views: int = 0
    total_conversions: int = 0
    last_used: Optional[datetime] = None


@dataclass
class Grant:
    """One organization's access record for one solution."""
    org_id: str
    solution_key: str
    enabled: bool = True
    granted_by: str = ""
    granted_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    usage: UsageStats = field(default_factory=UsageStats)

    def is_expired(self, now: datetime) -> bool:
        expires_at = as_utc(self.expires_at)
        return expires_at is not None and expires_at < as_utc(now)


@dataclass(frozen=True)
class AccessEvent:
    """Append-only usage log entry."""
    solution_key: str
    org_id: str
    event: EventType
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class AccessDecision:
    """Result of an access check."""
    has_access: bool
    reason: Optional[AccessReason] = None
    solution: Optional[Solution] = None
    grant: Optional[Grant] = None

    @classmethod
    def denied(cls, reason: AccessReason, solution: Optional[Solution] = None,
               grant: Optional[Grant] = None) -> "AccessDecision":
        return cls(has_access=False, reason=reason, solution=solution, grant=grant)


# API models

class SolutionCreateRequest(BaseModel):
    """Request model for creating a solution."""
    key: str = Field(..., min_length=1, description="Unique immutable key")
    name: str = Field(..., min_length=1, description="Display name")
    description: str = Field("", description="Solution description")
    category: SolutionCategory = Field(SolutionCategory.OTHER, description="Catalog category")
    route_reader: str = Field(..., description="Entry path for the gated app")
    allowed_orgs: List[str] = Field(default_factory=list, description="Orgs that may hold a grant")
    icon: Optional[str] = None
    color: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: str = Field(..., description="Administrator creating the solution")


class SolutionUpdateRequest(BaseModel):
    """Request model for updating a solution. The key cannot change."""
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[SolutionCategory] = None
    active: Optional[bool] = None
    route_reader: Optional[str] = None
    allowed_orgs: Optional[List[str]] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SolutionResponse(BaseModel):
    """Response model for solution operations."""
    key: str
    name: str
    description: str
    category: SolutionCategory
    active: bool
    route_reader: str
    allowed_orgs: List[str]
    created_by: str
    icon: Optional[str] = None
    color: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_solution(cls, solution: Solution) -> "SolutionResponse":
        return cls(
            key=solution.key,
            name=solution.name,
            description=solution.description,
            category=solution.category,
            active=solution.active,
            route_reader=solution.route_reader,
            allowed_orgs=list(solution.allowed_orgs),
            created_by=solution.created_by,
            icon=solution.icon,
            color=solution.color,
            metadata=solution.metadata,
            created_at=solution.created_at,
            updated_at=solution.updated_at,
        )


class UsageResponse(BaseModel):
    total_views: int = 0
    total_conversions: int = 0
    last_used: Optional[datetime] = None


class GrantCreateRequest(BaseModel):
    """Request model for granting a solution to an organization."""
    solution_key: str = Field(..., description="Solution key")
    granted_by: str = Field(..., description="Administrator granting access")
    expires_at: Optional[datetime] = Field(None, description="Expiration date")
    settings: Dict[str, Any] = Field(default_factory=dict, description="Org-specific settings")


class GrantUpdateRequest(BaseModel):
    """Request model for enabling/disabling a grant or changing settings."""
    enabled: Optional[bool] = None
    settings: Optional[Dict[str, Any]] = None


class GrantResponse(BaseModel):
    """Response model for grant operations."""
    org_id: str
    solution_key: str
    enabled: bool
    granted_by: str
    granted_at: datetime
    expires_at: Optional[datetime] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    usage: UsageResponse

    @classmethod
    def from_grant(cls, grant: Grant) -> "GrantResponse":
        return cls(
            org_id=grant.org_id,
            solution_key=grant.solution_key,
            enabled=grant.enabled,
            granted_by=grant.granted_by,
            granted_at=grant.granted_at,
            expires_at=grant.expires_at,
            settings=grant.settings,
            usage=UsageResponse(
                total_views=grant.usage.total_views,
                total_conversions=grant.usage.total_conversions,
                last_used=grant.usage.last_used,
            ),
        )


class AccessCheckRequest(BaseModel):
    """Request model for an access check."""
    org_id: str = Field(..., description="Organization ID")
    solution_key: str = Field(..., description="Solution key")
    user_id: Optional[str] = Field(None, description="User making the request")
    session_id: Optional[str] = Field(None, description="Client session ID")
    track: bool = Field(False, description="Log access_granted/access_denied")


class AccessCheckResponse(BaseModel):
    """Response model for an access check."""
    has_access: bool
    reason: Optional[AccessReason] = None
    solution: Optional[SolutionResponse] = None
    grant: Optional[GrantResponse] = None

    @classmethod
    def from_decision(cls, decision: AccessDecision) -> "AccessCheckResponse":
        return cls(
            has_access=decision.has_access,
            reason=decision.reason,
            solution=SolutionResponse.from_solution(decision.solution) if decision.solution else None,
            grant=GrantResponse.from_grant(decision.grant) if decision.grant else None,
        )


class EventCreateRequest(BaseModel):
    """Request model for tracking an event."""
    solution_key: str
    org_id: str
    event: EventType
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EventResponse(BaseModel):
    event_id: str
    solution_key: str
    org_id: str
    event: EventType
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @classmethod
    def from_event(cls, event: AccessEvent) -> "EventResponse":
        return cls(
            event_id=event.event_id,
            solution_key=event.solution_key,
            org_id=event.org_id,
            event=event.event,
            user_id=event.user_id,
            session_id=event.session_id,
            ip_address=event.ip_address,
            metadata=event.metadata,
            timestamp=event.timestamp,
        )
