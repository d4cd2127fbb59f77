"""
Solutions service package for the Solutions access layer.

This package decides whether an organization may open a gated internal
application ("solution"), records usage against the organization's grant,
and validates untrusted content before it is stored or rendered. It
provides:

- app.main: API surface for access checks, grants, catalog, content checks.
- app.catalog: Data model, access validator, usage tracker, catalog admin.
- app.persistence: EntitlementStore interface with memory/PostgreSQL backends.
- app.ratelimit: Fixed-window rate limiter over pluggable counter stores.
- app.security: Content sanitizers and validators.

Guidelines:
- Access decisions are pure reads; denials are results, not exceptions.
- Tracking never fails the request that triggered it.
- Store failures surface as PersistenceError, never as a denial reason.
"""
