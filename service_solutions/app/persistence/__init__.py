"""
Persistence package for the Solutions service.

- store: EntitlementStore interface and the in-memory implementation.
- postgres: asyncpg-backed implementation.
"""
