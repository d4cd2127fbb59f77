"""
Rate limiting package for the Solutions service.

Holds the fixed-window limiter, its named profiles and the counter stores
it runs on. The in-memory store is process-local; the Redis store shares
counters between instances.
"""
