"""
EntMan Test Suite.

This package contains:
- unit/: Unit tests (SQLite in a temporary directory, in-memory events)
- integration/: Assembled EntityManager, concurrency and CLI tests
"""
