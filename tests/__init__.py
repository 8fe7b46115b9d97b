"""
collforge Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, no external services)
- integration/: Plugin stacks run end to end against the memory and SQLite stores
"""
