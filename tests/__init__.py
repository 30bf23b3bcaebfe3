"""
Block Store Test Suite.

This package contains:
- unit/: Unit tests (SQLite in a temporary directory, no external services)
- integration/: BlockDatabase end to end over SQLite; PostgreSQL opt-in
"""
