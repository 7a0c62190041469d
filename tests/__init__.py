"""
SchemaVault Test Suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, in-memory blob store)
"""
