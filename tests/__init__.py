"""
Replica test suite.

This package contains:
- unit/: Unit tests (SQLite in a temp dir, in-memory stream)
- integration/: Processor, consumer loop and server lifecycle
"""
