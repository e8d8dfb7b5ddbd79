"""
Durable session repositories.

The store only relies on the upsert/read/delete contract in ``base``; the
PostgreSQL repository is used in deployed environments and the in-memory one
for local runs and tests.
"""

from .base import SessionRepository
from .memory import InMemorySessionRepository
from .postgres import PostgresSessionRepository

__all__ = ["SessionRepository", "InMemorySessionRepository", "PostgresSessionRepository"]
