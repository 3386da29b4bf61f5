"""Adapters for integrating RunMet with storage backends."""

from .memory_repo import InMemoryRunRepository
from .schema import create_schema, create_session_factory
from .sqlalchemy_repo import SQLAlchemyRunRepository

__all__ = ["InMemoryRunRepository", "SQLAlchemyRunRepository", "create_schema", "create_session_factory"]
