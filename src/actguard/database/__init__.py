"""
ActGuard Database Package
Persistence port for the security core and its adapters.

Provides:
- SecurityStore, the narrow record-store interface the services depend on
- InMemorySecurityStore for tests and embedding
- SqlAlchemySecurityStore backed by SQLAlchemy 2.0
"""

from .memory import InMemorySecurityStore
from .sql import SqlAlchemySecurityStore
from .store import SecurityStore

__all__ = [
    "SecurityStore",
    "InMemorySecurityStore",
    "SqlAlchemySecurityStore",
]
