"""Database utilities and session management."""

from chronos.db.base import Base, BaseModel, String50, String100, String255, String1000
from chronos.db.session import (
    check_db_health,
    create_engine,
    create_session_factory,
    dispose_engine,
    init_db,
)

__all__ = [
    # Base classes
    "Base",
    "BaseModel",
    # String types
    "String50",
    "String100",
    "String255",
    "String1000",
    # Engine / session management
    "create_engine",
    "create_session_factory",
    "init_db",
    "dispose_engine",
    "check_db_health",
]
