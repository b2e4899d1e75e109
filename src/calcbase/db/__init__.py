"""Database layer for CalcBase."""

from calcbase.db.base import Base
from calcbase.db.session import (
    AsyncSessionLocal,
    create_session_factory,
    engine,
    get_db_context,
    init_db,
)

__all__ = [
    "Base",
    "AsyncSessionLocal",
    "create_session_factory",
    "engine",
    "get_db_context",
    "init_db",
]
