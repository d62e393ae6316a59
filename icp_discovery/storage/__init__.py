from .connection import (
    create_db_engine,
    get_session_factory,
    init_db,
    make_session_factory,
    session_scope,
)
from .models import Base

__all__ = [
    "Base",
    "create_db_engine",
    "get_session_factory",
    "init_db",
    "make_session_factory",
    "session_scope",
]
