"""
Database module.
Contains database connection, models, and repository implementations.
"""

from leasequeue.db.connection import (
    close_db,
    create_session_factory,
    get_engine,
    init_db,
    session_scope,
)
from leasequeue.db.models import Base, Job

__all__ = [
    "session_scope",
    "create_session_factory",
    "get_engine",
    "init_db",
    "close_db",
    "Job",
    "Base",
]
