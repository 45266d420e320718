"""
Database module for the Enrollment Platform.

Exports the repository protocol, the in-memory and SQLAlchemy
implementations and connection utilities.
"""

from medenroll.db.connection import (
    check_db_connection,
    close_db_connection,
    create_engine,
    create_session_maker,
    get_engine,
    get_session_maker,
    init_db,
)
from medenroll.db.repository import (
    EnrollmentRepository,
    EnrollmentTransaction,
    InMemoryEnrollmentRepository,
)
from medenroll.db.sql_repository import (
    SqlAlchemyEnrollmentRepository,
    SqlAuditStore,
    SqlDeliveryStore,
)

__all__ = [
    # Connection
    "check_db_connection",
    "close_db_connection",
    "create_engine",
    "create_session_maker",
    "get_engine",
    "get_session_maker",
    "init_db",
    # Repositories
    "EnrollmentRepository",
    "EnrollmentTransaction",
    "InMemoryEnrollmentRepository",
    "SqlAlchemyEnrollmentRepository",
    "SqlAuditStore",
    "SqlDeliveryStore",
]
