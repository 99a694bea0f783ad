"""Database layer for InfraLens with async SQLAlchemy."""

from infralens.db.connection import close_db, get_session, init_db
from infralens.db.models import (
    Base,
    InfraObjectModel,
    MaintenanceRunModel,
    ObjectHistoryModel,
)

__all__ = [
    "Base",
    "InfraObjectModel",
    "ObjectHistoryModel",
    "MaintenanceRunModel",
    "get_session",
    "init_db",
    "close_db",
]
