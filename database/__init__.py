"""
Database Package Initialization.

Async engine, transaction helper and ORM tables for the trade desk.
"""

from .engine import (
    Base,
    Database,
    DEFAULT_DATABASE_URL,
    get_database_url,
)
from .models import (
    generate_uuid,
    UserModel,
    OperationModel,
    KarmaRecordModel,
    KarmaHistoryModel,
    PendingEvaluationModel,
)


__all__ = [
    "Base",
    "Database",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "generate_uuid",
    "UserModel",
    "OperationModel",
    "KarmaRecordModel",
    "KarmaHistoryModel",
    "PendingEvaluationModel",
]
