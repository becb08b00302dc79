from .base import AlertRepository
from .factory import get_repository
from .postgres_adapter import PostgresRepository
from .sqlite_adapter import SQLiteRepository

__all__ = [
    "AlertRepository",
    "SQLiteRepository",
    "PostgresRepository",
    "get_repository",
]
