from __future__ import annotations

from .base import AlertRepository
from .postgres_adapter import PostgresRepository
from .sqlite_adapter import SQLiteRepository

_POSTGRES_SCHEMES = ("postgres://", "postgresql://")


def get_repository(*, sqlite_path: str, database_url: str | None) -> AlertRepository:
    """Postgres when DATABASE_URL names a Postgres server, otherwise the SQLite file at `sqlite_path`."""

    url = (database_url or "").strip()
    if url.lower().startswith(_POSTGRES_SCHEMES):
        return PostgresRepository(url)
    return SQLiteRepository(sqlite_path)
