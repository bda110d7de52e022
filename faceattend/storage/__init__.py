from pathlib import Path
from typing import Optional

from ..config import CRUD_BASE_URL, DB_PATH, HTTP_TIMEOUT_SECONDS, JSON_PATH, STORAGE_BACKEND
from ..exceptions import PersistenceError
from .base import AttendanceRepository
from .http_store import HttpRepository
from .json_store import JsonFileRepository
from .sqlite_store import SQLiteRepository

__all__ = [
    "AttendanceRepository",
    "HttpRepository",
    "JsonFileRepository",
    "SQLiteRepository",
    "create_repository",
]


def create_repository(
    backend: str = STORAGE_BACKEND,
    db_path: Optional[Path] = None,
    json_path: Optional[Path] = None,
    base_url: Optional[str] = None,
) -> AttendanceRepository:
    name = backend.strip().lower()
    if name == "sqlite":
        return SQLiteRepository(db_path or DB_PATH)
    if name == "json":
        return JsonFileRepository(json_path or JSON_PATH)
    if name == "http":
        return HttpRepository(base_url or CRUD_BASE_URL, timeout=HTTP_TIMEOUT_SECONDS)
    raise PersistenceError(f"Unknown storage backend '{backend}'. Use sqlite, json or http.")
