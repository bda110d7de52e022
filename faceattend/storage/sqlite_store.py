import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, List

import numpy as np

from ..exceptions import PersistenceError
from ..models import (
    AppSettings,
    AppState,
    AttendanceMark,
    Identity,
    Session,
    SessionState,
    settings_from_dict,
    settings_to_dict,
)
from .base import AttendanceRepository


class SQLiteRepository(AttendanceRepository):
    backend_name = "sqlite"

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot create data directory {self.db_path.parent}: {exc}") from exc
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS identities (
                        identity_id TEXT PRIMARY KEY,
                        display_name TEXT NOT NULL,
                        course TEXT NOT NULL DEFAULT '',
                        photo TEXT NOT NULL DEFAULT '',
                        embedding BLOB NOT NULL,
                        embedding_dim INTEGER NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS sessions (
                        session_id TEXT PRIMARY KEY,
                        label TEXT NOT NULL,
                        session_date TEXT NOT NULL,
                        closed_at TEXT
                    );

                    -- Marks outlive identity removal; history is the system of record.
                    CREATE TABLE IF NOT EXISTS attendance_marks (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id TEXT NOT NULL,
                        identity_id TEXT NOT NULL,
                        display_name TEXT NOT NULL,
                        marked_at TEXT NOT NULL,
                        FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE,
                        UNIQUE(session_id, identity_id)
                    );

                    CREATE TABLE IF NOT EXISTS settings (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    );
                    """
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to initialize database: {exc}") from exc

    def load_all(self) -> AppState:
        try:
            with self._connect() as conn:
                identity_rows = conn.execute(
                    """
                    SELECT identity_id, display_name, course, photo, embedding, embedding_dim
                    FROM identities
                    ORDER BY rowid ASC
                    """
                ).fetchall()
                session_rows = conn.execute(
                    "SELECT session_id, label, session_date, closed_at FROM sessions ORDER BY rowid ASC"
                ).fetchall()
                mark_rows = conn.execute(
                    """
                    SELECT session_id, identity_id, display_name, marked_at
                    FROM attendance_marks
                    ORDER BY id ASC
                    """
                ).fetchall()
                setting_rows = conn.execute("SELECT key, value FROM settings").fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to load attendance data: {exc}") from exc

        identities = [
            Identity(
                identity_id=row["identity_id"],
                display_name=row["display_name"],
                embedding=np.frombuffer(row["embedding"], dtype=np.float32, count=row["embedding_dim"]).copy(),
                course=row["course"],
                photo=row["photo"],
            )
            for row in identity_rows
        ]

        marks: Dict[str, List[AttendanceMark]] = {}
        for row in mark_rows:
            marks.setdefault(row["session_id"], []).append(
                AttendanceMark(
                    identity_id=row["identity_id"],
                    display_name=row["display_name"],
                    timestamp=datetime.fromisoformat(row["marked_at"]),
                )
            )
        history = [
            Session(
                session_id=row["session_id"],
                label=row["label"],
                date=row["session_date"],
                state=SessionState.CLOSED,
                marks=marks.get(row["session_id"], []),
                closed_at=datetime.fromisoformat(row["closed_at"]) if row["closed_at"] else None,
            )
            for row in session_rows
        ]

        try:
            raw_settings = {row["key"]: json.loads(row["value"]) for row in setting_rows}
        except ValueError as exc:
            raise PersistenceError(f"Stored settings are corrupt: {exc}") from exc

        return AppState(identities=identities, history=history, settings=settings_from_dict(raw_settings))

    def save_identity(self, identity: Identity) -> None:
        if identity.embedding.ndim != 1:
            raise PersistenceError("Embedding must be a 1D vector.")

        now = datetime.now().isoformat(timespec="seconds")
        vector = np.asarray(identity.embedding, dtype=np.float32)

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identities (
                        identity_id, display_name, course, photo, embedding, embedding_dim, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(identity_id) DO UPDATE SET
                        display_name = excluded.display_name,
                        course = excluded.course,
                        photo = excluded.photo,
                        embedding = excluded.embedding,
                        embedding_dim = excluded.embedding_dim,
                        updated_at = excluded.updated_at
                    """,
                    (
                        identity.identity_id,
                        identity.display_name,
                        identity.course,
                        identity.photo,
                        vector.tobytes(),
                        vector.size,
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to save identity {identity.identity_id}: {exc}") from exc

    def delete_identity(self, identity_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM identities WHERE identity_id = ?", (identity_id,))
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to delete identity {identity_id}: {exc}") from exc

    def append_historical_record(self, session: Session) -> None:
        closed_at = session.closed_at.isoformat(timespec="seconds") if session.closed_at else None
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO sessions (session_id, label, session_date, closed_at) VALUES (?, ?, ?, ?)",
                    (session.session_id, session.label, session.date, closed_at),
                )
                conn.executemany(
                    """
                    INSERT INTO attendance_marks (session_id, identity_id, display_name, marked_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (session.session_id, mark.identity_id, mark.display_name, mark.timestamp.isoformat())
                        for mark in session.marks
                    ],
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to store session {session.session_id}: {exc}") from exc

    def save_settings(self, settings: AppSettings) -> None:
        try:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO settings (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    [(key, json.dumps(value)) for key, value in settings_to_dict(settings).items()],
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to save settings: {exc}") from exc

    def clear(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM attendance_marks")
                conn.execute("DELETE FROM sessions")
                conn.execute("DELETE FROM identities")
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to clear attendance data: {exc}") from exc
