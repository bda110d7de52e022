import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict

from ..exceptions import PersistenceError
from ..models import (
    AppSettings,
    AppState,
    Identity,
    Session,
    identity_from_dict,
    identity_to_dict,
    session_from_dict,
    session_to_dict,
    settings_from_dict,
    settings_to_dict,
)
from .base import AttendanceRepository


class JsonFileRepository(AttendanceRepository):
    """Keeps the whole attendance state in one JSON document on disk.

    The document layout (``settings``, ``students``, ``attendanceRecords``) is
    the same one the browser build kept in local storage and wrote out as its
    backup file, so a backup can be loaded directly.
    """

    backend_name = "json"

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"settings": {}, "students": [], "attendanceRecords": []}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                document = json.load(handle)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Failed to read {self.path}: {exc}") from exc
        if not isinstance(document, dict):
            raise PersistenceError(f"{self.path} does not contain an attendance document.")
        document.setdefault("settings", {})
        document.setdefault("students", [])
        document.setdefault("attendanceRecords", [])
        return document

    def _write(self, document: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".attendance-", suffix=".json", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise PersistenceError(f"Failed to write {self.path}: {exc}") from exc

    def load_all(self) -> AppState:
        with self._lock:
            document = self._read()
        try:
            return AppState(
                identities=[identity_from_dict(item) for item in document["students"]],
                history=[session_from_dict(item) for item in document["attendanceRecords"]],
                settings=settings_from_dict(document["settings"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"{self.path} contains malformed records: {exc}") from exc

    def save_identity(self, identity: Identity) -> None:
        with self._lock:
            document = self._read()
            students = [item for item in document["students"] if item.get("id") != identity.identity_id]
            students.append(identity_to_dict(identity))
            document["students"] = students
            self._write(document)

    def delete_identity(self, identity_id: str) -> None:
        with self._lock:
            document = self._read()
            document["students"] = [item for item in document["students"] if item.get("id") != identity_id]
            self._write(document)

    def append_historical_record(self, session: Session) -> None:
        with self._lock:
            document = self._read()
            records = [item for item in document["attendanceRecords"] if item.get("id") != session.session_id]
            records.append(session_to_dict(session))
            document["attendanceRecords"] = records
            self._write(document)

    def save_settings(self, settings: AppSettings) -> None:
        with self._lock:
            document = self._read()
            document["settings"] = settings_to_dict(settings)
            self._write(document)

    def clear(self) -> None:
        with self._lock:
            document = self._read()
            document["students"] = []
            document["attendanceRecords"] = []
            self._write(document)
