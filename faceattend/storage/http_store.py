from typing import Any, Optional
from urllib.parse import quote

import requests

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


class HttpRepository(AttendanceRepository):
    """Client for the companion CRUD server."""

    backend_name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = 8.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, payload: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise PersistenceError(f"{method} {url} failed: {exc}") from exc

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise PersistenceError(f"{method} {url} returned invalid JSON: {exc}") from exc

    def load_all(self) -> AppState:
        body = self._request("GET", "/api/state") or {}
        if not isinstance(body, dict):
            raise PersistenceError("CRUD server returned an unexpected state document.")
        try:
            return AppState(
                identities=[identity_from_dict(item) for item in body.get("students") or []],
                history=[session_from_dict(item) for item in body.get("attendanceRecords") or []],
                settings=settings_from_dict(body.get("settings")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"CRUD server returned malformed records: {exc}") from exc

    def save_identity(self, identity: Identity) -> None:
        self._request("PUT", f"/api/identities/{quote(identity.identity_id, safe='')}", identity_to_dict(identity))

    def delete_identity(self, identity_id: str) -> None:
        try:
            self._request("DELETE", f"/api/identities/{quote(identity_id, safe='')}")
        except PersistenceError as exc:
            # Already gone on the server is fine for an idempotent delete.
            cause = exc.__cause__
            if isinstance(cause, requests.HTTPError) and cause.response is not None and cause.response.status_code == 404:
                return
            raise

    def append_historical_record(self, session: Session) -> None:
        self._request("POST", "/api/records", session_to_dict(session))

    def save_settings(self, settings: AppSettings) -> None:
        self._request("PUT", "/api/settings", settings_to_dict(settings))

    def clear(self) -> None:
        self._request("DELETE", "/api/state")
