import json
from datetime import datetime

import numpy as np
import pytest
import requests

from faceattend.exceptions import PersistenceError
from faceattend.models import AppSettings, AttendanceMark, Identity, Session, SessionState
from faceattend.storage import HttpRepository, JsonFileRepository, SQLiteRepository, create_repository


def _identity(identity_id, *values, name="Alice"):
    return Identity(
        identity_id=identity_id,
        display_name=name,
        embedding=np.asarray(values, dtype=np.float32),
        course="Math101",
        photo="data:image/jpeg;base64,AAAA",
    )


def _closed_session():
    return Session(
        session_id="session_1709542800000",
        label="Math101",
        date="2024-03-04",
        state=SessionState.CLOSED,
        marks=[
            AttendanceMark("S1", "Alice", datetime(2024, 3, 4, 9, 0, 5)),
            AttendanceMark("S2", "Bob", datetime(2024, 3, 4, 9, 0, 9)),
        ],
        closed_at=datetime(2024, 3, 4, 10, 0, 0),
    )


@pytest.fixture(params=["sqlite", "json"])
def repository(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteRepository(tmp_path / "data" / "attendance.db")
    return JsonFileRepository(tmp_path / "data" / "attendance.json")


def test_fresh_store_is_empty(repository):
    state = repository.load_all()
    assert state.identities == []
    assert state.history == []
    assert state.settings == AppSettings()


def test_identities_keep_order_and_embeddings(repository):
    repository.save_identity(_identity("S2", 0.5, 0.25, name="Bob"))
    repository.save_identity(_identity("S1", 1.0, 2.0))

    state = repository.load_all()
    assert [rec.identity_id for rec in state.identities] == ["S2", "S1"]
    np.testing.assert_allclose(state.identities[1].embedding, [1.0, 2.0])
    assert state.identities[1].embedding.dtype == np.float32
    assert state.identities[0].course == "Math101"

    repository.delete_identity("S2")
    repository.delete_identity("missing")
    assert [rec.identity_id for rec in repository.load_all().identities] == ["S1"]


def test_history_survives_identity_removal(repository):
    repository.save_identity(_identity("S1", 1.0, 2.0))
    repository.append_historical_record(_closed_session())
    repository.delete_identity("S1")

    history = repository.load_all().history
    assert len(history) == 1
    session = history[0]
    assert session.session_id == "session_1709542800000"
    assert session.label == "Math101"
    assert session.state is SessionState.CLOSED
    assert session.closed_at == datetime(2024, 3, 4, 10, 0, 0)
    assert [(m.identity_id, m.timestamp) for m in session.marks] == [
        ("S1", datetime(2024, 3, 4, 9, 0, 5)),
        ("S2", datetime(2024, 3, 4, 9, 0, 9)),
    ]


def test_settings_and_clear(repository):
    settings = AppSettings(threshold=0.45, poll_interval=1.5, advisor_api_key="k", quality_gate_fail_open=False)
    repository.save_settings(settings)
    repository.save_identity(_identity("S1", 1.0))
    repository.append_historical_record(_closed_session())

    repository.clear()
    state = repository.load_all()
    assert state.identities == []
    assert state.history == []
    assert state.settings == settings


def test_json_store_reads_browser_backup_document(tmp_path):
    path = tmp_path / "backup.json"
    path.write_text(
        json.dumps(
            {
                "settings": {"threshold": 0.55},
                "students": [
                    {"id": "S1", "name": "Alice", "course": "Math101", "faceDescriptor": {"1": 0.2, "0": 0.1}},
                ],
                "attendanceRecords": [
                    {
                        "id": "session_1",
                        "course": "Math101",
                        "date": "2024-03-04",
                        "attendanceRecords": [
                            {"studentId": "S1", "studentName": "Alice", "timestamp": "2024-03-04T09:00:05"}
                        ],
                    }
                ],
            }
        ),
        encoding="utf-8",
    )

    state = JsonFileRepository(path).load_all()
    np.testing.assert_allclose(state.identities[0].embedding, [0.1, 0.2])
    assert state.settings.threshold == 0.55
    assert state.history[0].state is SessionState.CLOSED
    assert state.history[0].marks[0].display_name == "Alice"


def test_json_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / "attendance.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(PersistenceError):
        JsonFileRepository(path).load_all()


def _response(status, body=None):
    resp = requests.Response()
    resp.status_code = status
    resp.reason = "Error" if status >= 400 else "OK"
    resp.url = "http://crud.local"
    resp.encoding = "utf-8"
    resp._content = json.dumps(body).encode("utf-8") if body is not None else b""
    return resp


class StubHttpSession:
    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.requests = []

    def request(self, method, url, json=None, timeout=None):
        self.requests.append((method, url, json, timeout))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else _response(204)


def test_http_repository_round_trips_documents():
    state_body = {
        "settings": {"threshold": 0.4, "pollInterval": 3},
        "students": [{"id": "S1", "name": "Alice", "faceDescriptor": [0.1, 0.2]}],
        "attendanceRecords": [],
    }
    stub = StubHttpSession(responses=[_response(200, state_body)])
    repo = HttpRepository("http://crud.local/", timeout=2.0, session=stub)

    state = repo.load_all()
    assert state.settings.threshold == 0.4
    assert state.settings.poll_interval == 3.0
    assert state.identities[0].identity_id == "S1"

    repo.save_identity(_identity("S 2", 1.0))
    repo.append_historical_record(_closed_session())

    method, url, payload, timeout = stub.requests[1]
    assert (method, url, timeout) == ("PUT", "http://crud.local/api/identities/S%202", 2.0)
    assert payload["faceDescriptor"] == [1.0]
    method, url, payload, _ = stub.requests[2]
    assert (method, url) == ("POST", "http://crud.local/api/records")
    assert payload["attendanceRecords"][0]["studentId"] == "S1"


def test_http_repository_ignores_missing_identity_on_delete():
    repo = HttpRepository("http://crud.local", session=StubHttpSession(responses=[_response(404, {"error": "nope"})]))
    repo.delete_identity("S1")


def test_http_repository_wraps_transport_errors():
    stub = StubHttpSession(error=requests.ConnectionError("refused"))
    repo = HttpRepository("http://crud.local", session=stub)
    with pytest.raises(PersistenceError):
        repo.save_settings(AppSettings())

    failing = HttpRepository("http://crud.local", session=StubHttpSession(responses=[_response(500, {})]))
    with pytest.raises(PersistenceError):
        failing.append_historical_record(_closed_session())


def test_create_repository_selects_backend(tmp_path):
    assert isinstance(create_repository("sqlite", db_path=tmp_path / "a.db"), SQLiteRepository)
    assert isinstance(create_repository("JSON", json_path=tmp_path / "a.json"), JsonFileRepository)
    assert isinstance(create_repository("http", base_url="http://crud.local"), HttpRepository)
    with pytest.raises(PersistenceError):
        create_repository("mongodb")
