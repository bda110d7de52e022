from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Union

import numpy as np

from .config import (
    ADVISOR_API_KEY,
    POLL_INTERVAL_SECONDS,
    QUALITY_GATE_FAIL_OPEN,
    RECOGNITION_THRESHOLD,
)


@dataclass(frozen=True, eq=False)
class Identity:
    identity_id: str
    display_name: str
    embedding: np.ndarray
    course: str = ""
    photo: str = ""

    @property
    def dimension(self) -> int:
        return int(self.embedding.shape[0])


@dataclass(frozen=True)
class AttendanceMark:
    identity_id: str
    display_name: str
    timestamp: datetime


class SessionState(str, Enum):
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class RecordOutcome(str, Enum):
    MARKED = "attendance_marked"
    ALREADY_MARKED = "already_marked"


@dataclass
class Session:
    session_id: str
    label: str
    date: str
    state: SessionState = SessionState.ACTIVE
    marks: list[AttendanceMark] = field(default_factory=list)
    closed_at: datetime | None = None

    @property
    def roster(self) -> tuple[AttendanceMark, ...]:
        return tuple(self.marks)

    def has_mark(self, identity_id: str) -> bool:
        return any(mark.identity_id == identity_id for mark in self.marks)


@dataclass(frozen=True)
class Match:
    identity_id: str
    distance: float


@dataclass(frozen=True)
class NoMatch:
    # None when there is no gallery to compare against.
    best_distance: float | None = None


MatchResult = Union[Match, NoMatch]


@dataclass(frozen=True)
class QualityVerdict:
    accepted: bool
    reason: str = ""


@dataclass
class AppSettings:
    threshold: float = RECOGNITION_THRESHOLD
    poll_interval: float = POLL_INTERVAL_SECONDS
    advisor_api_key: str = ADVISOR_API_KEY
    quality_gate_fail_open: bool = QUALITY_GATE_FAIL_OPEN


@dataclass
class AppState:
    identities: list[Identity] = field(default_factory=list)
    history: list[Session] = field(default_factory=list)
    settings: AppSettings = field(default_factory=AppSettings)


def new_session_id(now: datetime) -> str:
    return f"session_{int(now.timestamp() * 1000)}"


def identity_to_dict(identity: Identity) -> dict[str, Any]:
    return {
        "id": identity.identity_id,
        "name": identity.display_name,
        "course": identity.course,
        "photo": identity.photo,
        "faceDescriptor": [float(v) for v in identity.embedding.tolist()],
    }


def identity_from_dict(data: dict[str, Any]) -> Identity:
    descriptor = data.get("faceDescriptor") or []
    # Older documents stored descriptors as {"0": v0, "1": v1, ...}.
    if isinstance(descriptor, dict):
        descriptor = [descriptor[key] for key in sorted(descriptor, key=int)]
    return Identity(
        identity_id=str(data["id"]),
        display_name=str(data.get("name", "")),
        embedding=np.asarray(descriptor, dtype=np.float32),
        course=str(data.get("course") or ""),
        photo=str(data.get("photo") or ""),
    )


def mark_to_dict(mark: AttendanceMark) -> dict[str, Any]:
    return {
        "studentId": mark.identity_id,
        "studentName": mark.display_name,
        "timestamp": mark.timestamp.isoformat(),
    }


def mark_from_dict(data: dict[str, Any]) -> AttendanceMark:
    return AttendanceMark(
        identity_id=str(data["studentId"]),
        display_name=str(data.get("studentName", "")),
        timestamp=datetime.fromisoformat(str(data["timestamp"])),
    )


def session_to_dict(session: Session) -> dict[str, Any]:
    return {
        "id": session.session_id,
        "course": session.label,
        "date": session.date,
        "state": session.state.value,
        "closedAt": session.closed_at.isoformat() if session.closed_at else None,
        "attendanceRecords": [mark_to_dict(mark) for mark in session.marks],
    }


def session_from_dict(data: dict[str, Any]) -> Session:
    raw_state = data.get("state") or SessionState.CLOSED.value
    raw_closed = data.get("closedAt")
    return Session(
        session_id=str(data["id"]),
        label=str(data.get("course", "")),
        date=str(data.get("date") or date.today().isoformat()),
        state=SessionState(raw_state),
        marks=[mark_from_dict(item) for item in data.get("attendanceRecords") or []],
        closed_at=datetime.fromisoformat(str(raw_closed)) if raw_closed else None,
    )


def settings_to_dict(settings: AppSettings) -> dict[str, Any]:
    return {
        "threshold": settings.threshold,
        "pollInterval": settings.poll_interval,
        "advisorApiKey": settings.advisor_api_key,
        "qualityGateFailOpen": settings.quality_gate_fail_open,
    }


def settings_from_dict(data: dict[str, Any] | None) -> AppSettings:
    defaults = AppSettings()
    if not data:
        return defaults
    return AppSettings(
        threshold=float(data.get("threshold", defaults.threshold)),
        poll_interval=float(data.get("pollInterval", defaults.poll_interval)),
        advisor_api_key=str(data.get("advisorApiKey", defaults.advisor_api_key) or ""),
        quality_gate_fail_open=bool(data.get("qualityGateFailOpen", defaults.quality_gate_fail_open)),
    )
