from __future__ import annotations

import asyncio
import dataclasses
from collections import deque
from datetime import date, datetime
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from .capture_loop import CaptureLoop, SleepFn
from .config import CAMERA_INDEX, DISCARD_EMPTY_SESSIONS, DUPLICATE_FACE_DISTANCE
from .enrollment import EnrollmentWorkflow
from .exceptions import InvalidStateError, ValidationError
from .interfaces import EmbeddingExtractor, QualityAdvisor, VideoSource
from .logger import setup_logger
from .matcher import FaceMatcher
from .models import AppSettings, AppState, Identity, Match, RecordOutcome, Session, session_to_dict
from .quality import build_advisor
from .session import SessionManager
from .storage import AttendanceRepository

MAX_NOTIFICATIONS = 50


class AttendanceApp:
    """Single owner of the application state.

    Every component receives the same ``AppState`` (identities, history,
    settings) instead of reading module globals; the controller wires the
    matcher, capture loop, session manager and enrollment workflow together.
    """

    def __init__(
        self,
        repository: AttendanceRepository,
        extractor: EmbeddingExtractor,
        camera: VideoSource,
        advisor: Optional[QualityAdvisor] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: SleepFn = asyncio.sleep,
        discard_empty: bool = DISCARD_EMPTY_SESSIONS,
        duplicate_distance: float = DUPLICATE_FACE_DISTANCE,
    ):
        self.repository = repository
        self.extractor = extractor
        self.camera = camera
        self.logger = setup_logger(self.__class__.__name__)

        self.state = AppState()
        self.matcher = FaceMatcher()
        self.sessions = SessionManager(
            history_sink=self._store_session,
            clock=clock,
            discard_empty=discard_empty,
        )
        self.enrollment = EnrollmentWorkflow(
            state=self.state,
            repository=repository,
            matcher=self.matcher,
            extractor=extractor,
            camera=camera,
            advisor=advisor,
            duplicate_distance=duplicate_distance,
        )
        self.capture_loop = CaptureLoop(
            matcher=self.matcher,
            extractor=extractor,
            on_match=self._handle_match,
            interval=self.state.settings.poll_interval,
            sleep=sleep,
            on_status=self._on_status,
        )
        self.notifications: Deque[str] = deque(maxlen=MAX_NOTIFICATIONS)
        self._fixed_advisor = advisor is not None
        self._clock = clock

    @property
    def status(self) -> str:
        return self.capture_loop.status

    async def load(self, load_models: bool = True) -> None:
        loaded = await asyncio.to_thread(self.repository.load_all)
        self.state.identities[:] = loaded.identities
        self.state.history[:] = loaded.history
        self.state.settings = loaded.settings
        self.capture_loop.interval = loaded.settings.poll_interval
        self._refresh_advisor()
        self.matcher.rebuild(self.state.identities, self.state.settings.threshold)
        self.logger.info(
            "Loaded %d identities and %d sessions from %s storage",
            len(self.state.identities),
            len(self.state.history),
            self.repository.backend_name,
        )

        if load_models and not self.extractor.ready:
            await asyncio.to_thread(self.extractor.load)

    async def shutdown(self) -> None:
        if self.capture_loop.running:
            await self.capture_loop.stop()

    # Sessions

    def start_session(self, label: str) -> Session:
        session = self.sessions.start(label)
        self._notify(f"Session started: {session.label}")
        return session

    async def end_session(self) -> Optional[Session]:
        session = await self.sessions.close(self.capture_loop)
        self._notify("Session ended.")
        return session

    async def start_attendance(self, target: int = CAMERA_INDEX) -> bool:
        if not self.sessions.is_active:
            raise InvalidStateError("You must start a session first.")
        self.capture_loop.interval = self.state.settings.poll_interval
        return await self.capture_loop.start(self.camera, target)

    async def stop_attendance(self) -> None:
        await self.capture_loop.stop()

    # Enrollment

    async def capture_photo(self, target: int = CAMERA_INDEX) -> np.ndarray:
        if self.capture_loop.running:
            raise InvalidStateError("Stop recognition before capturing an enrollment photo.")
        await self.enrollment.open_camera(target)
        try:
            return await self.enrollment.capture()
        finally:
            await self.enrollment.close_camera()

    async def enroll(
        self,
        identity_id: str,
        display_name: str,
        frame: Optional[np.ndarray] = None,
        course: str = "",
        target: int = CAMERA_INDEX,
    ) -> Identity:
        if frame is None:
            frame = await self.capture_photo(target)
        identity = await self.enrollment.enroll(identity_id, display_name, frame, course=course)
        self._notify("Student registered successfully!")
        return identity

    async def remove_identity(self, identity_id: str) -> None:
        await self.enrollment.remove(identity_id)

    # Settings and maintenance

    async def save_settings(
        self,
        threshold: Optional[float] = None,
        poll_interval: Optional[float] = None,
        advisor_api_key: Optional[str] = None,
        quality_gate_fail_open: Optional[bool] = None,
    ) -> AppSettings:
        current = self.state.settings
        changes: Dict[str, Any] = {
            "threshold": threshold,
            "poll_interval": poll_interval,
            "advisor_api_key": advisor_api_key,
            "quality_gate_fail_open": quality_gate_fail_open,
        }
        updated = dataclasses.replace(current, **{k: v for k, v in changes.items() if v is not None})
        if updated.threshold < 0:
            raise ValidationError("Recognition threshold cannot be negative.")
        if updated.poll_interval <= 0:
            raise ValidationError("Polling interval must be positive.")

        await asyncio.to_thread(self.repository.save_settings, updated)
        self.state.settings = updated
        self.capture_loop.interval = updated.poll_interval
        if updated.advisor_api_key != current.advisor_api_key:
            self._refresh_advisor()
        if updated.threshold != current.threshold:
            self.matcher.rebuild(self.state.identities, updated.threshold)
        self.logger.info("Settings saved (threshold=%.3f, interval=%.2fs)", updated.threshold, updated.poll_interval)
        return updated

    async def clear_all_data(self) -> None:
        if self.sessions.current is not None:
            raise InvalidStateError("End the current session before clearing data.")
        await asyncio.to_thread(self.repository.clear)
        self.state.identities.clear()
        self.state.history.clear()
        self.matcher.rebuild(self.state.identities, self.state.settings.threshold)
        self.logger.warning("All student and attendance data cleared")

    # Reporting

    def dashboard_stats(self, today: Optional[date] = None) -> Dict[str, int]:
        today_iso = (today or self._clock().date()).isoformat()
        identities = len(self.state.identities)
        sessions = len(self.state.history)
        present = sum(len(session.marks) for session in self.state.history)
        present_today = sum(len(session.marks) for session in self.state.history if session.date == today_iso)

        possible = identities * sessions
        average = round(present / possible * 100) if possible > 0 else 0
        return {
            "total_identities": identities,
            "total_sessions": sessions,
            "attendance_today": present_today,
            "average_attendance_percent": int(average),
        }

    def attendance_report(self, date_from: str = "", date_to: str = "", label: str = "") -> List[Dict[str, str]]:
        date_from = date_from.strip()
        date_to = date_to.strip()
        label = label.strip()

        rows: List[Dict[str, str]] = []
        for session in self.state.history:
            if date_from and session.date < date_from:
                continue
            if date_to and session.date > date_to:
                continue
            if label and session.label != label:
                continue
            for mark in session.marks:
                rows.append(
                    {
                        "date": session.date,
                        "label": session.label,
                        "identity_id": mark.identity_id,
                        "display_name": mark.display_name,
                        "timestamp": mark.timestamp.isoformat(),
                    }
                )
        rows.sort(key=lambda row: row["timestamp"])
        return rows

    def snapshot(self) -> Dict[str, Any]:
        current = self.sessions.current
        settings = self.state.settings
        return {
            "settings": {
                "threshold": settings.threshold,
                "poll_interval": settings.poll_interval,
                "quality_gate_fail_open": settings.quality_gate_fail_open,
                "advisor_configured": bool(settings.advisor_api_key),
            },
            "identities": [
                {"id": rec.identity_id, "name": rec.display_name, "course": rec.course}
                for rec in self.state.identities
            ],
            "session": session_to_dict(current) if current is not None else None,
            "recognition": {
                "running": self.capture_loop.running,
                "status": self.capture_loop.status,
                "failure_streak": self.capture_loop.failure_streak,
            },
            "models_ready": self.extractor.ready,
            "notifications": list(self.notifications),
            "stats": self.dashboard_stats(),
        }

    # Internals

    async def _store_session(self, session: Session) -> None:
        await asyncio.to_thread(self.repository.append_historical_record, session)
        self.state.history.append(session)

    async def _handle_match(self, match: Match) -> str:
        identity = next((rec for rec in self.state.identities if rec.identity_id == match.identity_id), None)
        name = identity.display_name if identity is not None else self.matcher.display_name(match.identity_id)

        outcome = await self.sessions.record_attendance(match.identity_id, name)
        if outcome is RecordOutcome.MARKED:
            message = f"{name} marked present!"
            self._notify(message)
            return message
        return f"Match: {name} ({match.distance:.2f}), already marked"

    def _refresh_advisor(self) -> None:
        if self._fixed_advisor:
            return
        self.enrollment.advisor = build_advisor(self.state.settings.advisor_api_key)

    def _on_status(self, message: str) -> None:
        self.logger.debug("Recognition status: %s", message)

    def _notify(self, message: str) -> None:
        self.notifications.append(message)


def build_default_app() -> AttendanceApp:
    from .camera import OpenCVVideoSource
    from .face_engine import FaceEngine
    from .storage import create_repository

    return AttendanceApp(
        repository=create_repository(),
        extractor=FaceEngine(),
        camera=OpenCVVideoSource(),
    )
