from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Tuple

from .config import DISCARD_EMPTY_SESSIONS
from .exceptions import InvalidStateError, PersistenceError, ValidationError
from .logger import setup_logger
from .models import AttendanceMark, RecordOutcome, Session, SessionState, new_session_id

if TYPE_CHECKING:
    from .capture_loop import CaptureLoop

HistorySink = Callable[[Session], Awaitable[None]]
RosterObserver = Callable[[Session, AttendanceMark], None]


class SessionManager:
    """Owns the lifecycle of the current attendance session.

    A session goes ACTIVE -> CLOSING -> CLOSED. Marks are only accepted while
    ACTIVE, and roster mutation and the switch to CLOSING share one lock, so a
    mark racing ``close()`` either lands before finalization or is rejected.
    """

    def __init__(
        self,
        history_sink: HistorySink,
        clock: Callable[[], datetime] = datetime.now,
        discard_empty: bool = DISCARD_EMPTY_SESSIONS,
    ):
        self.discard_empty = discard_empty
        self.logger = setup_logger(self.__class__.__name__)

        self._history_sink = history_sink
        self._clock = clock
        self._roster_lock = asyncio.Lock()
        self._close_lock = asyncio.Lock()
        self._current: Optional[Session] = None
        self._observers: List[RosterObserver] = []

    @property
    def current(self) -> Optional[Session]:
        return self._current

    @property
    def is_active(self) -> bool:
        return self._current is not None and self._current.state == SessionState.ACTIVE

    @property
    def roster(self) -> Tuple[AttendanceMark, ...]:
        return self._current.roster if self._current is not None else ()

    def add_observer(self, observer: RosterObserver) -> None:
        self._observers.append(observer)

    def start(self, label: str) -> Session:
        label = (label or "").strip()
        if not label:
            raise ValidationError("Please select a course for the session.")
        if self._current is not None:
            raise InvalidStateError(
                f"Session {self._current.session_id} is still {self._current.state.value}."
            )

        now = self._clock()
        session = Session(
            session_id=new_session_id(now),
            label=label,
            date=now.date().isoformat(),
        )
        self._current = session
        self.logger.info("Session %s started for %s", session.session_id, label)
        return session

    async def record_attendance(self, identity_id: str, display_name: str) -> RecordOutcome:
        async with self._roster_lock:
            session = self._current
            if session is None or session.state != SessionState.ACTIVE:
                raise InvalidStateError("No active session.")
            if session.has_mark(identity_id):
                return RecordOutcome.ALREADY_MARKED
            mark = AttendanceMark(
                identity_id=identity_id,
                display_name=display_name,
                timestamp=self._clock(),
            )
            session.marks.append(mark)

        self.logger.info("Attendance marked for %s (%s) in %s", display_name, identity_id, session.session_id)
        for observer in self._observers:
            try:
                observer(session, mark)
            except Exception:
                self.logger.exception("Roster observer failed")
        return RecordOutcome.MARKED

    async def close(self, capture_loop: Optional["CaptureLoop"] = None) -> Optional[Session]:
        async with self._close_lock:
            session = self._current
            if session is None or session.state == SessionState.CLOSED:
                raise InvalidStateError("No active session to close.")

            if capture_loop is not None:
                capture_loop.request_stop()
            async with self._roster_lock:
                session.state = SessionState.CLOSING
            if capture_loop is not None:
                await capture_loop.stop()

            if not session.marks and self.discard_empty:
                session.state = SessionState.CLOSED
                session.closed_at = self._clock()
                self._current = None
                self.logger.info("Session %s closed with no marks; discarded", session.session_id)
                return None

            if session.closed_at is None:
                session.closed_at = self._clock()
            try:
                await self._history_sink(session)
            except PersistenceError:
                # Kept CLOSING and current so the operator can retry close().
                self.logger.error("Failed to store session %s; close can be retried", session.session_id)
                raise

            session.state = SessionState.CLOSED
            self._current = None
            self.logger.info(
                "Session %s closed with %d marks",
                session.session_id,
                len(session.marks),
            )
            return session
