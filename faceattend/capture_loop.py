from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from .config import POLL_INTERVAL_SECONDS
from .exceptions import AttendanceError, InvalidStateError
from .interfaces import EmbeddingExtractor, VideoSource
from .logger import setup_logger
from .matcher import FaceMatcher
from .models import Match, NoMatch

MatchHandler = Callable[[Match], Awaitable[str]]
StatusObserver = Callable[[str], None]
SleepFn = Callable[[float], Awaitable[None]]

STATUS_INACTIVE = "Camera inactive"
STATUS_SCANNING = "Scanning..."


class CaptureLoop:
    """Periodically samples the live camera and forwards confident matches.

    Errors raised inside a tick never leave the loop; they only show up in
    ``status``. Stopping is cooperative: the stop flag is checked before each
    tick and again before a match is handed to ``on_match``.
    """

    def __init__(
        self,
        matcher: FaceMatcher,
        extractor: EmbeddingExtractor,
        on_match: MatchHandler,
        interval: float = POLL_INTERVAL_SECONDS,
        sleep: SleepFn = asyncio.sleep,
        on_status: Optional[StatusObserver] = None,
    ):
        self.matcher = matcher
        self.extractor = extractor
        self.interval = interval
        self.logger = setup_logger(self.__class__.__name__)

        self._on_match = on_match
        self._on_status = on_status
        self._sleep = sleep
        self._source: Optional[VideoSource] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._starting = False

        self.status = STATUS_INACTIVE
        self.ticks = 0
        self.failure_streak = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def start(self, source: VideoSource, target: int = 0) -> bool:
        if self.running or self._starting:
            raise InvalidStateError("Recognition is already running.")

        if not self.matcher.has_gallery:
            self.logger.warning("Capture loop not started: gallery is empty")
            self._set_status("No students registered to match against.")
            return False
        if not self.extractor.ready:
            self.logger.warning("Capture loop not started: face models are not loaded")
            self._set_status("Face models are not loaded yet.")
            return False

        # Claimed before the first await so a second start is refused.
        self._starting = True
        try:
            started = await asyncio.to_thread(source.start, target)
        finally:
            self._starting = False
        if not started:
            self.logger.warning("Capture loop not started: camera %s unavailable", target)
            self._set_status("Could not access camera. Please check permissions.")
            return False

        self._source = source
        self._stop_event = asyncio.Event()
        self.ticks = 0
        self.failure_streak = 0
        self._task = asyncio.create_task(self._run(), name="faceattend-capture-loop")
        self._set_status(STATUS_SCANNING)
        self.logger.info("Capture loop started on camera %s every %.2fs", target, self.interval)
        return True

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def stop(self) -> None:
        self.request_stop()
        task, self._task = self._task, None
        if task is not None:
            if not task.done():
                task.cancel()
            await asyncio.wait([task])
            if not task.cancelled() and task.exception() is not None:
                self.logger.error("Capture loop ended with error: %s", task.exception())
        self._release_source()
        self._set_status(STATUS_INACTIVE)

    async def _run(self) -> None:
        assert self._stop_event is not None
        try:
            while not self._stop_event.is_set():
                await self._sleep(self.interval)
                if self._stop_event.is_set():
                    break
                await self._tick()
        finally:
            self._release_source()
            self.logger.info("Capture loop finished after %d ticks", self.ticks)

    async def _tick(self) -> None:
        self.ticks += 1
        source = self._source
        if source is None or not source.is_live:
            self.logger.warning("Video source is no longer live; stopping capture loop")
            self._set_status("Camera stopped")
            self.request_stop()
            return

        try:
            frame = await asyncio.to_thread(source.grab_frame)
            if frame is None:
                self._set_status(STATUS_SCANNING)
                return
            embedding = await asyncio.to_thread(self.extractor.extract, frame)
            if embedding is None:
                self.failure_streak = 0
                self._set_status(STATUS_SCANNING)
                return
            result = self.matcher.find_best_match(embedding)
        except Exception as exc:
            self.failure_streak += 1
            self.logger.warning(
                "Recognition tick failed (%d in a row): %s",
                self.failure_streak,
                exc,
            )
            self._set_status(f"Recognition error ({self.failure_streak} in a row): {exc}")
            return

        self.failure_streak = 0
        if isinstance(result, NoMatch):
            if result.best_distance is None:
                self._set_status("No students registered to match against.")
            else:
                self._set_status(f"Match: unknown ({result.best_distance:.2f})")
            return

        if self.stop_requested:
            self.logger.info("Discarding match for %s; stop requested", result.identity_id)
            return

        try:
            message = await self._on_match(result)
        except AttendanceError as exc:
            self.logger.info("Match for %s not recorded: %s", result.identity_id, exc)
            self._set_status(str(exc))
            return
        self._set_status(message)

    def _release_source(self) -> None:
        source, self._source = self._source, None
        if source is None:
            return
        try:
            source.stop()
        except Exception:
            self.logger.exception("Failed to release video source")

    def _set_status(self, message: str) -> None:
        self.status = message
        if self._on_status is not None:
            self._on_status(message)
