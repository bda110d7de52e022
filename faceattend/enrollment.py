from __future__ import annotations

import asyncio
import base64
from typing import Optional

import cv2
import numpy as np

from .config import DUPLICATE_FACE_DISTANCE
from .exceptions import (
    CameraError,
    CameraNotReadyError,
    DimensionMismatchError,
    DuplicateIdentityError,
    NoFaceDetectedError,
    NotReadyError,
    QualityRejectedError,
    ValidationError,
)
from .interfaces import EmbeddingExtractor, QualityAdvisor, VideoSource
from .logger import setup_logger
from .matcher import FaceMatcher, euclidean_distance
from .models import AppState, Identity
from .storage import AttendanceRepository

THUMBNAIL_SIZE = 160


def photo_thumbnail(frame: np.ndarray) -> str:
    """Small base64 JPEG data URL of a frame, or '' if it cannot be encoded."""
    if not isinstance(frame, np.ndarray) or frame.dtype != np.uint8 or frame.ndim not in (2, 3):
        return ""
    h, w = frame.shape[:2]
    scale = THUMBNAIL_SIZE / max(h, w, 1)
    if scale < 1.0:
        frame = cv2.resize(frame, (max(1, int(w * scale)), max(1, int(h * scale))), interpolation=cv2.INTER_AREA)
    ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), 80])
    if not ok:
        return ""
    return "data:image/jpeg;base64," + base64.b64encode(buffer.tobytes()).decode("ascii")


class EnrollmentWorkflow:
    def __init__(
        self,
        state: AppState,
        repository: AttendanceRepository,
        matcher: FaceMatcher,
        extractor: EmbeddingExtractor,
        camera: VideoSource,
        advisor: Optional[QualityAdvisor] = None,
        duplicate_distance: float = DUPLICATE_FACE_DISTANCE,
    ):
        self.state = state
        self.repository = repository
        self.matcher = matcher
        self.extractor = extractor
        self.camera = camera
        self.advisor = advisor
        self.duplicate_distance = duplicate_distance
        self.logger = setup_logger(self.__class__.__name__)
        # Serializes identity-set changes; checks and the append must see one state.
        self._lock = asyncio.Lock()

    async def open_camera(self, target: int = 0) -> None:
        started = await asyncio.to_thread(self.camera.start, target)
        if not started:
            raise CameraError("Could not access camera. Please check permissions.")

    async def close_camera(self) -> None:
        await asyncio.to_thread(self.camera.stop)

    async def capture(self) -> np.ndarray:
        if not self.camera.is_live:
            raise CameraNotReadyError("Camera is not ready yet.")
        frame = await asyncio.to_thread(self.camera.grab_frame)
        if frame is None:
            raise CameraNotReadyError("Camera is not ready yet.")
        return frame

    async def enroll(
        self,
        identity_id: str,
        display_name: str,
        frame: np.ndarray,
        course: str = "",
    ) -> Identity:
        async with self._lock:
            return await self._enroll(identity_id, display_name, frame, course)

    async def _enroll(self, identity_id: str, display_name: str, frame: np.ndarray, course: str) -> Identity:
        identity_id = (identity_id or "").strip()
        display_name = (display_name or "").strip()
        if not identity_id or not display_name:
            raise ValidationError("Student ID and Name are required.")
        if any(rec.identity_id == identity_id for rec in self.state.identities):
            raise DuplicateIdentityError(f"Student with ID {identity_id} already exists.")

        if not self.extractor.ready:
            raise NotReadyError("Face models are not loaded yet.")
        embedding = await asyncio.to_thread(self.extractor.extract, frame)
        if embedding is None:
            raise NoFaceDetectedError("Could not find a face in the photo. Please try again.")
        embedding = np.asarray(embedding, dtype=np.float32).ravel()
        if self.matcher.has_gallery and embedding.shape[0] != self.matcher.dimension:
            raise DimensionMismatchError(expected=self.matcher.dimension, actual=embedding.shape[0])

        await self._check_quality(frame)
        self._check_face_uniqueness(embedding)

        identity = Identity(
            identity_id=identity_id,
            display_name=display_name,
            embedding=embedding,
            course=(course or "").strip(),
            photo=photo_thumbnail(frame),
        )
        # Persist first: a failed save must leave the in-memory set untouched.
        await asyncio.to_thread(self.repository.save_identity, identity)

        self.state.identities.append(identity)
        self.matcher.rebuild(self.state.identities, self.state.settings.threshold)
        self.logger.info("Enrolled %s (%s)", display_name, identity_id)
        return identity

    async def remove(self, identity_id: str) -> None:
        identity_id = (identity_id or "").strip()
        async with self._lock:
            if not any(rec.identity_id == identity_id for rec in self.state.identities):
                return

            await asyncio.to_thread(self.repository.delete_identity, identity_id)
            self.state.identities[:] = [rec for rec in self.state.identities if rec.identity_id != identity_id]
            self.matcher.rebuild(self.state.identities, self.state.settings.threshold)
        self.logger.info("Removed identity %s", identity_id)

    async def _check_quality(self, frame: np.ndarray) -> None:
        advisor = self.advisor
        if advisor is None:
            return
        try:
            verdict = await asyncio.to_thread(advisor.check, frame)
        except Exception as exc:
            if self.state.settings.quality_gate_fail_open:
                self.logger.warning("Quality advisor unavailable, accepting photo: %s", exc)
                return
            self.logger.warning("Quality advisor unavailable, rejecting photo: %s", exc)
            raise QualityRejectedError(f"quality check unavailable ({exc})") from exc

        if not verdict.accepted:
            self.logger.info("Quality advisor rejected photo: %s", verdict.reason)
            raise QualityRejectedError(verdict.reason or "photo quality too low")

    def _check_face_uniqueness(self, embedding: np.ndarray) -> None:
        if self.duplicate_distance <= 0:
            return
        for rec in self.state.identities:
            if rec.embedding.shape != embedding.shape:
                continue
            distance = euclidean_distance(rec.embedding, embedding)
            if distance <= self.duplicate_distance:
                raise DuplicateIdentityError(
                    f"Captured face is too similar to existing student '{rec.display_name}' ({rec.identity_id})."
                )
