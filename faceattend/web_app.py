import base64
import binascii
from typing import Optional

import cv2
import numpy as np
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .app import AttendanceApp, build_default_app
from .config import CAMERA_INDEX
from .exceptions import (
    AttendanceError,
    CameraError,
    InvalidStateError,
    NoFaceDetectedError,
    NotReadyError,
    PersistenceError,
    ValidationError,
)
from .logger import setup_logger
from .models import identity_to_dict, session_to_dict

logger = setup_logger("web_app")


class StartSessionBody(BaseModel):
    label: str


class StartAttendanceBody(BaseModel):
    camera_index: int = CAMERA_INDEX


class EnrollBody(BaseModel):
    identity_id: str
    name: str
    course: str = ""
    camera_index: int = CAMERA_INDEX
    # Optional uploaded photo (base64 JPEG/PNG, data URL prefix allowed); the camera is used otherwise.
    image_b64: Optional[str] = None


class SettingsBody(BaseModel):
    threshold: Optional[float] = None
    poll_interval: Optional[float] = None
    advisor_api_key: Optional[str] = None
    quality_gate_fail_open: Optional[bool] = None


def _status_for(exc: AttendanceError) -> int:
    if isinstance(exc, InvalidStateError):
        return 409
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, (NotReadyError, NoFaceDetectedError)):
        return 422
    if isinstance(exc, (PersistenceError, CameraError)):
        return 503
    return 500


def decode_image(image_b64: str) -> np.ndarray:
    payload = image_b64.split(",", 1)[1] if image_b64.startswith("data:") else image_b64
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Photo is not valid base64: {exc}") from exc
    frame = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)
    if frame is None:
        raise ValidationError("Photo could not be decoded as an image.")
    return frame


def create_web_app(controller: Optional[AttendanceApp] = None, load_on_startup: bool = True) -> FastAPI:
    app = FastAPI(title="FaceAttend", version=__version__)
    runtime = controller or build_default_app()
    app.state.controller = runtime

    @app.exception_handler(AttendanceError)
    async def _attendance_error(request: Request, exc: AttendanceError):
        status = _status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"ok": False, "error": str(exc)})

    @app.on_event("startup")
    async def _startup() -> None:
        if load_on_startup:
            await runtime.load()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await runtime.shutdown()

    @app.get("/api/health")
    async def health():
        return {"ok": True, "models_ready": runtime.extractor.ready}

    @app.get("/api/state")
    async def state():
        return runtime.snapshot()

    @app.get("/api/stats")
    async def stats():
        return runtime.dashboard_stats()

    @app.get("/api/report")
    async def report(date_from: str = "", date_to: str = "", label: str = ""):
        return {"rows": runtime.attendance_report(date_from=date_from, date_to=date_to, label=label)}

    @app.post("/api/session/start")
    async def start_session(payload: StartSessionBody):
        session = runtime.start_session(payload.label)
        return {"ok": True, "session": session_to_dict(session)}

    @app.post("/api/session/close")
    async def close_session():
        session = await runtime.end_session()
        return {"ok": True, "session": session_to_dict(session) if session is not None else None}

    @app.post("/api/attendance/start")
    async def start_attendance(payload: StartAttendanceBody):
        started = await runtime.start_attendance(payload.camera_index)
        return {"ok": started, "status": runtime.status}

    @app.post("/api/attendance/stop")
    async def stop_attendance():
        await runtime.stop_attendance()
        return {"ok": True, "status": runtime.status}

    @app.post("/api/identities")
    async def enroll(payload: EnrollBody):
        frame = decode_image(payload.image_b64) if payload.image_b64 else None
        identity = await runtime.enroll(
            identity_id=payload.identity_id,
            display_name=payload.name,
            frame=frame,
            course=payload.course,
            target=payload.camera_index,
        )
        body = identity_to_dict(identity)
        body.pop("faceDescriptor", None)
        return {"ok": True, "identity": body}

    @app.delete("/api/identities/{identity_id}")
    async def remove(identity_id: str):
        await runtime.remove_identity(identity_id)
        return {"ok": True}

    @app.put("/api/settings")
    async def save_settings(payload: SettingsBody):
        settings = await runtime.save_settings(
            threshold=payload.threshold,
            poll_interval=payload.poll_interval,
            advisor_api_key=payload.advisor_api_key,
            quality_gate_fail_open=payload.quality_gate_fail_open,
        )
        return {
            "ok": True,
            "threshold": settings.threshold,
            "poll_interval": settings.poll_interval,
            "quality_gate_fail_open": settings.quality_gate_fail_open,
        }

    @app.delete("/api/data")
    async def clear_data():
        await runtime.clear_all_data()
        return {"ok": True}

    return app
