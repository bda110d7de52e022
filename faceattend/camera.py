from __future__ import annotations

import os
import threading
import time
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import CAMERA_BACKEND_ORDER, FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH
from .exceptions import CameraError
from .logger import setup_logger

_BACKEND_ALIASES = {
    "auto": "Auto",
    "any": "Auto",
    "dshow": "DirectShow",
    "directshow": "DirectShow",
    "msmf": "Media Foundation",
    "mediafoundation": "Media Foundation",
    "media foundation": "Media Foundation",
    "v4l2": "V4L2",
}


def backend_order(raw: str = CAMERA_BACKEND_ORDER) -> List[str]:
    names = [_BACKEND_ALIASES.get(item.strip().lower()) for item in raw.split(",") if item.strip()]
    ordered = list(dict.fromkeys(name for name in names if name))
    if ordered:
        return ordered
    # Windows laptop webcams are generally more stable on DirectShow.
    if os.name == "nt":
        return ["DirectShow", "Media Foundation", "Auto"]
    return ["V4L2", "Auto"]


def capture_backends(raw: str = CAMERA_BACKEND_ORDER) -> List[Tuple[str, Optional[int]]]:
    backend_map = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
    }
    candidates: List[Tuple[str, Optional[int]]] = []
    seen: set = set()
    for name in backend_order(raw) + ["Auto"]:
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_capture(camera_index: int, probe_reads: int = 6) -> Tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []
    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        cap = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)
        if cap.isOpened():
            # Some backends report opened=True but never deliver frames.
            for _ in range(probe_reads):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    raise CameraError(f"Unable to open webcam index {camera_index}. Tried backends: {', '.join(attempted)}.")


class OpenCVVideoSource:
    """Webcam collaborator used by enrollment and the capture loop."""

    def __init__(self, width: int = FRAME_WIDTH, height: int = FRAME_HEIGHT, fps: int = FRAME_FPS):
        self.width = width
        self.height = height
        self.fps = fps
        self.logger = setup_logger(self.__class__.__name__)
        self.backend_name: Optional[str] = None
        self._cap: Optional[cv2.VideoCapture] = None
        self._lock = threading.Lock()

    @property
    def is_live(self) -> bool:
        cap = self._cap
        return cap is not None and cap.isOpened()

    def start(self, target: int = 0) -> bool:
        self.stop()
        try:
            cap, backend_name = open_capture(int(target))
        except CameraError as exc:
            self.logger.error("Camera access error: %s", exc)
            return False

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        cap.set(cv2.CAP_PROP_FPS, self.fps)
        cv2.setUseOptimized(True)

        with self._lock:
            self._cap = cap
            self.backend_name = backend_name
        self.logger.info("Camera %s opened with %s backend", target, backend_name)
        return True

    def grab_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._cap is None:
                return None
            ok, frame = self._cap.read()
        if not ok or frame is None:
            return None
        return frame

    def stop(self) -> None:
        with self._lock:
            cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()
            self.logger.info("Camera released")
