from typing import List, Optional, Tuple

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import FACE_DETECTION_THRESHOLD, MIN_FACE_SIZE, REQUIRE_LIVENESS
from .exceptions import FaceEngineError, NotReadyError
from .logger import setup_logger

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None

CROP_SIZE = 224


def default_device() -> str:
    return "cuda" if torch.cuda.is_available() else "cpu"


class FaceEngine:
    """Reference embedding extractor: MediaPipe face detection + ResNet-18 features.

    ``extract`` yields one L2-normalized embedding when exactly one usable face
    is visible, and ``None`` otherwise. Models are loaded lazily by ``load()``;
    ``ready`` reports whether that has happened.
    """

    def __init__(
        self,
        device: Optional[str] = None,
        detection_threshold: float = FACE_DETECTION_THRESHOLD,
        min_face_size: int = MIN_FACE_SIZE,
        require_liveness: bool = REQUIRE_LIVENESS,
    ):
        self.device = torch.device(device or default_device())
        self.detection_threshold = detection_threshold
        self.min_face_size = min_face_size
        self.require_liveness = require_liveness
        self.logger = setup_logger(self.__class__.__name__)

        self.detector = None
        self.embedder: Optional[torch.nn.Module] = None
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    def load(self) -> None:
        if self._ready:
            return
        if mp is None:
            raise FaceEngineError("mediapipe is required. Install the package dependencies first.")
        if self.require_liveness:
            self.logger.warning("Liveness checking is requested but not supported by this extractor")

        if self.device.type == "cuda":
            torch.backends.cudnn.benchmark = True

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=self.detection_threshold,
            )

            backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)

            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        except Exception as exc:
            raise FaceEngineError(f"Failed to initialize face models: {exc}") from exc

        self._ready = True
        self.logger.info("Face models loaded on %s", self.device)

    def extract(self, frame: np.ndarray) -> Optional[np.ndarray]:
        if not self._ready:
            raise NotReadyError("Face models are not loaded yet.")

        faces = self._detect_faces(frame)
        if len(faces) != 1:
            return None

        crop, _ = faces[0]
        try:
            batch = self._to_tensor(crop)
            with torch.inference_mode():
                if self.device.type == "cuda":
                    with torch.autocast(device_type="cuda", dtype=torch.float16):
                        raw = self.embedder(batch)
                else:
                    raw = self.embedder(batch)
                normed = f.normalize(raw.float(), p=2, dim=1)
        except Exception as exc:
            raise FaceEngineError(f"Embedding generation failed: {exc}") from exc

        return normed[0].detach().cpu().numpy().astype(np.float32)

    def _detect_faces(self, frame: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            result = self.detector.process(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        if not result.detections:
            return []

        h, w = rgb.shape[:2]
        faces: List[Tuple[np.ndarray, np.ndarray]] = []
        for det in result.detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < self.detection_threshold:
                continue

            rel = det.location_data.relative_bounding_box
            x1 = max(0, int(rel.xmin * w))
            y1 = max(0, int(rel.ymin * h))
            x2 = min(w, x1 + int(rel.width * w))
            y2 = min(h, y1 + int(rel.height * h))
            if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
                continue

            crop, box = self._square_crop(rgb, x1, y1, x2, y2)
            if crop.size:
                faces.append((crop, box))
        return faces

    @staticmethod
    def _square_crop(rgb: np.ndarray, x1: int, y1: int, x2: int, y2: int) -> Tuple[np.ndarray, np.ndarray]:
        h, w = rgb.shape[:2]
        side = int(max(x2 - x1, y2 - y1) * 1.05)
        cx = (x1 + x2) // 2
        cy = (y1 + y2) // 2

        sx1 = max(0, cx - side // 2)
        sy1 = max(0, cy - side // 2)
        sx2 = min(w, sx1 + side)
        sy2 = min(h, sy1 + side)
        box = np.array([sx1, sy1, sx2, sy2], dtype=np.float32)
        if sx2 <= sx1 or sy2 <= sy1:
            return np.empty((0, 0, 3), dtype=rgb.dtype), box
        return rgb[sy1:sy2, sx1:sx2], box

    def _to_tensor(self, crop: np.ndarray) -> torch.Tensor:
        prepared = self._normalize_lighting(crop)
        tensor = torch.from_numpy(prepared).permute(2, 0, 1).float().unsqueeze(0) / 255.0
        tensor = tensor.to(self.device)
        return (tensor - self.mean) / self.std

    def _normalize_lighting(self, crop: np.ndarray) -> np.ndarray:
        interpolation = cv2.INTER_CUBIC if min(crop.shape[:2]) < CROP_SIZE else cv2.INTER_AREA
        resized = cv2.resize(crop, (CROP_SIZE, CROP_SIZE), interpolation=interpolation)

        # Equalize luminance only, then fade the background corners to the mean colour.
        y_channel, cr_channel, cb_channel = cv2.split(cv2.cvtColor(resized, cv2.COLOR_RGB2YCrCb))
        balanced = cv2.cvtColor(
            cv2.merge([self.clahe.apply(y_channel), cr_channel, cb_channel]),
            cv2.COLOR_YCrCb2RGB,
        ).astype(np.float32)

        mask = np.zeros((CROP_SIZE, CROP_SIZE), dtype=np.float32)
        cv2.ellipse(mask, (CROP_SIZE // 2, CROP_SIZE // 2), (84, 100), 0, 0, 360, 1.0, -1)
        mask = cv2.GaussianBlur(mask, (0, 0), sigmaX=6.0, sigmaY=6.0)[..., None]

        mean_color = balanced.mean(axis=(0, 1), keepdims=True)
        focused = balanced * mask + mean_color * (1.0 - mask)
        return np.clip(focused, 0.0, 255.0).astype(np.uint8)
