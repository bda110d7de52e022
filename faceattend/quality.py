import base64
import json
from typing import Any, Optional

import cv2
import numpy as np
import requests

from .config import ADVISOR_BASE_URL, ADVISOR_MODEL, ADVISOR_TIMEOUT_SECONDS
from .exceptions import AdvisorError
from .interfaces import QualityAdvisor
from .models import QualityVerdict

QUALITY_PROMPT = (
    "You are checking a photo that will be used to enroll a student for face-recognition attendance. "
    "Accept it only if exactly one face is clearly visible, well lit, in focus, facing the camera and not "
    "covered. Reply with JSON only: {\"accepted\": true|false, \"reason\": \"short explanation\"}."
)


def encode_jpeg(frame: np.ndarray, quality: int = 85) -> bytes:
    ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("Frame could not be encoded as JPEG.")
    return buffer.tobytes()


class GeminiQualityAdvisor:
    """Asks a hosted vision model whether an enrollment photo is usable."""

    def __init__(
        self,
        api_key: str,
        model: str = ADVISOR_MODEL,
        base_url: str = ADVISOR_BASE_URL,
        timeout: float = ADVISOR_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        if not api_key.strip():
            raise AdvisorError("Quality advisor requires an API key.")
        self.api_key = api_key.strip()
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def check(self, frame: np.ndarray) -> QualityVerdict:
        try:
            image_b64 = base64.b64encode(encode_jpeg(frame)).decode("ascii")
        except (ValueError, cv2.error) as exc:
            raise AdvisorError(f"Could not prepare photo for quality check: {exc}") from exc

        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": QUALITY_PROMPT},
                        {"inline_data": {"mime_type": "image/jpeg", "data": image_b64}},
                    ]
                }
            ],
            "generationConfig": {"responseMimeType": "application/json"},
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"

        try:
            resp = self.session.post(url, params={"key": self.api_key}, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as exc:
            raise AdvisorError(f"Quality advisor request failed: {exc}") from exc
        except ValueError as exc:
            raise AdvisorError(f"Quality advisor returned invalid JSON: {exc}") from exc

        return self._parse_verdict(body)

    @staticmethod
    def _parse_verdict(body: Any) -> QualityVerdict:
        try:
            text = body["candidates"][0]["content"]["parts"][0]["text"]
            verdict = json.loads(text.strip().removeprefix("```json").removesuffix("```"))
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise AdvisorError(f"Unexpected quality advisor response: {exc}") from exc

        if not isinstance(verdict, dict):
            raise AdvisorError("Quality advisor verdict is not an object.")
        accepted = verdict.get("accepted", verdict.get("success"))
        if not isinstance(accepted, bool):
            raise AdvisorError("Quality advisor verdict has no boolean 'accepted' field.")
        return QualityVerdict(accepted=accepted, reason=str(verdict.get("reason") or ""))


def build_advisor(api_key: str) -> Optional[QualityAdvisor]:
    if not api_key or not api_key.strip():
        return None
    return GeminiQualityAdvisor(api_key=api_key)
