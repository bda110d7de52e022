import os
from pathlib import Path


def _str_env(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _path_env(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip()).expanduser()


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = _path_env("FACE_DATA_DIR", BASE_DIR / "data")
LOG_DIR = _path_env("FACE_LOG_DIR", BASE_DIR / "logs")
LOG_LEVEL = _str_env("FACE_LOG_LEVEL", "INFO")

# Persistence
STORAGE_BACKEND = _str_env("FACE_STORAGE_BACKEND", "sqlite").lower()
DB_PATH = _path_env("FACE_DB_PATH", DATA_DIR / "attendance.db")
JSON_PATH = _path_env("FACE_JSON_PATH", DATA_DIR / "attendance.json")
CRUD_BASE_URL = _str_env("FACE_CRUD_BASE_URL", "http://127.0.0.1:5000")
HTTP_TIMEOUT_SECONDS = _float_env("FACE_HTTP_TIMEOUT_SECONDS", 8.0)

# Webcam settings
CAMERA_INDEX = _int_env("FACE_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("FACE_FRAME_WIDTH", 640)
FRAME_HEIGHT = _int_env("FACE_FRAME_HEIGHT", 480)
FRAME_FPS = _int_env("FACE_FRAME_FPS", 30)
CAMERA_BACKEND_ORDER = _str_env("FACE_CAMERA_BACKEND_ORDER", "")

# Detection / embedding settings
FACE_DETECTION_THRESHOLD = _float_env("FACE_DETECTION_THRESHOLD", 0.75)
MIN_FACE_SIZE = _int_env("FACE_MIN_FACE_SIZE", 80)
REQUIRE_LIVENESS = _bool_env("FACE_REQUIRE_LIVENESS", False)

# Recognition settings (Euclidean distance, lower = stricter)
RECOGNITION_THRESHOLD = _float_env("FACE_RECOGNITION_THRESHOLD", 0.6)
POLL_INTERVAL_SECONDS = _float_env("FACE_POLL_INTERVAL_SECONDS", 2.0)
# 0 disables the near-duplicate face check during enrollment.
DUPLICATE_FACE_DISTANCE = _float_env("FACE_DUPLICATE_DISTANCE", 0.0)

# Session policy
DISCARD_EMPTY_SESSIONS = _bool_env("FACE_DISCARD_EMPTY_SESSIONS", True)

# Quality advisor
QUALITY_GATE_FAIL_OPEN = _bool_env("FACE_QUALITY_GATE_FAIL_OPEN", True)
ADVISOR_API_KEY = _str_env("FACE_ADVISOR_API_KEY", "")
ADVISOR_MODEL = _str_env("FACE_ADVISOR_MODEL", "gemini-1.5-flash")
ADVISOR_BASE_URL = _str_env(
    "FACE_ADVISOR_BASE_URL",
    "https://generativelanguage.googleapis.com/v1beta",
)
ADVISOR_TIMEOUT_SECONDS = _float_env("FACE_ADVISOR_TIMEOUT_SECONDS", 15.0)
