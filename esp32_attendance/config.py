import os
from dataclasses import dataclass
from pathlib import Path


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
DATA_DIR = BASE_DIR / "data"
LOG_DIR = _path_env("ESP32_LOG_DIR", BASE_DIR / "logs")
CAPTURE_DIR = _path_env("ESP32_CAPTURE_DIR", DATA_DIR / "captures")
LOG_LEVEL = os.getenv("ESP32_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Camera settings
CAMERA_URL = os.getenv("ESP32_CAMERA_URL", "").strip()
SNAPSHOT_TIMEOUT_SECONDS = _float_env("ESP32_SNAPSHOT_TIMEOUT_SECONDS", 5.0)
POLL_INTERVAL_SECONDS = _int_env("ESP32_POLL_INTERVAL_MS", 750) / 1000.0
PROBE_VENDOR_PATHS = _bool_env("ESP32_PROBE_VENDOR_PATHS", True)
STREAM_CHUNK_SIZE = _int_env("ESP32_STREAM_CHUNK_SIZE", 4096)
STREAM_CONNECT_TIMEOUT_SECONDS = _float_env("ESP32_STREAM_CONNECT_TIMEOUT_SECONDS", 5.0)
STREAM_READ_TIMEOUT_SECONDS = _float_env("ESP32_STREAM_READ_TIMEOUT_SECONDS", 10.0)

# Frame heuristics
MIN_RESPONSE_BYTES = 100
MIN_FRAME_BYTES = 1000
MIN_STREAM_FRAME_BYTES = 100

# Stream parser bounds
STREAM_HEADER_WINDOW = 512
STREAM_HEADER_LIMIT = 8 * 1024
STREAM_BODY_LIMIT = 200 * 1024
STREAM_TRIM_KEEP = 1024
STREAM_BOUNDARY_LOOKAHEAD = 200

# Backend settings
API_BASE_URL = os.getenv("ATTENDANCE_API_URL", "http://127.0.0.1:8000/api").strip()
API_TOKEN = os.getenv("ATTENDANCE_API_TOKEN", "").strip()
API_TIMEOUT_SECONDS = _float_env("ATTENDANCE_API_TIMEOUT_SECONDS", 15.0)
SCAN_INTERVAL_SECONDS = _float_env("ATTENDANCE_SCAN_INTERVAL_SECONDS", 3.0)
SCAN_REQUIRE_FACE = _bool_env("ATTENDANCE_SCAN_REQUIRE_FACE", False)

# Face quality settings
FACE_MIN_SIZE_RATIO = 0.10
FACE_EDGE_MARGIN_RATIO = 0.10


@dataclass(frozen=True)
class CameraConfig:
    base_url: str = CAMERA_URL
    snapshot_timeout_seconds: float = SNAPSHOT_TIMEOUT_SECONDS
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS
    include_vendor_paths: bool = PROBE_VENDOR_PATHS
    stream_chunk_size: int = STREAM_CHUNK_SIZE
    stream_connect_timeout_seconds: float = STREAM_CONNECT_TIMEOUT_SECONDS
    stream_read_timeout_seconds: float = STREAM_READ_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ApiConfig:
    base_url: str = API_BASE_URL
    token: str = API_TOKEN
    timeout_seconds: float = API_TIMEOUT_SECONDS
