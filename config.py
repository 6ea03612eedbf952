from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Union

SCRIPT_DIR = Path(__file__).resolve().parent
ENV_PATH = SCRIPT_DIR / ".env"


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        if line.startswith("export "):
            line = line[len("export ") :].strip()

        key, value = line.split("=", 1)
        key = key.strip()

        lexer = shlex.shlex(value.strip(), posix=True)
        lexer.whitespace_split = True
        lexer.commenters = "#"
        parsed = " ".join(list(lexer)).strip().strip('"').strip("'")

        if key and key not in os.environ:
            os.environ[key] = parsed


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _camera_source_from_env() -> Union[int, str]:
    raw = os.getenv("CAMERA_SOURCE", "0").strip()
    if raw.isdigit() or (raw.startswith("-") and raw[1:].isdigit()):
        return int(raw)
    return raw


_load_env_file(ENV_PATH)

# Android emulators reach the host machine through 10.0.2.2.
POSE_SERVER_URL = os.getenv("POSE_SERVER_URL", "http://10.0.2.2:5000").strip().rstrip("/")
POSE_STREAM_PATH = os.getenv("POSE_STREAM_PATH", "/ws")
POSE_AUTH_TOKEN = os.getenv("POSE_AUTH_TOKEN", "").strip()

TRANSPORT_MODE = os.getenv("TRANSPORT_MODE", "streaming").strip().lower()
AUTH_POLICY = os.getenv("AUTH_POLICY", "lenient").strip().lower()
AUTH_TIMEOUT_SEC = _float_env("AUTH_TIMEOUT_SEC", 5.0)
SESSION_EVENT_TIMEOUT_SEC = _float_env("SESSION_EVENT_TIMEOUT_SEC", 3.0)
SESSION_START_TIMEOUT_SEC = _float_env("SESSION_START_TIMEOUT_SEC", 12.0)
CONNECT_TIMEOUT_SEC = _float_env("CONNECT_TIMEOUT_SEC", 20.0)

RECONNECT_MAX_ATTEMPTS = _int_env("RECONNECT_MAX_ATTEMPTS", 5)
RECONNECT_BASE_DELAY_SEC = _float_env("RECONNECT_BASE_DELAY_SEC", 1.0)
RECONNECT_MAX_DELAY_SEC = _float_env("RECONNECT_MAX_DELAY_SEC", 5.0)

FRAME_MIN_INTERVAL_SEC = _float_env("FRAME_MIN_INTERVAL_SEC", 0.2)
IDLE_RECOVERY_SEC = _float_env("IDLE_RECOVERY_SEC", 3.0)
POLL_INTERVAL_SEC = _float_env("POLL_INTERVAL_SEC", 0.2)
POLL_HTTP_TIMEOUT_SEC = _float_env("POLL_HTTP_TIMEOUT_SEC", 5.0)
FALLBACK_POLL_ENABLED = _bool_env("FALLBACK_POLL_ENABLED", True)
FALLBACK_GRACE_SEC = _float_env("FALLBACK_GRACE_SEC", 5.0)

CAMERA_SOURCE = _camera_source_from_env()
CAMERA_READ_INTERVAL_SEC = _float_env("CAMERA_READ_INTERVAL_SEC", 0.05)
JPEG_QUALITY = _int_env("JPEG_QUALITY", 70)
DEFAULT_EXERCISE = os.getenv("DEFAULT_EXERCISE", "squat")
DEFAULT_USER_ID = os.getenv("DEFAULT_USER_ID", "anonymous")
SESSION_DURATION_SEC = _float_env("SESSION_DURATION_SEC", 0.0)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
LOG_EVERY_N_RESULTS = max(_int_env("LOG_EVERY_N_RESULTS", 10), 1)

if TRANSPORT_MODE not in {"streaming", "polling"}:
    TRANSPORT_MODE = "streaming"
if AUTH_POLICY not in {"lenient", "strict"}:
    AUTH_POLICY = "lenient"
RECONNECT_MAX_ATTEMPTS = max(RECONNECT_MAX_ATTEMPTS, 1)
RECONNECT_BASE_DELAY_SEC = max(0.0, RECONNECT_BASE_DELAY_SEC)
RECONNECT_MAX_DELAY_SEC = max(RECONNECT_BASE_DELAY_SEC, RECONNECT_MAX_DELAY_SEC)
FRAME_MIN_INTERVAL_SEC = max(0.0, FRAME_MIN_INTERVAL_SEC)
IDLE_RECOVERY_SEC = max(0.1, IDLE_RECOVERY_SEC)
POLL_INTERVAL_SEC = max(0.01, POLL_INTERVAL_SEC)
JPEG_QUALITY = max(1, min(100, JPEG_QUALITY))
