import os
from datetime import time
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("MEALCARD_DB_PATH", BASE_DIR / "database" / "mealcard.db"))
LOG_DIR = Path(os.getenv("MEALCARD_LOG_DIR", BASE_DIR / "logs"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_time(value: str | None, fallback: time) -> time:
    if not value:
        return fallback
    parts = value.split(":")
    try:
        hh = int(parts[0])
        mm = int(parts[1]) if len(parts) > 1 else 0
        return time(hh, mm)
    except Exception:
        return fallback


def _parse_float(value: str | None, fallback: float, *, minimum: float = 0.0) -> float:
    if not value:
        return fallback
    try:
        return max(minimum, float(value))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("MEALCARD_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("MEALCARD_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("MEALCARD_CORS_ALLOW_HEADERS"),
    ["Content-Type", "Accept", "X-Request-Id"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("MEALCARD_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("MEALCARD_ENABLE_DEBUG_ENDPOINTS"), False)

# Verification flow
DECISION_TIMEOUT_SECONDS = _parse_float(os.getenv("MEALCARD_DECISION_TIMEOUT_SECONDS"), 5.0, minimum=0.1)
SCAN_COOLDOWN_SECONDS = _parse_float(os.getenv("MEALCARD_SCAN_COOLDOWN_SECONDS"), 3.0)

# RFID reader bridge (exposes GET /rfid/latest -> {"uid": "..."})
RFID_POLL_ENABLED = _parse_bool(os.getenv("MEALCARD_RFID_POLL_ENABLED"), False)
RFID_READER_URL = os.getenv("MEALCARD_RFID_READER_URL", "http://localhost:5000").strip().rstrip("/")
RFID_POLL_INTERVAL_MS = max(100, int(os.getenv("MEALCARD_RFID_POLL_INTERVAL_MS", "800")))
RFID_HTTP_TIMEOUT_SECONDS = _parse_float(os.getenv("MEALCARD_RFID_HTTP_TIMEOUT_SECONDS"), 2.0, minimum=0.1)

# QR images are rendered by an external service; we only build the URL.
QR_IMAGE_SERVICE_URL = os.getenv(
    "MEALCARD_QR_IMAGE_SERVICE_URL",
    "https://api.qrserver.com/v1/create-qr-code/",
).strip()
QR_IMAGE_SIZE = max(64, int(os.getenv("MEALCARD_QR_IMAGE_SIZE", "200")))

# Seed values for an empty weekly schedule
BREAKFAST_START = _parse_time(os.getenv("MEALCARD_BREAKFAST_START"), time(7, 0))
BREAKFAST_END = _parse_time(os.getenv("MEALCARD_BREAKFAST_END"), time(9, 0))
LUNCH_START = _parse_time(os.getenv("MEALCARD_LUNCH_START"), time(12, 0))
LUNCH_END = _parse_time(os.getenv("MEALCARD_LUNCH_END"), time(14, 0))
DINNER_START = _parse_time(os.getenv("MEALCARD_DINNER_START"), time(18, 0))
DINNER_END = _parse_time(os.getenv("MEALCARD_DINNER_END"), time(20, 0))
SEED_DEFAULT_SCHEDULE = _parse_bool(os.getenv("MEALCARD_SEED_DEFAULT_SCHEDULE"), True)

DEFAULT_MEAL_WINDOWS: dict[str, tuple[time, time]] = {
    "breakfast": (BREAKFAST_START, BREAKFAST_END),
    "lunch": (LUNCH_START, LUNCH_END),
    "dinner": (DINNER_START, DINNER_END),
}

LOW_STOCK_DEFAULT_LEVEL = _parse_float(os.getenv("MEALCARD_LOW_STOCK_DEFAULT_LEVEL"), 0.0)

# Logging
LOG_LEVEL = (os.getenv("MEALCARD_LOG_LEVEL", "INFO").strip() or "INFO").upper()
LOG_TO_FILE = _parse_bool(os.getenv("MEALCARD_LOG_TO_FILE"), False)
LOG_FILE = Path(os.getenv("MEALCARD_LOG_FILE", LOG_DIR / "mealcard.log"))
LOG_MAX_BYTES = int(os.getenv("MEALCARD_LOG_MAX_BYTES", str(10 * 1024 * 1024)))
LOG_BACKUP_COUNT = int(os.getenv("MEALCARD_LOG_BACKUP_COUNT", "5"))
