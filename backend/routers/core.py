from fastapi import APIRouter, HTTPException

from backend.config import (
    DB_PATH,
    DECISION_TIMEOUT_SECONDS,
    DEFAULT_MEAL_WINDOWS,
    ENABLE_DEBUG_ENDPOINTS,
    QR_IMAGE_SERVICE_URL,
    RFID_POLL_ENABLED,
    RFID_POLL_INTERVAL_MS,
    RFID_READER_URL,
    SCAN_COOLDOWN_SECONDS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath():
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/verification")
def verification_config():
    return {
        "decision_timeout_seconds": DECISION_TIMEOUT_SECONDS,
        "scan_cooldown_seconds": SCAN_COOLDOWN_SECONDS,
        "rfid_poll_enabled": RFID_POLL_ENABLED,
        "rfid_reader_url": RFID_READER_URL,
        "rfid_poll_interval_ms": RFID_POLL_INTERVAL_MS,
        "qr_image_service_url": QR_IMAGE_SERVICE_URL,
        "default_meal_windows": {
            meal: {"start": start.strftime("%H:%M"), "end": end.strftime("%H:%M")}
            for meal, (start, end) in DEFAULT_MEAL_WINDOWS.items()
        },
    }
