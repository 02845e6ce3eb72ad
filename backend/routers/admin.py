from fastapi import APIRouter, HTTPException, Query

from backend.app_logger import get_logger
from backend.services.verification import OUTCOME_DISPLAY
from database.db import clear_meal_records, get_scan_events, get_scan_events_total

router = APIRouter()
logger = get_logger("admin")

ALLOWED_DECISION_CODES: set[str] = set(OUTCOME_DISPLAY)
ALLOWED_SOURCES: set[str] = {"qr", "qr_image", "rfid"}


@router.post("/admin/reset/meals")
def reset_meals():
    clear_meal_records()
    logger.warning("Meal records and scan events cleared by admin reset")
    return {"ok": True, "message": "Meal records and scan events cleared"}


@router.get("/admin/scan-events")
def list_scan_events(
    student_id: str | None = None,
    date: str | None = None,
    decision_code: str | None = None,
    source: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    clean_decision = decision_code.strip().upper() if decision_code else None
    if clean_decision and clean_decision not in ALLOWED_DECISION_CODES:
        raise HTTPException(status_code=400, detail="Invalid decision_code filter.")
    clean_source = source.strip().lower() if source else None
    if clean_source and clean_source not in ALLOWED_SOURCES:
        raise HTTPException(status_code=400, detail="Invalid source filter.")

    rows = get_scan_events(
        student_id=student_id,
        date=date,
        decision_code=clean_decision,
        source=clean_source,
        limit=limit,
        offset=offset,
    )
    total = get_scan_events_total(
        student_id=student_id,
        date=date,
        decision_code=clean_decision,
        source=clean_source,
    )
    return {
        "rows": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
    }
