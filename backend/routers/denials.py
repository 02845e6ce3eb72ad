import sqlite3
from datetime import date

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from backend.app_logger import get_logger
from database.db import (
    MEAL_TYPES,
    MealType,
    create_denials,
    get_student,
    list_denials,
    normalize_date,
    normalize_meal_type,
    release_denials,
)

router = APIRouter()
logger = get_logger("denials")


class DenialCreate(BaseModel):
    student_ids: list[str]
    meal_types: list[str]
    start_date: str | None = None
    end_date: str | None = None
    reason: str | None = None


class DenialRelease(BaseModel):
    ids: list[int]


def _expand_meal_types(values: list[str]) -> list[MealType]:
    meals: list[MealType] = []
    for value in values:
        if value.strip().lower() == "all":
            return list(MEAL_TYPES)
        meal = normalize_meal_type(value)
        if meal is None:
            raise HTTPException(status_code=400, detail=f"Unknown meal type: {value}")
        if meal not in meals:
            meals.append(meal)
    return meals


@router.get("/denials")
def denials(active_only: bool = True, student_id: str | None = None):
    return list_denials(active_only=active_only, student_id=student_id)


@router.post("/denials")
def deny_students(payload: DenialCreate):
    student_ids = list(dict.fromkeys(s.strip() for s in payload.student_ids if s.strip()))
    if not student_ids:
        raise HTTPException(status_code=400, detail="Select at least one student.")
    meals = _expand_meal_types(payload.meal_types)
    if not meals:
        raise HTTPException(status_code=400, detail="Select at least one meal type.")

    try:
        start = normalize_date(payload.start_date) if payload.start_date else date.today().isoformat()
        end = normalize_date(payload.end_date) if payload.end_date else None
    except ValueError:
        raise HTTPException(status_code=400, detail="Dates must be YYYY-MM-DD.")
    if end is not None and end < start:
        raise HTTPException(status_code=400, detail="End date must not be before start date.")

    missing = [sid for sid in student_ids if not get_student(sid)]
    if missing:
        raise HTTPException(status_code=404, detail=f"Student(s) not found: {', '.join(missing)}")

    try:
        ids = create_denials(
            student_ids,
            meal_types=meals,
            start_date=start,
            end_date=end,
            reason=(payload.reason or "").strip() or None,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Could not create denial records.")

    logger.info("Denied %d student(s) for %s from %s to %s", len(ids), ",".join(meals), start, end or "open")
    return {"ok": True, "created": len(ids), "ids": ids}


@router.post("/denials/release")
def release(payload: DenialRelease):
    if not payload.ids:
        raise HTTPException(status_code=400, detail="Select at least one denial to release.")
    released = release_denials(payload.ids)
    return {"ok": True, "released": released}
