from datetime import date as date_cls

from fastapi import APIRouter, HTTPException

from database.db import get_daily_meal_summary, get_meal_records, normalize_date, normalize_meal_type

router = APIRouter()


def _check_date(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return normalize_date(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Date must be YYYY-MM-DD.")


@router.get("/meals/records")
def meal_records(date: str | None = None, meal_type: str | None = None, student_id: str | None = None):
    meal = None
    if meal_type:
        meal = normalize_meal_type(meal_type)
        if meal is None:
            raise HTTPException(status_code=400, detail="Meal type must be breakfast, lunch or dinner.")
    return get_meal_records(_check_date(date), meal, (student_id or "").strip() or None)


@router.get("/meals/summary")
def meal_summary(date: str | None = None):
    day = _check_date(date) or date_cls.today().isoformat()
    return get_daily_meal_summary(day)
