from datetime import datetime

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from backend.services.decision import day_of_week, resolve_meal_type
from database.db import get_schedule, normalize_meal_type, upsert_schedule_entry

router = APIRouter()

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


class ScheduleEntryUpdate(BaseModel):
    start_time: str
    end_time: str
    menu_description: str
    is_active: bool = True


@router.get("/schedule")
def schedule(day: int | None = None):
    if day is not None and not 0 <= day <= 6:
        raise HTTPException(status_code=400, detail="Day must be between 0 (Sunday) and 6 (Saturday).")
    rows = get_schedule(day)
    for row in rows:
        row["day_name"] = DAY_NAMES[int(row["day_of_week"])]
    return rows


@router.put("/schedule/{day}/{meal_type}")
def update_schedule_entry(day: int, meal_type: str, payload: ScheduleEntryUpdate):
    if not 0 <= day <= 6:
        raise HTTPException(status_code=400, detail="Day must be between 0 (Sunday) and 6 (Saturday).")
    meal = normalize_meal_type(meal_type)
    if meal is None:
        raise HTTPException(status_code=400, detail="Meal type must be breakfast, lunch or dinner.")
    description = payload.menu_description.strip()
    if not description:
        raise HTTPException(status_code=400, detail="Menu description is required.")

    try:
        row = upsert_schedule_entry(
            day_of_week=day,
            meal_type=meal,
            start_time=payload.start_time,
            end_time=payload.end_time,
            menu_description=description,
            is_active=payload.is_active,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    row["day_name"] = DAY_NAMES[day]
    return row


@router.get("/schedule/current")
def current_meal(request: Request):
    service = request.app.state.verification
    now: datetime = service.clock()
    meal = resolve_meal_type(service.store, now)
    return {
        "day_of_week": day_of_week(now),
        "time": now.strftime("%H:%M"),
        "meal_type": meal,
        "serving": meal is not None,
    }
