from datetime import date

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from database.db import get_student, normalize_date
from database.store import add_council_member, deactivate_council_member, list_council_members

router = APIRouter()


class CouncilMemberIn(BaseModel):
    student_id: str
    working_type: str
    position: str
    academic_year: str | None = None
    responsibilities: str | None = None
    start_date: str | None = None


@router.get("/council")
def council(active_only: bool = True):
    return list_council_members(active_only=active_only)


@router.post("/council")
def register_council_member(payload: CouncilMemberIn):
    student_id = payload.student_id.strip()
    working_type = payload.working_type.strip()
    position = payload.position.strip()
    if not student_id or not working_type or not position:
        raise HTTPException(status_code=400, detail="Student ID, working type and position are required.")
    if not get_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    try:
        start = normalize_date(payload.start_date) if payload.start_date else date.today().isoformat()
    except ValueError:
        raise HTTPException(status_code=400, detail="Start date must be YYYY-MM-DD.")

    member_id = add_council_member(
        student_id=student_id,
        working_type=working_type,
        position=position,
        academic_year=payload.academic_year,
        responsibilities=payload.responsibilities,
        start_date=start,
    )
    return {"ok": True, "id": member_id}


@router.post("/council/{member_id}/deactivate")
def deactivate_member(member_id: int):
    if not deactivate_council_member(member_id):
        raise HTTPException(status_code=404, detail="Active council member not found.")
    return {"ok": True, "id": member_id}
