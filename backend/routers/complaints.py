from datetime import datetime
from typing import cast

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from backend.app_logger import get_logger
from database.db import get_student
from database.store import (
    COMPLAINT_STATUSES,
    ComplaintStatus,
    add_complaint,
    get_complaint,
    list_complaints,
    respond_to_complaint,
    set_complaint_status,
)

router = APIRouter()
logger = get_logger("complaints")


class ComplaintIn(BaseModel):
    student_id: str
    message: str


class ComplaintResponse(BaseModel):
    response: str


class ComplaintStatusChange(BaseModel):
    status: str


def _check_status(status: str) -> ComplaintStatus:
    cleaned = status.strip().lower()
    if cleaned not in COMPLAINT_STATUSES:
        raise HTTPException(status_code=400, detail="Status must be pending, in_progress or resolved.")
    return cast(ComplaintStatus, cleaned)


@router.get("/complaints")
def complaints(status: str | None = None):
    return list_complaints(status=_check_status(status) if status else None)


@router.post("/complaints")
def submit_complaint(payload: ComplaintIn):
    student_id = payload.student_id.strip()
    message = payload.message.strip()
    if not student_id or not message:
        raise HTTPException(status_code=400, detail="Student ID and message are required.")
    if not get_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")

    complaint_id = add_complaint(student_id, message)
    logger.info("Complaint %s submitted by %s", complaint_id, student_id)
    return get_complaint(complaint_id)


@router.post("/complaints/{complaint_id}/respond")
def respond(complaint_id: int, payload: ComplaintResponse):
    text = payload.response.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Please enter a response.")
    resolved_at = datetime.now().isoformat(timespec="seconds")
    if not respond_to_complaint(complaint_id, text, resolved_at):
        raise HTTPException(status_code=404, detail="Complaint not found.")
    return get_complaint(complaint_id)


@router.post("/complaints/{complaint_id}/status")
def change_status(complaint_id: int, payload: ComplaintStatusChange):
    status = _check_status(payload.status)
    if not set_complaint_status(complaint_id, status):
        raise HTTPException(status_code=404, detail="Complaint not found.")
    return get_complaint(complaint_id)
