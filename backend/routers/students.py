import sqlite3
from typing import cast

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from backend.app_logger import get_logger
from backend.services.qr_payload import build_qr_payload, qr_image_url
from database.db import (
    STUDENT_STATUSES,
    StudentStatus,
    add_student,
    get_student,
    get_student_meal_history,
    list_students,
    set_student_qr_payload,
    set_student_status,
    update_student,
)

router = APIRouter()
logger = get_logger("students")

REQUIRED_FIELDS = ("student_id", "first_name", "last_name", "department")


class StudentCreate(BaseModel):
    student_id: str
    first_name: str
    last_name: str
    department: str
    middle_name: str | None = None
    gender: str | None = None
    email: str | None = None
    phone: str | None = None
    batch: str | None = None
    enrollment_year: int | None = None
    program: str | None = None
    status: str = "active"
    rfid_uid: str | None = None


class StudentUpdate(BaseModel):
    student_id: str | None = None
    first_name: str | None = None
    middle_name: str | None = None
    last_name: str | None = None
    gender: str | None = None
    email: str | None = None
    phone: str | None = None
    department: str | None = None
    batch: str | None = None
    enrollment_year: int | None = None
    program: str | None = None
    rfid_uid: str | None = None


class StatusChange(BaseModel):
    status: str


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def _check_status(status: str) -> StudentStatus:
    cleaned = status.strip().lower()
    if cleaned not in STUDENT_STATUSES:
        raise HTTPException(status_code=400, detail="Status must be active, inactive or suspended.")
    return cast(StudentStatus, cleaned)


def _conflict_detail(exc: sqlite3.IntegrityError) -> str:
    if "rfid_uid" in str(exc):
        return "RFID tag is already assigned to another student."
    return "Student ID already exists."


@router.get("/students")
def students(
    department: str | None = None,
    batch: str | None = None,
    status: str | None = None,
    search: str | None = None,
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
):
    typed_status = _check_status(status) if status else None
    rows, total = list_students(
        department=department,
        batch=batch,
        status=typed_status,
        search=search,
        limit=limit,
        offset=offset,
    )
    return {"rows": rows, "total": total, "limit": limit, "offset": offset}


@router.post("/students")
def create_student(payload: StudentCreate):
    fields = {key: _clean(value) if isinstance(value, str) else value for key, value in payload.model_dump().items()}
    if any(not fields[name] for name in REQUIRED_FIELDS):
        raise HTTPException(status_code=400, detail="Student ID, first name, last name and department are required.")

    status = _check_status(fields.pop("status") or "active")
    try:
        add_student(status=status, **fields)
    except sqlite3.IntegrityError as exc:
        raise HTTPException(status_code=409, detail=_conflict_detail(exc))

    logger.info("Registered student %s", fields["student_id"])
    return get_student(fields["student_id"])


@router.get("/students/{student_id}")
def student_detail(student_id: str):
    row = get_student(student_id)
    if not row:
        raise HTTPException(status_code=404, detail="Student not found.")
    return row


@router.put("/students/{student_id}")
def edit_student(student_id: str, payload: StudentUpdate):
    updates = payload.model_dump(exclude_unset=True)
    new_id = updates.pop("student_id", None)
    if new_id is not None and new_id.strip() != student_id:
        raise HTTPException(status_code=400, detail="Student ID cannot be changed.")

    for name in ("first_name", "last_name", "department"):
        if name in updates and not _clean(updates[name]):
            raise HTTPException(status_code=400, detail=f"{name.replace('_', ' ').capitalize()} cannot be empty.")
    updates = {key: _clean(value) if isinstance(value, str) else value for key, value in updates.items()}

    if not get_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    try:
        update_student(student_id, updates)
    except sqlite3.IntegrityError as exc:
        raise HTTPException(status_code=409, detail=_conflict_detail(exc))
    return get_student(student_id)


@router.post("/students/{student_id}/status")
def change_student_status(student_id: str, payload: StatusChange):
    status = _check_status(payload.status)
    if not set_student_status(student_id, status):
        raise HTTPException(status_code=404, detail="Student not found.")
    return {"ok": True, "student_id": student_id, "status": status}


@router.get("/students/{student_id}/qr")
def student_qr(student_id: str):
    row = get_student(student_id)
    if not row:
        raise HTTPException(status_code=404, detail="Student not found.")

    payload = build_qr_payload(row)
    set_student_qr_payload(student_id, payload)
    return {
        "student_id": student_id,
        "payload": payload,
        "image_url": qr_image_url(payload),
    }


@router.get("/students/{student_id}/meals")
def student_meals(student_id: str, limit: int = Query(default=100, ge=1, le=1000)):
    if not get_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    return get_student_meal_history(student_id, limit=limit)
