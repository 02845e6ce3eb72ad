import sqlite3
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from database.db import DuplicateMealRecordError

# Monday
MONDAY_0800 = datetime(2026, 10, 19, 8, 0)


class FakeStore:
    """In-memory MealStore with per-operation failure injection."""

    def __init__(self):
        self.students: dict[str, dict] = {}
        self.schedule: dict[int, list[dict]] = {}
        self.denials: dict[str, list[dict]] = {}
        self.records: dict[tuple[str, str, str], dict] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []

    def _touch(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail_on:
            raise sqlite3.OperationalError(f"injected failure in {op}")

    def add_student(self, student_id: str, rfid_uid: str | None = None, **extra) -> dict:
        row = {
            "student_id": student_id,
            "first_name": extra.get("first_name", "Test"),
            "last_name": extra.get("last_name", student_id),
            "department": extra.get("department", "CS"),
            "rfid_uid": rfid_uid,
        }
        self.students[student_id] = row
        return row

    def add_window(self, day: int, meal_type: str, start: str, end: str, is_active: bool = True) -> None:
        self.schedule.setdefault(day, []).append(
            {"day_of_week": day, "meal_type": meal_type, "start_time": start, "end_time": end, "is_active": is_active}
        )

    def add_denial(self, student_id: str, meal_types: list[str], start: str, end: str | None) -> None:
        self.denials.setdefault(student_id, []).append(
            {"student_id": student_id, "meal_types": meal_types, "start_date": start, "end_date": end, "is_active": True}
        )

    def find_student_by_id(self, student_id):
        self._touch("find_student_by_id")
        return self.students.get(student_id)

    def find_student_by_rfid(self, rfid_uid):
        self._touch("find_student_by_rfid")
        return next((s for s in self.students.values() if s.get("rfid_uid") == rfid_uid), None)

    def list_active_schedule_for_day(self, day_of_week):
        self._touch("list_active_schedule_for_day")
        return [e for e in self.schedule.get(day_of_week, []) if e["is_active"]]

    def list_active_denials_for_student(self, student_id):
        self._touch("list_active_denials_for_student")
        return list(self.denials.get(student_id, []))

    def find_meal_record(self, student_id, meal_type, meal_date):
        self._touch("find_meal_record")
        return self.records.get((student_id, meal_type, meal_date))

    def insert_meal_record(self, student_id, meal_type, meal_date, consumed_at, source="qr"):
        self._touch("insert_meal_record")
        key = (student_id, meal_type, meal_date)
        if key in self.records:
            raise DuplicateMealRecordError("duplicate")
        self.records[key] = {"id": len(self.records) + 1, "consumed_at": consumed_at, "source": source}
        return self.records[key]["id"]


@pytest.fixture()
def fake_store():
    return FakeStore()


@pytest.fixture()
def test_db(tmp_path, monkeypatch):
    path = tmp_path / "mealcard_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", path)
    monkeypatch.setattr(db, "DB_PATH", path)

    db.create_tables()
    return path


@pytest.fixture()
def client(test_db):
    with TestClient(main.app) as c:
        service = c.app.state.verification
        service.clock = lambda: MONDAY_0800
        for session in service.sessions.values():
            session.cooldown_seconds = 0
        yield c


def insert_student(student_id: str, *, rfid_uid: str | None = None, first_name: str = "Abebe", **extra) -> None:
    db.add_student(
        student_id=student_id,
        first_name=first_name,
        last_name=extra.pop("last_name", "Kebede"),
        department=extra.pop("department", "Computer Science"),
        rfid_uid=rfid_uid,
        **extra,
    )
