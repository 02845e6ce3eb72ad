import json
import sqlite3
from datetime import date as date_cls, datetime, time
from pathlib import Path
from typing import Any, Iterable, Literal, cast

from backend.config import DB_PATH, DEFAULT_MEAL_WINDOWS, SEED_DEFAULT_SCHEDULE


SCHEMA_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_meal_verification.sql"
CORE_TABLES = {"students", "menu_schedule", "denied_students", "meal_records", "scan_events", "complaints"}

MealType = Literal["breakfast", "lunch", "dinner"]
StudentStatus = Literal["active", "inactive", "suspended"]

MEAL_TYPES: tuple[MealType, ...] = ("breakfast", "lunch", "dinner")
STUDENT_STATUSES: tuple[StudentStatus, ...] = ("active", "inactive", "suspended")

STUDENT_COLUMNS = (
    "student_id",
    "first_name",
    "middle_name",
    "last_name",
    "gender",
    "email",
    "phone",
    "department",
    "batch",
    "enrollment_year",
    "program",
    "status",
    "rfid_uid",
    "qr_payload",
    "created_at",
    "updated_at",
)
# student_id is the immutable identity key; everything else may be edited.
STUDENT_EDITABLE_COLUMNS = frozenset(STUDENT_COLUMNS) - {"student_id", "created_at", "updated_at", "qr_payload"}


class DuplicateMealRecordError(Exception):
    """A meal record already exists for (student_id, meal_type, meal_date)."""


def connect_db():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=30.0)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _rows(cur: sqlite3.Cursor) -> list[dict[str, Any]]:
    cols = [c[0] for c in cur.description or ()]
    return [dict(zip(cols, row)) for row in cur.fetchall()]


def _row(cur: sqlite3.Cursor) -> dict[str, Any] | None:
    cols = [c[0] for c in cur.description or ()]
    row = cur.fetchone()
    return dict(zip(cols, row)) if row else None


def normalize_meal_type(value: str | None) -> MealType | None:
    cleaned = (value or "").strip().lower()
    if cleaned in MEAL_TYPES:
        return cast(MealType, cleaned)
    return None


def normalize_clock(value: str | time) -> str:
    """Return a wall-clock value as zero-padded HH:MM. Raises ValueError."""
    if isinstance(value, time):
        return value.strftime("%H:%M")
    text = str(value).strip()
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).strftime("%H:%M")
        except ValueError:
            continue
    raise ValueError(f"Invalid time value: {value!r}")


def normalize_date(value: str | date_cls) -> str:
    if isinstance(value, date_cls):
        return value.isoformat()
    return datetime.strptime(str(value).strip(), "%Y-%m-%d").date().isoformat()


def ensure_schema(conn: sqlite3.Connection) -> None:
    """
    Ensure the meal verification tables exist.

    SQL source: `database/migrations/001_meal_verification.sql`.
    """
    cur = conn.cursor()
    cur.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type='table'
        """
    )
    existing = {str(row[0]) for row in cur.fetchall()}
    if not CORE_TABLES.issubset(existing):
        sql = SCHEMA_MIGRATION_FILE.read_text(encoding="utf-8")
        conn.executescript(sql)


def _seed_default_schedule(cursor: sqlite3.Cursor) -> None:
    cursor.execute("SELECT COUNT(1) FROM menu_schedule")
    if int(cursor.fetchone()[0] or 0) > 0:
        return

    rows = [
        (day, meal_type, normalize_clock(start), normalize_clock(end))
        for day in range(7)
        for meal_type, (start, end) in DEFAULT_MEAL_WINDOWS.items()
    ]
    cursor.executemany(
        """
        INSERT INTO menu_schedule (day_of_week, meal_type, start_time, end_time)
        VALUES (?, ?, ?, ?)
        """,
        rows,
    )


def create_tables():
    conn = connect_db()
    ensure_schema(conn)
    cursor = conn.cursor()
    if SEED_DEFAULT_SCHEDULE:
        _seed_default_schedule(cursor)
    conn.commit()
    conn.close()


# -----------------------------
# Students
# -----------------------------
def add_student(
    *,
    student_id: str,
    first_name: str,
    last_name: str,
    department: str,
    middle_name: str | None = None,
    gender: str | None = None,
    email: str | None = None,
    phone: str | None = None,
    batch: str | None = None,
    enrollment_year: int | None = None,
    program: str | None = None,
    status: StudentStatus = "active",
    rfid_uid: str | None = None,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO students (
                student_id, first_name, middle_name, last_name, gender, email, phone,
                department, batch, enrollment_year, program, status, rfid_uid
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                student_id,
                first_name,
                middle_name,
                last_name,
                gender,
                email,
                phone,
                department,
                batch,
                enrollment_year,
                program,
                status,
                rfid_uid or None,
            ),
        )
        row_id = int(cur.lastrowid)
        conn.commit()
        return row_id
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_student(student_id: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT id, {", ".join(STUDENT_COLUMNS)}
        FROM students
        WHERE student_id = ?
        """,
        (student_id,),
    )
    row = _row(cur)
    conn.close()
    return row


def get_student_by_rfid(rfid_uid: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT id, {", ".join(STUDENT_COLUMNS)}
        FROM students
        WHERE rfid_uid = ?
        """,
        (rfid_uid,),
    )
    row = _row(cur)
    conn.close()
    return row


def list_students(
    *,
    department: str | None = None,
    batch: str | None = None,
    status: StudentStatus | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict[str, Any]], int]:
    where = ["1=1"]
    params: list[Any] = []

    if department:
        where.append("department = ?")
        params.append(department)
    if batch:
        where.append("batch = ?")
        params.append(batch)
    if status:
        where.append("status = ?")
        params.append(status)
    if search:
        term = f"%{search.strip().lower()}%"
        where.append(
            """
            (
                LOWER(first_name || ' ' || COALESCE(middle_name || ' ', '') || last_name) LIKE ?
                OR LOWER(student_id) LIKE ?
                OR LOWER(COALESCE(email, '')) LIKE ?
            )
            """
        )
        params.extend([term, term, term])

    where_sql = " AND ".join(where)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(1) FROM students WHERE {where_sql}", params)
    total = int(cur.fetchone()[0] or 0)

    cur.execute(
        f"""
        SELECT id, {", ".join(STUDENT_COLUMNS)}
        FROM students
        WHERE {where_sql}
        ORDER BY first_name, last_name, student_id
        LIMIT ?
        OFFSET ?
        """,
        [*params, max(1, min(int(limit), 1000)), max(0, int(offset))],
    )
    rows = _rows(cur)
    conn.close()
    return rows, total


def update_student(student_id: str, updates: dict[str, Any]) -> bool:
    """Apply editable column updates. Raises ValueError for immutable/unknown columns."""
    unknown = set(updates) - STUDENT_EDITABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update column(s): {', '.join(sorted(unknown))}")
    if not updates:
        return get_student(student_id) is not None

    assignments = ", ".join(f"{col} = ?" for col in updates)
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            f"""
            UPDATE students
            SET {assignments},
                updated_at = CURRENT_TIMESTAMP
            WHERE student_id = ?
            """,
            [*updates.values(), student_id],
        )
        changed = cur.rowcount > 0
        conn.commit()
        return changed
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def set_student_status(student_id: str, status: StudentStatus) -> bool:
    return update_student(student_id, {"status": status})


def set_student_qr_payload(student_id: str, payload: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE students
        SET qr_payload = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE student_id = ?
        """,
        (payload, student_id),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


# -----------------------------
# Weekly menu schedule
# -----------------------------
def get_schedule(day_of_week: int | None = None) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    query = """
        SELECT id, day_of_week, meal_type, start_time, end_time, menu_description, is_active, updated_at
        FROM menu_schedule
    """
    params: list[Any] = []
    if day_of_week is not None:
        query += " WHERE day_of_week = ?"
        params.append(day_of_week)
    query += " ORDER BY day_of_week, start_time, meal_type"
    cur.execute(query, params)
    rows = _rows(cur)
    conn.close()
    for row in rows:
        row["is_active"] = bool(row["is_active"])
    return rows


def list_active_schedule_for_day(day_of_week: int) -> list[dict[str, Any]]:
    return [row for row in get_schedule(day_of_week) if row["is_active"]]


def upsert_schedule_entry(
    *,
    day_of_week: int,
    meal_type: MealType,
    start_time: str,
    end_time: str,
    menu_description: str = "",
    is_active: bool = True,
) -> dict[str, Any]:
    start_hm = normalize_clock(start_time)
    end_hm = normalize_clock(end_time)
    if start_hm >= end_hm:
        raise ValueError("End time must be after start time.")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO menu_schedule (day_of_week, meal_type, start_time, end_time, menu_description, is_active)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(day_of_week, meal_type) DO UPDATE SET
            start_time = excluded.start_time,
            end_time = excluded.end_time,
            menu_description = excluded.menu_description,
            is_active = excluded.is_active,
            updated_at = CURRENT_TIMESTAMP
        """,
        (day_of_week, meal_type, start_hm, end_hm, menu_description, 1 if is_active else 0),
    )
    conn.commit()
    cur.execute(
        """
        SELECT id, day_of_week, meal_type, start_time, end_time, menu_description, is_active, updated_at
        FROM menu_schedule
        WHERE day_of_week = ? AND meal_type = ?
        """,
        (day_of_week, meal_type),
    )
    row = _row(cur)
    conn.close()
    if row:
        row["is_active"] = bool(row["is_active"])
    return cast(dict[str, Any], row)


# -----------------------------
# Denials
# -----------------------------
def _denial_from_row(row: dict[str, Any]) -> dict[str, Any]:
    try:
        meal_types = json.loads(row.get("meal_types") or "[]")
    except (TypeError, ValueError):
        meal_types = []
    row["meal_types"] = [m for m in (normalize_meal_type(str(v)) for v in meal_types) if m]
    row["is_active"] = bool(row["is_active"])
    return row


def create_denials(
    student_ids: Iterable[str],
    *,
    meal_types: Iterable[MealType],
    start_date: str,
    end_date: str | None,
    reason: str | None = None,
) -> list[int]:
    meal_json = json.dumps(sorted(set(meal_types), key=MEAL_TYPES.index))
    conn = connect_db()
    cur = conn.cursor()
    created: list[int] = []
    try:
        for student_id in student_ids:
            cur.execute(
                """
                INSERT INTO denied_students (student_id, start_date, end_date, meal_types, reason)
                VALUES (?, ?, ?, ?, ?)
                """,
                (student_id, start_date, end_date, meal_json, reason),
            )
            created.append(int(cur.lastrowid))
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
    return created


def list_denials(
    *,
    active_only: bool = True,
    student_id: str | None = None,
    limit: int = 500,
) -> list[dict[str, Any]]:
    where = ["1=1"]
    params: list[Any] = []
    if active_only:
        where.append("d.is_active = 1")
    if student_id:
        where.append("d.student_id = ?")
        params.append(student_id)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT
            d.id,
            d.student_id,
            s.first_name,
            s.last_name,
            s.department,
            d.start_date,
            d.end_date,
            d.meal_types,
            d.is_active,
            d.reason,
            d.created_at,
            d.released_at
        FROM denied_students d
        LEFT JOIN students s ON s.student_id = d.student_id
        WHERE {" AND ".join(where)}
        ORDER BY d.created_at DESC, d.id DESC
        LIMIT ?
        """,
        [*params, max(1, min(int(limit), 1000))],
    )
    rows = _rows(cur)
    conn.close()
    return [_denial_from_row(row) for row in rows]


def list_active_denials_for_student(student_id: str) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, student_id, start_date, end_date, meal_types, is_active, reason
        FROM denied_students
        WHERE student_id = ? AND is_active = 1
        ORDER BY id
        """,
        (student_id,),
    )
    rows = _rows(cur)
    conn.close()
    return [_denial_from_row(row) for row in rows]


def release_denials(ids: Iterable[int]) -> int:
    id_list = [int(i) for i in ids]
    if not id_list:
        return 0
    placeholders = ", ".join("?" for _ in id_list)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        UPDATE denied_students
        SET is_active = 0,
            released_at = CURRENT_TIMESTAMP
        WHERE is_active = 1 AND id IN ({placeholders})
        """,
        id_list,
    )
    released = cur.rowcount
    conn.commit()
    conn.close()
    return released


# -----------------------------
# Meal records
# -----------------------------
def find_meal_record(student_id: str, meal_type: MealType, meal_date: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, student_id, meal_type, meal_date, consumed_at, source
        FROM meal_records
        WHERE student_id = ? AND meal_type = ? AND meal_date = ?
        LIMIT 1
        """,
        (student_id, meal_type, meal_date),
    )
    row = _row(cur)
    conn.close()
    return row


def insert_meal_record(
    student_id: str,
    meal_type: MealType,
    meal_date: str,
    consumed_at: str,
    source: str = "qr",
) -> int:
    """
    Insert one meal record and return its id.

    The (student_id, meal_type, meal_date) UNIQUE constraint is the source of
    truth for duplicates; a violation raises DuplicateMealRecordError.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO meal_records (student_id, meal_type, meal_date, consumed_at, source)
            VALUES (?, ?, ?, ?, ?)
            """,
            (student_id, meal_type, meal_date, consumed_at, source),
        )
        record_id = int(cur.lastrowid)
        conn.commit()
        return record_id
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        if "UNIQUE" in str(exc).upper():
            raise DuplicateMealRecordError(
                f"Meal already recorded for {student_id} ({meal_type}, {meal_date})"
            ) from exc
        raise
    finally:
        conn.close()


def get_meal_records(
    date: str | None = None,
    meal_type: MealType | None = None,
    student_id: str | None = None,
) -> list[dict[str, Any]]:
    where = ["1=1"]
    params: list[Any] = []
    if student_id:
        where.append("mr.student_id = ?")
        params.append(student_id)
    if date:
        where.append("mr.meal_date = ?")
        params.append(date)
    if meal_type:
        where.append("mr.meal_type = ?")
        params.append(meal_type)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT
            mr.id,
            mr.student_id,
            s.first_name,
            s.last_name,
            s.department,
            mr.meal_type,
            mr.meal_date,
            mr.consumed_at,
            mr.source
        FROM meal_records mr
        LEFT JOIN students s ON s.student_id = mr.student_id
        WHERE {" AND ".join(where)}
        ORDER BY mr.meal_date DESC, mr.consumed_at ASC
        """,
        params,
    )
    rows = _rows(cur)
    conn.close()
    return rows


def get_student_meal_history(student_id: str, limit: int = 100) -> list[dict[str, Any]]:
    """One student's meal records, newest first."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, student_id, meal_type, meal_date, consumed_at, source
        FROM meal_records
        WHERE student_id = ?
        ORDER BY consumed_at DESC, id DESC
        LIMIT ?
        """,
        (student_id, max(1, min(int(limit), 1000))),
    )
    rows = _rows(cur)
    conn.close()
    return rows


def get_daily_meal_summary(date: str) -> dict[str, Any]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            COUNT(1) AS total,
            SUM(CASE WHEN meal_type = 'breakfast' THEN 1 ELSE 0 END) AS breakfast,
            SUM(CASE WHEN meal_type = 'lunch' THEN 1 ELSE 0 END) AS lunch,
            SUM(CASE WHEN meal_type = 'dinner' THEN 1 ELSE 0 END) AS dinner
        FROM meal_records
        WHERE meal_date = ?
        """,
        (date,),
    )
    row = cur.fetchone()
    cur.execute(
        """
        SELECT COUNT(1)
        FROM students
        WHERE status = 'active'
        """
    )
    active_students = int(cur.fetchone()[0] or 0)
    cur.execute(
        """
        SELECT decision_code, COUNT(1)
        FROM scan_events
        WHERE event_date = ? AND decision_code <> 'MEAL_RECORDED'
        GROUP BY decision_code
        """,
        (date,),
    )
    rejected = {str(code): int(count) for code, count in cur.fetchall()}
    conn.close()
    return {
        "date": date,
        "total": int(row[0] or 0) if row else 0,
        "meals": {
            "breakfast": int(row[1] or 0) if row else 0,
            "lunch": int(row[2] or 0) if row else 0,
            "dinner": int(row[3] or 0) if row else 0,
        },
        "active_students": active_students,
        "rejected_scans": rejected,
    }


# -----------------------------
# Scan audit events
# -----------------------------
def insert_scan_event(
    *,
    source: str,
    decision_code: str,
    message: str,
    event_date: str,
    event_time: str,
    raw_token: str | None = None,
    student_id: str | None = None,
    meal_type: str | None = None,
    meal_record_id: int | None = None,
) -> int:
    """
    Insert a single append-only scan audit event and return `scan_events.id`.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO scan_events (
                source,
                raw_token,
                student_id,
                meal_type,
                decision_code,
                message,
                event_date,
                event_time,
                meal_record_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                source,
                raw_token,
                student_id,
                meal_type,
                decision_code,
                message,
                event_date,
                event_time,
                meal_record_id,
            ),
        )
        event_id = int(cur.lastrowid)
        conn.commit()
        return event_id
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def _build_scan_events_where_clause(
    *,
    student_id: str | None = None,
    date: str | None = None,
    decision_code: str | None = None,
    source: str | None = None,
) -> tuple[str, list[Any]]:
    where = ["1=1"]
    params: list[Any] = []

    if student_id is not None:
        where.append("se.student_id = ?")
        params.append(student_id)
    if date is not None:
        where.append("se.event_date = ?")
        params.append(date)
    if decision_code is not None:
        where.append("se.decision_code = ?")
        params.append(decision_code)
    if source is not None:
        where.append("se.source = ?")
        params.append(source)

    return " AND ".join(where), params


def get_scan_events(
    *,
    student_id: str | None = None,
    date: str | None = None,
    decision_code: str | None = None,
    source: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """
    Admin query contract for scan audit history.
    """
    where_sql, params = _build_scan_events_where_clause(
        student_id=student_id,
        date=date,
        decision_code=decision_code,
        source=source,
    )

    safe_limit = max(1, min(int(limit), 500))
    safe_offset = max(0, int(offset))

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT
            se.id,
            se.source,
            se.raw_token,
            se.student_id,
            s.first_name,
            s.last_name,
            se.meal_type,
            se.decision_code,
            se.message,
            se.event_date,
            se.event_time,
            se.meal_record_id,
            se.captured_at
        FROM scan_events se
        LEFT JOIN students s ON s.student_id = se.student_id
        WHERE {where_sql}
        ORDER BY se.captured_at DESC, se.id DESC
        LIMIT ?
        OFFSET ?
        """,
        [*params, safe_limit, safe_offset],
    )
    rows = _rows(cur)
    conn.close()
    return rows


def get_scan_events_total(
    *,
    student_id: str | None = None,
    date: str | None = None,
    decision_code: str | None = None,
    source: str | None = None,
) -> int:
    where_sql, params = _build_scan_events_where_clause(
        student_id=student_id,
        date=date,
        decision_code=decision_code,
        source=source,
    )

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT COUNT(1)
        FROM scan_events se
        WHERE {where_sql}
        """,
        params,
    )
    row = cur.fetchone()
    conn.close()
    return int(row[0] or 0) if row else 0


# -----------------------------
# Resets
# -----------------------------
def clear_meal_records():
    conn = connect_db()
    cur = conn.cursor()

    cur.execute("DELETE FROM meal_records;")
    cur.execute("DELETE FROM scan_events;")
    cur.execute("DELETE FROM sqlite_sequence WHERE name IN ('meal_records', 'scan_events');")
    conn.commit()
    conn.close()


# -----------------------------
# Persistence contract used by the decision engine
# -----------------------------
class SqliteMealStore:
    """MealStore implementation over the module-level sqlite helpers."""

    def find_student_by_id(self, student_id: str) -> dict[str, Any] | None:
        return get_student(student_id)

    def find_student_by_rfid(self, rfid_uid: str) -> dict[str, Any] | None:
        return get_student_by_rfid(rfid_uid)

    def list_active_schedule_for_day(self, day_of_week: int) -> list[dict[str, Any]]:
        return list_active_schedule_for_day(day_of_week)

    def list_active_denials_for_student(self, student_id: str) -> list[dict[str, Any]]:
        return list_active_denials_for_student(student_id)

    def find_meal_record(self, student_id: str, meal_type: MealType, meal_date: str) -> dict[str, Any] | None:
        return find_meal_record(student_id, meal_type, meal_date)

    def insert_meal_record(
        self,
        student_id: str,
        meal_type: MealType,
        meal_date: str,
        consumed_at: str,
        source: str = "qr",
    ) -> int:
        return insert_meal_record(student_id, meal_type, meal_date, consumed_at, source)
