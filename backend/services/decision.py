from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal, Protocol, TypedDict

from backend.app_logger import get_logger
from backend.services.qr_payload import RawId, StructuredPayload, parse_qr_payload
from database.db import MEAL_TYPES, DuplicateMealRecordError, MealType, normalize_meal_type

logger = get_logger("decision")

DecisionKind = Literal["ALLOW", "DENY"]
DenyReason = Literal[
    "OUT_OF_HOURS",
    "UNKNOWN_STUDENT",
    "BLOCKED",
    "DUPLICATE",
    "INTERNAL_ERROR",
]
RecordOutcome = Literal["RECORDED", "DUPLICATE", "WRITE_ERROR"]
TokenSource = Literal["qr", "qr_image", "rfid"]


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    reason: DenyReason | None = None
    student: dict[str, Any] | None = field(default=None, compare=False)
    meal_type: MealType | None = None

    @classmethod
    def allow(cls, student: dict[str, Any], meal_type: MealType) -> "Decision":
        return cls(kind="ALLOW", student=student, meal_type=meal_type)

    @classmethod
    def deny(
        cls,
        reason: DenyReason,
        *,
        student: dict[str, Any] | None = None,
        meal_type: MealType | None = None,
    ) -> "Decision":
        return cls(kind="DENY", reason=reason, student=student, meal_type=meal_type)

    @property
    def allowed(self) -> bool:
        return self.kind == "ALLOW"


class RecordResult(TypedDict):
    outcome: RecordOutcome
    record_id: int | None


class MealStore(Protocol):
    """Persistence operations the decision engine and recorder rely on."""

    def find_student_by_id(self, student_id: str) -> dict[str, Any] | None: ...

    def find_student_by_rfid(self, rfid_uid: str) -> dict[str, Any] | None: ...

    def list_active_schedule_for_day(self, day_of_week: int) -> list[dict[str, Any]]: ...

    def list_active_denials_for_student(self, student_id: str) -> list[dict[str, Any]]: ...

    def find_meal_record(self, student_id: str, meal_type: MealType, meal_date: str) -> dict[str, Any] | None: ...

    def insert_meal_record(
        self,
        student_id: str,
        meal_type: MealType,
        meal_date: str,
        consumed_at: str,
        source: str = "qr",
    ) -> int: ...


def day_of_week(now: datetime) -> int:
    """0 = Sunday .. 6 = Saturday."""
    return (now.weekday() + 1) % 7


def _window_sort_key(entry: dict[str, Any]) -> tuple[str, int]:
    meal = normalize_meal_type(entry.get("meal_type"))
    return str(entry["start_time"]), MEAL_TYPES.index(meal) if meal else len(MEAL_TYPES)


def resolve_meal_type(store: MealStore, now: datetime) -> MealType | None:
    """
    Return the meal being served at `now`, or None outside every window.

    Windows are inclusive at both ends and compared as zero-padded HH:MM
    strings. Overlapping windows pick the earliest start_time, then
    breakfast < lunch < dinner.
    """
    dow = day_of_week(now)
    current = now.strftime("%H:%M")

    matches = []
    for entry in store.list_active_schedule_for_day(dow):
        if not entry.get("is_active", True):
            continue
        meal = normalize_meal_type(entry.get("meal_type"))
        if meal is None:
            continue
        if str(entry["start_time"]) <= current <= str(entry["end_time"]):
            matches.append(entry)

    if not matches:
        return None

    matches.sort(key=_window_sort_key)
    if len(matches) > 1:
        logger.warning(
            "Overlapping meal windows on day %s at %s: %s; using %s",
            dow,
            current,
            ", ".join(f"{m['meal_type']} {m['start_time']}-{m['end_time']}" for m in matches),
            matches[0]["meal_type"],
        )
    return normalize_meal_type(matches[0]["meal_type"])


def denial_applies(denial: dict[str, Any], meal_type: MealType, on_date: date) -> bool:
    """Active, dated `start_date <= on_date <= (end_date or on_date)`, and covering the meal."""
    if not denial.get("is_active", True):
        return False
    day = on_date.isoformat()
    start = str(denial["start_date"])
    end = str(denial.get("end_date") or day)
    if not (start <= day <= end):
        return False
    return meal_type in {normalize_meal_type(str(m)) for m in denial.get("meal_types") or ()}


class AccessDecisionEngine:
    def __init__(self, store: MealStore):
        self.store = store

    def _find_student(self, token: str, source: TokenSource) -> dict[str, Any] | None:
        if source == "rfid":
            uid = token.strip()
            return self.store.find_student_by_rfid(uid) if uid else None

        payload = parse_qr_payload(token)
        if isinstance(payload, StructuredPayload):
            return self.store.find_student_by_id(payload.student_id)
        if isinstance(payload, RawId):
            return self.store.find_student_by_id(payload.value)
        return None

    def decide(self, token: str, now: datetime, source: TokenSource = "qr") -> Decision:
        """
        Run the ordered checks for one scan: meal window, identity, denial,
        duplicate. The first failing check decides. Store failures become
        INTERNAL_ERROR, never a business denial.
        """
        try:
            meal_type = resolve_meal_type(self.store, now)
            if meal_type is None:
                return Decision.deny("OUT_OF_HOURS")

            student = self._find_student(token or "", source)
            if student is None:
                return Decision.deny("UNKNOWN_STUDENT", meal_type=meal_type)

            student_id = str(student["student_id"])
            today = now.date()
            for denial in self.store.list_active_denials_for_student(student_id):
                if denial_applies(denial, meal_type, today):
                    return Decision.deny("BLOCKED", student=student, meal_type=meal_type)

            if self.store.find_meal_record(student_id, meal_type, today.isoformat()) is not None:
                return Decision.deny("DUPLICATE", student=student, meal_type=meal_type)

            return Decision.allow(student, meal_type)
        except Exception:
            logger.exception("Meal verification failed for %s token %r", source, token)
            return Decision.deny("INTERNAL_ERROR")


class AttendanceRecorder:
    def __init__(self, store: MealStore):
        self.store = store

    def record(
        self,
        student_id: str,
        meal_type: MealType,
        meal_date: str,
        consumed_at: str,
        source: str = "qr",
    ) -> RecordResult:
        """
        Persist one meal record. The datastore uniqueness constraint is the
        authoritative duplicate signal, so a lost race reports DUPLICATE.
        """
        try:
            record_id = self.store.insert_meal_record(student_id, meal_type, meal_date, consumed_at, source)
        except DuplicateMealRecordError:
            logger.info("Rejected duplicate meal record for %s (%s, %s)", student_id, meal_type, meal_date)
            return {"outcome": "DUPLICATE", "record_id": None}
        except Exception:
            logger.exception("Failed to write meal record for %s (%s, %s)", student_id, meal_type, meal_date)
            return {"outcome": "WRITE_ERROR", "record_id": None}
        return {"outcome": "RECORDED", "record_id": record_id}
