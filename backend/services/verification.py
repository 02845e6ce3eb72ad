import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as DecisionTimeout
from datetime import datetime
from typing import Any, Callable, Literal, TypedDict

from backend.app_logger import get_logger
from backend.config import DECISION_TIMEOUT_SECONDS, SCAN_COOLDOWN_SECONDS
from backend.services.decision import (
    AccessDecisionEngine,
    AttendanceRecorder,
    Decision,
    MealStore,
    TokenSource,
)
from backend.services.scan_session import ScanSession, ScanState
from database.db import SqliteMealStore, insert_scan_event

logger = get_logger("verification")

Surface = Literal["camera", "rfid"]
SURFACES: tuple[Surface, ...] = ("camera", "rfid")

Outcome = Literal[
    "MEAL_RECORDED",
    "OUT_OF_HOURS",
    "UNKNOWN_STUDENT",
    "BLOCKED",
    "DUPLICATE",
    "INTERNAL_ERROR",
    "WRITE_ERROR",
    "CANCELLED",
]
Cue = Literal["success", "warning", "reject"]

# outcome -> (session state, cue, operator message)
OUTCOME_DISPLAY: dict[str, tuple[ScanState, Cue | None, str]] = {
    "MEAL_RECORDED": ("SUCCESS", "success", "Verified for {meal}"),
    "OUT_OF_HOURS": ("DENIED", "warning", "Outside meal hours."),
    "UNKNOWN_STUDENT": ("DENIED", "reject", "Unregistered card or QR code."),
    "BLOCKED": ("DENIED", "warning", "Access denied for this meal. Refer to management."),
    "DUPLICATE": ("DENIED", "warning", "Already eaten this meal today."),
    "INTERNAL_ERROR": ("ERROR", "reject", "Verification error. Please try again."),
    "WRITE_ERROR": ("ERROR", "reject", "Meal could not be recorded. Please rescan."),
    "CANCELLED": ("IDLE", None, "Scan cancelled."),
}


class ScannerBusyError(Exception):
    def __init__(self, surface: str):
        super().__init__(f"Scanner '{surface}' is busy.")
        self.surface = surface


class UndecodableScanError(Exception):
    """The scan input did not yield an identity token."""


class VerificationResult(TypedDict):
    surface: str
    source: str
    outcome: Outcome
    verified: bool
    decision: Literal["ALLOW", "DENY"] | None
    state: ScanState
    cue: Cue | None
    message: str
    student: dict[str, Any] | None
    meal_type: str | None
    meal_record_id: int | None
    scan_event_id: int | None
    event_date: str
    event_time: str


def _student_summary(student: dict[str, Any] | None) -> dict[str, Any] | None:
    if not student:
        return None
    name = " ".join(
        part for part in (student.get("first_name"), student.get("middle_name"), student.get("last_name")) if part
    )
    return {
        "student_id": student.get("student_id"),
        "name": name,
        "department": student.get("department"),
        "batch": student.get("batch"),
    }


class VerificationService:
    """
    Single decision path shared by every scanning surface.

    decide + record run under one lock, so the camera and the RFID poller
    never evaluate the same meal concurrently inside this process. The
    meal_records UNIQUE constraint covers writers outside it.
    """

    def __init__(
        self,
        store: MealStore | None = None,
        *,
        decision_timeout: float = DECISION_TIMEOUT_SECONDS,
        cooldown_seconds: float = SCAN_COOLDOWN_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
        audit_writer: Callable[..., int] | None = insert_scan_event,
    ):
        self.store = store if store is not None else SqliteMealStore()
        self.engine = AccessDecisionEngine(self.store)
        self.recorder = AttendanceRecorder(self.store)
        self.decision_timeout = decision_timeout
        self.clock = clock
        self.audit_writer = audit_writer
        self.sessions: dict[str, ScanSession] = {
            surface: ScanSession(surface, cooldown_seconds) for surface in SURFACES
        }
        self._lock = threading.Lock()
        # decisions run one at a time under self._lock
        self._executor = self._new_executor()
        self.abandoned_decisions = 0

    def session(self, surface: str) -> ScanSession:
        try:
            return self.sessions[surface]
        except KeyError:
            raise KeyError(f"Unknown scanning surface: {surface}") from None

    def sessions_snapshot(self) -> list[dict[str, Any]]:
        return [session.snapshot() for session in self.sessions.values()]

    def cancel(self, surface: str) -> bool:
        cancelled = self.session(surface).cancel()
        if cancelled:
            logger.info("Scan on %s cancelled by operator", surface)
        return cancelled

    @staticmethod
    def _new_executor() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="meal-decision")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _decide_with_deadline(self, token: str, now: datetime, source: TokenSource) -> Decision:
        future = self._executor.submit(self.engine.decide, token, now, source)
        try:
            return future.result(timeout=self.decision_timeout)
        except DecisionTimeout:
            # a running call cannot be cancelled; leave it on the old worker
            future.cancel()
            self._executor.shutdown(wait=False)
            self._executor = self._new_executor()
            self.abandoned_decisions += 1
            logger.error(
                "Meal decision for %s token %r exceeded %.1fs deadline (%d abandoned so far)",
                source,
                token,
                self.decision_timeout,
                self.abandoned_decisions,
            )
            return Decision.deny("INTERNAL_ERROR")

    def verify(
        self,
        surface: str,
        raw: Any,
        source: TokenSource,
        decode: Callable[[Any], str | None] | None = None,
    ) -> VerificationResult:
        """
        Run one scan attempt on `surface`.

        Raises ScannerBusyError while the surface is mid-scan or cooling
        down, and UndecodableScanError when `decode` finds no token.
        """
        session = self.session(surface)
        attempt = session.begin(raw if decode is None else None)
        if attempt is None:
            raise ScannerBusyError(surface)

        if decode is not None:
            try:
                token = decode(raw)
            except Exception:
                session.abort(attempt)
                raise
            if not token:
                session.abort(attempt)
                raise UndecodableScanError("No QR code found in image.")
        else:
            token = str(raw or "")

        session.decoded(attempt, token)

        with self._lock:
            now = self.clock()
            decision: Decision | None = None
            meal_record_id: int | None = None

            if not session.is_current(attempt):
                outcome: Outcome = "CANCELLED"
            else:
                decision = self._decide_with_deadline(token, now, source)
                if not session.is_current(attempt):
                    outcome = "CANCELLED"
                elif decision.allowed:
                    student_id = str(decision.student["student_id"])  # type: ignore[index]
                    written = self.recorder.record(
                        student_id,
                        decision.meal_type,  # type: ignore[arg-type]
                        now.date().isoformat(),
                        now.isoformat(timespec="seconds"),
                        source,
                    )
                    meal_record_id = written["record_id"]
                    outcome = "MEAL_RECORDED" if written["outcome"] == "RECORDED" else written["outcome"]
                else:
                    outcome = decision.reason or "INTERNAL_ERROR"

        result = self._build_result(surface, source, token, now, outcome, decision, meal_record_id)
        if outcome != "CANCELLED":
            session.resolve(attempt, result["state"], dict(result))  # type: ignore[arg-type]
        logger.info(
            "Scan %s via %s -> %s (student=%s meal=%s)",
            surface,
            source,
            outcome,
            result["student"]["student_id"] if result["student"] else None,
            result["meal_type"],
        )
        return result

    def _build_result(
        self,
        surface: str,
        source: str,
        token: str,
        now: datetime,
        outcome: Outcome,
        decision: Decision | None,
        meal_record_id: int | None,
    ) -> VerificationResult:
        state, cue, template = OUTCOME_DISPLAY[outcome]
        meal_type = decision.meal_type if decision else None
        message = template.format(meal=(meal_type or "").capitalize())
        student = _student_summary(decision.student if decision else None)
        event_date = now.date().isoformat()
        event_time = now.strftime("%H:%M:%S")

        scan_event_id = self._audit(
            source=source,
            raw_token=token,
            student_id=student["student_id"] if student else None,
            meal_type=meal_type,
            decision_code=outcome,
            message=message,
            event_date=event_date,
            event_time=event_time,
            meal_record_id=meal_record_id,
        )
        return {
            "surface": surface,
            "source": source,
            "outcome": outcome,
            "verified": outcome == "MEAL_RECORDED",
            # final verdict: an allowed decision whose write failed reports DENY
            "decision": ("ALLOW" if outcome == "MEAL_RECORDED" else "DENY") if decision else None,
            "state": state,
            "cue": cue,
            "message": message,
            "student": student,
            "meal_type": meal_type,
            "meal_record_id": meal_record_id,
            "scan_event_id": scan_event_id,
            "event_date": event_date,
            "event_time": event_time,
        }

    def _audit(self, **event: Any) -> int | None:
        if self.audit_writer is None:
            return None
        try:
            return self.audit_writer(**event)
        except Exception:
            # the scan outcome stands even if the audit row is lost
            logger.exception("Failed to write scan audit event %s", event.get("decision_code"))
            return None
