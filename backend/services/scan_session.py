import threading
import time
from typing import Any, Callable, Literal

from backend.config import SCAN_COOLDOWN_SECONDS

ScanState = Literal["IDLE", "SCANNING", "VERIFYING", "SUCCESS", "DENIED", "ERROR"]
TerminalState = Literal["SUCCESS", "DENIED", "ERROR"]

TERMINAL_STATES: frozenset[str] = frozenset({"SUCCESS", "DENIED", "ERROR"})


class ScanSession:
    """
    Busy flag and display state for one scanning surface.

    IDLE -> SCANNING -> VERIFYING -> SUCCESS | DENIED | ERROR, then back to
    IDLE once the cool-down has elapsed. Each attempt gets a number; a
    cancelled attempt's number goes stale so its late result is dropped.
    """

    def __init__(
        self,
        surface: str,
        cooldown_seconds: float = SCAN_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.surface = surface
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state: ScanState = "IDLE"
        self._attempt = 0
        self._token: str | None = None
        self._resolved_at: float | None = None
        self._last_result: dict[str, Any] | None = None

    def _expire_locked(self) -> None:
        if self._state in TERMINAL_STATES and self._resolved_at is not None:
            if self._clock() - self._resolved_at >= self.cooldown_seconds:
                self._state = "IDLE"
                self._token = None
                self._resolved_at = None

    @property
    def state(self) -> ScanState:
        with self._lock:
            self._expire_locked()
            return self._state

    @property
    def busy(self) -> bool:
        return self.state != "IDLE"

    def begin(self, token: str | None) -> int | None:
        """Claim the surface for a new scan. Returns the attempt number, or None when busy."""
        with self._lock:
            self._expire_locked()
            if self._state != "IDLE":
                return None
            self._attempt += 1
            self._state = "SCANNING"
            self._token = token
            self._resolved_at = None
            return self._attempt

    def decoded(self, attempt: int, token: str | None = None) -> bool:
        with self._lock:
            if attempt != self._attempt or self._state != "SCANNING":
                return False
            self._state = "VERIFYING"
            if token is not None:
                self._token = token
            return True

    def resolve(self, attempt: int, state: TerminalState, result: dict[str, Any] | None = None) -> bool:
        with self._lock:
            if attempt != self._attempt or self._state != "VERIFYING":
                return False
            self._state = state
            self._resolved_at = self._clock()
            self._last_result = result
            return True

    def abort(self, attempt: int) -> bool:
        """Drop an attempt that never produced a token (e.g. no QR in frame)."""
        with self._lock:
            if attempt != self._attempt or self._state != "SCANNING":
                return False
            self._state = "IDLE"
            self._token = None
            return True

    def cancel(self) -> bool:
        """Abort whatever the surface is doing and return it to IDLE."""
        with self._lock:
            self._expire_locked()
            if self._state == "IDLE":
                return False
            self._attempt += 1
            self._state = "IDLE"
            self._token = None
            self._resolved_at = None
            return True

    def is_current(self, attempt: int) -> bool:
        with self._lock:
            return attempt == self._attempt and self._state in {"SCANNING", "VERIFYING"}

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            self._expire_locked()
            return {
                "surface": self.surface,
                "state": self._state,
                "busy": self._state != "IDLE",
                "token": self._token,
                "last_result": self._last_result,
            }
