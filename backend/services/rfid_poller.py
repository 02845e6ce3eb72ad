import threading
import time
from typing import Any, Callable

import httpx

from backend.app_logger import get_logger
from backend.config import RFID_HTTP_TIMEOUT_SECONDS, RFID_POLL_INTERVAL_MS, RFID_READER_URL
from backend.services.verification import ScannerBusyError, VerificationResult, VerificationService

logger = get_logger("rfid")


class RfidPoller:
    """
    Background thread that reads the reader bridge's `GET /rfid/latest`
    and feeds new tags into the RFID scan session.

    A tag is new when its uid (plus the bridge's `scanned_at`/`seq`, if it
    sends one) differs from the last one handled. The last key is forgotten
    after `repeat_window_seconds` (default: the RFID session cool-down), so
    the same card can check in again for a later meal.
    """

    def __init__(
        self,
        service: VerificationService,
        *,
        reader_url: str = RFID_READER_URL,
        interval_ms: int = RFID_POLL_INTERVAL_MS,
        timeout_seconds: float = RFID_HTTP_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
        repeat_window_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service = service
        self.reader_url = reader_url.rstrip("/")
        self.interval_seconds = interval_ms / 1000.0
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._owns_client = client is None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_key: tuple[str, Any] | None = None
        self._last_at = 0.0
        self.repeat_window_seconds = repeat_window_seconds
        self._clock = clock

    def _read_latest(self) -> dict[str, Any] | None:
        try:
            res = self._client.get(f"{self.reader_url}/rfid/latest")
            res.raise_for_status()
            data = res.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("RFID reader poll failed: %s", exc)
            return None
        return data if isinstance(data, dict) else None

    def poll_once(self) -> VerificationResult | None:
        if self.service.session("rfid").busy:
            return None

        data = self._read_latest()
        if not data:
            return None
        uid = str(data.get("uid") or "").strip()
        if not uid:
            return None

        key = (uid, data.get("scanned_at") or data.get("seq"))
        if key == self._last_key and not self._repeat_expired():
            return None

        try:
            result = self.service.verify("rfid", uid, "rfid")
        except ScannerBusyError:
            return None
        self._last_key = key
        self._last_at = self._clock()
        return result

    def _repeat_expired(self) -> bool:
        window = self.repeat_window_seconds
        if window is None:
            window = self.service.session("rfid").cooldown_seconds
        return self._clock() - self._last_at >= window

    def _run(self) -> None:
        logger.info("RFID poller started (%s every %.0f ms)", self.reader_url, self.interval_seconds * 1000)
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("RFID poll tick failed")
            self._stop.wait(self.interval_seconds)
        logger.info("RFID poller stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="rfid-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._owns_client:
            self._client.close()
