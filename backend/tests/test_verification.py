import threading
import time

import httpx
import pytest

from backend.services.decision import AccessDecisionEngine, Decision
from backend.services.rfid_poller import RfidPoller
from backend.services.verification import ScannerBusyError, UndecodableScanError, VerificationService
from conftest import MONDAY_0800

MONDAY = 1


@pytest.fixture()
def audit_log():
    return []


@pytest.fixture()
def service(fake_store, audit_log):
    fake_store.add_window(MONDAY, "breakfast", "07:00", "09:00")
    fake_store.add_student("S100", rfid_uid="04A1B2", first_name="Abebe", last_name="Kebede")

    def write_audit(**event):
        audit_log.append(event)
        return len(audit_log)

    svc = VerificationService(
        fake_store,
        decision_timeout=1.0,
        cooldown_seconds=0,
        clock=lambda: MONDAY_0800,
        audit_writer=write_audit,
    )
    yield svc
    svc.shutdown()


def test_success_result_and_audit(service, fake_store, audit_log):
    result = service.verify("camera", "S100", "qr")

    assert result["outcome"] == "MEAL_RECORDED"
    assert result["verified"] is True
    assert result["decision"] == "ALLOW"
    assert result["state"] == "SUCCESS"
    assert result["cue"] == "success"
    assert result["message"] == "Verified for Breakfast"
    assert result["student"] == {"student_id": "S100", "name": "Abebe Kebede", "department": "CS", "batch": None}
    assert result["meal_record_id"] == 1
    assert result["scan_event_id"] == 1
    assert ("S100", "breakfast", "2026-10-19") in fake_store.records
    assert audit_log[0]["decision_code"] == "MEAL_RECORDED"
    assert audit_log[0]["meal_record_id"] == 1


@pytest.mark.parametrize(
    "setup,token,outcome,state,cue,message",
    [
        (lambda s: None, "GHOST", "UNKNOWN_STUDENT", "DENIED", "reject", "Unregistered card or QR code."),
        (
            lambda s: s.add_denial("S100", ["breakfast"], "2026-10-19", "2026-10-19"),
            "S100",
            "BLOCKED",
            "DENIED",
            "warning",
            "Access denied for this meal. Refer to management.",
        ),
        (
            lambda s: s.records.update({("S100", "breakfast", "2026-10-19"): {"id": 9}}),
            "S100",
            "DUPLICATE",
            "DENIED",
            "warning",
            "Already eaten this meal today.",
        ),
        (
            lambda s: s.fail_on.add("find_meal_record"),
            "S100",
            "INTERNAL_ERROR",
            "ERROR",
            "reject",
            "Verification error. Please try again.",
        ),
        (
            lambda s: s.fail_on.add("insert_meal_record"),
            "S100",
            "WRITE_ERROR",
            "ERROR",
            "reject",
            "Meal could not be recorded. Please rescan.",
        ),
    ],
)
def test_each_outcome_has_distinct_display(service, fake_store, setup, token, outcome, state, cue, message):
    setup(fake_store)
    result = service.verify("camera", token, "qr")
    assert result["outcome"] == outcome
    assert result["verified"] is False
    assert result["decision"] == "DENY"
    assert result["state"] == state
    assert result["cue"] == cue
    assert result["message"] == message
    assert service.session("camera").snapshot()["last_result"]["outcome"] == outcome


def test_out_of_hours(service):
    service.clock = lambda: MONDAY_0800.replace(hour=10)
    result = service.verify("camera", "S100", "qr")
    assert result["outcome"] == "OUT_OF_HOURS"
    assert result["message"] == "Outside meal hours."
    assert result["meal_type"] is None


def test_decision_deadline_yields_internal_error(service, monkeypatch):
    release = threading.Event()

    def slow_decide(self, token, now, source="qr"):
        release.wait(5)
        return Decision.allow({"student_id": "S100"}, "breakfast")

    monkeypatch.setattr(AccessDecisionEngine, "decide", slow_decide)
    service.decision_timeout = 0.2

    started = time.monotonic()
    result = service.verify("camera", "S100", "qr")
    release.set()

    assert time.monotonic() - started < 2
    assert result["outcome"] == "INTERNAL_ERROR"
    assert result["meal_record_id"] is None


def test_hung_decisions_do_not_starve_later_scans(service, monkeypatch):
    release = threading.Event()
    original = AccessDecisionEngine.decide
    hung = []

    def sometimes_hung(self, token, now, source="qr"):
        if token == "HANG":
            hung.append(token)
            release.wait(5)
        return original(self, token, now, source)

    monkeypatch.setattr(AccessDecisionEngine, "decide", sometimes_hung)
    service.decision_timeout = 0.1

    try:
        for _ in range(5):
            assert service.verify("camera", "HANG", "qr")["outcome"] == "INTERNAL_ERROR"
        service.decision_timeout = 1.0
        assert service.verify("camera", "S100", "qr")["outcome"] == "MEAL_RECORDED"
    finally:
        release.set()
    assert service.abandoned_decisions == 5
    assert len(hung) == 5


def test_busy_surface_rejects_second_scan(service):
    service.session("camera").cooldown_seconds = 60
    service.verify("camera", "S100", "qr")

    with pytest.raises(ScannerBusyError):
        service.verify("camera", "S100", "qr")
    # the other surface has its own session
    assert service.verify("rfid", "04A1B2", "rfid")["outcome"] == "DUPLICATE"


def test_cancel_before_decision_skips_record(service, fake_store, monkeypatch):
    entered = threading.Event()
    release = threading.Event()
    original = AccessDecisionEngine.decide

    def gated_decide(self, token, now, source="qr"):
        entered.set()
        release.wait(5)
        return original(self, token, now, source)

    monkeypatch.setattr(AccessDecisionEngine, "decide", gated_decide)
    results = []
    worker = threading.Thread(target=lambda: results.append(service.verify("camera", "S100", "qr")))
    worker.start()
    assert entered.wait(5)

    assert service.cancel("camera") is True
    release.set()
    worker.join(5)

    assert results[0]["outcome"] == "CANCELLED"
    assert fake_store.records == {}
    assert service.session("camera").state == "IDLE"


def test_undecodable_input_frees_session(service):
    with pytest.raises(UndecodableScanError):
        service.verify("camera", object(), "qr_image", decode=lambda frame: None)
    assert service.session("camera").state == "IDLE"


def test_camera_and_rfid_race_records_once(service, fake_store, monkeypatch):
    barrier = threading.Barrier(2)
    original = AccessDecisionEngine.decide

    def synced_decide(self, token, now, source="qr"):
        try:
            barrier.wait(0.5)
        except threading.BrokenBarrierError:
            pass
        return original(self, token, now, source)

    monkeypatch.setattr(AccessDecisionEngine, "decide", synced_decide)
    results = []
    lock = threading.Lock()

    def scan(surface, token, source):
        res = service.verify(surface, token, source)
        with lock:
            results.append(res["outcome"])

    threads = [
        threading.Thread(target=scan, args=("camera", "S100", "qr")),
        threading.Thread(target=scan, args=("rfid", "04A1B2", "rfid")),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert sorted(results) == ["DUPLICATE", "MEAL_RECORDED"]
    assert len(fake_store.records) == 1


def test_audit_failure_does_not_change_outcome(service):
    def broken_audit(**event):
        raise RuntimeError("audit table gone")

    service.audit_writer = broken_audit
    result = service.verify("camera", "S100", "qr")
    assert result["outcome"] == "MEAL_RECORDED"
    assert result["scan_event_id"] is None


def _reader(responses):
    calls = []

    def handler(request: httpx.Request):
        calls.append(str(request.url))
        item = responses.pop(0) if responses else {"uid": ""}
        if isinstance(item, int):
            return httpx.Response(item)
        return httpx.Response(200, json=item)

    return httpx.Client(transport=httpx.MockTransport(handler)), calls


def test_rfid_poller_verifies_new_tags_once(service, fake_store):
    client, calls = _reader([{"uid": "04A1B2"}, {"uid": "04A1B2"}, {"uid": ""}])
    poller = RfidPoller(service, reader_url="http://reader.local/", client=client, repeat_window_seconds=60)

    first = poller.poll_once()
    assert first["outcome"] == "MEAL_RECORDED"
    assert first["source"] == "rfid"
    assert poller.poll_once() is None
    assert poller.poll_once() is None
    assert calls[0] == "http://reader.local/rfid/latest"
    assert len(fake_store.records) == 1


def test_rfid_poller_reads_same_card_again_after_window(service, fake_store):
    fake_store.add_window(MONDAY, "lunch", "12:00", "14:00")
    client, _ = _reader([{"uid": "04A1B2"}] * 3)
    ticks = [100.0]
    poller = RfidPoller(
        service,
        reader_url="http://reader.local",
        client=client,
        repeat_window_seconds=3,
        clock=lambda: ticks[0],
    )

    assert poller.poll_once()["meal_type"] == "breakfast"
    ticks[0] += 1
    assert poller.poll_once() is None

    service.clock = lambda: MONDAY_0800.replace(hour=12, minute=30)
    ticks[0] += 5
    result = poller.poll_once()
    assert result["outcome"] == "MEAL_RECORDED"
    assert result["meal_type"] == "lunch"
    assert len(fake_store.records) == 2


def test_rfid_poller_window_defaults_to_session_cooldown(service):
    client, _ = _reader([{"uid": "04A1B2"}, {"uid": "04A1B2"}])
    poller = RfidPoller(service, reader_url="http://reader.local", client=client)

    assert poller.poll_once()["outcome"] == "MEAL_RECORDED"
    # cool-down is 0 here, so the card is read again straight away
    assert poller.poll_once()["outcome"] == "DUPLICATE"


def test_rfid_poller_accepts_repeat_uid_with_new_scan_stamp(service):
    client, _ = _reader([{"uid": "04A1B2", "seq": 1}, {"uid": "04A1B2", "seq": 2}])
    poller = RfidPoller(service, reader_url="http://reader.local", client=client)

    assert poller.poll_once()["outcome"] == "MEAL_RECORDED"
    assert poller.poll_once()["outcome"] == "DUPLICATE"


def test_rfid_poller_survives_reader_errors(service):
    client, _ = _reader([503, {"uid": "04A1B2"}])
    poller = RfidPoller(service, reader_url="http://reader.local", client=client)

    assert poller.poll_once() is None
    assert poller.poll_once()["outcome"] == "MEAL_RECORDED"


def test_rfid_poller_skips_while_session_busy(service):
    client, calls = _reader([{"uid": "04A1B2"}])
    poller = RfidPoller(service, reader_url="http://reader.local", client=client)

    service.session("rfid").begin("manual")
    assert poller.poll_once() is None
    assert calls == []


def test_rfid_poller_thread_start_stop(service):
    client, calls = _reader([{"uid": "04A1B2"}])
    poller = RfidPoller(service, reader_url="http://reader.local", interval_ms=20, client=client)

    poller.start()
    deadline = time.monotonic() + 2
    while len(calls) < 2 and time.monotonic() < deadline:
        time.sleep(0.02)
    poller.stop()

    assert not poller.running
    assert len(calls) >= 2
