from backend.services.scan_session import ScanSession


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _session(cooldown=3.0):
    clock = FakeClock()
    return ScanSession("camera", cooldown_seconds=cooldown, clock=clock), clock


def test_full_cycle_returns_to_idle_after_cooldown():
    session, clock = _session()
    assert session.state == "IDLE"

    attempt = session.begin("S100")
    assert attempt is not None
    assert session.state == "SCANNING"
    assert session.busy

    assert session.decoded(attempt)
    assert session.state == "VERIFYING"

    assert session.resolve(attempt, "SUCCESS", {"message": "Verified for Lunch"})
    assert session.state == "SUCCESS"
    assert session.busy

    clock.now += 2.9
    assert session.state == "SUCCESS"
    clock.now += 0.1
    assert session.state == "IDLE"
    assert not session.busy
    assert session.snapshot()["last_result"] == {"message": "Verified for Lunch"}


def test_begin_refused_while_busy():
    session, clock = _session()
    attempt = session.begin("S100")
    assert session.begin("S200") is None

    session.decoded(attempt)
    session.resolve(attempt, "DENIED")
    assert session.begin("S200") is None

    clock.now += 3.0
    assert session.begin("S200") is not None


def test_resolve_requires_verifying():
    session, _ = _session()
    attempt = session.begin("S100")
    assert not session.resolve(attempt, "SUCCESS")
    assert session.state == "SCANNING"


def test_cancel_discards_in_flight_result():
    session, _ = _session()
    attempt = session.begin("S100")
    session.decoded(attempt)

    assert session.cancel()
    assert session.state == "IDLE"
    assert not session.is_current(attempt)
    assert not session.resolve(attempt, "SUCCESS", {"message": "late"})
    assert session.state == "IDLE"
    assert session.snapshot()["last_result"] is None


def test_cancel_when_idle_is_noop():
    session, _ = _session()
    assert not session.cancel()


def test_cancel_skips_cooldown():
    session, _ = _session()
    attempt = session.begin("S100")
    session.decoded(attempt)
    session.resolve(attempt, "ERROR")

    assert session.cancel()
    assert session.begin("S200") is not None


def test_abort_returns_undecoded_scan_to_idle():
    session, _ = _session()
    attempt = session.begin(None)
    assert session.abort(attempt)
    assert session.state == "IDLE"
