import json
from datetime import datetime
from urllib.parse import parse_qs, urlparse

from backend.services.qr_payload import (
    RawId,
    StructuredPayload,
    build_qr_payload,
    parse_qr_payload,
    qr_image_url,
)


def test_structured_payload():
    text = '{"studentId": "S100", "name": "Abebe Kebede", "type": "meal_card", "timestamp": "2026-09-01T10:00:00"}'
    assert parse_qr_payload(text) == StructuredPayload("S100", "Abebe Kebede", "2026-09-01T10:00:00")


def test_legacy_university_id_key():
    assert parse_qr_payload('{"universityId": " S200 "}') == StructuredPayload("S200")


def test_fallbacks_to_raw_id():
    assert parse_qr_payload("  S100 ") == RawId("S100")
    # valid JSON, but not a meal card object
    assert parse_qr_payload("12345") == RawId("12345")
    assert parse_qr_payload('{"name": "nobody"}') == RawId('{"name": "nobody"}')
    assert parse_qr_payload('{"studentId": ""}') == RawId('{"studentId": ""}')
    assert parse_qr_payload("{broken") == RawId("{broken")


def test_empty_input():
    assert parse_qr_payload("") is None
    assert parse_qr_payload("   ") is None
    assert parse_qr_payload(None) is None


def test_build_payload_is_parseable():
    student = {"student_id": "S100", "first_name": "Abebe", "middle_name": None, "last_name": "Kebede"}
    text = build_qr_payload(student, issued_at=datetime(2026, 10, 1, 9, 30))

    assert json.loads(text) == {
        "studentId": "S100",
        "name": "Abebe Kebede",
        "type": "meal_card",
        "timestamp": "2026-10-01T09:30:00",
    }
    assert parse_qr_payload(text) == StructuredPayload("S100", "Abebe Kebede", "2026-10-01T09:30:00")


def test_image_url_encodes_payload():
    url = qr_image_url('{"studentId":"S100"}', size=150)
    query = parse_qs(urlparse(url).query)
    assert query["data"] == ['{"studentId":"S100"}']
    assert query["size"] == ["150x150"]
