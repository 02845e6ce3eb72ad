import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union
from urllib.parse import urlencode

from backend.config import QR_IMAGE_SERVICE_URL, QR_IMAGE_SIZE

PAYLOAD_TYPE = "meal_card"


@dataclass(frozen=True)
class StructuredPayload:
    student_id: str
    name: str | None = None
    issued_at: str | None = None


@dataclass(frozen=True)
class RawId:
    value: str


QrPayload = Union[StructuredPayload, RawId]


def build_qr_payload(student: dict[str, Any], issued_at: datetime | None = None) -> str:
    name = " ".join(
        part for part in (student.get("first_name"), student.get("middle_name"), student.get("last_name")) if part
    )
    return json.dumps(
        {
            "studentId": student["student_id"],
            "name": name,
            "type": PAYLOAD_TYPE,
            "timestamp": (issued_at or datetime.now()).isoformat(timespec="seconds"),
        },
        separators=(",", ":"),
    )


def parse_qr_payload(text: str | None) -> QrPayload | None:
    """
    Parse scanned QR text.

    A JSON object carrying a non-empty `studentId` (or the older
    `universityId`) is a StructuredPayload. Any other non-empty text is a
    RawId holding the trimmed text. Empty input yields None.
    """
    cleaned = (text or "").strip()
    if not cleaned:
        return None

    try:
        data = json.loads(cleaned)
    except ValueError:
        return RawId(cleaned)

    if isinstance(data, dict):
        student_id = data.get("studentId") or data.get("universityId")
        if student_id is not None and str(student_id).strip():
            name = data.get("name")
            issued = data.get("timestamp")
            return StructuredPayload(
                student_id=str(student_id).strip(),
                name=str(name) if name is not None else None,
                issued_at=str(issued) if issued is not None else None,
            )
    return RawId(cleaned)


def qr_image_url(payload: str, size: int = QR_IMAGE_SIZE) -> str:
    query = urlencode({"size": f"{size}x{size}", "data": payload})
    return f"{QR_IMAGE_SERVICE_URL}?{query}"
