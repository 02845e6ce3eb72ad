from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from backend.qr_decoder import decode_image_bytes, decode_qr_from_frame
from backend.services.verification import (
    SURFACES,
    ScannerBusyError,
    UndecodableScanError,
    VerificationService,
)

router = APIRouter(prefix="/verify")

BUSY_DETAIL = "Scanner is busy; wait for the current scan to finish."


class QrScan(BaseModel):
    payload: str


class RfidScan(BaseModel):
    uid: str


def _service(request: Request) -> VerificationService:
    return request.app.state.verification


@router.post("/qr")
def verify_qr(payload: QrScan, request: Request):
    try:
        return _service(request).verify("camera", payload.payload, "qr")
    except ScannerBusyError:
        raise HTTPException(status_code=409, detail=BUSY_DETAIL)


@router.post("/qr-image")
async def verify_qr_image(request: Request, file: UploadFile = File(...)):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    data = await file.read()
    frame = decode_image_bytes(data)
    if frame is None:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    try:
        return await run_in_threadpool(
            _service(request).verify, "camera", frame, "qr_image", decode_qr_from_frame
        )
    except ScannerBusyError:
        raise HTTPException(status_code=409, detail=BUSY_DETAIL)
    except UndecodableScanError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/rfid")
def verify_rfid(payload: RfidScan, request: Request):
    uid = payload.uid.strip()
    if not uid:
        raise HTTPException(status_code=400, detail="RFID uid is required.")
    try:
        return _service(request).verify("rfid", uid, "rfid")
    except ScannerBusyError:
        raise HTTPException(status_code=409, detail=BUSY_DETAIL)


@router.get("/sessions")
def sessions(request: Request):
    return _service(request).sessions_snapshot()


@router.post("/sessions/{surface}/cancel")
def cancel_session(surface: str, request: Request):
    if surface not in SURFACES:
        raise HTTPException(status_code=404, detail="Unknown scanning surface.")
    cancelled = _service(request).cancel(surface)
    return {"ok": True, "surface": surface, "cancelled": cancelled}
