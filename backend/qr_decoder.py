import cv2  # type: ignore
import numpy as np  # type: ignore

QR_DETECTOR = cv2.QRCodeDetector()


def decode_image_bytes(data: bytes):
    """Decode JPG/PNG bytes into a BGR frame, or None if the bytes are not an image."""
    if not data:
        return None
    img_array = np.frombuffer(data, np.uint8)
    return cv2.imdecode(img_array, cv2.IMREAD_COLOR)


def decode_qr_from_frame(frame_bgr) -> str | None:
    """
    Returns the text of the first QR code found in the frame, or None.
    """
    text, points, _ = QR_DETECTOR.detectAndDecode(frame_bgr)
    if text:
        return text

    # retry on a contrast-normalised grayscale copy (dim camera frames)
    gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
    gray = cv2.equalizeHist(gray)
    text, points, _ = QR_DETECTOR.detectAndDecode(gray)
    return text or None
