import cv2
import numpy as np
import pytest

from inference import Detection, DetectionResult


def make_jpeg(width: int = 320, height: int = 240, value: int = 128) -> bytes:
    img = np.full((height, width, 3), value, np.uint8)
    ok, buf = cv2.imencode(".jpg", img)
    assert ok
    return buf.tobytes()


def decode(data: bytes) -> np.ndarray:
    return cv2.imdecode(np.frombuffer(data, np.uint8), cv2.IMREAD_COLOR)


def make_result(*points, count=None) -> DetectionResult:
    dets = [Detection(x=x, y=y, width=40, height=60, confidence=0.9, class_name="person")
            for x, y in points]
    return DetectionResult(detections=dets, count=len(dets) if count is None else count, raw={})


@pytest.fixture
def jpeg() -> bytes:
    return make_jpeg()
