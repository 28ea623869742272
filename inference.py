"""
Crowd Count — Inference Client
==============================

Thin wrapper around the hosted object-detection workflow.

    client = InferenceClient(endpoint, api_key)
    result = client.infer(jpeg_bytes, confidence=0.3)
    result.count, result.detections

One HTTP request per call, no retry.  The call is blocking (``requests``);
async callers offload it with ``asyncio.to_thread``.
"""

from __future__ import annotations

import base64
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from errors import InferenceError, TransportError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


# =====================================================================
#  DATA MODEL
# =====================================================================

@dataclass(frozen=True)
class Detection:
    """One detected object.  ``x``/``y`` is the box centre in source pixels."""

    x: Optional[float]
    y: Optional[float]
    width: float = 0.0
    height: float = 0.0
    confidence: float = 0.0
    class_name: str = ""

    @classmethod
    def from_prediction(cls, pred: dict) -> "Detection":
        return cls(
            x=_as_float(pred.get("x")),
            y=_as_float(pred.get("y")),
            width=_as_float(pred.get("width")) or 0.0,
            height=_as_float(pred.get("height")) or 0.0,
            confidence=min(1.0, max(0.0, _as_float(pred.get("confidence")) or 0.0)),
            class_name=str(pred.get("class") or ""),
        )

    def to_dict(self) -> dict:
        return {
            "x": self.x, "y": self.y,
            "width": self.width, "height": self.height,
            "confidence": self.confidence, "class": self.class_name,
        }


@dataclass
class DetectionResult:
    detections: list[Detection] = field(default_factory=list)
    count: int = 0
    raw: Any = None

    @property
    def predictions(self) -> list[dict]:
        return [d.to_dict() for d in self.detections]


def _as_float(v) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    # NaN / Infinity are valid JSON to requests but not usable coordinates
    return f if math.isfinite(f) else None


def parse_response(payload: Any) -> DetectionResult:
    """Normalise a workflow response into a :class:`DetectionResult`.

    Expected shape::

        {"outputs": [{"count_objects": 4,
                      "predictions": {"predictions": [{...}, ...]}}]}

    Missing pieces fall back to empty predictions, and a missing or
    non-finite ``count_objects`` falls back to the number of predictions.
    The two are kept separate: the service's own count wins when it is present.
    """
    output: dict = {}
    if isinstance(payload, dict):
        outputs = payload.get("outputs")
        if isinstance(outputs, list) and outputs and isinstance(outputs[0], dict):
            output = outputs[0]

    preds = output.get("predictions")
    if isinstance(preds, dict):
        preds = preds.get("predictions")
    if not isinstance(preds, list):
        preds = []

    detections = [Detection.from_prediction(p) for p in preds if isinstance(p, dict)]

    count = output.get("count_objects")
    if (isinstance(count, bool) or not isinstance(count, (int, float))
            or not math.isfinite(count)):
        count = len(detections)

    return DetectionResult(detections=detections, count=int(count), raw=payload)


# =====================================================================
#  CLIENT
# =====================================================================

class InferenceClient:
    """Blocking client for the detection workflow endpoint."""

    def __init__(
        self,
        endpoint: str | None,
        api_key: str | None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    def _body(self, image_b64: str, confidence: float | None) -> dict:
        inputs: dict = {"image": {"type": "base64", "value": image_b64}}
        if confidence is not None:
            inputs["confidence"] = confidence
        return {"api_key": self.api_key, "inputs": inputs}

    def infer(self, frame_bytes: bytes, confidence: float | None = None) -> DetectionResult:
        """Send one image to the service and return its detections.

        Raises:
            InferenceError: on transport failure, timeout, a non-2xx status
                or a body that is not JSON.
        """
        return self.infer_base64(base64.b64encode(frame_bytes).decode("ascii"), confidence)

    def infer_base64(self, image_b64: str, confidence: float | None = None) -> DetectionResult:
        if not self.endpoint:
            raise InferenceError("Inference endpoint is not configured")

        try:
            resp = self._session.post(
                self.endpoint,
                json=self._body(image_b64, confidence),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransportError(f"Inference timed out after {self.timeout:.0f}s") from e
        except requests.RequestException as e:
            raise TransportError(f"Inference request failed: {e}") from e

        if not 200 <= resp.status_code < 300:
            log.error("Inference service returned %d: %s", resp.status_code, resp.text[:200])
            raise InferenceError(
                f"Inference service returned {resp.status_code}", status_code=resp.status_code)

        try:
            payload = resp.json()
        except ValueError as e:
            raise InferenceError("Inference service returned invalid JSON") from e

        return parse_response(payload)

    def close(self):
        self._session.close()
