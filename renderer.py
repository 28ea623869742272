"""
Crowd Count — Annotation Renderer
=================================

Pure functions: JPEG bytes + detections in, JPEG bytes out.

    render_dots(frame, detections)                     live dot overlay
    render_heatmap(frame, detections)                  radial density heatmap
    render_panel(frame, detections, number, label)     video frame + side panel

Nothing here raises past the module boundary.  A frame that cannot be
decoded or drawn comes back unmodified; a detection that cannot be drawn
is skipped and the rest still render.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import cv2
import numpy as np

from errors import RenderError
from inference import Detection

log = logging.getLogger(__name__)


# =====================================================================
#  CONFIGURATION
# =====================================================================

@dataclass
class RenderConfig:

    # -- Marker scale (radius = clamp(sqrt(w*h) / k, min, max)) --
    live_radius_divisor: float = 5.0
    live_radius_min: float = 5.0
    live_radius_max: float = 20.0
    panel_radius_divisor: float = 6.0
    panel_radius_min: float = 5.0
    panel_radius_max: float = 15.0
    marker_alpha: float = 0.8

    # -- Side panel --
    panel_width: int = 300
    panel_alpha: float = 0.95
    panel_max_listed: int = 8
    panel_title: str = "CROWD ANALYSIS"
    high_density_above: int = 10
    moderate_density_above: int = 5

    # -- Heatmap --
    heatmap_backdrop_alpha: float = 0.7
    heatmap_radius_ratio: float = 0.1

    # -- Output --
    jpeg_quality: int = 90

    # Colours (BGR)
    colour_marker: tuple = (0, 0, 255)
    colour_text: tuple = (255, 255, 255)
    colour_outline: tuple = (0, 0, 0)
    colour_panel: tuple = (30, 30, 30)
    colour_muted: tuple = (136, 136, 136)
    colour_good: tuple = (65, 255, 0)
    colour_warn: tuple = (0, 170, 255)
    colour_bad: tuple = (107, 107, 255)
    colour_high: tuple = (68, 68, 255)
    colour_heat_core: tuple = (0, 0, 255)
    colour_heat_mid: tuple = (0, 255, 255)
    colour_heat_edge: tuple = (255, 0, 0)


DEFAULT_CONFIG = RenderConfig()

_FONT = cv2.FONT_HERSHEY_SIMPLEX


# =====================================================================
#  HELPER FUNCTIONS
# =====================================================================

def _decode(frame_bytes: bytes) -> np.ndarray:
    if not frame_bytes:
        raise RenderError("empty frame")
    img = cv2.imdecode(np.frombuffer(frame_bytes, np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        raise RenderError("frame could not be decoded")
    return img


def _encode(img: np.ndarray, cfg: RenderConfig) -> bytes:
    ok, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, cfg.jpeg_quality])
    if not ok:
        raise RenderError("frame could not be encoded")
    return buf.tobytes()


def _clamp(v, lo, hi):
    return min(hi, max(lo, v))


def marker_radius(det: Detection, divisor: float, lo: float, hi: float) -> float:
    size = math.sqrt(max(0.0, det.width * det.height))
    return _clamp(size / divisor, lo, hi)


def confidence_pct(det: Detection) -> int:
    return int(round(det.confidence * 100))


def confidence_colour(pct: int, cfg: RenderConfig) -> tuple:
    if pct > 80:
        return cfg.colour_good
    if pct > 60:
        return cfg.colour_warn
    return cfg.colour_bad


def density_status(count: int, cfg: RenderConfig) -> tuple[str, tuple]:
    if count > cfg.high_density_above:
        return "HIGH DENSITY", cfg.colour_high
    if count > cfg.moderate_density_above:
        return "MODERATE", cfg.colour_warn
    return "LOW DENSITY", cfg.colour_good


def _has_position(det) -> bool:
    return bool(getattr(det, "x", None)) and bool(getattr(det, "y", None))


def _as_list(detections) -> list:
    if not isinstance(detections, (list, tuple)):
        if detections is not None:
            log.warning("Detections is not a sequence, using empty list")
        return []
    return list(detections)


def _blend_circle(img, centre, radius, colour, alpha):
    cx, cy = centre
    r = int(math.ceil(radius))
    h, w = img.shape[:2]
    x0, y0 = max(0, cx - r), max(0, cy - r)
    x1, y1 = min(w, cx + r + 1), min(h, cy + r + 1)
    if x1 <= x0 or y1 <= y0:
        return
    roi = img[y0:y1, x0:x1]
    layer = roi.copy()
    cv2.circle(layer, (cx - x0, cy - y0), int(round(radius)), colour, -1, cv2.LINE_AA)
    roi[:] = cv2.addWeighted(layer, alpha, roi, 1.0 - alpha, 0)


def _blend_rect(img, x0, y0, x1, y1, colour, alpha):
    roi = img[y0:y1, x0:x1]
    layer = np.empty_like(roi)
    layer[:] = colour
    roi[:] = cv2.addWeighted(layer, alpha, roi, 1.0 - alpha, 0)


def _text(img, text, org, scale, colour, thickness=1, outline=None):
    if outline is not None:
        cv2.putText(img, text, org, _FONT, scale, outline, thickness + 2, cv2.LINE_AA)
    cv2.putText(img, text, org, _FONT, scale, colour, thickness, cv2.LINE_AA)


def _draw_markers(img, detections, divisor, lo, hi, cfg, outlined):
    for det in detections:
        try:
            if not _has_position(det):
                continue
            r = marker_radius(det, divisor, lo, hi)
            cx, cy = int(round(det.x)), int(round(det.y))
            _blend_circle(img, (cx, cy), r, cfg.colour_marker, cfg.marker_alpha)
            _text(img, f"{confidence_pct(det)}%", (int(cx + r + 2), cy), 0.4,
                  cfg.colour_text, 1, cfg.colour_outline if outlined else None)
        except Exception as e:
            log.warning("Error drawing detection %r: %s", det, e)


# =====================================================================
#  PUBLIC API
# =====================================================================

def render_dots(frame_bytes: bytes, detections: Sequence[Detection],
                cfg: RenderConfig = DEFAULT_CONFIG) -> bytes:
    """Draw a filled marker and a confidence label on every detection."""
    detections = _as_list(detections)
    try:
        img = _decode(frame_bytes)
        _draw_markers(img, detections, cfg.live_radius_divisor,
                      cfg.live_radius_min, cfg.live_radius_max, cfg, outlined=False)
        return _encode(img, cfg)
    except Exception as e:
        log.error("Dot render failed, returning original frame: %s", e)
        return frame_bytes


def render_heatmap(frame_bytes: bytes, detections: Sequence[Detection],
                   cfg: RenderConfig = DEFAULT_CONFIG) -> bytes:
    """Dimmed frame with a red-yellow-blue radial gradient on every detection.

    Gradients are composited one after another (source-over), so a later
    detection paints over an earlier one rather than summing with it.
    """
    detections = _as_list(detections)
    try:
        img = _decode(frame_bytes)
        h, w = img.shape[:2]
        canvas = img.astype(np.float32) * cfg.heatmap_backdrop_alpha
        radius = min(w, h) * cfg.heatmap_radius_ratio

        if radius > 0:
            core = np.array(cfg.colour_heat_core, np.float32)
            mid = np.array(cfg.colour_heat_mid, np.float32)
            edge = np.array(cfg.colour_heat_edge, np.float32)
            for det in detections:
                try:
                    if not _has_position(det):
                        continue
                    _paint_gradient(canvas, float(det.x), float(det.y), radius, core, mid, edge)
                except Exception as e:
                    log.warning("Error drawing heat spot %r: %s", det, e)

        return _encode(np.clip(canvas, 0, 255).astype(np.uint8), cfg)
    except Exception as e:
        log.error("Heatmap render failed, returning original frame: %s", e)
        return frame_bytes


def _paint_gradient(canvas, cx, cy, radius, core, mid, edge):
    h, w = canvas.shape[:2]
    x0, y0 = max(0, int(cx - radius)), max(0, int(cy - radius))
    x1, y1 = min(w, int(cx + radius) + 1), min(h, int(cy + radius) + 1)
    if x1 <= x0 or y1 <= y0:
        return

    yy, xx = np.mgrid[y0:y1, x0:x1].astype(np.float32)
    t = np.sqrt((xx - cx) ** 2 + (yy - cy) ** 2) / radius

    inner = t < 0.5
    s = np.where(inner, t / 0.5, (t - 0.5) / 0.5)[..., None]
    colour = np.where(inner[..., None], core + (mid - core) * s, mid + (edge - mid) * s)
    alpha = np.where(inner, 0.8 - 0.4 * s[..., 0], 0.4 - 0.4 * s[..., 0])
    alpha = np.where(t <= 1.0, np.clip(alpha, 0.0, 1.0), 0.0)[..., None]

    roi = canvas[y0:y1, x0:x1]
    roi[:] = roi * (1.0 - alpha) + colour * alpha


def render_panel(frame_bytes: bytes, detections: Sequence[Detection],
                 frame_number: int, timestamp_label: str,
                 cfg: RenderConfig = DEFAULT_CONFIG) -> bytes:
    """Video-frame variant: markers on the frame plus a statistics side panel."""
    detections = _as_list(detections)
    try:
        img = _decode(frame_bytes)
        h, w = img.shape[:2]
        _draw_markers(img, detections, cfg.panel_radius_divisor,
                      cfg.panel_radius_min, cfg.panel_radius_max, cfg, outlined=True)

        canvas = np.zeros((h, w + cfg.panel_width, 3), np.uint8)
        canvas[:, :w] = img

        _blend_rect(canvas, w, 0, w + cfg.panel_width, h, cfg.colour_panel, cfg.panel_alpha)
        _draw_panel(canvas, w + 20, h, detections, frame_number, timestamp_label, cfg)
        return _encode(canvas, cfg)
    except Exception as e:
        log.error("Panel render failed, returning original frame: %s", e)
        return frame_bytes


def _draw_panel(canvas, px, h, detections, frame_number, timestamp_label, cfg):
    count = len(detections)

    _text(canvas, cfg.panel_title, (px, 40), 0.75, cfg.colour_text, 2)
    _text(canvas, str(count), (px, 120), 1.6, cfg.colour_good, 3)
    _text(canvas, "People Detected", (px, 140), 0.5, cfg.colour_text)
    _text(canvas, f"Frame: {frame_number}", (px, 180), 0.45, cfg.colour_muted)
    _text(canvas, f"Time: {timestamp_label}", (px, 200), 0.45, cfg.colour_muted)

    if count > 0:
        _text(canvas, "Detections:", (px, 240), 0.6, cfg.colour_text, 2)
        y = 260
        for i, det in enumerate(detections[:cfg.panel_max_listed]):
            pct = confidence_pct(det)
            _text(canvas, f"{i + 1}. {pct}% confidence", (px, y), 0.4,
                  confidence_colour(pct, cfg))
            y += 16
        if count > cfg.panel_max_listed:
            _text(canvas, f"... and {count - cfg.panel_max_listed} more", (px, y), 0.4,
                  cfg.colour_muted)

    status, colour = density_status(count, cfg)
    cv2.rectangle(canvas, (px, h - 60), (px + 20, h - 40), colour, -1)
    _text(canvas, status, (px + 30, h - 45), 0.4, cfg.colour_text)
