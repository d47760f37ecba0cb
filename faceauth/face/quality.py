from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import cv2
import numpy as np

from faceauth.face.types import LANDMARKS_68, BoundingBox, Detection, has_68_layout
from faceauth.policy import DecisionPolicy

# Weighted-sum quality: model confidence, face size, depth variation, neutral expression.
QUALITY_WEIGHTS = (0.4, 0.2, 0.2, 0.2)
# depth_variation is roughly 0.1-0.3 on a real face; x10 maps that onto [0, 1].
DEPTH_GAIN = 10.0


def depth_variation(landmarks: Optional[np.ndarray]) -> float:
    """Depth proxy: nose-tip protrusion below the jaw line, over face width.

    A flat print of a face still has a nose below the jaw corners, but a print
    held at an angle or a screen squashes the ratio towards zero and makes it
    jump between frames. Returns 0.0 when the 68-point layout is not available.
    """
    if not has_68_layout(landmarks):
        return 0.0
    pts = np.asarray(landmarks, dtype=np.float32)
    nose_tip = pts[LANDMARKS_68["nose_tip"]]
    jaw_l = pts[LANDMARKS_68["jaw_left"]]
    jaw_r = pts[LANDMARKS_68["jaw_right"]]
    face_width = abs(float(jaw_r[0]) - float(jaw_l[0]))
    if face_width < 1e-6:
        return 0.0
    protrusion = abs(float(nose_tip[1]) - (float(jaw_l[1]) + float(jaw_r[1])) / 2.0)
    return protrusion / face_width


def expression_neutrality(detection: Detection) -> float:
    if not detection.expressions:
        return 0.0
    return float(detection.expressions.get("neutral", 0.0))


class QualityScorer:
    """Pure, stateless quality score for one detection, in [0, 1]."""

    def __init__(self, policy: DecisionPolicy):
        self.policy = policy

    def size_score(self, detection: Detection) -> float:
        return min(1.0, float(detection.box.size) / max(1e-6, float(self.policy.min_face_size)))

    def depth_score(self, detection: Detection) -> float:
        return min(1.0, depth_variation(detection.landmarks) * DEPTH_GAIN)

    def score(self, detection: Detection) -> float:
        w_conf, w_size, w_depth, w_neutral = QUALITY_WEIGHTS
        score = 0.0
        score += w_conf * float(detection.score)
        score += w_size * self.size_score(detection)
        score += w_depth * self.depth_score(detection)
        score += w_neutral * expression_neutrality(detection)
        return float(max(0.0, min(1.0, score)))


@dataclass
class EnvironmentReport:
    """Lighting and focus of the face region, recorded with enrollment samples."""

    brightness: float  # mean gray level 0-255
    sharpness: float  # Laplacian variance scaled to [0, 1]
    brightness_ok: bool
    sharpness_ok: bool

    def as_dict(self) -> dict:
        return {
            "brightness": float(self.brightness),
            "sharpness": float(self.sharpness),
            "brightness_ok": bool(self.brightness_ok),
            "sharpness_ok": bool(self.sharpness_ok),
        }


# Laplacian variance at which a webcam face crop looks fully in focus.
SHARPNESS_FULL_SCALE = 500.0


def _crop(frame: np.ndarray, box: BoundingBox) -> np.ndarray:
    h, w = frame.shape[:2]
    x1, y1, x2, y2 = box.as_int_tuple()
    x1, y1 = max(0, x1), max(0, y1)
    x2, y2 = min(w, x2), min(h, y2)
    if x2 <= x1 or y2 <= y1:
        return frame
    return frame[y1:y2, x1:x2]


def to_gray(image: np.ndarray) -> np.ndarray:
    img = np.asarray(image)
    if img.ndim == 3 and img.shape[2] == 3:
        return cv2.cvtColor(img.astype(np.uint8, copy=False), cv2.COLOR_BGR2GRAY)
    if img.ndim == 3 and img.shape[2] == 1:
        return img[:, :, 0].astype(np.uint8, copy=False)
    return img.astype(np.uint8, copy=False)


def is_image(frame) -> bool:
    return isinstance(frame, np.ndarray) and frame.ndim in (2, 3) and frame.shape[0] > 1 and frame.shape[1] > 1


def assess_environment(frame, box: BoundingBox, policy: DecisionPolicy) -> Optional[EnvironmentReport]:
    """Brightness/sharpness of the face crop, or None if `frame` is not an image."""
    if not is_image(frame):
        return None
    gray = to_gray(_crop(frame, box))
    if gray.size == 0:
        return None
    brightness = float(np.mean(gray))
    lap_var = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    sharpness = min(1.0, lap_var / SHARPNESS_FULL_SCALE)
    lo, hi = policy.brightness_range
    return EnvironmentReport(
        brightness=brightness,
        sharpness=sharpness,
        brightness_ok=lo <= brightness <= hi,
        sharpness_ok=sharpness >= policy.min_sharpness,
    )


def summarize_environment(reports: Sequence[EnvironmentReport], policy: DecisionPolicy) -> Optional[dict]:
    if not reports:
        return None
    brightness = float(np.mean([r.brightness for r in reports]))
    sharpness = float(np.mean([r.sharpness for r in reports]))
    lo, hi = policy.brightness_range
    return EnvironmentReport(
        brightness=brightness,
        sharpness=sharpness,
        brightness_ok=lo <= brightness <= hi,
        sharpness_ok=sharpness >= policy.min_sharpness,
    ).as_dict()
