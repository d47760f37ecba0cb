"""Liveness heuristics over the rolling frame history.

Each check is independent and pure: it reads the records it needs and answers
True (looks live), False (looks spoofed) or None (not enough history yet). The
evaluator decides what a None means for the composite score.

Texture, depth and temporal checks are hard gates: a failure raises a spoof
indicator. Blink, head movement and micro-expression only move the score.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from faceauth.face.quality import depth_variation
from faceauth.face.types import LANDMARKS_68, has_68_layout
from faceauth.liveness.texture import LaplacianTextureClassifier, TextureClassifier
from faceauth.utils.log import get_logger
from faceauth.utils.math import point_distance
from faceauth.verification.history import FrameRecord

logger = get_logger(__name__)


@dataclass
class LivenessConfig:
    # Blink: an eye counts as closed when EAR drops below ear_dip_ratio x the open-eye
    # baseline (70th percentile of the window), and must reopen within max_blink_frames.
    ear_dip_ratio: float = 0.75
    ear_baseline_percentile: float = 70.0
    max_blink_frames: int = 6
    blink_min_history: int = 10

    # Head movement: largest per-axis std of pose angles (degrees) must reach this.
    min_pose_std: float = 0.5
    movement_min_history: int = 5

    # Micro-expression: variability of the expression signal must sit inside this band.
    # Below = frozen (photo), above = mask-like / erratic content.
    expression_variability_range: Tuple[float, float] = (0.002, 0.25)
    # Any single expression above this is treated as exaggerated.
    max_expression_peak: float = 0.8
    expression_min_history: int = 5

    # Depth: nose protrusion / face width must stay above min_depth with
    # coefficient of variation at most max_depth_cv.
    min_depth: float = 0.05
    max_depth_cv: float = 0.25
    depth_min_history: int = 4

    # Temporal: consecutive descriptor distance bound, and the distance below which
    # consecutive descriptors are considered byte-for-byte replays.
    max_descriptor_drift: float = 0.4
    frozen_epsilon: float = 1e-4
    temporal_min_history: int = 2


def eye_aspect_ratio(eye: np.ndarray) -> float:
    """(|p1-p5| + |p2-p4|) / (2|p0-p3|) over the six eye points."""
    horizontal = point_distance(eye[0], eye[3])
    if horizontal < 1e-6:
        return 0.0
    vertical = point_distance(eye[1], eye[5]) + point_distance(eye[2], eye[4])
    return vertical / (2.0 * horizontal)


def mean_ear(landmarks) -> Optional[float]:
    if not has_68_layout(landmarks):
        return None
    pts = np.asarray(landmarks, dtype=np.float32)
    left = pts[list(LANDMARKS_68["left_eye"])]
    right = pts[list(LANDMARKS_68["right_eye"])]
    return (eye_aspect_ratio(left) + eye_aspect_ratio(right)) / 2.0


def landmark_expression_features(landmarks) -> Optional[np.ndarray]:
    """Mouth opening and brow raise, both normalised by face geometry."""
    if not has_68_layout(landmarks):
        return None
    pts = np.asarray(landmarks, dtype=np.float32)
    mouth_width = point_distance(pts[LANDMARKS_68["mouth_left"]], pts[LANDMARKS_68["mouth_right"]])
    face_width = point_distance(pts[LANDMARKS_68["jaw_left"]], pts[LANDMARKS_68["jaw_right"]])
    if mouth_width < 1e-6 or face_width < 1e-6:
        return None
    mouth_open = point_distance(pts[LANDMARKS_68["inner_lip_top"]], pts[LANDMARKS_68["inner_lip_bottom"]]) / mouth_width
    brows = pts[list(LANDMARKS_68["left_brow"]) + list(LANDMARKS_68["right_brow"])]
    eyes = pts[list(LANDMARKS_68["left_eye"]) + list(LANDMARKS_68["right_eye"])]
    brow_raise = (float(eyes[:, 1].mean()) - float(brows[:, 1].mean())) / face_width
    return np.array([mouth_open, brow_raise], dtype=np.float64)


class LivenessCheck(ABC):
    name: str = ""
    hard_gate: bool = False
    spoof_tag: Optional[str] = None

    def __init__(self, min_history: int = 1):
        self.min_history = max(1, int(min_history))

    @staticmethod
    def _detected(records: Sequence[FrameRecord]) -> List[FrameRecord]:
        return [r for r in records if r.detection is not None]

    @abstractmethod
    def evaluate(self, records: Sequence[FrameRecord]) -> Optional[bool]:
        """True/False verdict, or None while there is not enough history."""
        pass


class BlinkPatternCheck(LivenessCheck):
    name = "blink_pattern"

    def __init__(self, config: LivenessConfig):
        super().__init__(config.blink_min_history)
        self.config = config

    def evaluate(self, records: Sequence[FrameRecord]) -> Optional[bool]:
        ears = [e for e in (mean_ear(r.detection.landmarks) for r in self._detected(records)) if e is not None]
        if len(ears) < self.min_history:
            return None

        baseline = float(np.percentile(ears, self.config.ear_baseline_percentile))
        threshold = baseline * self.config.ear_dip_ratio
        closed = [e < threshold for e in ears]

        # open -> closed run (1..max_blink_frames) -> open
        i = 1
        while i < len(closed):
            if closed[i] and not closed[i - 1]:
                j = i
                while j < len(closed) and closed[j]:
                    j += 1
                if j < len(closed) and (j - i) <= self.config.max_blink_frames:
                    return True
                i = j
            i += 1
        return False


class HeadMovementCheck(LivenessCheck):
    name = "head_movement"

    def __init__(self, config: LivenessConfig):
        super().__init__(config.movement_min_history)
        self.config = config

    def evaluate(self, records: Sequence[FrameRecord]) -> Optional[bool]:
        poses = [r.pose for r in records if r.pose is not None]
        if len(poses) < self.min_history:
            return None
        angles = np.array([[p.yaw, p.pitch, p.roll] for p in poses], dtype=np.float64)
        motion = float(np.max(np.std(angles, axis=0)))
        return motion >= self.config.min_pose_std


class MicroExpressionCheck(LivenessCheck):
    """Expression probabilities when the model reports them, landmark ratios otherwise."""

    name = "micro_expression"

    def __init__(self, config: LivenessConfig):
        super().__init__(config.expression_min_history)
        self.config = config

    def _series(self, records: Sequence[FrameRecord]) -> Tuple[Optional[np.ndarray], bool]:
        detected = self._detected(records)
        with_expr = [r.detection.expressions for r in detected if r.detection.expressions]
        if len(with_expr) >= self.min_history:
            keys = sorted({k for e in with_expr for k in e})
            return np.array([[e.get(k, 0.0) for k in keys] for e in with_expr], dtype=np.float64), True

        feats = [f for f in (landmark_expression_features(r.detection.landmarks) for r in detected) if f is not None]
        if len(feats) >= self.min_history:
            return np.stack(feats, axis=0), False
        return None, False

    def evaluate(self, records: Sequence[FrameRecord]) -> Optional[bool]:
        series, from_model = self._series(records)
        if series is None:
            return None
        if from_model and float(series[-1].max()) >= self.config.max_expression_peak:
            return False
        variability = float(np.max(np.std(series, axis=0)))
        lo, hi = self.config.expression_variability_range
        return lo <= variability <= hi


class DepthConsistencyCheck(LivenessCheck):
    name = "depth_consistency"
    hard_gate = True
    spoof_tag = "Insufficient depth variation"

    def __init__(self, config: LivenessConfig):
        super().__init__(config.depth_min_history)
        self.config = config

    def evaluate(self, records: Sequence[FrameRecord]) -> Optional[bool]:
        values = [
            depth_variation(r.detection.landmarks)
            for r in self._detected(records)
            if has_68_layout(r.detection.landmarks)
        ]
        if len(values) < self.min_history:
            return None
        arr = np.asarray(values, dtype=np.float64)
        if float(arr.min()) <= self.config.min_depth:
            return False
        cv = float(arr.std() / arr.mean())
        return cv <= self.config.max_depth_cv


class TextureAuthenticityCheck(LivenessCheck):
    name = "texture_authenticity"
    hard_gate = True
    spoof_tag = "Photo/screen detected"

    def __init__(self, classifier: Optional[TextureClassifier] = None):
        super().__init__(1)
        self.classifier = classifier or LaplacianTextureClassifier()

    def evaluate(self, records: Sequence[FrameRecord]) -> Optional[bool]:
        detected = self._detected(records)
        if len(detected) < self.min_history:
            return None
        latest = detected[-1]
        return self.classifier.is_authentic(latest.frame, latest.detection.box)


class TemporalConsistencyCheck(LivenessCheck):
    name = "temporal_consistency"
    hard_gate = True
    spoof_tag = "Temporal inconsistency detected"

    def __init__(self, config: LivenessConfig):
        super().__init__(config.temporal_min_history)
        self.config = config

    def evaluate(self, records: Sequence[FrameRecord]) -> Optional[bool]:
        detected = self._detected(records)
        if len(detected) < self.min_history:
            return None
        descriptors = [r.detection.descriptor for r in detected]
        if len({d.shape[0] for d in descriptors}) != 1:
            return False
        mat = np.stack(descriptors, axis=0).astype(np.float64)
        drifts = np.linalg.norm(np.diff(mat, axis=0), axis=1)
        if float(drifts.max()) > self.config.max_descriptor_drift:
            return False
        # A live face never yields the same descriptor frame after frame.
        return bool(np.any(drifts >= self.config.frozen_epsilon))


def default_checks(
    config: Optional[LivenessConfig] = None,
    texture_classifier: Optional[TextureClassifier] = None,
) -> List[LivenessCheck]:
    cfg = config or LivenessConfig()
    return [
        BlinkPatternCheck(cfg),
        HeadMovementCheck(cfg),
        MicroExpressionCheck(cfg),
        DepthConsistencyCheck(cfg),
        TextureAuthenticityCheck(texture_classifier),
        TemporalConsistencyCheck(cfg),
    ]
