"""Head pose estimation.

Enrollment needs yaw to decide which required angle a sample belongs to, and
the liveness checks need pose over time to rule out static photos. The
descriptor model may already report a pose (InsightFace's 3D landmark module
does); otherwise `LandmarkHeadPoseEstimator` derives one from the 68-point
landmarks.
"""

from __future__ import annotations

import math

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

from faceauth.face.types import LANDMARKS_68, has_68_layout

if TYPE_CHECKING:
    from faceauth.face.types import Detection


class FaceAngle(str, Enum):
    FRONT = "front"
    LEFT_PROFILE = "left_profile"
    RIGHT_PROFILE = "right_profile"


@dataclass(frozen=True)
class HeadPose:
    """Head pose estimation result (degrees)."""

    pitch: float  # Head rotation around X-axis (nodding): positive = looking down, negative = looking up
    yaw: float  # Head rotation around Y-axis (shaking): positive = turned right, negative = turned left
    roll: float  # Head rotation around Z-axis (tilting): positive = tilt right, negative = tilt left
    confidence: float = 1.0

    def is_frontal(self, yaw_tolerance: float) -> bool:
        return abs(self.yaw) < yaw_tolerance

    def is_left_profile(self, yaw_range: Tuple[float, float]) -> bool:
        lo, hi = yaw_range
        return -hi < self.yaw < -lo

    def is_right_profile(self, yaw_range: Tuple[float, float]) -> bool:
        lo, hi = yaw_range
        return lo < self.yaw < hi

    def matches(self, angle: FaceAngle, yaw_tolerance: float, profile_yaw_range: Tuple[float, float]) -> bool:
        if angle == FaceAngle.FRONT:
            return self.is_frontal(yaw_tolerance)
        if angle == FaceAngle.LEFT_PROFILE:
            return self.is_left_profile(profile_yaw_range)
        if angle == FaceAngle.RIGHT_PROFILE:
            return self.is_right_profile(profile_yaw_range)
        return False


class HeadPoseEstimator(ABC):
    """Abstract interface for head pose estimators."""

    @abstractmethod
    def estimate(self, detection: "Detection") -> Optional[HeadPose]:
        """Estimate head pose for one detection.

        Returns:
            HeadPose if successful, None if the detection lacks the needed landmarks
        """
        pass


class LandmarkHeadPoseEstimator(HeadPoseEstimator):
    """Coarse pose from 2D 68-point landmarks.

    yaw/pitch come from the nose-tip offset against the eye centre, scaled by
    the face box; roll from the line between the inner eye corners. Good enough
    to bucket samples into front/left/right and to see motion, not a 6DoF solve.

    A pose already supplied by the extractor takes precedence.
    """

    def __init__(self, prefer_model_pose: bool = True):
        self.prefer_model_pose = bool(prefer_model_pose)

    def estimate(self, detection: "Detection") -> Optional[HeadPose]:
        if self.prefer_model_pose and detection.pose is not None:
            return detection.pose

        pts = detection.landmarks
        if not has_68_layout(pts):
            return None

        box = detection.box
        width = max(1.0, float(box.width))
        height = max(1.0, float(box.height))

        outer_left = pts[LANDMARKS_68["left_eye"][0]]
        outer_right = pts[LANDMARKS_68["right_eye"][3]]
        eye_cx = (float(outer_left[0]) + float(outer_right[0])) / 2.0
        eye_cy = (float(outer_left[1]) + float(outer_right[1])) / 2.0
        nose_tip = pts[LANDMARKS_68["nose_tip"]]

        yaw = math.degrees(math.atan2(float(nose_tip[0]) - eye_cx, width))
        pitch = math.degrees(math.atan2(float(nose_tip[1]) - eye_cy, height))

        inner_left = pts[LANDMARKS_68["left_eye"][3]]
        inner_right = pts[LANDMARKS_68["right_eye"][0]]
        roll = math.degrees(
            math.atan2(float(inner_right[1]) - float(inner_left[1]), float(inner_right[0]) - float(inner_left[0]))
        )
        return HeadPose(pitch=pitch, yaw=yaw, roll=roll, confidence=float(detection.score))
