"""Decision policy: every threshold, budget and interval the engine uses.

Enrollment and verification read their numbers from here and nowhere else, so
tuning happens in one place and the threshold math can be tested without
running a session.
"""

from __future__ import annotations

import math

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from faceauth.face.head_pose import FaceAngle, HeadPose


@dataclass(frozen=True)
class DecisionPolicy:
    # Enrollment
    min_enrollment_samples: int = 8
    max_enrollment_samples: int = 12
    required_angles: Tuple[FaceAngle, ...] = (FaceAngle.FRONT, FaceAngle.LEFT_PROFILE, FaceAngle.RIGHT_PROFILE)
    # Frontal samples need |yaw| below this.
    angle_tolerance_degrees: float = 5.0
    # Profile samples need min < |yaw| < max, on the matching side.
    profile_yaw_range: Tuple[float, float] = (15.0, 45.0)
    # A sample is accepted only when its quality is strictly above this.
    sample_quality_threshold: float = 0.7
    min_face_size: float = 120.0
    max_face_size: float = 600.0
    sample_interval: float = 0.8
    max_consecutive_misses: int = 50
    max_consecutive_rejections: int = 300
    max_enrollment_duration: float = 120.0

    # Frame environment (recorded in template metadata)
    brightness_range: Tuple[float, float] = (80.0, 180.0)
    min_sharpness: float = 0.5

    # Verification
    detection_confidence_floor: float = 0.5
    base_match_threshold: float = 0.6
    floor_match_threshold: float = 0.5
    # How far the match bar drops between progress 0 and progress 1.
    threshold_decay: float = 0.1
    liveness_threshold: float = 0.65
    max_attempts: int = 10
    # Attempts whose hard liveness gates failed; reaching this denies early.
    max_spoof_strikes: int = 3
    max_session_duration: float = 30.0
    sample_tick_interval: float = 0.15
    match_attempt_throttle: float = 0.5
    frame_history_capacity: int = 30

    def __post_init__(self):
        if not self.required_angles:
            raise ValueError("required_angles must not be empty")
        if len(set(self.required_angles)) != len(self.required_angles):
            raise ValueError("required_angles must not repeat an angle")
        if self.min_enrollment_samples < len(self.required_angles):
            raise ValueError("min_enrollment_samples must cover every required angle at least once")
        if self.max_enrollment_samples < self.min_enrollment_samples:
            raise ValueError("max_enrollment_samples must be >= min_enrollment_samples")
        if not (0.0 <= self.floor_match_threshold <= self.base_match_threshold <= 1.0):
            raise ValueError("expected 0 <= floor_match_threshold <= base_match_threshold <= 1")
        if self.threshold_decay < 0.0:
            raise ValueError("threshold_decay must be >= 0")
        if not (0.0 <= self.liveness_threshold <= 1.0):
            raise ValueError("liveness_threshold must be within [0, 1]")
        if self.max_attempts < 1 or self.max_spoof_strikes < 1:
            raise ValueError("max_attempts and max_spoof_strikes must be >= 1")
        if self.max_session_duration <= 0.0 or self.max_enrollment_duration <= 0.0:
            raise ValueError("session durations must be positive")
        if self.frame_history_capacity < 1:
            raise ValueError("frame_history_capacity must be >= 1")
        lo, hi = self.profile_yaw_range
        if not (0.0 <= lo < hi):
            raise ValueError("profile_yaw_range must satisfy 0 <= min < max")
        if self.min_face_size > self.max_face_size:
            raise ValueError("min_face_size must be <= max_face_size")

    # -- enrollment ---------------------------------------------------------

    @property
    def samples_per_angle(self) -> int:
        return int(math.ceil(self.min_enrollment_samples / len(self.required_angles)))

    def angle_matches(self, angle: FaceAngle, pose: Optional[HeadPose]) -> bool:
        if pose is None:
            return False
        return pose.matches(angle, self.angle_tolerance_degrees, self.profile_yaw_range)

    def face_size_ok(self, size: float) -> bool:
        return self.min_face_size <= float(size) <= self.max_face_size

    def quality_ok(self, quality: float) -> bool:
        return float(quality) > self.sample_quality_threshold

    def enrollment_complete(self, counts: Dict[FaceAngle, int]) -> bool:
        total = sum(int(counts.get(a, 0)) for a in self.required_angles)
        every_angle = all(int(counts.get(a, 0)) > 0 for a in self.required_angles)
        return total >= self.min_enrollment_samples and every_angle

    def angle_complete(self, angle: FaceAngle, counts: Dict[FaceAngle, int]) -> bool:
        return int(counts.get(angle, 0)) >= self.samples_per_angle

    def sample_cap_reached(self, total: int) -> bool:
        return int(total) >= self.max_enrollment_samples

    # -- verification -------------------------------------------------------

    def detection_confident(self, score: float) -> bool:
        # Inclusive: a score exactly at the floor passes.
        return float(score) >= self.detection_confidence_floor

    def throttle_elapsed(self, now: float, last_attempt_at: Optional[float]) -> bool:
        if last_attempt_at is None:
            return True
        return (float(now) - float(last_attempt_at)) >= self.match_attempt_throttle

    def session_expired(self, elapsed: float) -> bool:
        return float(elapsed) > self.max_session_duration

    def elapsed_progress(self, prior_attempts: int, elapsed: float) -> float:
        by_attempts = float(prior_attempts) / float(self.max_attempts)
        by_time = float(elapsed) / float(self.max_session_duration)
        return min(1.0, max(0.0, by_attempts, by_time))

    def progressive_threshold(self, progress: float) -> float:
        p = min(1.0, max(0.0, float(progress)))
        return max(self.floor_match_threshold, self.base_match_threshold - p * self.threshold_decay)

    @staticmethod
    def match_confidence(distance: float) -> float:
        return max(0.0, 1.0 - float(distance))

    def should_authorize(self, confidence: float, threshold: float, is_live: bool) -> bool:
        return bool(is_live) and float(confidence) >= float(threshold)

    def attempts_exhausted(self, attempts: int) -> bool:
        return int(attempts) >= self.max_attempts

    def spoof_budget_exhausted(self, strikes: int) -> bool:
        return int(strikes) >= self.max_spoof_strikes

    def verification_progress(self, attempts: int, elapsed: float) -> float:
        """Percent for UI progress, held below 100 until a terminal decision."""
        return min(95.0, 100.0 * self.elapsed_progress(attempts, elapsed))


DEFAULT_POLICY = DecisionPolicy()
