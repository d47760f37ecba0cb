from __future__ import annotations

from enum import Enum
from typing import Optional


class FaceAuthError(Exception):
    """Base class for all engine errors."""


class ExtractorUnavailable(FaceAuthError):
    """The descriptor model could not be initialised or was used while not ready."""


class SessionAlreadyActive(FaceAuthError):
    def __init__(self, subject_id: str):
        super().__init__(f"A verification session is already active for subject '{subject_id}'")
        self.subject_id = subject_id


class TemplateNotFound(FaceAuthError):
    def __init__(self, subject_id: str):
        super().__init__(f"No enrollment template stored for subject '{subject_id}'")
        self.subject_id = subject_id


class SampleRejection(str, Enum):
    """Why a single enrollment frame was discarded. Never surfaced on its own."""

    NO_FACE = "no_face"
    POSE_MISMATCH = "pose_mismatch"
    LOW_QUALITY = "low_quality"
    FACE_SIZE = "face_size"


class EnrollmentError(FaceAuthError):
    """Terminal enrollment failure. The caller restarts enrollment from scratch."""

    reason = "enrollment_failed"

    def __init__(self, message: str, subject_id: str = "", accepted: int = 0, required: Optional[int] = None):
        super().__init__(message)
        self.subject_id = subject_id
        self.accepted = int(accepted)
        self.required = required


class InsufficientSamples(EnrollmentError):
    reason = "insufficient_samples"


class NoFaceDetected(EnrollmentError):
    reason = "no_face_detected"


class LowQualitySample(EnrollmentError):
    reason = "low_quality_sample"


class PoseMismatch(EnrollmentError):
    reason = "pose_mismatch"


class FailureReason(str, Enum):
    MATCH_BELOW_THRESHOLD = "match_below_threshold"
    LIVENESS_FAILED = "liveness_failed"
    SPOOF_DETECTED = "spoof_detected"
    SESSION_TIMED_OUT = "session_timed_out"
    CANCELLED = "cancelled"
    EXTRACTOR_UNAVAILABLE = "extractor_unavailable"
