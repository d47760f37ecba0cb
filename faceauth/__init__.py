"""Biometric enrollment and continuous face verification.

Enrollment captures quality-gated samples at several head angles and fuses them
into one template; verification samples a live stream, matches it against the
template under a progressive threshold and runs liveness checks before
authorizing.
"""

from faceauth.engine import FaceAuthEngine
from faceauth.enrollment.pipeline import EnrollmentCallbacks, EnrollmentPipeline
from faceauth.errors import (
    EnrollmentError,
    ExtractorUnavailable,
    FaceAuthError,
    FailureReason,
    InsufficientSamples,
    LowQualitySample,
    NoFaceDetected,
    PoseMismatch,
    SessionAlreadyActive,
    TemplateNotFound,
)
from faceauth.face.extractor import DescriptorExtractor, InsightFaceExtractor
from faceauth.face.head_pose import FaceAngle, HeadPose
from faceauth.face.template import EnrollmentTemplate, InMemoryTemplateStore, PickleTemplateStore
from faceauth.face.types import BoundingBox, Detection
from faceauth.liveness.evaluator import LivenessEvaluator, LivenessResult
from faceauth.policy import DEFAULT_POLICY, DecisionPolicy
from faceauth.sources import CameraFrameSource, IterableFrameSource
from faceauth.verification.loop import VerificationCallbacks, VerificationLoop
from faceauth.verification.session import VerificationOutcome, VerificationState

__version__ = "0.1.0"
