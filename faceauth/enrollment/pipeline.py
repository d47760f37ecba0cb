"""Multi-angle enrollment.

For each required angle in order, pull frames until that angle has its quota
of accepted samples. A frame is accepted when a face is found, its size is in
bounds, its pose matches the target angle and its quality clears the policy
threshold. Accepted descriptors are averaged into one template.

Per-frame rejections are absorbed; only terminal failures are raised.
"""

from __future__ import annotations

import threading

from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from faceauth.errors import (
    EnrollmentError,
    ExtractorUnavailable,
    InsufficientSamples,
    LowQualitySample,
    NoFaceDetected,
    PoseMismatch,
    SampleRejection,
)
from faceauth.face.extractor import DescriptorExtractor
from faceauth.face.head_pose import FaceAngle, HeadPose, HeadPoseEstimator, LandmarkHeadPoseEstimator
from faceauth.face.quality import EnvironmentReport, QualityScorer, assess_environment, is_image, summarize_environment
from faceauth.face.template import EnrollmentSample, EnrollmentTemplate
from faceauth.face.types import Detection
from faceauth.policy import DEFAULT_POLICY, DecisionPolicy
from faceauth.utils.clock import Clock
from faceauth.utils.log import get_logger

logger = get_logger(__name__)


@dataclass
class EnrollmentCallbacks:
    on_progress: Optional[Callable[[FaceAngle, float], None]] = None
    on_complete: Optional[Callable[[EnrollmentTemplate], None]] = None
    on_error: Optional[Callable[[EnrollmentError], None]] = None


class _Aborted(Exception):
    """Internal: cancellation, duration limit or end of frames."""


class EnrollmentPipeline:
    def __init__(
        self,
        extractor: DescriptorExtractor,
        policy: Optional[DecisionPolicy] = None,
        scorer: Optional[QualityScorer] = None,
        pose_estimator: Optional[HeadPoseEstimator] = None,
        clock: Optional[Clock] = None,
    ):
        self.extractor = extractor
        self.policy = policy or DEFAULT_POLICY
        self.scorer = scorer or QualityScorer(self.policy)
        self.pose_estimator = pose_estimator or LandmarkHeadPoseEstimator()
        self.clock = clock or Clock()

    def enroll(
        self,
        subject_id: str,
        frame_source,
        callbacks: Optional[EnrollmentCallbacks] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> EnrollmentTemplate:
        """Capture samples for `subject_id` and return the fused template.

        Raises:
            EnrollmentError subclass on terminal failure (after `on_error`).
            ExtractorUnavailable if the model is not initialised.
        """
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise ValueError("subject_id must be a non-empty string")
        if not self.extractor.is_ready:
            raise ExtractorUnavailable(f"{type(self.extractor).__name__} is not initialised")

        cb = callbacks or EnrollmentCallbacks()
        run = _EnrollmentRun(self, subject_id, frame_source, cb, cancel_event)
        try:
            template = run.capture()
        except EnrollmentError as e:
            logger.warning(f"Enrollment failed for '{subject_id}': {e}")
            _fire(cb.on_error, e)
            raise

        logger.info(
            f"Enrollment complete for '{subject_id}': {len(template.samples)} samples, "
            f"mean quality {template.mean_quality:.3f}"
        )
        _fire(cb.on_complete, template.copy())
        return template


class _EnrollmentRun:
    """State of one `enroll()` call."""

    def __init__(self, pipeline: EnrollmentPipeline, subject_id, frame_source, callbacks, cancel_event):
        self.p = pipeline
        self.policy = pipeline.policy
        self.subject_id = subject_id
        self.source = frame_source
        self.callbacks = callbacks
        self.cancel_event = cancel_event

        self.samples: List[EnrollmentSample] = []
        self.counts: Dict[FaceAngle, int] = {a: 0 for a in self.policy.required_angles}
        self.rejections: Counter = Counter()
        self.streak: Counter = Counter()
        self.consecutive_misses = 0
        self.environment: List[EnvironmentReport] = []
        self.camera_specs: Optional[str] = None
        self.started_at = pipeline.clock.now()

    def capture(self) -> EnrollmentTemplate:
        try:
            for angle in self.policy.required_angles:
                self._capture_angle(angle)
                if self._done():
                    break
        except _Aborted as e:
            logger.info(f"Enrollment for '{self.subject_id}' stopped: {e}")

        total = len(self.samples)
        if not self.policy.enrollment_complete(self.counts):
            missing = [a.value for a, n in self.counts.items() if n == 0]
            raise InsufficientSamples(
                f"Only {total}/{self.policy.min_enrollment_samples} samples accepted"
                + (f"; no samples for {missing}" if missing else ""),
                subject_id=self.subject_id,
                accepted=total,
                required=self.policy.min_enrollment_samples,
            )

        return EnrollmentTemplate.from_samples(
            self.subject_id,
            self.samples,
            model_version=self.p.extractor.model_version,
            metadata=self._metadata(),
        )

    def _done(self) -> bool:
        return self.policy.enrollment_complete(self.counts) or self.policy.sample_cap_reached(len(self.samples))

    def _capture_angle(self, angle: FaceAngle) -> None:
        quota = self.policy.samples_per_angle
        self._progress(angle, quota)
        logger.info(f"Capturing {angle.value} ({quota} samples)")

        while not self.policy.angle_complete(angle, self.counts) and not self._done():
            self._check_abort()
            frame = self.source.read()
            if frame is None:
                if getattr(self.source, "exhausted", False):
                    raise _Aborted("frame source exhausted")
                self._wait(self.policy.sample_tick_interval)
                continue

            detection = self._extract(frame)
            if detection is None:
                self._miss()
                self._wait(self.policy.sample_tick_interval)
                continue
            self.consecutive_misses = 0

            reason, pose, quality = self._assess(angle, detection)
            if reason is not None:
                self._reject(reason)
                self._wait(self.policy.sample_tick_interval)
                continue

            self._accept(angle, frame, detection, pose, quality)
            self._progress(angle, quota)
            if self.policy.angle_complete(angle, self.counts) or self._done():
                break
            self._wait(self.policy.sample_interval)

        logger.info(f"{angle.value}: {self.counts[angle]} sample(s) accepted")

    def _assess(self, angle: FaceAngle, detection: Detection) -> Tuple[Optional[SampleRejection], Optional[HeadPose], float]:
        if not self.policy.face_size_ok(detection.box.size):
            return SampleRejection.FACE_SIZE, None, 0.0
        try:
            pose = self.p.pose_estimator.estimate(detection)
        except Exception as e:
            logger.warning(f"Pose estimation failed on one frame: {e}")
            pose = None
        if not self.policy.angle_matches(angle, pose):
            return SampleRejection.POSE_MISMATCH, pose, 0.0
        quality = self.p.scorer.score(detection)
        if not self.policy.quality_ok(quality):
            return SampleRejection.LOW_QUALITY, pose, quality
        return None, pose, quality

    def _extract(self, frame) -> Optional[Detection]:
        try:
            return self.p.extractor.extract(frame, timestamp=self.p.clock.now())
        except ExtractorUnavailable:
            raise
        except Exception as e:
            logger.warning(f"Extractor failed on one frame, treating as no face: {e}")
            return None

    def _accept(self, angle, frame, detection, pose, quality) -> None:
        self.samples.append(EnrollmentSample(descriptor=detection.descriptor, angle=angle, quality=quality, pose=pose))
        self.counts[angle] += 1
        self.streak.clear()
        if self.camera_specs is None and is_image(frame):
            h, w = frame.shape[:2]
            self.camera_specs = f"{w}x{h}"
        report = assess_environment(frame, detection.box, self.policy)
        if report is not None:
            self.environment.append(report)
        logger.debug(f"accepted {angle.value} sample {self.counts[angle]} (quality={quality:.3f}, yaw={pose.yaw:.1f})")

    def _miss(self) -> None:
        self.consecutive_misses += 1
        self.rejections[SampleRejection.NO_FACE] += 1
        if self.consecutive_misses >= self.policy.max_consecutive_misses:
            raise NoFaceDetected(
                f"No face detected in {self.consecutive_misses} consecutive frames",
                subject_id=self.subject_id,
                accepted=len(self.samples),
                required=self.policy.min_enrollment_samples,
            )

    def _reject(self, reason: SampleRejection) -> None:
        self.rejections[reason] += 1
        self.streak[reason] += 1
        logger.debug(f"sample rejected: {reason.value}")
        n = sum(self.streak.values())
        if n < self.policy.max_consecutive_rejections:
            return
        dominant = self.streak.most_common(1)[0][0]
        exc_cls = PoseMismatch if dominant == SampleRejection.POSE_MISMATCH else LowQualitySample
        raise exc_cls(
            f"{n} consecutive samples rejected (mostly {dominant.value})",
            subject_id=self.subject_id,
            accepted=len(self.samples),
            required=self.policy.min_enrollment_samples,
        )

    def _check_abort(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise _Aborted("cancelled")
        if self.p.clock.now() - self.started_at > self.policy.max_enrollment_duration:
            raise _Aborted(f"exceeded {self.policy.max_enrollment_duration:.0f}s")

    def _wait(self, seconds: float) -> None:
        if self.p.clock.sleep(seconds, self.cancel_event):
            raise _Aborted("cancelled")

    def _progress(self, angle: FaceAngle, quota: int) -> None:
        pct = 100.0 * min(1.0, self.counts[angle] / float(quota))
        _fire(self.callbacks.on_progress, angle, pct)

    def _metadata(self) -> dict:
        return {
            "camera_specs": self.camera_specs,
            "environment": summarize_environment(self.environment, self.policy),
            "rejections": {r.value: int(n) for r, n in self.rejections.items()},
            "samples_per_angle": {a.value: int(n) for a, n in self.counts.items()},
            "mean_quality": float(sum(s.quality for s in self.samples) / len(self.samples)),
            "duration": float(self.p.clock.now() - self.started_at),
        }


def _fire(cb, *args) -> None:
    if cb is None:
        return
    try:
        cb(*args)
    except Exception as e:
        logger.warning(f"Enrollment callback raised: {e}")
