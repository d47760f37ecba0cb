"""Continuous verification as an explicit tick-driven state machine.

    IDLE -> SAMPLING -> MATCHING -> {AUTHORIZED | DENIED | TIMED_OUT}
                  ^__________|

`step(frame, now)` advances one tick and can be driven by any scheduler;
`run(frame_source)` is the convenience driver that pulls frames at the policy
tick interval. All session state is owned by one loop instance and guarded by
one lock, so `cancel()` may be called from another thread.
"""

from __future__ import annotations

import threading

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from faceauth.errors import ExtractorUnavailable, FailureReason
from faceauth.face.extractor import DescriptorExtractor
from faceauth.face.head_pose import HeadPoseEstimator, LandmarkHeadPoseEstimator
from faceauth.face.matcher import EuclideanMatcher
from faceauth.face.types import Detection
from faceauth.liveness.evaluator import LivenessEvaluator
from faceauth.policy import DEFAULT_POLICY, DecisionPolicy
from faceauth.utils.clock import Clock
from faceauth.utils.log import get_logger
from faceauth.verification.history import FrameHistory, FrameRecord
from faceauth.verification.session import (
    SessionRegistry,
    VerificationOutcome,
    VerificationSession,
    VerificationState,
)

logger = get_logger(__name__)


@dataclass
class VerificationCallbacks:
    on_progress: Optional[Callable[[float], None]] = None
    on_success: Optional[Callable[[float], None]] = None
    on_failure: Optional[Callable[[FailureReason], None]] = None


class VerificationLoop:
    def __init__(
        self,
        subject_id: str,
        reference_descriptor: np.ndarray,
        extractor: DescriptorExtractor,
        policy: Optional[DecisionPolicy] = None,
        evaluator: Optional[LivenessEvaluator] = None,
        registry: Optional[SessionRegistry] = None,
        pose_estimator: Optional[HeadPoseEstimator] = None,
        clock: Optional[Clock] = None,
        callbacks: Optional[VerificationCallbacks] = None,
        matcher: Optional[EuclideanMatcher] = None,
    ):
        self.subject_id = str(subject_id)
        self.reference = np.array(reference_descriptor, dtype=np.float32).reshape(-1)
        self.reference.setflags(write=False)
        self.extractor = extractor
        self.policy = policy or DEFAULT_POLICY
        self.evaluator = evaluator or LivenessEvaluator(liveness_threshold=self.policy.liveness_threshold)
        self.registry = registry or SessionRegistry()
        self.pose_estimator = pose_estimator or LandmarkHeadPoseEstimator()
        self.clock = clock or Clock()
        self.callbacks = callbacks or VerificationCallbacks()
        self.matcher = matcher or EuclideanMatcher()

        self.session = VerificationSession(
            subject_id=self.subject_id,
            history=FrameHistory(self.policy.frame_history_capacity),
        )
        self._outcome: Optional[VerificationOutcome] = None
        self._slot_held = False
        # Re-entrant: callbacks fired under the lock may call cancel().
        self._lock = threading.RLock()

    # -- accessors ----------------------------------------------------------

    @property
    def state(self) -> VerificationState:
        return self.session.state

    @property
    def history(self) -> FrameHistory:
        return self.session.history

    @property
    def outcome(self) -> Optional[VerificationOutcome]:
        return self._outcome

    # -- lifecycle ----------------------------------------------------------

    def start(self, now: Optional[float] = None) -> None:
        with self._lock:
            if self.session.state != VerificationState.IDLE:
                raise RuntimeError(f"Session for '{self.subject_id}' already started ({self.session.state.value})")
            self.registry.acquire(self.subject_id)
            self._slot_held = True
            self.session.history.clear()
            self.session.started_at = self.clock.now() if now is None else float(now)
            self.session.state = VerificationState.SAMPLING
            logger.info(f"Verification started for '{self.subject_id}'")
            self._emit_progress(0.0)

    def cancel(self) -> None:
        """Abort now. No-op once the session is terminal."""
        with self._lock:
            if self.session.state.is_terminal:
                return
            logger.info(f"Verification cancelled for '{self.subject_id}'")
            self._finish(VerificationState.TIMED_OUT, FailureReason.CANCELLED)

    def step(self, frame, now: Optional[float] = None) -> VerificationState:
        """Advance one tick with the latest frame (None when no frame is available)."""
        with self._lock:
            s = self.session
            if s.state.is_terminal:
                return s.state
            if s.state == VerificationState.IDLE:
                raise RuntimeError("start() must be called before step()")

            now = self.clock.now() if now is None else float(now)
            s.elapsed = now - float(s.started_at)
            if self.policy.session_expired(s.elapsed):
                logger.info(f"Verification for '{self.subject_id}' exceeded {self.policy.max_session_duration:.1f}s")
                self._finish(VerificationState.TIMED_OUT, FailureReason.SESSION_TIMED_OUT)
                return s.state

            if frame is None:
                self._emit_progress(self.policy.verification_progress(s.attempts, s.elapsed))
                return s.state

            detection = self._extract(frame, now)
            pose = self._estimate_pose(detection) if detection is not None else None
            s.history.append(FrameRecord(frame=frame, detection=detection, pose=pose, timestamp=now))

            if detection is None or not self.policy.detection_confident(detection.score):
                self._emit_progress(self.policy.verification_progress(s.attempts, s.elapsed))
                return s.state
            if not self.policy.throttle_elapsed(now, s.last_attempt_at):
                logger.debug("match attempt throttled")
                self._emit_progress(self.policy.verification_progress(s.attempts, s.elapsed))
                return s.state

            s.state = VerificationState.MATCHING
            self._match(detection, now)
            return s.state

    def run(self, frame_source, cancel_event: Optional[threading.Event] = None) -> VerificationOutcome:
        """Pull frames every `sample_tick_interval` until a terminal state."""
        if self.session.state == VerificationState.IDLE:
            self.start()

        while not self.session.state.is_terminal:
            if cancel_event is not None and cancel_event.is_set():
                self.cancel()
                break
            tick_started = self.clock.now()
            self.step(frame_source.read())
            if self.session.state.is_terminal:
                break
            remaining = self.policy.sample_tick_interval - (self.clock.now() - tick_started)
            if self.clock.sleep(max(0.0, remaining), cancel_event):
                self.cancel()

        return self._outcome

    # -- internals ----------------------------------------------------------

    def _extract(self, frame, now: float) -> Optional[Detection]:
        try:
            return self.extractor.extract(frame, timestamp=now)
        except ExtractorUnavailable:
            logger.error(f"Descriptor extractor unavailable; aborting verification for '{self.subject_id}'")
            self._finish(VerificationState.TIMED_OUT, FailureReason.EXTRACTOR_UNAVAILABLE)
            raise
        except Exception as e:
            logger.warning(f"Extractor failed on one frame, treating as no face: {e}")
            return None

    def _estimate_pose(self, detection: Detection):
        try:
            return self.pose_estimator.estimate(detection)
        except Exception as e:
            logger.warning(f"Pose estimation failed on one frame: {e}")
            return None

    def _match(self, detection: Detection, now: float) -> None:
        s = self.session
        progress = self.policy.elapsed_progress(s.attempts, s.elapsed)
        threshold = self.policy.progressive_threshold(progress)
        match = self.matcher.match(detection.descriptor, self.reference)
        liveness = self.evaluator.evaluate(s.history)

        s.attempts += 1
        s.last_attempt_at = now
        s.last_confidence = match.confidence
        s.last_threshold = threshold
        s.last_liveness = liveness
        if liveness.spoof_suspected:
            s.spoof_strikes += 1

        logger.debug(
            f"attempt {s.attempts}/{self.policy.max_attempts}: confidence={match.confidence:.3f} "
            f"threshold={threshold:.3f} live={liveness.is_live} score={liveness.liveness_score:.2f} "
            f"strikes={s.spoof_strikes}"
        )

        if self.policy.should_authorize(match.confidence, threshold, liveness.is_live):
            self._finish(VerificationState.AUTHORIZED, None)
        elif self.policy.spoof_budget_exhausted(s.spoof_strikes):
            self._finish(VerificationState.DENIED, FailureReason.SPOOF_DETECTED)
        elif self.policy.attempts_exhausted(s.attempts):
            if match.confidence >= threshold:
                reason = FailureReason.LIVENESS_FAILED
            else:
                reason = FailureReason.MATCH_BELOW_THRESHOLD
            self._finish(VerificationState.DENIED, reason)
        else:
            s.state = VerificationState.SAMPLING
            self._emit_progress(self.policy.verification_progress(s.attempts, s.elapsed))

    def _release(self) -> None:
        self.session.history.clear()
        if self._slot_held:
            self.registry.release(self.subject_id)
            self._slot_held = False

    def _finish(self, state: VerificationState, reason: Optional[FailureReason]) -> None:
        s = self.session
        s.state = state
        self._release()
        self._outcome = VerificationOutcome(
            subject_id=self.subject_id,
            state=state,
            reason=reason,
            confidence=s.last_confidence,
            threshold=s.last_threshold,
            liveness=s.last_liveness,
            attempts=s.attempts,
            spoof_strikes=s.spoof_strikes,
            elapsed=s.elapsed,
        )
        logger.info(
            f"Verification for '{self.subject_id}' -> {state.value}"
            + (f" ({reason.value})" if reason is not None else "")
            + f" after {s.attempts} attempt(s), {s.elapsed:.1f}s"
        )
        self._emit_progress(100.0)
        if state == VerificationState.AUTHORIZED:
            self._fire(self.callbacks.on_success, s.last_confidence)
        else:
            self._fire(self.callbacks.on_failure, reason)

    def _emit_progress(self, pct: float) -> None:
        self._fire(self.callbacks.on_progress, float(pct))

    @staticmethod
    def _fire(cb, arg) -> None:
        if cb is None:
            return
        try:
            cb(arg)
        except Exception as e:
            logger.warning(f"Verification callback raised: {e}")
