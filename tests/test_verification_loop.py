from __future__ import annotations

import threading

from typing import List

import numpy as np
import onnxruntime
import pytest

from conftest import BLANK, at_distance, make_descriptor, make_detection, stub_checks

from faceauth.errors import ExtractorUnavailable, FailureReason, SessionAlreadyActive
from faceauth.face.extractor import DescriptorExtractor
from faceauth.face.types import Detection
from faceauth.liveness.evaluator import LivenessEvaluator
from faceauth.liveness.texture import OnnxTextureClassifier
from faceauth.policy import DEFAULT_POLICY
from faceauth.sources import IterableFrameSource
from faceauth.verification.loop import VerificationCallbacks, VerificationLoop
from faceauth.verification.session import SessionRegistry, VerificationState

REFERENCE = make_descriptor(42)


class Recorder:
    def __init__(self):
        self.progress = []
        self.success = []
        self.failure = []

    def callbacks(self) -> VerificationCallbacks:
        return VerificationCallbacks(
            on_progress=self.progress.append,
            on_success=self.success.append,
            on_failure=self.failure.append,
        )


def _loop(extractor, clock, evaluator=None, registry=None, recorder=None, subject="voter-1", policy=DEFAULT_POLICY):
    return VerificationLoop(
        subject,
        REFERENCE,
        extractor,
        policy=policy,
        evaluator=evaluator or LivenessEvaluator(checks=stub_checks()),
        registry=registry or SessionRegistry(),
        clock=clock,
        callbacks=recorder.callbacks() if recorder else None,
    )


def _live_frame(distance: float = 0.05, score: float = 0.95):
    return make_detection(at_distance(REFERENCE, distance), score=score)


def test_zero_confidence_frames_time_out_never_deny(extractor, clock):
    rec = Recorder()
    registry = SessionRegistry()
    loop = _loop(extractor, clock, registry=registry, recorder=rec)
    source = IterableFrameSource([_live_frame(score=0.0)], repeat=True)

    outcome = loop.run(source)

    assert outcome.state == VerificationState.TIMED_OUT
    assert outcome.reason == FailureReason.SESSION_TIMED_OUT
    assert outcome.attempts == 0
    assert outcome.elapsed > DEFAULT_POLICY.max_session_duration
    assert rec.failure == [FailureReason.SESSION_TIMED_OUT]
    assert rec.success == []
    assert rec.progress[-1] == 100.0
    assert max(rec.progress[:-1]) <= 95.0
    assert len(loop.history) == 0
    assert not registry.is_active("voter-1")


def test_close_live_match_authorizes_on_first_attempt(extractor, clock):
    rec = Recorder()
    loop = _loop(extractor, clock, recorder=rec)
    loop.start()

    state = loop.step(_live_frame(0.05))

    assert state == VerificationState.AUTHORIZED
    outcome = loop.outcome
    assert outcome.authorized
    assert outcome.attempts == 1
    assert outcome.confidence == pytest.approx(0.95, abs=1e-4)
    assert outcome.liveness.is_live
    assert rec.success and rec.success[0] == pytest.approx(0.95, abs=1e-4)
    assert rec.failure == []


def test_texture_spoof_denies_even_with_matching_descriptor(extractor, clock):
    rec = Recorder()
    evaluator = LivenessEvaluator(checks=stub_checks(texture_authenticity=False))
    loop = _loop(extractor, clock, evaluator=evaluator, recorder=rec)

    outcome = loop.run(IterableFrameSource([_live_frame(0.02)], repeat=True))

    assert outcome.state == VerificationState.DENIED
    assert outcome.reason == FailureReason.SPOOF_DETECTED
    assert "Photo/screen detected" in outcome.liveness.spoof_indicators
    assert outcome.confidence >= DEFAULT_POLICY.base_match_threshold
    assert outcome.attempts == DEFAULT_POLICY.max_spoof_strikes
    assert outcome.spoof_strikes == DEFAULT_POLICY.max_spoof_strikes
    assert rec.failure == [FailureReason.SPOOF_DETECTED]


def test_second_start_for_same_subject_is_rejected(extractor, clock):
    registry = SessionRegistry()
    first = _loop(extractor, clock, registry=registry)
    second = _loop(extractor, clock, registry=registry)

    first.start()
    first.step(BLANK)
    before = first.history.records()

    with pytest.raises(SessionAlreadyActive):
        second.start()

    assert first.history.records() == before
    assert second.state == VerificationState.IDLE
    assert first.state == VerificationState.SAMPLING

    # a different subject is independent
    _loop(extractor, clock, registry=registry, subject="voter-2").start()

    first.cancel()
    second.start()
    assert second.state == VerificationState.SAMPLING


def test_detection_score_at_floor_is_matched(extractor, clock):
    loop = _loop(extractor, clock)
    loop.start()
    loop.step(_live_frame(0.05, score=DEFAULT_POLICY.detection_confidence_floor))
    assert loop.session.attempts == 1

    below = _loop(extractor, clock, subject="voter-2")
    below.start()
    below.step(_live_frame(0.05, score=DEFAULT_POLICY.detection_confidence_floor - 1e-4))
    assert below.session.attempts == 0
    assert below.state == VerificationState.SAMPLING


def test_only_the_most_confident_face_is_used(extractor, clock):
    stranger = make_detection(make_descriptor(7), score=0.7)
    subject = make_detection(at_distance(REFERENCE, 0.05), score=0.99)
    loop = _loop(extractor, clock)
    loop.start()
    assert loop.step([stranger, subject]) == VerificationState.AUTHORIZED


def test_match_attempts_are_throttled(extractor, clock):
    loop = _loop(extractor, clock)
    loop.start(now=0.0)
    far = _live_frame(0.9)
    loop.step(far, now=0.0)
    loop.step(far, now=0.3)
    loop.step(far, now=0.45)
    assert loop.session.attempts == 1
    loop.step(far, now=0.5)
    assert loop.session.attempts == 2


def test_poor_match_exhausts_attempts(extractor, clock):
    rec = Recorder()
    loop = _loop(extractor, clock, recorder=rec)
    outcome = loop.run(IterableFrameSource([_live_frame(0.6)], repeat=True))

    assert outcome.state == VerificationState.DENIED
    assert outcome.reason == FailureReason.MATCH_BELOW_THRESHOLD
    assert outcome.attempts == DEFAULT_POLICY.max_attempts
    assert outcome.threshold >= DEFAULT_POLICY.floor_match_threshold


def test_failed_liveness_exhausts_attempts(extractor, clock):
    evaluator = LivenessEvaluator(checks=stub_checks(blink_pattern=False, head_movement=False, micro_expression=False))
    loop = _loop(extractor, clock, evaluator=evaluator)
    outcome = loop.run(IterableFrameSource([_live_frame(0.05)], repeat=True))

    assert outcome.state == VerificationState.DENIED
    assert outcome.reason == FailureReason.LIVENESS_FAILED
    assert outcome.spoof_strikes == 0


def test_threshold_relaxes_as_attempts_accumulate(extractor, clock):
    # confidence 0.565: attempt 4 sees 0.57, attempt 5 sees 0.56
    loop = _loop(extractor, clock)
    outcome = loop.run(IterableFrameSource([_live_frame(0.435)], repeat=True))

    assert outcome.state == VerificationState.AUTHORIZED
    assert outcome.attempts == 5
    assert outcome.threshold == pytest.approx(0.56)


def test_cancel_is_immediate_and_idempotent(extractor, clock):
    rec = Recorder()
    registry = SessionRegistry()
    loop = _loop(extractor, clock, registry=registry, recorder=rec)
    loop.start()
    loop.step(BLANK)
    assert len(loop.history) == 1

    loop.cancel()
    loop.cancel()

    assert loop.state == VerificationState.TIMED_OUT
    assert loop.outcome.reason == FailureReason.CANCELLED
    assert len(loop.history) == 0
    assert not registry.is_active("voter-1")
    assert rec.failure == [FailureReason.CANCELLED]
    # terminal sessions ignore further frames
    assert loop.step(_live_frame(0.0)) == VerificationState.TIMED_OUT


def test_run_honours_cancel_event(extractor, clock):
    cancel = threading.Event()
    cancel.set()
    loop = _loop(extractor, clock)
    outcome = loop.run(IterableFrameSource([_live_frame()], repeat=True), cancel_event=cancel)
    assert outcome.reason == FailureReason.CANCELLED
    assert outcome.attempts == 0


def test_extractor_failure_on_one_frame_is_absorbed(extractor, clock):
    loop = _loop(extractor, clock)
    loop.start()
    assert loop.step(RuntimeError("glitch")) == VerificationState.SAMPLING
    assert loop.history.latest().detection is None
    assert loop.step(_live_frame(0.05)) == VerificationState.AUTHORIZED


def test_step_requires_start(extractor, clock):
    loop = _loop(extractor, clock)
    with pytest.raises(RuntimeError):
        loop.step(BLANK)


def test_fatal_extractor_failure_ends_the_session(extractor, clock):
    rec = Recorder()
    registry = SessionRegistry()
    first = _loop(extractor, clock, registry=registry, recorder=rec)
    first.start()
    first.step(BLANK)

    extractor.teardown()
    with pytest.raises(ExtractorUnavailable):
        first.step(BLANK)

    assert first.state == VerificationState.TIMED_OUT
    assert first.outcome.reason == FailureReason.EXTRACTOR_UNAVAILABLE
    assert len(first.history) == 0
    assert not registry.is_active("voter-1")
    assert rec.failure == [FailureReason.EXTRACTOR_UNAVAILABLE]

    # the dead session stays dead and cannot shadow a new one
    extractor.init()
    second = _loop(extractor, clock, registry=registry)
    second.start()
    assert first.step(_live_frame(0.0)) == VerificationState.TIMED_OUT
    assert second.state == VerificationState.SAMPLING
    assert registry.is_active("voter-1")


# -- real liveness checks on image frames -----------------------------------


class SequenceExtractor(DescriptorExtractor):
    """Ignores frame content and hands out one scripted face per call."""

    model_version = "sequence/test"

    def __init__(self, detections: List[Detection]):
        super().__init__()
        self.detections = list(detections)
        self.calls = 0

    def detect(self, frame, timestamp: float) -> List[Detection]:
        det = self.detections[self.calls % len(self.detections)]
        self.calls += 1
        return [det]


class FakeOnnxSession:
    def __init__(self, path, providers=None, logits=(2.0, -1.0)):
        self.path = path
        self.providers = providers
        self.logits = logits
        self.inputs = []

    def run(self, output_names, feeds):
        self.inputs.append(feeds["input"])
        return [np.array([self.logits], dtype=np.float32)]


def _live_face_script(n: int = 16) -> List[Detection]:
    yaws = [0.0, 2.0, -2.0, 3.0, -1.0]
    mouths = [0.0, 3.0, 1.0, 4.0, 2.0]
    return [
        make_detection(
            at_distance(REFERENCE, 0.05, seed=i),
            yaw=yaws[i % 5],
            mouth_open=mouths[i % 5],
            eye_open=0.2 if i in (5, 6) else 1.0,
        )
        for i in range(n)
    ]


def _textured_frame() -> np.ndarray:
    return np.random.default_rng(7).integers(0, 256, size=(480, 640, 3), dtype=np.uint8)


def _drive(loop: VerificationLoop, frame, n: int = 16) -> VerificationState:
    # 0.125 s per frame: match attempts land on frames 0, 4, 8, 12
    loop.start(now=0.0)
    for i in range(n):
        state = loop.step(frame, now=i * 0.125)
        if state.is_terminal:
            break
    return loop.state


def test_genuine_session_passes_all_six_real_checks(clock):
    extractor = SequenceExtractor(_live_face_script())
    extractor.init()
    # every check has to pass, so authorization waits for the blink to show up in the window
    evaluator = LivenessEvaluator(liveness_threshold=1.0)
    loop = _loop(extractor, clock, evaluator=evaluator)

    assert _drive(loop, _textured_frame()) == VerificationState.AUTHORIZED

    outcome = loop.outcome
    assert outcome.attempts == 4
    assert outcome.spoof_strikes == 0
    assert all(outcome.liveness.per_check.values())
    assert outcome.liveness.spoof_indicators == []
    assert outcome.confidence == pytest.approx(0.95, abs=1e-4)


def test_onnx_texture_model_flags_replay(clock, monkeypatch: pytest.MonkeyPatch):
    sessions = []

    def spoof_session(path, providers=None):
        sessions.append(FakeOnnxSession(path, providers, logits=(-1.0, 2.0)))
        return sessions[-1]

    monkeypatch.setattr(onnxruntime, "InferenceSession", spoof_session)
    classifier = OnnxTextureClassifier("antispoof.onnx")
    extractor = SequenceExtractor(_live_face_script())
    extractor.init()
    loop = _loop(extractor, clock, evaluator=LivenessEvaluator(texture_classifier=classifier))

    assert _drive(loop, _textured_frame()) == VerificationState.DENIED

    assert loop.outcome.reason == FailureReason.SPOOF_DETECTED
    assert loop.outcome.attempts == DEFAULT_POLICY.max_spoof_strikes
    assert "Photo/screen detected" in loop.outcome.liveness.spoof_indicators
    batch = sessions[0].inputs[0]
    assert batch.shape == (1, 3, 128, 128)
    assert batch.dtype == np.float32
    assert 0.0 <= float(batch.min()) and float(batch.max()) <= 1.0


def test_onnx_texture_model_passes_live_skin(clock, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(onnxruntime, "InferenceSession", lambda path, providers=None: FakeOnnxSession(path, providers))
    classifier = OnnxTextureClassifier("antispoof.onnx", threshold=1.0)
    frame = _textured_frame()
    box = make_detection().box

    assert classifier.logit_margin(frame, box) == pytest.approx(3.0)
    assert classifier.is_authentic(frame, box) is True
    assert classifier.is_authentic("not-an-image", box) is None
