from __future__ import annotations

import numpy as np
import pytest

from conftest import make_detection, make_landmarks

from faceauth.face.quality import QualityScorer, assess_environment, depth_variation
from faceauth.face.types import BoundingBox
from faceauth.policy import DEFAULT_POLICY


@pytest.fixture
def scorer() -> QualityScorer:
    return QualityScorer(DEFAULT_POLICY)


def test_depth_variation_from_landmarks():
    assert depth_variation(make_landmarks(nose_drop=40.0)) == pytest.approx(0.2)
    assert depth_variation(make_landmarks(nose_drop=5.0)) == pytest.approx(0.025)
    assert depth_variation(np.zeros((5, 2), dtype=np.float32)) == 0.0
    assert depth_variation(None) == 0.0


def test_weighted_sum(scorer: QualityScorer):
    # 0.4*0.95 + 0.2*1 (200px face) + 0.2*min(1, 0.2*10) + 0.2*0 (no expressions)
    det = make_detection(score=0.95)
    assert scorer.score(det) == pytest.approx(0.78)

    with_neutral = make_detection(score=0.95, expressions={"neutral": 0.5, "happy": 0.5})
    assert scorer.score(with_neutral) == pytest.approx(0.88)


def test_small_face_and_flat_landmarks_lower_the_score(scorer: QualityScorer):
    small = make_detection(score=1.0, box=(100, 100, 160, 160))
    # size 60 / 120 -> 0.5
    assert scorer.size_score(small) == pytest.approx(0.5)
    assert scorer.score(small) == pytest.approx(0.4 + 0.1 + 0.2)

    five_point = make_detection(score=1.0, landmarks=np.zeros((5, 2), dtype=np.float32))
    assert scorer.score(five_point) == pytest.approx(0.6)


def test_score_is_clamped(scorer: QualityScorer):
    det = make_detection(score=5.0, expressions={"neutral": 1.0})
    assert scorer.score(det) == 1.0


def test_score_is_idempotent(scorer: QualityScorer):
    det = make_detection(score=0.87, expressions={"neutral": 0.3})
    assert scorer.score(det) == scorer.score(det)


def test_environment_report_on_image():
    frame = np.full((480, 640, 3), 120, dtype=np.uint8)
    report = assess_environment(frame, BoundingBox(100, 100, 300, 300), DEFAULT_POLICY)
    assert report is not None
    assert report.brightness == pytest.approx(120.0)
    assert report.brightness_ok
    # a flat crop has no edges at all
    assert report.sharpness == 0.0
    assert not report.sharpness_ok

    assert assess_environment("not-an-image", BoundingBox(0, 0, 10, 10), DEFAULT_POLICY) is None
