from __future__ import annotations

import pytest

from conftest import make_detection

from faceauth.face.head_pose import FaceAngle, HeadPose, LandmarkHeadPoseEstimator
from faceauth.face.types import BoundingBox, Detection


@pytest.mark.parametrize("yaw", [0.0, -30.0, 30.0, 12.5])
def test_yaw_recovered_from_landmarks(yaw):
    pose = LandmarkHeadPoseEstimator().estimate(make_detection(yaw=yaw))
    assert pose is not None
    assert pose.yaw == pytest.approx(yaw, abs=1e-3)
    assert pose.roll == pytest.approx(0.0, abs=1e-6)


def test_model_pose_takes_precedence():
    base = make_detection(yaw=0.0)
    det = Detection(
        descriptor=base.descriptor,
        landmarks=base.landmarks,
        box=base.box,
        score=base.score,
        pose=HeadPose(pitch=1.0, yaw=-25.0, roll=2.0),
    )
    assert LandmarkHeadPoseEstimator().estimate(det).yaw == -25.0
    assert LandmarkHeadPoseEstimator(prefer_model_pose=False).estimate(det).yaw == pytest.approx(0.0, abs=1e-3)


def test_no_68_layout_gives_no_pose():
    det = Detection(descriptor=[0.1, 0.2], landmarks=[[1, 2]] * 5, box=BoundingBox(0, 0, 10, 10), score=0.9)
    assert LandmarkHeadPoseEstimator().estimate(det) is None


def test_angle_classification_bounds():
    tol, rng = 5.0, (15.0, 45.0)

    def matches(angle, yaw):
        return HeadPose(pitch=0.0, yaw=yaw, roll=0.0).matches(angle, tol, rng)

    assert matches(FaceAngle.FRONT, 4.9)
    assert not matches(FaceAngle.FRONT, 5.0)
    assert matches(FaceAngle.LEFT_PROFILE, -16.0)
    assert not matches(FaceAngle.LEFT_PROFILE, -15.0)
    assert not matches(FaceAngle.LEFT_PROFILE, 30.0)
    assert matches(FaceAngle.RIGHT_PROFILE, 44.0)
    assert not matches(FaceAngle.RIGHT_PROFILE, 45.0)
