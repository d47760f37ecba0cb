from __future__ import annotations

import math
import sys

from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pytest

# Ensure repo root is on sys.path so tests can import `faceauth` and `face_auth` without installing.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from faceauth.face.extractor import DescriptorExtractor
from faceauth.face.types import BoundingBox, Detection
from faceauth.liveness.checks import LivenessCheck
from faceauth.utils.clock import ManualClock
from faceauth.utils.math import l2_normalize

DIM = 128
BOX = (100.0, 100.0, 300.0, 300.0)
BLANK = "blank"  # a frame in which the scripted extractor finds no face


def make_landmarks(
    yaw: float = 0.0,
    eye_open: float = 1.0,
    mouth_open: float = 0.0,
    nose_drop: float = 40.0,
    brow_raise: float = 0.0,
) -> np.ndarray:
    """Synthetic 68-point layout inside BOX (200x200 face).

    - eye centres at (150, 180) and (250, 180); EAR = 0.3 * eye_open
    - nose tip x = 200 + 200*tan(yaw) so the landmark estimator recovers `yaw`
    - jaw corners at y=200, nose tip at y=200+nose_drop: depth = nose_drop / 200
    - inner lips `mouth_open` px apart over a 60 px mouth
    """
    pts = np.tile(np.array([[200.0, 220.0]], dtype=np.float64), (68, 1))

    # jaw 0..16 from (100, 200) to (300, 200)
    for i in range(17):
        pts[i] = (100.0 + 200.0 * i / 16.0, 200.0)

    brow_y = 160.0 - brow_raise
    for k, i in enumerate(range(17, 22)):
        pts[i] = (130.0 + 10.0 * k, brow_y)
    for k, i in enumerate(range(22, 27)):
        pts[i] = (230.0 + 10.0 * k, brow_y)

    h = 4.5 * eye_open
    for base, cx in ((36, 150.0), (42, 250.0)):
        cy = 180.0
        pts[base + 0] = (cx - 15.0, cy)
        pts[base + 1] = (cx - 5.0, cy - h)
        pts[base + 2] = (cx + 5.0, cy - h)
        pts[base + 3] = (cx + 15.0, cy)
        pts[base + 4] = (cx + 5.0, cy + h)
        pts[base + 5] = (cx - 5.0, cy + h)

    pts[30] = (200.0 + 200.0 * math.tan(math.radians(yaw)), 200.0 + nose_drop)

    pts[48] = (170.0, 270.0)
    pts[54] = (230.0, 270.0)
    pts[62] = (200.0, 270.0 - mouth_open / 2.0)
    pts[66] = (200.0, 270.0 + mouth_open / 2.0)
    return pts.astype(np.float32)


def make_descriptor(seed: int, dim: int = DIM, scale: float = 0.5) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return (l2_normalize(rng.normal(size=dim).astype(np.float32)) * scale).astype(np.float32)


def at_distance(reference: np.ndarray, distance: float, seed: int = 99) -> np.ndarray:
    """A descriptor exactly `distance` away from `reference`."""
    rng = np.random.default_rng(seed)
    direction = l2_normalize(rng.normal(size=reference.shape[0]))
    return (np.asarray(reference, dtype=np.float64) + distance * direction).astype(np.float32)


def make_detection(
    descriptor: Optional[np.ndarray] = None,
    yaw: float = 0.0,
    score: float = 0.95,
    box=BOX,
    landmarks: Optional[np.ndarray] = None,
    expressions: Optional[Dict[str, float]] = None,
    timestamp: float = 0.0,
    **landmark_kwargs,
) -> Detection:
    if descriptor is None:
        descriptor = make_descriptor(0)
    if landmarks is None:
        landmarks = make_landmarks(yaw=yaw, **landmark_kwargs)
    return Detection(
        descriptor=descriptor,
        landmarks=landmarks,
        box=BoundingBox.from_xyxy(box),
        score=score,
        timestamp=timestamp,
        expressions=expressions,
    )


class ScriptedExtractor(DescriptorExtractor):
    """Frames are the detections themselves.

    Detection -> that face; list -> several faces; BLANK -> no face; Exception -> raised.
    """

    model_version = "scripted/test"

    def __init__(self, fail_on_load: bool = False):
        super().__init__()
        self.fail_on_load = fail_on_load
        self.calls = 0
        self.loads = 0
        self.releases = 0

    def _load(self) -> None:
        self.loads += 1
        if self.fail_on_load:
            raise RuntimeError("weights missing")

    def _release(self) -> None:
        self.releases += 1

    def detect(self, frame, timestamp: float) -> List[Detection]:
        self.calls += 1
        if isinstance(frame, Exception):
            raise frame
        if isinstance(frame, Detection):
            return [frame]
        if isinstance(frame, (list, tuple)):
            return list(frame)
        return []


class StubCheck(LivenessCheck):
    def __init__(self, name: str, verdict=True, hard_gate: bool = False, spoof_tag: Optional[str] = None):
        super().__init__(1)
        self.name = name
        self.hard_gate = hard_gate
        self.spoof_tag = spoof_tag
        self.verdict = verdict
        self.calls = 0

    def evaluate(self, records):
        self.calls += 1
        if callable(self.verdict):
            return self.verdict(records)
        return self.verdict


def stub_checks(**verdicts) -> List[StubCheck]:
    """Six checks named like the real ones; every verdict defaults to True."""
    layout = [
        ("blink_pattern", False, None),
        ("head_movement", False, None),
        ("micro_expression", False, None),
        ("depth_consistency", True, "Insufficient depth variation"),
        ("texture_authenticity", True, "Photo/screen detected"),
        ("temporal_consistency", True, "Temporal inconsistency detected"),
    ]
    return [StubCheck(name, verdicts.get(name, True), hard, tag) for name, hard, tag in layout]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def extractor() -> ScriptedExtractor:
    ex = ScriptedExtractor()
    ex.init()
    return ex
