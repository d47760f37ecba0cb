from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Tuple

import numpy as np

if TYPE_CHECKING:
    from faceauth.face.head_pose import HeadPose

# iBUG 68-point layout (dlib / face-api.js / InsightFace landmark_3d_68).
LANDMARKS_68: Dict[str, object] = {
    "jaw_left": 0,
    "jaw_right": 16,
    "left_brow": (17, 18, 19, 20, 21),
    "right_brow": (22, 23, 24, 25, 26),
    "nose_tip": 30,
    "left_eye": (36, 37, 38, 39, 40, 41),
    "right_eye": (42, 43, 44, 45, 46, 47),
    "mouth_left": 48,
    "mouth_right": 54,
    "inner_lip_top": 62,
    "inner_lip_bottom": 66,
}


def has_68_layout(landmarks: Optional[np.ndarray]) -> bool:
    if landmarks is None:
        return False
    arr = np.asarray(landmarks)
    return arr.ndim == 2 and arr.shape[0] >= 68 and arr.shape[1] >= 2


@dataclass(frozen=True)
class BoundingBox:
    """Face box in pixel xyxy coordinates."""

    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return max(0.0, float(self.x2) - float(self.x1))

    @property
    def height(self) -> float:
        return max(0.0, float(self.y2) - float(self.y1))

    @property
    def size(self) -> float:
        """Shorter side, the figure the size gates are expressed in."""
        return min(self.width, self.height)

    def as_int_tuple(self) -> Tuple[int, int, int, int]:
        return (int(self.x1), int(self.y1), int(self.x2), int(self.y2))

    @classmethod
    def from_xyxy(cls, xyxy) -> "BoundingBox":
        x1, y1, x2, y2 = [float(v) for v in xyxy]
        return cls(x1, y1, x2, y2)


@dataclass(frozen=True, eq=False)
class Detection:
    """One face found in one frame.

    Arrays are copied and frozen on construction; a descriptor is immutable once
    the extractor has produced it.
    """

    descriptor: np.ndarray
    landmarks: np.ndarray
    box: BoundingBox
    score: float
    timestamp: float = 0.0
    # Optional expression probabilities (e.g. {"neutral": 0.9, "happy": 0.05, ...}).
    expressions: Optional[Mapping[str, float]] = None
    # Pose reported by the model itself, if it has one.
    pose: Optional["HeadPose"] = None

    def __post_init__(self):
        desc = np.array(self.descriptor, dtype=np.float32).reshape(-1)
        desc.setflags(write=False)
        lms = np.array(self.landmarks, dtype=np.float32)
        if lms.ndim == 1 and lms.size % 2 == 0:
            lms = lms.reshape(-1, 2)
        lms.setflags(write=False)
        object.__setattr__(self, "descriptor", desc)
        object.__setattr__(self, "landmarks", lms)
        object.__setattr__(self, "score", float(self.score))
        if self.expressions is not None:
            object.__setattr__(self, "expressions", {str(k): float(v) for k, v in self.expressions.items()})

    @property
    def dim(self) -> int:
        return int(self.descriptor.shape[0])
