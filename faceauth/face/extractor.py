"""Descriptor extraction capability.

The model is an explicitly constructed handle with its own `init()`/`teardown()`
lifecycle, passed into the engine. Nothing here is a module-level singleton, so
tests swap in a scripted extractor without touching model weights.
"""

from __future__ import annotations

import io
import time

from abc import ABC, abstractmethod
from contextlib import redirect_stderr, redirect_stdout
from typing import List, Optional, Sequence, Tuple

import numpy as np
import torch

from faceauth.errors import ExtractorUnavailable
from faceauth.face.head_pose import HeadPose
from faceauth.face.types import BoundingBox, Detection
from faceauth.utils.log import get_logger, suppress_fds
from faceauth.utils.math import l2_normalize

logger = get_logger(__name__)


class DescriptorExtractor(ABC):
    """Frame in, at most one face out.

    Subclasses implement `_load`/`_release`/`detect`; `extract` keeps only the
    highest-confidence face so that a second face in view is ignored rather than
    treated as an error.
    """

    model_version: str = "unknown"

    def __init__(self):
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    def init(self) -> None:
        if self._ready:
            return
        try:
            self._load()
        except ExtractorUnavailable:
            raise
        except Exception as e:
            logger.error(f"Descriptor model failed to initialise: {e}")
            raise ExtractorUnavailable(str(e)) from e
        self._ready = True

    def teardown(self) -> None:
        if not self._ready:
            return
        try:
            self._release()
        finally:
            self._ready = False

    def __enter__(self):
        self.init()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.teardown()
        return False

    def extract(self, frame, timestamp: Optional[float] = None) -> Optional[Detection]:
        if not self._ready:
            raise ExtractorUnavailable(f"{type(self).__name__} is not initialised")
        detections = self.detect(frame, timestamp=time.monotonic() if timestamp is None else float(timestamp))
        return self.select_primary(detections)

    @staticmethod
    def select_primary(detections: Sequence[Detection]) -> Optional[Detection]:
        if not detections:
            return None
        return max(detections, key=lambda d: float(d.score))

    def _load(self) -> None:
        pass

    def _release(self) -> None:
        pass

    @abstractmethod
    def detect(self, frame, timestamp: float) -> List[Detection]:
        """All faces in `frame`, any order."""
        pass


class InsightFaceExtractor(DescriptorExtractor):
    """InsightFace detection + ArcFace descriptor + 68-point 3D landmarks.

    ArcFace embeddings are unit-norm, so Euclidean distance between two of them
    lies in [0, 2]. `descriptor_scale=0.5` maps that onto [0, 1] so that
    `confidence = 1 - distance` keeps its meaning.
    """

    def __init__(
        self,
        model_name: str = "buffalo_l",
        det_size: int = 640,
        device: str = "auto",
        descriptor_scale: float = 0.5,
    ):
        super().__init__()
        self.model_name = str(model_name)
        self.det_size: Tuple[int, int] = (int(det_size), int(det_size))
        self.device = device
        self.descriptor_scale = float(descriptor_scale)
        self.ctx_id = -1  # -1 = CPU, 0 = first GPU
        self.model_version = f"insightface/{self.model_name}"
        self._app = None

    def _resolve_device(self) -> str:
        if self.device != "auto":
            return self.device
        try:
            return "gpu" if torch.cuda.is_available() else "cpu"
        except Exception:
            return "cpu"

    def _load(self) -> None:
        from insightface.app import FaceAnalysis

        device = self._resolve_device()
        if device == "gpu":
            providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
            self.ctx_id = 0
        else:
            providers = ["CPUExecutionProvider"]
            self.ctx_id = -1

        with suppress_fds():
            app = FaceAnalysis(
                name=self.model_name,
                providers=providers,
                allowed_modules=["detection", "recognition", "landmark_3d_68"],
            )
        buf = io.StringIO()
        with redirect_stdout(buf), redirect_stderr(buf):
            app.prepare(ctx_id=self.ctx_id, det_size=self.det_size)
        self._app = app
        logger.info(f"Loaded InsightFace model: {self.model_name} (device={device})")

    def _release(self) -> None:
        self._app = None
        logger.info(f"Released InsightFace model: {self.model_name}")

    def _to_detection(self, face, timestamp: float) -> Optional[Detection]:
        emb = getattr(face, "embedding", None)
        if emb is None:
            return None
        descriptor = l2_normalize(np.asarray(emb, dtype=np.float32).reshape(-1)) * self.descriptor_scale

        lm = getattr(face, "landmark_3d_68", None)
        if lm is not None:
            landmarks = np.asarray(lm, dtype=np.float32)[:, :2]
        else:
            landmarks = np.asarray(getattr(face, "kps", np.zeros((0, 2))), dtype=np.float32)

        pose = None
        raw_pose = getattr(face, "pose", None)
        if raw_pose is not None and len(raw_pose) == 3:
            pitch, yaw, roll = [float(v) for v in raw_pose]
            pose = HeadPose(pitch=pitch, yaw=yaw, roll=roll, confidence=float(face.det_score))

        return Detection(
            descriptor=descriptor,
            landmarks=landmarks,
            box=BoundingBox.from_xyxy(face.bbox),
            score=float(getattr(face, "det_score", 0.0)),
            timestamp=timestamp,
            pose=pose,
        )

    def detect(self, frame, timestamp: float) -> List[Detection]:
        if self._app is None:
            raise ExtractorUnavailable("InsightFace model is not loaded")
        faces = self._app.get(frame)
        out: List[Detection] = []
        for face in faces:
            det = self._to_detection(face, timestamp)
            if det is not None:
                out.append(det)
        return out
