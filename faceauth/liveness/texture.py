"""Texture authenticity: does the face region look like skin in front of a
camera, or like a print / screen being re-photographed?

The liveness evaluator treats this as a black-box pass/fail classifier. Two
implementations are provided; anything implementing `TextureClassifier` can be
swapped in.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from faceauth.face.quality import is_image, to_gray
from faceauth.face.types import BoundingBox
from faceauth.utils.log import get_logger

logger = get_logger(__name__)


def expand_box(box: BoundingBox, frame_shape, factor: float) -> Tuple[int, int, int, int]:
    """Expand xyxy around its centre by `factor`, clamped to the frame."""
    h_frame, w_frame = frame_shape[:2]
    cx, cy = (box.x1 + box.x2) / 2.0, (box.y1 + box.y2) / 2.0
    hw = box.width * factor / 2.0
    hh = box.height * factor / 2.0
    return (
        int(max(0, cx - hw)),
        int(max(0, cy - hh)),
        int(min(w_frame, cx + hw)),
        int(min(h_frame, cy + hh)),
    )


def crop_face(frame: np.ndarray, box: BoundingBox, factor: float = 1.0) -> Optional[np.ndarray]:
    x1, y1, x2, y2 = expand_box(box, frame.shape, factor)
    if x2 <= x1 or y2 <= y1:
        return None
    return frame[y1:y2, x1:x2]


class TextureClassifier(ABC):
    @abstractmethod
    def is_authentic(self, frame, box: BoundingBox) -> Optional[bool]:
        """True = live texture, False = print/screen cues, None = cannot judge this frame."""
        pass


@dataclass
class LaplacianTextureConfig:
    # Forehead ROI as fractions of the face crop: rows, cols.
    roi_rows: Tuple[float, float] = (0.15, 0.35)
    roi_cols: Tuple[float, float] = (0.25, 0.75)
    # Below this the skin is too smooth (screen replay, heavy blur).
    min_laplacian_var: float = 15.0
    # High/low frequency energy ratio; GAN/blurred content sits below this.
    min_hf_ratio: float = 0.08
    # Whole-crop gray variance; flat prints and blown-out screens sit below this.
    min_gray_variance: float = 100.0
    brightness_range: Tuple[float, float] = (20.0, 240.0)


def high_frequency_ratio(gray_roi: np.ndarray) -> float:
    """Mean log-magnitude outside the central spectral disc over the mean inside."""
    if gray_roi.size < 16:
        return 0.5

    f = np.fft.fftshift(np.fft.fft2(gray_roi.astype(np.float32)))
    mag = 20 * np.log(np.abs(f) + 1e-10)

    cy, cx = gray_roi.shape[0] // 2, gray_roi.shape[1] // 2
    r_hf = int(min(gray_roi.shape) * 0.25)
    y, x = np.ogrid[: gray_roi.shape[0], : gray_roi.shape[1]]
    mask_lf = (y - cy) ** 2 + (x - cx) ** 2 <= r_hf**2

    if np.all(mask_lf):
        return 0.0
    hf_energy = float(mag[~mask_lf].mean())
    lf_energy = float(mag[mask_lf].mean()) + 1e-10
    return hf_energy / lf_energy


class LaplacianTextureClassifier(TextureClassifier):
    """Hand-tuned image statistics; a placeholder to harden before production."""

    def __init__(self, config: Optional[LaplacianTextureConfig] = None):
        self.config = config or LaplacianTextureConfig()

    def is_authentic(self, frame, box: BoundingBox) -> Optional[bool]:
        if not is_image(frame):
            return None
        crop = crop_face(frame, box)
        if crop is None or crop.size == 0:
            return None
        cfg = self.config
        gray = to_gray(crop)
        h, w = gray.shape[:2]

        brightness = float(np.mean(gray))
        variance = float(np.var(gray))
        lo, hi = cfg.brightness_range
        if variance < cfg.min_gray_variance or not (lo <= brightness <= hi):
            logger.debug(f"texture: flat/extreme crop (var={variance:.1f}, brightness={brightness:.1f})")
            return False

        r0, r1 = int(h * cfg.roi_rows[0]), int(h * cfg.roi_rows[1])
        c0, c1 = int(w * cfg.roi_cols[0]), int(w * cfg.roi_cols[1])
        roi = gray[r0:r1, c0:c1]
        if roi.size == 0:
            roi = gray

        lap_var = float(cv2.Laplacian(roi, cv2.CV_64F).var())
        hf_ratio = high_frequency_ratio(roi)
        suspicious = lap_var < cfg.min_laplacian_var or hf_ratio < cfg.min_hf_ratio
        if suspicious:
            logger.debug(f"texture: suspicious (laplacian={lap_var:.1f}, hf_ratio={hf_ratio:.3f})")
        return not suspicious


class OnnxTextureClassifier(TextureClassifier):
    """Binary real/spoof CNN exported to ONNX.

    Model contract: input `input` (1, 3, 128, 128) float32 RGB scaled to [0, 1];
    output `output` (1, 2) logits ordered [real, spoof]. Live iff
    real_logit - spoof_logit > threshold.
    """

    INPUT_SIZE = (128, 128)
    REAL_IDX = 0
    SPOOF_IDX = 1

    def __init__(
        self,
        model_path: str,
        threshold: float = 0.0,
        expand: float = 1.5,
        input_name: str = "input",
        output_name: str = "output",
    ):
        import onnxruntime as ort

        self.session = ort.InferenceSession(str(model_path), providers=["CPUExecutionProvider"])
        self.threshold = float(threshold)
        self.expand = float(expand)
        self.input_name = input_name
        self.output_name = output_name
        logger.info(f"Loaded texture model: {model_path} (logit threshold={self.threshold:.2f})")

    def _preprocess(self, face_bgr: np.ndarray) -> np.ndarray:
        img = cv2.cvtColor(face_bgr, cv2.COLOR_BGR2RGB)
        img = cv2.resize(img, self.INPUT_SIZE)
        img = img.astype(np.float32) / 255.0
        img = np.transpose(img, (2, 0, 1))
        return np.expand_dims(img, 0)

    def logit_margin(self, frame: np.ndarray, box: BoundingBox) -> Optional[float]:
        crop = crop_face(frame, box, self.expand)
        if crop is None or crop.size == 0 or crop.ndim != 3:
            return None
        logits = self.session.run([self.output_name], {self.input_name: self._preprocess(crop)})[0][0]
        return float(logits[self.REAL_IDX] - logits[self.SPOOF_IDX])

    def is_authentic(self, frame, box: BoundingBox) -> Optional[bool]:
        if not is_image(frame):
            return None
        margin = self.logit_margin(frame, box)
        if margin is None:
            return None
        return margin > self.threshold
