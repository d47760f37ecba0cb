from __future__ import annotations

import math

from dataclasses import dataclass
from typing import Optional

import numpy as np

from faceauth.policy import DecisionPolicy
from faceauth.utils.log import get_logger
from faceauth.utils.math import euclidean_distance

logger = get_logger(__name__)


@dataclass(frozen=True)
class MatchResult:
    distance: float
    confidence: float
    # Closest individual enrollment sample, when the samples were supplied (debug only).
    nearest_sample_distance: Optional[float] = None


class EuclideanMatcher:
    """Match one live descriptor against an enrolled reference.

    Decision uses the reference (template average) only; per-sample distances
    are computed with one vectorized pass for logging.
    """

    def match(
        self,
        descriptor: np.ndarray,
        reference: np.ndarray,
        samples: Optional[np.ndarray] = None,
    ) -> MatchResult:
        q = np.asarray(descriptor, dtype=np.float32).reshape(-1)
        ref = np.asarray(reference, dtype=np.float32).reshape(-1)

        if q.shape[0] != ref.shape[0]:
            logger.warning(f"Descriptor dimension mismatch: live={q.shape[0]} enrolled={ref.shape[0]}")
            return MatchResult(distance=math.inf, confidence=0.0)

        distance = euclidean_distance(q, ref)
        confidence = DecisionPolicy.match_confidence(distance)

        nearest = None
        if samples is not None:
            mat = np.asarray(samples, dtype=np.float32)
            if mat.ndim == 1:
                mat = mat.reshape(1, -1)
            if mat.size and mat.shape[1] == q.shape[0]:
                nearest = float(np.min(np.linalg.norm(mat - q[None, :], axis=1)))

        return MatchResult(distance=distance, confidence=confidence, nearest_sample_distance=nearest)
