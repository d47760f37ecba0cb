from __future__ import annotations

from enum import Enum
from typing import Dict, Optional

import numpy as np

SCHEMA_VERSION = "faceauth-result/v1"


def _safe_float(v) -> Optional[float]:
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def serialize_template(t, include_descriptors: bool = False) -> Dict:
    """Serialize an EnrollmentTemplate into JSON-safe form.

    Descriptors are reduced to their norms unless `include_descriptors` is set;
    the summary is meant for logs and reports, not for reloading.
    """
    avg = np.asarray(t.average_descriptor, dtype=float)
    samples = []
    for s in t.samples:
        entry = {
            "angle": s.angle.value,
            "quality": _safe_float(s.quality),
            "pose": {
                "pitch": _safe_float(s.pose.pitch),
                "yaw": _safe_float(s.pose.yaw),
                "roll": _safe_float(s.pose.roll),
            },
            "descriptor_norm": float(np.linalg.norm(s.descriptor)),
        }
        if include_descriptors:
            entry["descriptor"] = [float(x) for x in s.descriptor]
        samples.append(entry)

    out = {
        "schema_version": SCHEMA_VERSION,
        "subject_id": t.subject_id,
        "created_at": t.created_at,
        "model_version": t.model_version,
        "descriptor_dim": int(avg.shape[0]),
        "average_descriptor_norm": float(np.linalg.norm(avg)),
        "samples_count": len(samples),
        "samples": samples,
        "quality_scores": [_safe_float(q) for q in t.quality_scores],
        "mean_quality": _safe_float(t.mean_quality),
        "metadata": _json_safe(t.metadata),
    }
    if include_descriptors:
        out["average_descriptor"] = [float(x) for x in avg]
    return out


def serialize_outcome(outcome) -> Dict:
    """Serialize a VerificationOutcome (liveness result included) into JSON-safe form."""
    out = outcome.as_dict()
    out["schema_version"] = SCHEMA_VERSION
    if out.get("elapsed") is not None:
        out["elapsed"] = round(float(out["elapsed"]), 3)
    return _json_safe(out)


def _json_safe(value):
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, np.ndarray):
        return [_json_safe(v) for v in value.tolist()]
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Enum):
        return value.value
    return value
