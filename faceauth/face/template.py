from __future__ import annotations

import copy
import hashlib
import pickle
import re
import threading

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from faceauth.errors import TemplateNotFound
from faceauth.face.head_pose import FaceAngle, HeadPose
from faceauth.utils.log import get_logger
from faceauth.utils.math import mean_descriptor

logger = get_logger(__name__)


@dataclass(frozen=True, eq=False)
class EnrollmentSample:
    descriptor: np.ndarray
    angle: FaceAngle
    quality: float
    pose: HeadPose

    def __post_init__(self):
        desc = np.array(self.descriptor, dtype=np.float32).reshape(-1)
        desc.setflags(write=False)
        object.__setattr__(self, "descriptor", desc)


@dataclass(eq=False)
class EnrollmentTemplate:
    """Reference signature of one subject.

    `average_descriptor[i]` is the mean of `samples[*].descriptor[i]`; build via
    `from_samples` so that holds.
    """

    subject_id: str
    average_descriptor: np.ndarray
    samples: List[EnrollmentSample]
    quality_scores: List[float]
    created_at: str
    model_version: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_samples(
        cls,
        subject_id: str,
        samples: Sequence[EnrollmentSample],
        model_version: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "EnrollmentTemplate":
        if not samples:
            raise ValueError("A template needs at least one sample")
        dims = {int(s.descriptor.shape[0]) for s in samples}
        if len(dims) != 1:
            raise ValueError(f"Samples have mixed descriptor dimensions: {sorted(dims)}")
        avg = mean_descriptor([s.descriptor for s in samples])
        avg.setflags(write=False)
        return cls(
            subject_id=str(subject_id),
            average_descriptor=avg,
            samples=list(samples),
            quality_scores=[float(s.quality) for s in samples],
            created_at=datetime.now(timezone.utc).isoformat(),
            model_version=str(model_version),
            metadata=dict(metadata or {}),
        )

    @property
    def dim(self) -> int:
        return int(np.asarray(self.average_descriptor).shape[0])

    @property
    def mean_quality(self) -> float:
        return float(np.mean(self.quality_scores)) if self.quality_scores else 0.0

    def sample_matrix(self) -> np.ndarray:
        return np.stack([s.descriptor for s in self.samples], axis=0)

    def copy(self) -> "EnrollmentTemplate":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "average_descriptor": np.asarray(self.average_descriptor, dtype=np.float32).copy(),
            "samples": [
                {
                    "descriptor": s.descriptor.copy(),
                    "angle": s.angle.value,
                    "quality": float(s.quality),
                    "pose": {"pitch": s.pose.pitch, "yaw": s.pose.yaw, "roll": s.pose.roll},
                }
                for s in self.samples
            ],
            "quality_scores": [float(q) for q in self.quality_scores],
            "created_at": self.created_at,
            "model_version": self.model_version,
            "metadata": copy.deepcopy(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrollmentTemplate":
        samples = [
            EnrollmentSample(
                descriptor=np.asarray(s["descriptor"], dtype=np.float32),
                angle=FaceAngle(s["angle"]),
                quality=float(s["quality"]),
                pose=HeadPose(**s["pose"]),
            )
            for s in data.get("samples", [])
        ]
        avg = np.array(data["average_descriptor"], dtype=np.float32)
        avg.setflags(write=False)
        return cls(
            subject_id=str(data["subject_id"]),
            average_descriptor=avg,
            samples=samples,
            quality_scores=[float(q) for q in data.get("quality_scores", [])],
            created_at=str(data.get("created_at", "")),
            model_version=str(data.get("model_version", "")),
            metadata=dict(data.get("metadata") or {}),
        )


class TemplateStore(ABC):
    """Persistence collaborator for templates, keyed by subject id.

    Stores hand out copies; callers never share a mutable template with the store.
    """

    @abstractmethod
    def save(self, template: EnrollmentTemplate) -> None:
        pass

    @abstractmethod
    def load(self, subject_id: str) -> EnrollmentTemplate:
        """Raises TemplateNotFound when the subject has no template."""
        pass

    @abstractmethod
    def delete(self, subject_id: str) -> bool:
        pass

    @abstractmethod
    def list_subjects(self) -> List[str]:
        pass

    def exists(self, subject_id: str) -> bool:
        return str(subject_id) in self.list_subjects()


class InMemoryTemplateStore(TemplateStore):
    def __init__(self):
        self._templates: Dict[str, EnrollmentTemplate] = {}
        self._lock = threading.Lock()

    def save(self, template: EnrollmentTemplate) -> None:
        with self._lock:
            self._templates[template.subject_id] = template.copy()

    def load(self, subject_id: str) -> EnrollmentTemplate:
        with self._lock:
            tpl = self._templates.get(str(subject_id))
            if tpl is None:
                raise TemplateNotFound(str(subject_id))
            return tpl.copy()

    def delete(self, subject_id: str) -> bool:
        with self._lock:
            return self._templates.pop(str(subject_id), None) is not None

    def list_subjects(self) -> List[str]:
        with self._lock:
            return sorted(self._templates)


@dataclass
class PickleStoreConfig:
    # Bumped when the payload layout changes.
    schema_version: str = "v1"
    suffix: str = ".template.pkl"


class PickleTemplateStore(TemplateStore):
    """One pickle file per subject under `root`."""

    _SAFE = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, root, config: Optional[PickleStoreConfig] = None):
        self.root = Path(root)
        self.config = config or PickleStoreConfig()

    def _path(self, subject_id: str) -> Path:
        sid = str(subject_id)
        if not sid:
            raise ValueError("subject_id must not be empty")
        # Readable prefix is lossy; the digest of the exact id keeps names distinct.
        digest = hashlib.sha1(sid.encode("utf-8")).hexdigest()[:16]
        prefix = self._SAFE.sub("_", sid)
        return self.root / f"{prefix}-{digest}{self.config.suffix}"

    def save(self, template: EnrollmentTemplate) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        fp = self._path(template.subject_id)
        data = {
            "schema_version": self.config.schema_version,
            "template": template.to_dict(),
        }
        tmp = fp.with_name(fp.name + ".tmp")
        with open(tmp, "wb") as f:
            pickle.dump(data, f)
        tmp.replace(fp)
        logger.info(f"Saved template for '{template.subject_id}' -> {fp}")

    def load(self, subject_id: str) -> EnrollmentTemplate:
        fp = self._path(subject_id)
        if not fp.exists():
            raise TemplateNotFound(str(subject_id))
        with open(fp, "rb") as f:
            data = pickle.load(f)

        if isinstance(data, dict) and data.get("schema_version") == self.config.schema_version:
            template = EnrollmentTemplate.from_dict(data["template"])
            if template.subject_id != str(subject_id):
                logger.warning(f"Template file {fp} belongs to '{template.subject_id}', not '{subject_id}'")
                raise TemplateNotFound(str(subject_id))
            return template

        raise ValueError(f"Unsupported template file format: {fp}")

    def delete(self, subject_id: str) -> bool:
        fp = self._path(subject_id)
        if not fp.exists():
            return False
        fp.unlink()
        return True

    def list_subjects(self) -> List[str]:
        if not self.root.exists():
            return []
        out = []
        for fp in sorted(self.root.glob(f"*{self.config.suffix}")):
            try:
                with open(fp, "rb") as f:
                    data = pickle.load(f)
                out.append(str(data["template"]["subject_id"]))
            except Exception as e:
                logger.warning(f"Skipping unreadable template file {fp}: {e}")
        return out
