"""Engine facade: owns the extractor lifecycle and wires the pipelines together.

Example:
    >>> from faceauth import FaceAuthEngine, InsightFaceExtractor, PickleTemplateStore
    >>> with FaceAuthEngine(InsightFaceExtractor(), store=PickleTemplateStore("templates")) as engine:
    ...     engine.enroll("voter-42", camera)
    ...     outcome = engine.verify("voter-42", camera)
"""

from __future__ import annotations

import threading

from typing import Optional

import numpy as np

from faceauth.enrollment.pipeline import EnrollmentCallbacks, EnrollmentPipeline
from faceauth.face.extractor import DescriptorExtractor
from faceauth.face.head_pose import HeadPoseEstimator, LandmarkHeadPoseEstimator
from faceauth.face.quality import QualityScorer
from faceauth.face.template import EnrollmentTemplate, InMemoryTemplateStore, TemplateStore
from faceauth.liveness.evaluator import LivenessEvaluator
from faceauth.policy import DEFAULT_POLICY, DecisionPolicy
from faceauth.utils.clock import Clock
from faceauth.utils.log import get_logger
from faceauth.verification.loop import VerificationCallbacks, VerificationLoop
from faceauth.verification.session import SessionRegistry, VerificationOutcome

logger = get_logger(__name__)


def validate_subject_id(subject_id) -> str:
    if not isinstance(subject_id, str) or not subject_id.strip():
        raise ValueError("subject_id must be a non-empty string")
    return subject_id


class FaceAuthEngine:
    def __init__(
        self,
        extractor: DescriptorExtractor,
        policy: Optional[DecisionPolicy] = None,
        evaluator: Optional[LivenessEvaluator] = None,
        store: Optional[TemplateStore] = None,
        pose_estimator: Optional[HeadPoseEstimator] = None,
        clock: Optional[Clock] = None,
    ):
        self.extractor = extractor
        self.policy = policy or DEFAULT_POLICY
        self.evaluator = evaluator or LivenessEvaluator(liveness_threshold=self.policy.liveness_threshold)
        self.store = store if store is not None else InMemoryTemplateStore()
        self.pose_estimator = pose_estimator or LandmarkHeadPoseEstimator()
        self.clock = clock or Clock()
        self.registry = SessionRegistry()
        self.scorer = QualityScorer(self.policy)

    # -- lifecycle ----------------------------------------------------------

    def init(self) -> None:
        self.extractor.init()

    def teardown(self) -> None:
        self.extractor.teardown()

    def __enter__(self):
        self.init()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.teardown()
        return False

    # -- enrollment ---------------------------------------------------------

    def enroll(
        self,
        subject_id: str,
        frame_source,
        callbacks: Optional[EnrollmentCallbacks] = None,
        cancel_event: Optional[threading.Event] = None,
        save: bool = True,
    ) -> EnrollmentTemplate:
        """Run enrollment; the completed template is saved to the store when `save`."""
        validate_subject_id(subject_id)
        pipeline = EnrollmentPipeline(
            self.extractor,
            policy=self.policy,
            scorer=self.scorer,
            pose_estimator=self.pose_estimator,
            clock=self.clock,
        )
        template = pipeline.enroll(subject_id, frame_source, callbacks=callbacks, cancel_event=cancel_event)
        if save:
            self.store.save(template)
        return template

    # -- verification -------------------------------------------------------

    def create_session(
        self,
        subject_id: str,
        reference_descriptor: Optional[np.ndarray] = None,
        callbacks: Optional[VerificationCallbacks] = None,
    ) -> VerificationLoop:
        """A fresh loop for `subject_id`; the reference defaults to the stored template average.

        Raises TemplateNotFound when no reference is given and none is stored.
        """
        validate_subject_id(subject_id)
        if reference_descriptor is None:
            reference_descriptor = self.store.load(subject_id).average_descriptor
        return VerificationLoop(
            subject_id,
            reference_descriptor,
            self.extractor,
            policy=self.policy,
            evaluator=self.evaluator,
            registry=self.registry,
            pose_estimator=self.pose_estimator,
            clock=self.clock,
            callbacks=callbacks,
        )

    def verify(
        self,
        subject_id: str,
        frame_source,
        callbacks: Optional[VerificationCallbacks] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> VerificationOutcome:
        loop = self.create_session(subject_id, callbacks=callbacks)
        return loop.run(frame_source, cancel_event=cancel_event)
