from __future__ import annotations

import threading

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Set

from faceauth.errors import FailureReason, SessionAlreadyActive
from faceauth.utils.log import get_logger
from faceauth.verification.history import FrameHistory

if TYPE_CHECKING:
    from faceauth.liveness.evaluator import LivenessResult

logger = get_logger(__name__)


class VerificationState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    MATCHING = "matching"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (VerificationState.AUTHORIZED, VerificationState.DENIED, VerificationState.TIMED_OUT)


@dataclass
class VerificationSession:
    """Mutable state of one verification run; owned by a single loop."""

    subject_id: str
    history: FrameHistory
    state: VerificationState = VerificationState.IDLE
    attempts: int = 0
    spoof_strikes: int = 0
    started_at: Optional[float] = None
    last_attempt_at: Optional[float] = None
    elapsed: float = 0.0
    last_confidence: float = 0.0
    last_threshold: Optional[float] = None
    last_liveness: Optional["LivenessResult"] = None


@dataclass
class VerificationOutcome:
    subject_id: str
    state: VerificationState
    reason: Optional[FailureReason] = None
    # Confidence of the deciding attempt (or the last attempt, when none decided).
    confidence: float = 0.0
    threshold: Optional[float] = None
    liveness: Optional["LivenessResult"] = None
    attempts: int = 0
    spoof_strikes: int = 0
    elapsed: float = 0.0

    @property
    def authorized(self) -> bool:
        return self.state == VerificationState.AUTHORIZED

    def as_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "state": self.state.value,
            "authorized": self.authorized,
            "reason": self.reason.value if self.reason is not None else None,
            "confidence": float(self.confidence),
            "threshold": None if self.threshold is None else float(self.threshold),
            "liveness": self.liveness.as_dict() if self.liveness is not None else None,
            "attempts": int(self.attempts),
            "spoof_strikes": int(self.spoof_strikes),
            "elapsed": float(self.elapsed),
        }


class SessionRegistry:
    """At most one active verification session per subject."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Set[str] = set()

    def acquire(self, subject_id: str) -> None:
        with self._lock:
            if subject_id in self._active:
                raise SessionAlreadyActive(subject_id)
            self._active.add(subject_id)
        logger.debug(f"session slot acquired: {subject_id}")

    def release(self, subject_id: str) -> None:
        with self._lock:
            self._active.discard(subject_id)

    def is_active(self, subject_id: str) -> bool:
        with self._lock:
            return subject_id in self._active
