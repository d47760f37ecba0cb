from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from faceauth.liveness.checks import LivenessCheck, LivenessConfig, default_checks
from faceauth.liveness.texture import TextureClassifier
from faceauth.policy import DEFAULT_POLICY
from faceauth.utils.log import get_logger
from faceauth.verification.history import FrameRecord

logger = get_logger(__name__)


@dataclass
class LivenessResult:
    per_check: Dict[str, bool]
    liveness_score: float
    # One human-readable tag per failed hard gate, in check order.
    spoof_indicators: List[str]
    # Checks that returned no verdict for lack of history (recorded as False above).
    insufficient: Tuple[str, ...] = ()
    is_live: bool = False
    # Hard gates that failed on sufficient history; these count as spoof evidence.
    hard_failures: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def spoof_suspected(self) -> bool:
        return bool(self.hard_failures)

    def as_dict(self) -> dict:
        return {
            "per_check": {k: bool(v) for k, v in self.per_check.items()},
            "liveness_score": float(self.liveness_score),
            "spoof_indicators": list(self.spoof_indicators),
            "insufficient": list(self.insufficient),
            "hard_failures": list(self.hard_failures),
            "is_live": bool(self.is_live),
        }


class LivenessEvaluator:
    """Runs every check over one history snapshot and folds them into a result.

    liveness_score = passed checks / total checks; live iff the score reaches
    `liveness_threshold` and no hard gate raised a spoof indicator.
    """

    def __init__(
        self,
        config: Optional[LivenessConfig] = None,
        texture_classifier: Optional[TextureClassifier] = None,
        checks: Optional[Sequence[LivenessCheck]] = None,
        liveness_threshold: Optional[float] = None,
    ):
        self.config = config or LivenessConfig()
        if checks is None:
            checks = default_checks(self.config, texture_classifier)
        if not checks:
            raise ValueError("LivenessEvaluator needs at least one check")
        names = [c.name for c in checks]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate liveness check names: {names}")
        self.checks: List[LivenessCheck] = list(checks)
        self.liveness_threshold = float(
            DEFAULT_POLICY.liveness_threshold if liveness_threshold is None else liveness_threshold
        )

    def evaluate(self, history: Iterable[FrameRecord]) -> LivenessResult:
        records = list(history)
        per_check: Dict[str, bool] = {}
        insufficient: List[str] = []
        spoof_indicators: List[str] = []
        hard_failures: List[str] = []

        for check in self.checks:
            raised = False
            try:
                verdict = check.evaluate(records)
            except Exception as e:
                logger.warning(f"Liveness check '{check.name}' raised, counting as failed: {e}")
                verdict = False
                raised = True

            per_check[check.name] = bool(verdict)
            if verdict is None:
                insufficient.append(check.name)

            if check.hard_gate and not verdict:
                tag = check.spoof_tag or check.name
                if tag not in spoof_indicators:
                    spoof_indicators.append(tag)
                # A crashed check is no evidence of a spoof.
                if verdict is not None and not raised:
                    hard_failures.append(check.name)

        passed = sum(1 for v in per_check.values() if v)
        score = passed / float(len(self.checks))
        is_live = score >= self.liveness_threshold and not spoof_indicators

        logger.debug(
            f"liveness: score={score:.2f} live={is_live} indicators={spoof_indicators} insufficient={insufficient}"
        )
        return LivenessResult(
            per_check=per_check,
            liveness_score=score,
            spoof_indicators=spoof_indicators,
            insufficient=tuple(insufficient),
            is_live=is_live,
            hard_failures=tuple(hard_failures),
        )
