"""Command-line entry: enroll / verify a subject against a webcam.

    python face_auth.py enroll --subject voter-42
    python face_auth.py verify --subject voter-42 --output-json result.json
    python face_auth.py list
"""

from __future__ import annotations

import argparse
import json
import sys
import time

from dataclasses import replace
from pathlib import Path

from faceauth.engine import FaceAuthEngine
from faceauth.enrollment.pipeline import EnrollmentCallbacks
from faceauth.errors import EnrollmentError, FaceAuthError
from faceauth.face.extractor import InsightFaceExtractor
from faceauth.face.template import PickleTemplateStore
from faceauth.liveness.evaluator import LivenessEvaluator
from faceauth.liveness.texture import OnnxTextureClassifier
from faceauth.policy import DEFAULT_POLICY
from faceauth.sources import CameraFrameSource
from faceauth.utils.log import get_logger
from faceauth.utils.serializer import serialize_outcome, serialize_template
from faceauth.verification.loop import VerificationCallbacks

logger = get_logger(__name__)


def _build_engine(args) -> FaceAuthEngine:
    policy = DEFAULT_POLICY
    if args.max_session_duration is not None:
        policy = replace(policy, max_session_duration=float(args.max_session_duration))

    texture = None
    if args.texture_model:
        texture = OnnxTextureClassifier(args.texture_model, threshold=float(args.texture_threshold))

    return FaceAuthEngine(
        InsightFaceExtractor(det_size=int(args.det_size), device=str(args.device)),
        policy=policy,
        evaluator=LivenessEvaluator(texture_classifier=texture, liveness_threshold=policy.liveness_threshold),
        store=PickleTemplateStore(args.store_dir),
    )


def _write_json(path, payload) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)
    logger.info(f"Wrote {p}")


def cmd_enroll(args) -> int:
    callbacks = EnrollmentCallbacks(
        on_progress=lambda angle, pct: logger.info(f"[enroll] {angle.value}: {pct:.0f}%"),
    )
    with _build_engine(args) as engine, CameraFrameSource(args.camera) as camera:
        try:
            template = engine.enroll(args.subject, camera, callbacks=callbacks)
        except EnrollmentError as e:
            logger.error(f"Enrollment failed ({e.reason}): {e}")
            return 1
    if args.output_json:
        _write_json(args.output_json, serialize_template(template))
    return 0


def cmd_verify(args) -> int:
    callbacks = VerificationCallbacks(
        on_progress=lambda pct: logger.debug(f"[verify] {pct:.0f}%"),
        on_success=lambda conf: logger.info(f"[verify] authorized (confidence {conf:.3f})"),
        on_failure=lambda reason: logger.warning(f"[verify] not authorized: {reason.value}"),
    )
    with _build_engine(args) as engine, CameraFrameSource(args.camera) as camera:
        outcome = engine.verify(args.subject, camera, callbacks=callbacks)
    if args.output_json:
        _write_json(args.output_json, serialize_outcome(outcome))
    return 0 if outcome.authorized else 2


def cmd_list(args) -> int:
    store = PickleTemplateStore(args.store_dir)
    subjects = store.list_subjects()
    if not subjects:
        logger.info(f"No templates under {args.store_dir}")
    for sid in subjects:
        tpl = store.load(sid)
        logger.info(f"{sid}: {len(tpl.samples)} samples, {tpl.model_version}, created {tpl.created_at}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Face enrollment and live verification")
    parser.add_argument("--store-dir", default="data/templates", help="Template directory (default data/templates)")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_capture_args(p):
        p.add_argument("--subject", "-s", required=True, help="Subject identifier")
        p.add_argument("--camera", type=int, default=0, help="OpenCV camera index (default 0)")
        p.add_argument("--det-size", type=int, default=640, help="InsightFace det_size (default 640)")
        p.add_argument(
            "--device",
            type=str,
            default="auto",
            choices=["auto", "cpu", "gpu"],
            help="auto/cpu/gpu (default auto: GPU when CUDA is available)",
        )
        p.add_argument("--max-session-duration", type=float, default=None, help="Verification time limit in seconds")
        p.add_argument("--texture-model", default=None, help="Optional ONNX real/spoof model for the texture check")
        p.add_argument("--texture-threshold", type=float, default=0.0, help="Logit margin for the ONNX texture model")
        p.add_argument("--output-json", "-j", default=None, help="Write the result as JSON")

    add_capture_args(sub.add_parser("enroll", help="Capture a new template"))
    add_capture_args(sub.add_parser("verify", help="Verify a live subject against the stored template"))
    sub.add_parser("list", help="List enrolled subjects")

    args = parser.parse_args(argv)
    handlers = {"enroll": cmd_enroll, "verify": cmd_verify, "list": cmd_list}
    try:
        return handlers[args.command](args)
    except FaceAuthError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    st = time.time()
    code = main()
    logger.info(f"Total time: {time.time() - st:.2f}s")
    sys.exit(code)
