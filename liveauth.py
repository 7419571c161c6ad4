"""
LiveAuth - Launcher
===================
Runs a webcam liveness session and enrolls or verifies a user.
`enroll` stores the baseline on a user's first success only; running
it again for an enrolled user matches against that baseline instead.

Usage:
  python liveauth.py enroll --user alice
  python liveauth.py verify --user alice [--camera 1] [--config config.yaml]
  python liveauth.py status --user alice

Exit codes: 0 success / match, 1 liveness failure or no match,
2 rejected request (unknown user, not enrolled, incompatible baseline).
"""

import argparse
import json
import logging
import sys
import threading

from liveauth_config import load_config, resolve_path
from liveauth_engine import EngineCallbacks
from liveauth_enrollment import (
    EncryptedEnrollmentStore,
    EnrollmentError,
    EnrollmentService,
    describe_match,
)
from liveauth_logger import get_audit_logger, setup_logger
from liveauth_session import LivenessSession
from liveauth_types import PROCESSING, IncompatibleDescriptors

INSTRUCTION_MESSAGES = {
    "BLINK": "Please blink both eyes.",
    "TURN_LEFT": "Slowly turn your head to your left.",
    "TURN_RIGHT": "Slowly turn your head to your right.",
    PROCESSING: "Processing...",
}


def run_liveness(config: dict, audit) -> tuple:
    """Block until the session ends. Returns (descriptor, failure)."""
    done = threading.Event()
    outcome = {"descriptor": None, "failure": None}

    def on_challenge_changed(challenge):
        key = getattr(challenge, "value", challenge)
        print(f"\n[LIVEAUTH] {INSTRUCTION_MESSAGES.get(key, key)}")

    def on_progress(progress, raw):
        bar = "#" * int(progress * 20)
        sys.stdout.write(f"\r  [{bar:<20}] {progress * 100:5.1f}%")
        sys.stdout.flush()

    def on_success(descriptor):
        outcome["descriptor"] = descriptor
        done.set()

    def on_failure(failure):
        outcome["failure"] = failure
        done.set()

    callbacks = EngineCallbacks(
        on_challenge_changed=on_challenge_changed,
        on_success=on_success,
        on_failure=on_failure,
        on_progress=on_progress,
        on_ready=lambda: print("[LIVEAUTH] Models loaded."),
    )
    session = LivenessSession(callbacks, config=config, audit_logger=audit)
    try:
        if session.load() and session.start():
            done.wait()
    except KeyboardInterrupt:
        print("\n[LIVEAUTH] Interrupted by user.")
    finally:
        session.stop()
    print()
    return outcome["descriptor"], outcome["failure"]


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="LiveAuth face liveness authentication")
    parser.add_argument("command", choices=["enroll", "verify", "status"])
    parser.add_argument("--user", required=True, help="User identifier")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--camera", type=str, default=None, help="Camera index or video file path")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logger(level=getattr(logging, str(config["logging"]["level"]).upper(), logging.INFO))
    audit = get_audit_logger(resolve_path(config["logging"]["log_dir"]))

    if args.camera is not None:
        config["camera"]["source"] = int(args.camera) if args.camera.isdigit() else args.camera

    store = EncryptedEnrollmentStore(
        resolve_path(config["storage"]["enrollment_db"]),
        resolve_path(config["storage"]["key_path"]),
    )
    service = EnrollmentService(store, audit_logger=audit)

    try:
        if args.command == "status":
            status = service.liveness_status(args.user)
            descriptor = status.pop("faceDescriptor")
            status["descriptorDim"] = len(descriptor) if descriptor else 0
            print(json.dumps(status, indent=2))
            return 0

        if args.command == "enroll":
            service.register_user(args.user)
        else:
            # Reject unknown / unenrolled users before opening the camera
            service.require_enrolled(args.user)

        descriptor, failure = run_liveness(config, audit)
        if failure is not None:
            print(f"[LIVEAUTH] Error: {failure.message} (Code: {failure.code.value})")
            return 1
        if descriptor is None:
            return 1

        if args.command == "enroll":
            # First success stores the baseline; later ones only compare
            result = service.complete_liveness(args.user, descriptor)
            if result is None:
                print("[LIVEAUTH] Liveness data saved successfully!")
                return 0
            print("[LIVEAUTH] Already enrolled; stored baseline kept.")
        else:
            result = service.verify_face_match(args.user, descriptor)
        print(f"[LIVEAUTH] {describe_match(result)}")
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.is_match else 1

    except EnrollmentError as e:
        print(f"[LIVEAUTH] {e.message} (status {e.status})")
        return 2
    except IncompatibleDescriptors as e:
        print(f"[LIVEAUTH] {e.message}")
        return 2
    finally:
        audit.close()


if __name__ == "__main__":
    sys.exit(main())
