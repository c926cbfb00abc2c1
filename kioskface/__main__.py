"""Run a liveness scan from the kiosk camera: python3 -m kioskface

Usage:
    python -m kioskface scan
    python -m kioskface login
    python -m kioskface enroll --user-id 42
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from kioskface.camera import OpenCVVideoSource
from kioskface.clients.auth_service import AuthServiceClient
from kioskface.config import settings
from kioskface.exceptions import DuplicateFaceError, KioskFaceError
from kioskface.logging_config import log_startup_info, setup_logging
from kioskface.recognition.detection import FrameSampler
from kioskface.recognition.liveness import LivenessScorer
from kioskface.recognition.model_manager import FaceModelService

logger = logging.getLogger("kioskface.cli")

EXIT_OK = 0
EXIT_REJECTED = 1
EXIT_INFRA = 2


def _print_progress(step: str, status: str) -> None:
    print(f"  [{status:>8}] {step}")


async def _run(args: argparse.Namespace) -> int:
    service = FaceModelService.shared()
    source = OpenCVVideoSource(settings.camera_index, settings.camera_width, settings.camera_height)
    try:
        await service.ensure_loaded()
        log_startup_info(
            service.face_model.backend,
            service.landmark_model.backend if service.landmark_model else "none",
        )

        scorer = LivenessScorer(service)
        result = await scorer.run(source, on_progress=_print_progress, on_instruction=print)
        print(result.message)
        if not result.is_live:
            return EXIT_REJECTED
        if args.command == "scan":
            return EXIT_OK

        sampler = FrameSampler(service.face_model, settings.detector_tier_list)
        descriptor = await sampler.capture_descriptor(
            source, settings.descriptor_frames, settings.descriptor_frame_delay_ms
        )
        if descriptor is None:
            print("Face not detected. Please try again.")
            return EXIT_REJECTED

        async with AuthServiceClient() as client:
            if args.command == "login":
                login = await client.face_login(descriptor)
                print(login.message or ("Welcome" if login.success else "Not recognized"))
                return EXIT_OK if login.success else EXIT_REJECTED
            registered = await client.register_face(args.user_id, descriptor)
            print(registered.message)
            return EXIT_OK if registered.success else EXIT_REJECTED
    except DuplicateFaceError as exc:
        print(exc.message)
        return EXIT_REJECTED
    except KioskFaceError as exc:
        logger.error("%s: %s", exc.error_type, exc.message)
        return EXIT_INFRA
    finally:
        source.close()
        service.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="kioskface", description="Kiosk face liveness scan")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("scan", help="Run a liveness scan only")
    sub.add_parser("login", help="Scan, then identify against the auth service")
    enroll = sub.add_parser("enroll", help="Scan, then register the face for a user")
    enroll.add_argument("--user-id", required=True)
    args = parser.parse_args(argv)

    setup_logging()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
