#!/usr/bin/env python3
"""
Pulse Meter – command-line measurement.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --resolution WxH     Camera resolution (default: 640x480)
    --camera-index INT   Camera index (default: 0)
    --sessions INT       Number of back-to-back measurements (default: 1)
    --log-level LEVEL    Logging level (default: INFO)

Cover the camera lens (and torch, if the device has one) with a fingertip.
Each measurement runs for 30 seconds; Ctrl-C ends it early and still
reports the average collected so far.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

from pulse_meter.camera import discover_rear_camera
from pulse_meter.capture_service import CaptureService
from pulse_meter.permission import StaticPermission
from pulse_meter.session import MeasurementSession

logger = logging.getLogger("pulse_meter")

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_NO_CAMERA = 2


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fingertip heart-rate measurement via the camera (PPG)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--camera-index", type=int, default=0,
                        help="Camera index passed to the capture backend")
    parser.add_argument("--sessions", type=int, default=1,
                        help="Number of back-to-back measurements")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging verbosity")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Measurement loop
# ---------------------------------------------------------------------------

def measure_once(session: MeasurementSession, number: int) -> tuple[int, bool]:
    """Run one session; return the published BPM and whether it was interrupted."""
    session.start_measurement()
    last_report = 0.0
    try:
        while session.is_measuring:
            session.process_events(timeout=0.1)
            now = time.monotonic()
            if now - last_report >= 1.0:
                last_report = now
                ts = time.strftime("%H:%M:%S")
                if session.is_detecting_finger:
                    print(f"[{ts}] #{number} {session.progress:4.0%}  BPM={session.heart_rate}")
                else:
                    print(f"[{ts}] #{number} Place your finger over the camera…")
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        session.stop_measurement()
        return session.heart_rate, True
    return session.heart_rate, False


def run(args: argparse.Namespace) -> int:
    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return EXIT_USAGE
    if args.sessions < 1:
        logger.error("--sessions must be at least 1.")
        return EXIT_USAGE

    capture = CaptureService(
        discover=lambda fps: discover_rear_camera(
            fps, resolution=(res_w, res_h), camera_index=args.camera_index
        ),
    )
    try:
        session = MeasurementSession(capture=capture, permission=StaticPermission())
        session.process_events()
        capture.wait_idle()
        if not session.permission_granted:
            logger.error("Camera permission denied.")
            return EXIT_NO_CAMERA
        if not capture.is_configured:
            logger.error("No usable camera found.")
            return EXIT_NO_CAMERA

        for number in range(1, args.sessions + 1):
            bpm, interrupted = measure_once(session, number)
            if bpm > 0:
                print(f"Result #{number}: {bpm} BPM")
            else:
                print(f"Result #{number}: no reading – keep the finger still and retry")
            if interrupted:
                break
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        capture.shutdown()
    return EXIT_OK


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
