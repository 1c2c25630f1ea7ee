"""
FaceGate — Launcher
====================
Opens the camera window and runs one blink-to-authenticate session.

Usage:
  python start_facegate.py
  python start_facegate.py --source 1 --profile mobile
  python start_facegate.py --config site.yaml --windowed
"""

import argparse
import logging
import time

import cv2
import numpy as np

from facegate_engine import FaceGateEngine
from facegate_hud import FaceGateHUD
from facegate_utils_core import load_config, setup_logger

WINDOW_NAME = "FaceGate | Face Authentication"
_BLANK = np.zeros((480, 640, 3), dtype=np.uint8)


def main():
    parser = argparse.ArgumentParser(description="FaceGate Launcher")
    parser.add_argument("--config", type=str, default=None, help="Path to config YAML (default: config.yaml)")
    parser.add_argument("--source", type=int, default=None, help="Camera ID (0, 1, etc.)")
    parser.add_argument("--profile", choices=["desktop", "mobile"], default=None, help="Compression profile")
    parser.add_argument("--model", type=str, default=None, help="Path to FaceLandmarker .task asset")
    parser.add_argument("--windowed", action="store_true", help="Run in windowed mode (default is fullscreen)")
    args = parser.parse_args()

    config = load_config(args.config)
    if args.source is not None:
        config["camera"]["camera_id"] = args.source
    if args.profile:
        config["compression"]["profile"] = args.profile
    if args.model:
        config["detector"]["model_path"] = args.model

    # Root handler: every FaceGate* module logger propagates here
    setup_logger("", config["logging"]["level"])
    log = logging.getLogger("FaceGate")

    hud = FaceGateHUD()
    engine = FaceGateEngine(config)

    try:
        if args.windowed:
            cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_AUTOSIZE)
        else:
            cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
            cv2.setWindowProperty(WINDOW_NAME, cv2.WND_PROP_FULLSCREEN, cv2.WINDOW_FULLSCREEN)

        if not engine.start():
            log.error("Liveness unavailable: %s (press R to retry, Q to quit)", engine.status().error)

        while True:
            key = cv2.waitKey(1) & 0xFF
            if key in (ord("q"), ord("Q"), 27):  # Q or ESC
                log.info("Exit key pressed — shutting down...")
                break
            if key in (ord("r"), ord("R")) and engine.disabled:
                engine.restart()

            frame = engine.latest_frame()
            pixels = frame.pixels if frame is not None else _BLANK
            annotated, _ = hud.render(pixels, engine.status())
            cv2.imshow(WINDOW_NAME, annotated)
            if frame is None:
                time.sleep(0.01)

    except KeyboardInterrupt:
        log.info("Interrupted by user.")
    finally:
        cv2.destroyAllWindows()
        cv2.waitKey(1)
        engine.close()
        log.info("Shutdown complete.")


if __name__ == "__main__":
    main()
