"""
FaceGate — Shared Utility Module
=================================
Configuration loading, logger setup and the numeric heuristics used by
the liveness analyzer.

Contains:
  A) Configuration (config.yaml deep-merged over DEFAULT_CONFIG)
  B) Eye openness from 6-point eye landmarks
  C) Eye-region frame difference (blink signal)
"""

from __future__ import annotations

import copy
import logging
import os
from typing import Optional

import numpy as np
import yaml


# ===================================================================
# Configuration
# ===================================================================

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, "config.yaml")

DEFAULT_CONFIG: dict = {
    "camera": {
        "camera_id": 0,
        "width": 640,
        "height": 480,
        "facing_mode": "user",
        "backend": "auto",
    },
    "detector": {
        "model_path": "face_landmarker.task",
        "max_faces": 2,
        "min_detection_confidence": 0.5,
    },
    "liveness": {
        "eye_openness_threshold": 0.2,
        "min_consecutive_face_frames": 5,
        "blink_diff_threshold": 30.0,
        "blink_cooldown_ms": 1000.0,
        "require_face_confirmation": True,
        "eye_region": {"x": 0.3, "y": 0.3, "width": 0.4, "height": 0.2},
    },
    "compression": {
        "profile": "desktop",
        "profiles": {
            "desktop": {"max_width": 640, "max_height": 480},
            "mobile": {"max_width": 480, "max_height": 480},
        },
        "jpeg_quality": 0.8,
    },
    "upload": {
        "bucket": "fjgroup-employee-authentication",
        "namespace": "search",
        "region": "us-east-2",
        "write_timeout_s": 5.0,
        "max_retries": 3,
        "verify_url": "https://ylj9f75xi9.execute-api.us-east-2.amazonaws.com/dev/authenticate",
        "verify_timeout_s": 10.0,
    },
    "result": {
        "redirect_url": "http://10.10.4.132:8080/FJPORTAL_DEV/FaceLoginServlet",
        "redirect_delay_s": 1.0,
    },
    "loop": {
        "tick_hz": 60.0,
    },
    "logging": {
        "level": "INFO",
        "audit_dir": "logs",
    },
}


def merge_config(base: dict, overrides: Optional[dict]) -> dict:
    """Deep-merge ``overrides`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load config.yaml merged over DEFAULT_CONFIG.

    A missing default file is fine; a missing explicit path is not.
    """
    target = path or _config_path
    if path is None and not os.path.exists(target):
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(target, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    return merge_config(DEFAULT_CONFIG, loaded)


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int | str = logging.INFO) -> logging.Logger:
    """Create a configured logger for FaceGate modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)-16s %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


# ===================================================================
# COMPONENT B: EYE OPENNESS
# ===================================================================

def compute_eye_openness(left_eye, right_eye) -> float:
    """Average normalized eyelid opening across both eyes.

    Each eye is 6 points in the 68-point order
    [corner, upper1, upper2, corner, lower2, lower1].
    Per eye: mean vertical distance of the pairs (upper1, lower1) and
    (upper2, lower2), divided by the corner-to-corner width.

    Returns 0.0 when either eye is malformed (treated as closed).
    """
    values = []
    for eye in (left_eye, right_eye):
        try:
            pts = np.asarray(eye, dtype=np.float64).reshape(6, 2)
        except ValueError:
            return 0.0
        width = float(np.linalg.norm(pts[0] - pts[3]))
        if width < 1e-6:
            return 0.0
        v1 = abs(pts[1, 1] - pts[5, 1])
        v2 = abs(pts[2, 1] - pts[4, 1])
        values.append((v1 + v2) / (2.0 * width))
    return round(float(sum(values) / 2.0), 4)


# ===================================================================
# COMPONENT C: EYE-REGION FRAME DIFFERENCE
# ===================================================================

def eye_region_bounds(
    width: int,
    height: int,
    region: dict,
) -> tuple[int, int, int, int]:
    """Pixel (x, y, w, h) of the fixed eye-region crop for a frame size."""
    x = int(width * region["x"])
    y = int(height * region["y"])
    w = int(width * region["width"])
    h = int(height * region["height"])
    w = max(0, min(w, width - x))
    h = max(0, min(h, height - y))
    return x, y, w, h


def eye_region_difference(
    current: np.ndarray,
    previous: Optional[np.ndarray],
    region: dict,
) -> float:
    """Mean absolute per-channel difference inside the eye region.

    Channels are averaged per pixel, then averaged over the crop
    (0-255 scale). No previous frame, or a previous frame of a different
    shape, yields 0.0.
    """
    if previous is None or previous.shape != current.shape:
        return 0.0
    h_img, w_img = current.shape[:2]
    x, y, w, h = eye_region_bounds(w_img, h_img, region)
    if w == 0 or h == 0:
        return 0.0
    cur = current[y:y + h, x:x + w, :3].astype(np.int16)
    prev = previous[y:y + h, x:x + w, :3].astype(np.int16)
    return float(np.abs(cur - prev).mean())
