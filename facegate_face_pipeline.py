"""
FaceGate — Face Detection & Eye Landmark Pipeline (FaceDetector)
================================================================
Owns ALL face detection. No other module should run the landmarker
directly.

Features:
  - Multi-face detection (returns ALL faces, sorted by area)
  - 478→68 eye landmark extraction with anatomical documentation
  - Eye-openness score per face
  - Model asset loaded once per session; load failure is terminal
  - Per-frame detector failures degrade to "no face"
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import cv2
import numpy as np

from facegate_errors import ModelLoadError
from facegate_types import FaceObservation, Frame
from facegate_utils_core import compute_eye_openness

_log = logging.getLogger("FaceGateFacePipeline")

# ─── Project Root ─────────────────────────────────────────────
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))


# ═══════════════════════════════════════════════════════════════
# MediaPipe 478 → Standard 68-point Eye Landmarks
# ═══════════════════════════════════════════════════════════════
#
# Standard 68-point landmarks follow the Multi-PIE / iBUG convention:
#   Points 37-42: Right eye (outer → inner, upper then lower)
#   Points 43-48: Left eye (inner → outer, upper then lower)
# Within each eye: p1 corner, p2/p3 upper lid, p4 corner, p5/p6 lower lid.
# Eyelid pairs are (p2, p6) and (p3, p5).

# Right eye (6 points: outer corner CW) [subject's right]
_MP_RIGHT_EYE_INDICES = [
    33,   # 37 Right eye outer corner (lateral canthus)
    160,  # 38 Right eye upper lid outer
    158,  # 39 Right eye upper lid inner
    133,  # 40 Right eye inner corner (medial canthus)
    153,  # 41 Right eye lower lid inner
    144,  # 42 Right eye lower lid outer
]

# Left eye (6 points: inner corner CW) [subject's left]
_MP_LEFT_EYE_INDICES = [
    362,  # 43 Left eye inner corner (medial canthus)
    385,  # 44 Left eye upper lid inner
    387,  # 45 Left eye upper lid outer
    263,  # 46 Left eye outer corner (lateral canthus)
    373,  # 47 Left eye lower lid outer
    380,  # 48 Left eye lower lid inner
]

_MIN_MESH_POINTS = max(_MP_RIGHT_EYE_INDICES + _MP_LEFT_EYE_INDICES) + 1

# Landmark-derived boxes are padded by this many pixels
_BBOX_PAD = 10


# ═══════════════════════════════════════════════════════════════
# FaceDetector
# ═══════════════════════════════════════════════════════════════

class FaceDetector:
    """MediaPipe FaceLandmarker wrapper producing FaceObservations.

    The landmarker runs in VIDEO mode so consecutive frames reuse
    tracking state; timestamps must therefore be strictly increasing.
    """

    def __init__(
        self,
        landmarker_model: str = "face_landmarker.task",
        max_faces: int = 2,
        min_detection_confidence: float = 0.5,
    ) -> None:
        """
        Args:
            landmarker_model: Path to the FaceLandmarker .task asset,
                absolute or relative to the project root.
            max_faces: Maximum faces per frame. Must be >1 so that a
                second face can be noticed and reject the frame.
            min_detection_confidence: Minimum confidence to accept a face.
        """
        self._model_path = landmarker_model
        self._max_faces = max_faces
        self._min_confidence = min_detection_confidence
        self._landmarker = None
        self._last_timestamp_ms: int = 0

    @classmethod
    def from_config(cls, cfg: dict) -> "FaceDetector":
        return cls(
            landmarker_model=cfg.get("model_path", "face_landmarker.task"),
            max_faces=int(cfg.get("max_faces", 2)),
            min_detection_confidence=float(cfg.get("min_detection_confidence", 0.5)),
        )

    @property
    def models_loaded(self) -> bool:
        return self._landmarker is not None

    # ── Initializer ───────────────────────────────────────────

    def load(self) -> None:
        """Load the landmarker asset. Raises ModelLoadError on any failure."""
        if self._landmarker is not None:
            return

        full_path = self._model_path
        if not os.path.isabs(full_path):
            full_path = os.path.join(_SCRIPT_DIR, full_path)
        if not os.path.exists(full_path):
            raise ModelLoadError(f"Face landmark model not found: {full_path}")

        try:
            from mediapipe.tasks import python
            from mediapipe.tasks.python import vision

            base_options = python.BaseOptions(
                model_asset_path=full_path,
                delegate=python.BaseOptions.Delegate.CPU,
            )
            options = vision.FaceLandmarkerOptions(
                base_options=base_options,
                running_mode=vision.RunningMode.VIDEO,
                num_faces=self._max_faces,
                min_face_detection_confidence=self._min_confidence,
                min_face_presence_confidence=self._min_confidence,
                min_tracking_confidence=0.5,
            )
            self._landmarker = vision.FaceLandmarker.create_from_options(options)
        except Exception as e:
            raise ModelLoadError(f"Failed to load face landmark model: {e}", cause=e) from e

        _log.info(
            "FaceDetector loaded — model=%s (%.1f MB) max_faces=%d",
            os.path.basename(full_path),
            os.path.getsize(full_path) / 1024 / 1024,
            self._max_faces,
        )

    # ── Public API ────────────────────────────────────────────

    def detect(self, frame: Frame) -> list[FaceObservation]:
        """Detect ALL faces in the frame.

        Returns:
            FaceObservations sorted by bounding box area (largest first).
            Empty if no faces were found, the model is not loaded, or the
            detector failed on this frame.
        """
        if self._landmarker is None:
            return []

        try:
            result = self._run_landmarker(frame)
        except Exception as e:
            _log.warning("Face detection error: %s", e)
            return []

        if not result or not result.face_landmarks:
            return []

        observations = [
            obs for obs in (
                self._to_observation(face_lms, frame.width, frame.height)
                for face_lms in result.face_landmarks
            )
            if obs is not None
        ]
        observations.sort(key=lambda o: o.bbox[2] * o.bbox[3], reverse=True)
        return observations

    def release(self) -> None:
        """Release detector resources."""
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
            _log.info("FaceDetector released")

    # ── Context manager ───────────────────────────────────────

    def __enter__(self) -> "FaceDetector":
        self.load()
        return self

    def __exit__(self, *args) -> None:
        self.release()

    # ── Private ───────────────────────────────────────────────

    def _run_landmarker(self, frame: Frame):
        import mediapipe as mp

        # MediaPipe expects RGB input
        rgb_frame = cv2.cvtColor(frame.pixels, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)

        # VIDEO mode rejects non-increasing timestamps
        ts_ms = max(int(frame.timestamp * 1000), self._last_timestamp_ms + 1)
        self._last_timestamp_ms = ts_ms
        return self._landmarker.detect_for_video(mp_image, ts_ms)

    @staticmethod
    def _to_observation(face_lms, width: int, height: int) -> Optional[FaceObservation]:
        # Normalized landmarks → pixel coordinates (N, 2)
        lm_pixel = np.array(
            [[lm.x * width, lm.y * height] for lm in face_lms],
            dtype=np.float32,
        )
        if lm_pixel.shape[0] < _MIN_MESH_POINTS:
            return None

        xs = lm_pixel[:, 0]
        ys = lm_pixel[:, 1]
        x_min = max(0, int(xs.min()) - _BBOX_PAD)
        y_min = max(0, int(ys.min()) - _BBOX_PAD)
        x_max = min(width, int(xs.max()) + _BBOX_PAD)
        y_max = min(height, int(ys.max()) + _BBOX_PAD)
        bbox = (x_min, y_min, x_max - x_min, y_max - y_min)

        left_eye = lm_pixel[_MP_LEFT_EYE_INDICES]
        right_eye = lm_pixel[_MP_RIGHT_EYE_INDICES]

        in_frame = (xs >= 0) & (xs < width) & (ys >= 0) & (ys < height)

        return FaceObservation(
            bbox=bbox,
            left_eye=left_eye,
            right_eye=right_eye,
            eye_openness=compute_eye_openness(left_eye, right_eye),
            confidence=round(float(in_frame.mean()), 3),
        )
