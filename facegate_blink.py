"""
FaceGate — Blink Analyzer (Liveness State Machine)
==================================================
Decides, frame by frame, whether a blink occurred in front of the camera.

Two signals are combined:
  1. Face presence: exactly one face with open eyes for more than N
     consecutive frames (FACE_CONFIRMED).
  2. Eye-region frame difference: a transient spike in the mean
     per-channel difference of a fixed crop, debounced by a cooldown.

All mutable state lives in a DetectionState owned by the session and
passed into every call. Analyzers hold configuration only, so one can be
swapped for another without touching the surrounding pipeline.

Phases:
  IDLE → FACE_ACQUIRING → FACE_CONFIRMED → BLINK_PENDING
       → BLINK_DETECTED → FACE_ACQUIRING
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from facegate_types import BlinkEvent, FaceObservation, Frame
from facegate_utils_core import eye_region_difference

_log = logging.getLogger("FaceGateBlink")


class AnalyzerPhase(str, Enum):
    IDLE = "IDLE"
    FACE_ACQUIRING = "FACE_ACQUIRING"
    FACE_CONFIRMED = "FACE_CONFIRMED"
    BLINK_PENDING = "BLINK_PENDING"
    BLINK_DETECTED = "BLINK_DETECTED"


@dataclass
class DetectionState:
    """Per-session analyzer state. Never shared between sessions."""
    face_detected: bool = False
    consecutive_face_frames: int = 0
    last_blink_timestamp: Optional[float] = None
    models_loaded: bool = False
    phase: AnalyzerPhase = AnalyzerPhase.IDLE
    previous_pixels: Optional[np.ndarray] = None
    last_difference: float = 0.0

    def reset(self) -> None:
        """Back to the initial state. ``models_loaded`` is kept."""
        self.face_detected = False
        self.consecutive_face_frames = 0
        self.last_blink_timestamp = None
        self.phase = AnalyzerPhase.IDLE
        self.previous_pixels = None
        self.last_difference = 0.0

    def lose_face(self) -> None:
        self.face_detected = False
        self.consecutive_face_frames = 0
        self.previous_pixels = None
        self.phase = AnalyzerPhase.FACE_ACQUIRING


class BlinkAnalyzer(ABC):
    """Interface for liveness heuristics driven by the frame loop."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used in logs and audit entries."""

    def new_state(self) -> DetectionState:
        return DetectionState()

    @abstractmethod
    def analyze(
        self,
        state: DetectionState,
        frame: Frame,
        faces: Sequence[FaceObservation],
    ) -> Optional[BlinkEvent]:
        """Advance ``state`` by one frame.

        Args:
            state: Session state; mutated in place.
            frame: Current frame. Invalid frames must leave state untouched.
            faces: Detector output for this frame (empty on detector error).

        Returns:
            A BlinkEvent when this frame completes a qualifying blink.
        """


class FrameDiffBlinkAnalyzer(BlinkAnalyzer):
    """Face-count gate plus eye-region pixel-difference blink test.

    This is a weak anti-spoofing signal: it is satisfied by any motion in
    the eye region, including a replayed video.
    """

    def __init__(
        self,
        eye_openness_threshold: float = 0.2,
        min_consecutive_face_frames: int = 5,
        blink_diff_threshold: float = 30.0,
        blink_cooldown_ms: float = 1000.0,
        eye_region: Optional[dict] = None,
        require_face_confirmation: bool = True,
    ) -> None:
        self.eye_openness_threshold = eye_openness_threshold
        self.min_consecutive_face_frames = min_consecutive_face_frames
        self.blink_diff_threshold = blink_diff_threshold
        self.blink_cooldown_ms = blink_cooldown_ms
        self.eye_region = eye_region or {"x": 0.3, "y": 0.3, "width": 0.4, "height": 0.2}
        self.require_face_confirmation = require_face_confirmation

    @classmethod
    def from_config(cls, cfg: dict) -> "FrameDiffBlinkAnalyzer":
        return cls(
            eye_openness_threshold=float(cfg.get("eye_openness_threshold", 0.2)),
            min_consecutive_face_frames=int(cfg.get("min_consecutive_face_frames", 5)),
            blink_diff_threshold=float(cfg.get("blink_diff_threshold", 30.0)),
            blink_cooldown_ms=float(cfg.get("blink_cooldown_ms", 1000.0)),
            eye_region=dict(cfg.get("eye_region") or {}) or None,
            require_face_confirmation=bool(cfg.get("require_face_confirmation", True)),
        )

    @property
    def name(self) -> str:
        return "frame-diff"

    def analyze(
        self,
        state: DetectionState,
        frame: Frame,
        faces: Sequence[FaceObservation],
    ) -> Optional[BlinkEvent]:
        if not frame.is_valid:
            return None

        if state.phase is AnalyzerPhase.BLINK_DETECTED or state.phase is AnalyzerPhase.IDLE:
            state.phase = AnalyzerPhase.FACE_ACQUIRING

        # ── Stage 1: face presence ─────────────────────────────
        if self._is_live_candidate(faces):
            state.consecutive_face_frames += 1
        else:
            state.lose_face()

        state.face_detected = state.consecutive_face_frames > self.min_consecutive_face_frames
        if self.require_face_confirmation and not state.face_detected:
            state.phase = AnalyzerPhase.FACE_ACQUIRING
            return None

        # ── Stage 2: eye-region difference ─────────────────────
        had_previous = state.previous_pixels is not None
        difference = eye_region_difference(frame.pixels, state.previous_pixels, self.eye_region)
        state.previous_pixels = frame.pixels.copy()
        state.last_difference = difference
        state.phase = AnalyzerPhase.BLINK_PENDING if had_previous else AnalyzerPhase.FACE_CONFIRMED

        if difference <= self.blink_diff_threshold or not self._cooldown_elapsed(state, frame.timestamp):
            return None

        _log.info("Blink detected, difference: %.2f", difference)
        state.last_blink_timestamp = frame.timestamp
        # A fresh run of face frames is required before the next blink
        state.lose_face()
        state.phase = AnalyzerPhase.BLINK_DETECTED
        return BlinkEvent(timestamp=frame.timestamp, frame=frame, difference=difference)

    # ── Private helpers ───────────────────────────────────────

    def _is_live_candidate(self, faces: Sequence[FaceObservation]) -> bool:
        if len(faces) != 1:
            return False
        return faces[0].eye_openness > self.eye_openness_threshold

    def _cooldown_elapsed(self, state: DetectionState, now: float) -> bool:
        if state.last_blink_timestamp is None:
            return True
        return (now - state.last_blink_timestamp) * 1000.0 > self.blink_cooldown_ms
