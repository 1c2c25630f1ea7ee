"""
FaceGate — Camera Input Module (FrameSource)
============================================
Owns ALL camera interaction. No other file should touch
cv2.VideoCapture directly.

Features:
  - Start from constraints (camera id, resolution, facing mode, backend)
  - Ready / error signals, each fired at most once
  - Frame validation (zero dimensions, shape, dtype, channel count)
  - Health monitoring (FPS, drop rate)
  - Proper resource cleanup
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

import cv2
import numpy as np

from facegate_errors import DeviceError
from facegate_types import Frame

# ─── Module Logger ─────────────────────────────────────────────
_log = logging.getLogger("FaceGateCamera")


_BACKENDS = {
    "auto": cv2.CAP_ANY,
    "dshow": cv2.CAP_DSHOW,
    "msmf": cv2.CAP_MSMF,
}
if hasattr(cv2, "CAP_V4L2"):
    _BACKENDS["v4l2"] = cv2.CAP_V4L2


@dataclass
class CameraConstraints:
    camera_id: int = 0
    width: int = 640
    height: int = 480
    facing_mode: str = "user"
    backend: str = "auto"

    @classmethod
    def from_config(cls, cfg: dict) -> "CameraConstraints":
        return cls(
            camera_id=cfg.get("camera_id", 0),
            width=int(cfg.get("width", 640)),
            height=int(cfg.get("height", 480)),
            facing_mode=cfg.get("facing_mode", "user"),
            backend=cfg.get("backend", "auto"),
        )


class _OnceSignal:
    """Callback list that fires exactly once; late subscribers fire immediately."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fired = False
        self._payload = None
        self._callbacks: list[Callable] = []

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def payload(self):
        return self._payload

    def connect(self, callback: Callable) -> None:
        with self._lock:
            if not self._fired:
                self._callbacks.append(callback)
                return
            payload = self._payload
        callback(payload)

    def fire(self, payload=None) -> bool:
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            self._payload = payload
            callbacks = list(self._callbacks)
        for cb in callbacks:
            cb(payload)
        return True


class FrameSource:
    """Validated live capture for FaceGate.

    Wraps cv2.VideoCapture with:
      - 1-frame buffer to minimize latency
      - Per-frame validation; invalid frames are skipped, never analyzed
      - Monotonic timestamping
      - Health status reporting (FPS, drops)
    """

    # ── Validation constants ──────────────────────────────────
    EXPECTED_CHANNELS: int = 3
    EXPECTED_DTYPE = np.uint8
    FPS_WINDOW: int = 30                # frames used for rolling FPS

    def __init__(self, constraints: Optional[CameraConstraints] = None) -> None:
        self.constraints = constraints or CameraConstraints()
        self._cap: Optional[cv2.VideoCapture] = None
        self.ready = _OnceSignal()
        self.error = _OnceSignal()

        self._frames_total: int = 0
        self._frames_dropped: int = 0
        self._frame_times: deque[float] = deque(maxlen=self.FPS_WINDOW)

    # ── Public API ────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self._cap is not None and self.ready.fired and not self.error.fired

    def start(self) -> None:
        """Open the device. Fires ``ready`` or raises/fires ``DeviceError``.

        A source that was released is reopened; ``ready`` still fires
        only once over the source's lifetime.
        """
        if self.error.fired:
            raise self.error.payload
        if self._cap is not None:
            return

        c = self.constraints
        backend = _BACKENDS.get(c.backend, cv2.CAP_ANY)
        try:
            cap = cv2.VideoCapture(c.camera_id, backend)
        except cv2.error as e:
            self._fail(DeviceError(f"Webcam error: {e}", cause=e))

        if not cap.isOpened():
            cap.release()
            self._fail(DeviceError(
                f"Webcam error: camera {c.camera_id!r} unavailable or access denied"
            ))

        # Keep the newest frame only
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, c.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, c.height)
        self._cap = cap

        resolution = (
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        _log.info(
            "FrameSource started — id=%s backend=%s requested=%dx%d actual=%s facing=%s",
            c.camera_id, c.backend, c.width, c.height, resolution, c.facing_mode,
        )
        if not self.ready.fire(resolution):
            _log.info("FrameSource reopened after release")

    def read_frame(self) -> Optional[Frame]:
        """Read one frame; ``None`` if the device is not ready or the frame is invalid."""
        if self._cap is None or not self.is_ready:
            return None

        self._frames_total += 1
        timestamp = time.monotonic()
        ret, pixels = self._cap.read()

        if not self._validate_frame(ret, pixels):
            self._frames_dropped += 1
            return None

        self._frame_times.append(timestamp)
        return Frame.from_array(pixels, timestamp)

    def get_health_status(self) -> dict:
        """Snapshot of capture health metrics."""
        return {
            "connected": bool(self._cap is not None and self._cap.isOpened()),
            "fps_actual": round(self._calculate_fps(), 1),
            "frames_total": self._frames_total,
            "frames_dropped": self._frames_dropped,
            "drop_rate_pct": (
                (self._frames_dropped / self._frames_total * 100.0)
                if self._frames_total > 0
                else 0.0
            ),
        }

    def release(self) -> None:
        """Release camera resources and log final statistics."""
        if self._cap is None:
            return
        health = self.get_health_status()
        _log.info(
            "FrameSource releasing — total=%d dropped=%d (%.1f%%) avg_fps=%.1f",
            health["frames_total"],
            health["frames_dropped"],
            health["drop_rate_pct"],
            health["fps_actual"],
        )
        self._cap.release()
        self._cap = None

    # ── Context manager support ───────────────────────────────

    def __enter__(self) -> "FrameSource":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    # ── Private helpers ───────────────────────────────────────

    def _fail(self, err: DeviceError) -> None:
        _log.error("%s", err)
        self.error.fire(err)
        raise err

    def _validate_frame(self, ret: bool, frame: Optional[np.ndarray]) -> bool:
        if not ret or frame is None:
            _log.debug("Frame rejected: read() returned nothing")
            return False

        if frame.ndim != 3 or frame.shape[2] != self.EXPECTED_CHANNELS:
            _log.debug("Frame rejected: shape=%s", frame.shape)
            return False

        if frame.dtype != self.EXPECTED_DTYPE:
            _log.debug("Frame rejected: dtype=%s (expected uint8)", frame.dtype)
            return False

        # Device still warming up
        h, w = frame.shape[:2]
        if h == 0 or w == 0:
            _log.debug("Video dimensions not ready, skipping frame")
            return False

        return True

    def _calculate_fps(self) -> float:
        if len(self._frame_times) < 2:
            return 0.0
        elapsed = self._frame_times[-1] - self._frame_times[0]
        if elapsed <= 0:
            return 0.0
        return (len(self._frame_times) - 1) / elapsed
