import logging
import time
from typing import Optional, Tuple

import cv2
import numpy as np

from facegate_engine import EngineStatus
from facegate_result import ResultDisplay

_log = logging.getLogger("FaceGateHUD")


class FaceGateHUD:
    """Status overlay for the authentication window.

    Bottom bar: current prompt and camera health.
    Top banner: latest authentication outcome, color-coded.
    """

    SEVERITY_COLORS = {
        "success": (0, 180, 0),       # Green
        "warning": (0, 165, 255),     # Orange
        "error":   (0, 0, 220),       # Red
    }

    def __init__(self, mirror: bool = True):
        self.mirror = mirror
        _log.info("FaceGateHUD initialized")

    def render(self, frame: np.ndarray, status: EngineStatus) -> Tuple[Optional[np.ndarray], float]:
        """Draw overlay onto a copy of the frame.

        Returns:
            (annotated_frame, hud_render_time_seconds)
        """
        t_hud_start = time.monotonic()

        if frame is None:
            return None, 0.0

        # Selfie view, like the browser preview
        viz = cv2.flip(frame, 1) if self.mirror else frame.copy()

        self._draw_status_bar(viz, status)
        if status.display is not None:
            self._draw_result_banner(viz, status.display)

        return viz, time.monotonic() - t_hud_start

    def _draw_status_bar(self, frame: np.ndarray, status: EngineStatus):
        h, w = frame.shape[:2]
        bar_h = 40
        overlay = frame.copy()
        cv2.rectangle(overlay, (0, h - bar_h), (w, h), (0, 0, 0), -1)
        alpha = 0.7
        cv2.addWeighted(overlay, alpha, frame, 1 - alpha, 0, frame)

        color = (0, 0, 255) if status.disabled else (255, 255, 255)
        cv2.putText(frame, status.prompt, (10, h - 14),
            cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 1)

        cam = status.camera_health
        cam_text = f"{cam.get('fps_actual', 0):.0f} FPS"
        text_w = cv2.getTextSize(cam_text, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1)[0][0]
        cv2.putText(frame, cam_text, (w - text_w - 10, h - 14),
            cv2.FONT_HERSHEY_SIMPLEX, 0.5, (200, 200, 200), 1)

    def _draw_result_banner(self, frame: np.ndarray, display: ResultDisplay):
        lines = [display.message] + list(display.details)
        color = self.SEVERITY_COLORS.get(display.severity, (128, 128, 128))
        font = cv2.FONT_HERSHEY_SIMPLEX
        scale = 0.6
        line_h = 24
        pad = 10

        width = max(cv2.getTextSize(line, font, scale, 1)[0][0] for line in lines) + 2 * pad
        height = line_h * len(lines) + pad
        cv2.rectangle(frame, (pad, pad), (pad + width, pad + height), (0, 0, 0), -1)
        cv2.rectangle(frame, (pad, pad), (pad + width, pad + height), color, 2)

        for i, line in enumerate(lines):
            cv2.putText(frame, line, (2 * pad, pad + line_h * (i + 1) - 4),
                font, scale, color if i == 0 else (255, 255, 255), 1)
