"""
FaceGate — Image Compressor
============================
Resizes a captured frame to the configured bound and re-encodes it as
JPEG for upload.

Profiles:
  desktop  640×480
  mobile   480×480  (constrained devices)
"""

from __future__ import annotations

import logging
from typing import Union

import cv2
import numpy as np

from facegate_errors import EncodingError

_log = logging.getLogger("FaceGateCompressor")

ImageSource = Union[np.ndarray, bytes, bytearray]


class ImageCompressor:
    """Aspect-preserving downscale + JPEG re-encode."""

    def __init__(self, max_width: int = 640, max_height: int = 480, quality: float = 0.8) -> None:
        if max_width <= 0 or max_height <= 0:
            raise ValueError(f"Invalid bound {max_width}x{max_height}")
        if not 0.0 < quality <= 1.0:
            raise ValueError(f"JPEG quality must be in (0, 1], got {quality}")
        self.max_width = max_width
        self.max_height = max_height
        self.quality = quality

    @classmethod
    def from_config(cls, cfg: dict) -> "ImageCompressor":
        profile_name = cfg.get("profile", "desktop")
        profiles = cfg.get("profiles") or {}
        if profile_name not in profiles:
            raise ValueError(f"Unknown compression profile: {profile_name!r}")
        profile = profiles[profile_name]
        return cls(
            max_width=int(profile["max_width"]),
            max_height=int(profile["max_height"]),
            quality=float(cfg.get("jpeg_quality", 0.8)),
        )

    def target_size(self, width: int, height: int) -> tuple[int, int]:
        """Output (width, height): within bounds, aspect preserved, never upscaled."""
        scale = min(1.0, self.max_width / width, self.max_height / height)
        if scale >= 1.0:
            return width, height
        new_w = min(self.max_width, max(1, round(width * scale)))
        new_h = min(self.max_height, max(1, round(height * scale)))
        return new_w, new_h

    def compress(self, image: ImageSource) -> bytes:
        """Return JPEG bytes for a BGR frame or an encoded image.

        Raises:
            EncodingError: the source cannot be decoded or the JPEG
                cannot be produced.
        """
        img = self._decode(image)
        h, w = img.shape[:2]
        new_w, new_h = self.target_size(w, h)

        if (new_w, new_h) != (w, h):
            img = cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)

        params = [int(cv2.IMWRITE_JPEG_QUALITY), int(round(self.quality * 100))]
        try:
            ok, buf = cv2.imencode(".jpg", img, params)
        except cv2.error as e:
            raise EncodingError(f"Image compression failed: {e}", cause=e) from e
        if not ok or buf is None or buf.size == 0:
            raise EncodingError("Image compression failed: JPEG encoder returned no data")

        _log.debug("Compressed %dx%d → %dx%d (%d bytes)", w, h, new_w, new_h, buf.size)
        return buf.tobytes()

    # ── Private helpers ───────────────────────────────────────

    @staticmethod
    def _decode(image: ImageSource) -> np.ndarray:
        if isinstance(image, (bytes, bytearray)):
            arr = np.frombuffer(bytes(image), dtype=np.uint8)
            img = cv2.imdecode(arr, cv2.IMREAD_COLOR) if arr.size else None
            if img is None:
                raise EncodingError("Image compression failed: image load failed")
            return img

        if not isinstance(image, np.ndarray) or image.ndim not in (2, 3) or image.size == 0:
            raise EncodingError("Image compression failed: no image data")
        if image.dtype != np.uint8:
            raise EncodingError(f"Image compression failed: unsupported dtype {image.dtype}")
        return image
