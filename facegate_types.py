from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from facegate_errors import FaceGateError

MATCHED_MESSAGE = "Face matched"


@dataclass
class Frame:
    """One captured video frame (BGR uint8)."""
    pixels: np.ndarray
    width: int
    height: int
    timestamp: float              # time.monotonic() seconds

    @classmethod
    def from_array(cls, pixels: np.ndarray, timestamp: float) -> "Frame":
        h, w = pixels.shape[:2]
        return cls(pixels=pixels, width=int(w), height=int(h), timestamp=timestamp)

    @property
    def is_valid(self) -> bool:
        return self.width > 0 and self.height > 0


@dataclass
class FaceObservation:
    """A single detected face. Produced per frame, never retained."""
    bbox: Tuple[int, int, int, int]                  # x, y, w, h
    left_eye: np.ndarray = field(default_factory=lambda: np.empty((0, 2)))
    right_eye: np.ndarray = field(default_factory=lambda: np.empty((0, 2)))
    eye_openness: float = 0.0
    confidence: float = 0.0


@dataclass
class BlinkEvent:
    timestamp: float
    frame: Frame
    difference: float


@dataclass
class UploadRequest:
    blob: bytes
    bucket: str
    key: str
    content_type: str = "image/jpeg"


class AuthStatus(str, Enum):
    MATCHED = "MATCHED"
    NOT_MATCHED = "NOT_MATCHED"
    ERROR = "ERROR"


@dataclass
class AuthenticationResult:
    """Outcome of one capture/upload/verify cycle."""
    status: AuthStatus
    message: str = ""
    employee_id: Optional[str] = None
    confidence: Optional[float] = None
    face_id: Optional[str] = None
    key: Optional[str] = None
    error: Optional[FaceGateError] = None

    @property
    def matched(self) -> bool:
        return self.status is AuthStatus.MATCHED

    @classmethod
    def from_response(cls, data: dict, key: Optional[str] = None) -> "AuthenticationResult":
        """Build a result from the verification RPC JSON body."""
        message = str(data.get("message") or "")
        employee_id = data.get("employeeId")
        confidence = data.get("confidence")
        return cls(
            status=AuthStatus.MATCHED if message == MATCHED_MESSAGE else AuthStatus.NOT_MATCHED,
            message=message,
            employee_id=str(employee_id) if employee_id not in (None, "") else None,
            confidence=float(confidence) if confidence is not None else None,
            face_id=data.get("faceId"),
            key=key,
        )

    @classmethod
    def failure(cls, error: FaceGateError, key: Optional[str] = None) -> "AuthenticationResult":
        return cls(status=AuthStatus.ERROR, message=str(error), key=key, error=error)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "message": self.message,
            "employee_id": self.employee_id,
            "confidence": self.confidence,
            "face_id": self.face_id,
            "key": self.key,
            "error": self.error.kind if self.error else None,
        }
