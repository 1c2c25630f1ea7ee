"""
FaceGate — Error Taxonomy
==========================
Every failure the liveness/authentication pipeline can report.

Terminal errors (DeviceError, ModelLoadError) disable the liveness
feature for the rest of the session. Everything else aborts at most the
current capture cycle and leaves the engine ready for the next blink.
"""

from __future__ import annotations


class FaceGateError(Exception):
    """Base class for all FaceGate errors."""

    terminal: bool = False
    user_message: str = "Something went wrong. Please try again."

    def __init__(self, message: str = "", *, cause: BaseException | None = None) -> None:
        super().__init__(message or self.user_message)
        self.cause = cause

    @property
    def kind(self) -> str:
        return type(self).__name__


class DeviceError(FaceGateError):
    """Camera unavailable or access denied."""

    terminal = True
    user_message = "Webcam error: camera unavailable or access denied."


class ModelLoadError(FaceGateError):
    """Face detection / landmark model could not be loaded."""

    terminal = True
    user_message = "Failed to initialize face detection. Please restart the application."


class DetectionError(FaceGateError):
    """Per-tick detector failure. Recovered locally as "no face"."""

    user_message = "Face detection failed for this frame."


class EncodingError(FaceGateError):
    """Captured frame could not be decoded or re-encoded as JPEG."""

    user_message = "Image compression failed."


class NetworkError(FaceGateError):
    """Object-store write or verification RPC failed."""

    user_message = "Authentication failed: network error."


class RequestTimeoutError(NetworkError):
    """Object-store write or verification RPC exceeded its timeout."""

    user_message = "Authentication failed: request timed out."
