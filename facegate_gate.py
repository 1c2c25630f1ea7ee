"""
FaceGate — Capture Gate
========================
Single-flight guard around the capture → compress → upload → verify
cycle. A blink that arrives while a cycle is active is dropped, never
queued.
"""

from __future__ import annotations

import logging
import threading

_log = logging.getLogger("FaceGateGate")


class CaptureGate:
    """At most one capture/upload cycle per session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._busy = False
        self._cycles_completed = 0
        self._rejected = 0

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def cycles_completed(self) -> int:
        return self._cycles_completed

    @property
    def rejected(self) -> int:
        return self._rejected

    def try_enter(self) -> bool:
        """Mark the gate busy. False if a cycle is already active."""
        with self._lock:
            if self._busy:
                self._rejected += 1
                _log.debug("Capture in progress, skipping")
                return False
            self._busy = True
            return True

    def exit(self) -> None:
        """Release the gate. Safe to call when not held."""
        with self._lock:
            if self._busy:
                self._cycles_completed += 1
            self._busy = False
