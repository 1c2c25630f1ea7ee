"""
FaceGate — Frame Ticker
========================
Periodic tick source for the analysis loop. One step per tick, on one
thread; the next tick is scheduled only after the current step returns,
so steps never overlap and a slow detector simply lowers the rate.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

_log = logging.getLogger("FaceGateTicker")


class FrameTicker:
    """Dedicated-thread ticker at a nominal rate (display refresh ≈ 60 Hz)."""

    def __init__(self, step: Callable[[], None], rate_hz: float = 60.0, name: str = "facegate-ticker") -> None:
        if rate_hz <= 0:
            raise ValueError(f"rate_hz must be positive, got {rate_hz}")
        self._step = step
        self._interval = 1.0 / rate_hz
        self._name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def cancel(self, timeout: Optional[float] = 2.0) -> None:
        """Cancel the next tick and wait for the current step to finish."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                _log.warning("Ticker step still running after %.1fs; abandoning it", timeout)
        self._thread = None

    def _run(self) -> None:
        next_at = time.monotonic()
        while not self._stop.is_set():
            try:
                self._step()
            except Exception:
                _log.exception("Analysis step failed")
            self.ticks += 1

            next_at += self._interval
            delay = next_at - time.monotonic()
            if delay < 0:
                # Step overran its slot; start counting from now
                next_at = time.monotonic()
                delay = 0.0
            if self._stop.wait(delay):
                break
