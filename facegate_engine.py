"""
FaceGate — FaceGateEngine (Session Orchestrator)
================================================
Runs one liveness/authentication session:

  FrameSource → FaceDetector + BlinkAnalyzer   (ticker thread, sequential)
      └─ BlinkEvent → CaptureGate → ImageCompressor → UploadPipeline
                                                    → ResultSink  (worker thread)

Threading model:
  - One ticker thread performs every analysis step; DetectionState is
    only touched there, so it needs no lock.
  - The capture cycle runs on its own worker. While it holds the gate,
    ticks still read frames (for the HUD) but skip analysis.
  - Teardown cancels the next tick and any redirect still waiting to
    fire. A cycle already in flight finishes; its result is dropped if
    the session it belonged to has ended.
  - stop()/start() re-initializes in place: the same frame source is
    reopened and the detector reloaded.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

import psutil

from facegate_blink import AnalyzerPhase, BlinkAnalyzer, FrameDiffBlinkAnalyzer
from facegate_camera import CameraConstraints, FrameSource
from facegate_compressor import ImageCompressor
from facegate_errors import DetectionError, FaceGateError
from facegate_face_pipeline import FaceDetector
from facegate_gate import CaptureGate
from facegate_logger import get_logger
from facegate_result import BrowserFormRedirect, ResultDisplay, ResultSink
from facegate_scheduler import FrameTicker
from facegate_types import AuthenticationResult, BlinkEvent, Frame
from facegate_upload import UploadPipeline
from facegate_utils_core import DEFAULT_CONFIG, merge_config

_log = logging.getLogger("FaceGateEngine")


PROMPT_LOADING = "Loading face detection models..."
PROMPT_CAMERA = "Initializing webcam..."
PROMPT_POSITION = "Please position your face in the frame"
PROMPT_BLINK = "Please blink to authenticate"
PROMPT_PROCESSING = "Processing authentication..."


@dataclass
class EngineStatus:
    """Snapshot for the HUD. Built on demand, never mutated by the engine."""
    prompt: str
    phase: str
    face_detected: bool
    consecutive_face_frames: int
    uploading: bool
    disabled: bool
    error: Optional[str] = None
    display: Optional[ResultDisplay] = None
    fps: float = 0.0
    camera_health: dict = field(default_factory=dict)


def _spawn_worker(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="facegate-capture", daemon=True).start()


class FaceGateEngine:
    """One liveness session over a live camera."""

    def __init__(
        self,
        config: Optional[dict] = None,
        *,
        frame_source_factory: Optional[Callable[[], FrameSource]] = None,
        detector: Optional[FaceDetector] = None,
        analyzer: Optional[BlinkAnalyzer] = None,
        compressor: Optional[ImageCompressor] = None,
        uploader: Optional[UploadPipeline] = None,
        result_sink: Optional[ResultSink] = None,
        cycle_runner: Callable[[Callable[[], None]], None] = _spawn_worker,
        audit_logger=None,
    ) -> None:
        self.config = merge_config(DEFAULT_CONFIG, config)
        cfg = self.config

        self.logger = audit_logger or get_logger(cfg["logging"]["audit_dir"])

        self._frame_source_factory = frame_source_factory or (
            lambda: FrameSource(CameraConstraints.from_config(cfg["camera"]))
        )
        self.frame_source: FrameSource = self._frame_source_factory()
        self.detector = detector or FaceDetector.from_config(cfg["detector"])
        self.analyzer = analyzer or FrameDiffBlinkAnalyzer.from_config(cfg["liveness"])
        self.compressor = compressor or ImageCompressor.from_config(cfg["compression"])
        self.uploader = uploader or UploadPipeline.from_config(cfg["upload"])
        self.result_sink = result_sink or ResultSink(
            redirect=BrowserFormRedirect(cfg["result"]["redirect_url"]),
            redirect_delay_s=float(cfg["result"]["redirect_delay_s"]),
        )
        self.gate = CaptureGate()
        self.state = self.analyzer.new_state()
        self.ticker = FrameTicker(self.tick, rate_hz=float(cfg["loop"]["tick_hz"]))
        self._cycle_runner = cycle_runner

        self._session = 0
        # Guards the session counter against the capture worker's result handoff
        self._session_lock = threading.Lock()
        self._active = False
        self._terminal_error: Optional[FaceGateError] = None
        self._last_frame: Optional[Frame] = None
        self._tick_times: deque[float] = deque(maxlen=120)

        self.logger.log({
            "event": "engine_init",
            "analyzer": self.analyzer.name,
            "compression": {"max_width": self.compressor.max_width, "max_height": self.compressor.max_height},
            "bucket": self.uploader.bucket,
        })

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._active

    @property
    def disabled(self) -> bool:
        return self._terminal_error is not None

    @property
    def is_ready(self) -> bool:
        return self._active and self.state.models_loaded and self.frame_source.is_ready

    def start(self, run_loop: bool = True) -> bool:
        """Load models, open the camera and start ticking.

        Returns False (and disables the session) on a terminal error.
        """
        if self._active:
            return True
        if self.disabled:
            _log.warning("Liveness disabled: %s", self._terminal_error)
            return False

        with self._session_lock:
            self._session += 1
        self.state = self.analyzer.new_state()
        self.result_sink.clear()

        try:
            self.detector.load()
            self.state.models_loaded = True
            self.frame_source.start()
        except FaceGateError as e:
            if not e.terminal:
                raise
            self._disable(e)
            return False

        self._active = True
        self.logger.log({"event": "session_started", "session": self._session})
        _log.info("Session %d started", self._session)
        if run_loop:
            self.ticker.start()
        return True

    def stop(self) -> None:
        """Tear down the session. In-flight cycle results will be discarded."""
        was_active = self._active
        with self._session_lock:
            self._active = False
            self._session += 1
        self.ticker.cancel()
        self.result_sink.cancel_pending()
        self.frame_source.release()
        self.detector.release()
        self.state.reset()
        self.state.models_loaded = False
        if was_active:
            self.logger.log({
                "event": "session_stopped",
                "cycles_completed": self.gate.cycles_completed,
                "blinks_dropped_busy": self.gate.rejected,
                "camera_health": self.frame_source.get_health_status(),
                "memory_mb": round(psutil.Process().memory_info().rss / 1e6, 1),
            })
            _log.info("Session stopped")

    def restart(self) -> bool:
        """Manual retry after a terminal error."""
        self.stop()
        self._terminal_error = None
        self.frame_source = self._frame_source_factory()
        return self.start()

    def close(self) -> None:
        self.stop()
        self.logger.close()

    # ── Frame loop ────────────────────────────────────────────

    def tick(self) -> Optional[BlinkEvent]:
        """One analysis step. Called by the ticker; callable directly in tests."""
        if not self.is_ready or self.disabled:
            return None

        t0 = time.monotonic()
        frame = self.frame_source.read_frame()
        if frame is None:
            return None
        self._last_frame = frame

        # Analysis is frozen while a capture cycle holds the gate
        if self.gate.busy:
            return None

        faces = self._detect(frame)
        event = self.analyzer.analyze(self.state, frame, faces)
        self._tick_times.append(time.monotonic() - t0)

        if event is not None:
            self._on_blink(event)
        return event

    def latest_frame(self) -> Optional[Frame]:
        return self._last_frame

    def status(self) -> EngineStatus:
        if self.disabled:
            prompt = str(self._terminal_error)
        elif not self.state.models_loaded:
            prompt = PROMPT_LOADING
        elif not self.frame_source.is_ready:
            prompt = PROMPT_CAMERA
        elif self.gate.busy:
            prompt = PROMPT_PROCESSING
        elif self.state.face_detected or self.state.phase is AnalyzerPhase.BLINK_DETECTED:
            prompt = PROMPT_BLINK
        else:
            prompt = PROMPT_POSITION

        total = sum(self._tick_times)
        return EngineStatus(
            prompt=prompt,
            phase=self.state.phase.value,
            face_detected=self.state.face_detected,
            consecutive_face_frames=self.state.consecutive_face_frames,
            uploading=self.gate.busy,
            disabled=self.disabled,
            error=str(self._terminal_error) if self._terminal_error else None,
            display=self.result_sink.display,
            fps=len(self._tick_times) / total if total > 0 else 0.0,
            camera_health=self.frame_source.get_health_status(),
        )

    # ── Capture cycle ─────────────────────────────────────────

    def _on_blink(self, event: BlinkEvent) -> None:
        if not self.gate.try_enter():
            self.logger.log({"event": "blink_dropped", "difference": event.difference})
            return
        self.logger.log({"event": "blink_detected", "difference": event.difference})
        session = self._session
        self._cycle_runner(lambda: self._run_cycle(event, session))

    def _run_cycle(self, event: BlinkEvent, session: int) -> None:
        try:
            try:
                blob = self.compressor.compress(event.frame.pixels)
            except FaceGateError as e:
                _log.error("Capture aborted: %s", e)
                result = AuthenticationResult.failure(e)
            else:
                result = self.uploader.upload(blob)

            # stop() cannot slip in between the session check and the handoff
            with self._session_lock:
                if session != self._session:
                    _log.info("Session ended during upload; discarding %s result", result.status.value)
                    return
                self.logger.log({"event": "authentication_result", **result.to_dict()})
                self.result_sink.handle(result)
            if result.matched and result.employee_id:
                self.logger.log({"event": "redirect_scheduled", "employee_id": result.employee_id})
        finally:
            self.gate.exit()

    # ── Private helpers ───────────────────────────────────────

    def _detect(self, frame: Frame) -> list:
        try:
            return list(self.detector.detect(frame))
        except Exception as e:
            err = DetectionError(f"Face detection error: {e}", cause=e)
            _log.warning("%s", err)
            return []

    def _disable(self, error: FaceGateError) -> None:
        self._terminal_error = error
        self._active = False
        self.result_sink.show_error(error)
        self.logger.error(f"Liveness disabled ({error.kind}): {error}", exception=error)
