"""
FaceGate — Engine Integration Tests
====================================
Validates the FaceGateEngine session orchestration:
- Face confirmation → blink → capture cycle → result
- Single-flight capture gate
- Terminal errors disabling the session
- Late results discarded after teardown

Camera, detector and network are mocked. Capture cycles run inline.
"""

import sys
import os
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

import cv2
import numpy as np
from botocore.exceptions import ReadTimeoutError

# Add project root
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from facegate_camera import FrameSource
from facegate_compressor import ImageCompressor
from facegate_engine import (
    PROMPT_BLINK,
    PROMPT_POSITION,
    PROMPT_PROCESSING,
    FaceGateEngine,
)
from facegate_errors import DeviceError, EncodingError, ModelLoadError
from facegate_face_pipeline import FaceDetector
from facegate_result import ResultSink
from facegate_types import AuthStatus, AuthenticationResult, FaceObservation, Frame
from facegate_upload import UploadPipeline
from facegate_utils_core import DEFAULT_CONFIG, eye_region_bounds

_REGION = DEFAULT_CONFIG["liveness"]["eye_region"]


def _frame(ts, eye_value=100):
    pixels = np.full((480, 640, 3), 100, dtype=np.uint8)
    x, y, w, h = eye_region_bounds(640, 480, _REGION)
    pixels[y:y + h, x:x + w] = eye_value
    return Frame.from_array(pixels, ts)


def _blink_sequence(t0=0.0, settle=6):
    """``settle`` steady frames then one eye-region spike."""
    frames = [_frame(t0 + i * 0.033) for i in range(settle)]
    frames.append(_frame(t0 + settle * 0.033, eye_value=145))
    return frames


_FACE = FaceObservation(bbox=(200, 100, 240, 300), eye_openness=0.5, confidence=1.0)


class _ImmediateTimer:
    def __init__(self, interval, function, args=None, kwargs=None):
        self.function = function
        self.args = args or ()
        self.daemon = False

    def start(self):
        self.function(*self.args)

    def cancel(self):
        pass


class _HeldTimer:
    """Runs only when the test calls fire(); records cancellation."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.function = function
        self.args = args or ()
        self.daemon = False
        self.cancelled = False

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


def _mock_capture():
    cap = MagicMock()
    cap.isOpened.return_value = True
    cap.read.return_value = (True, _frame(0.0).pixels)
    cap.get.side_effect = lambda prop: {
        cv2.CAP_PROP_FRAME_WIDTH: 640.0,
        cv2.CAP_PROP_FRAME_HEIGHT: 480.0,
    }.get(prop, 30.0)
    return cap


class TestFaceGateEngine(unittest.TestCase):

    def setUp(self):
        self.frames = []
        self.source = MagicMock(spec=FrameSource)
        self.source.is_ready = True
        self.source.read_frame.side_effect = lambda: self.frames.pop(0) if self.frames else None
        self.source.get_health_status.return_value = {"fps_actual": 30.0}

        self.detector = MagicMock(spec=FaceDetector)
        self.detector.detect.return_value = [_FACE]

        self.uploader = MagicMock(spec=UploadPipeline)
        self.uploader.bucket = "test-bucket"
        self.uploader.upload.return_value = AuthenticationResult.from_response(
            {"message": "Face matched", "employeeId": "E123", "confidence": 99.1, "faceId": "f"}
        )

        self.redirect = MagicMock()
        self.sink = ResultSink(self.redirect, timer_factory=_ImmediateTimer)
        self.audit = MagicMock()
        self.pending = []

    def _engine(self, inline=True, **kwargs):
        runner = (lambda fn: fn()) if inline else self.pending.append
        params = dict(
            frame_source_factory=lambda: self.source,
            detector=self.detector,
            compressor=ImageCompressor(),
            uploader=self.uploader,
            result_sink=self.sink,
            cycle_runner=runner,
            audit_logger=self.audit,
        )
        params.update(kwargs)
        engine = FaceGateEngine(**params)
        self.assertTrue(engine.start(run_loop=False))
        return engine

    def _tick_all(self, engine):
        events = []
        while self.frames:
            ev = engine.tick()
            if ev is not None:
                events.append(ev)
        return events

    # ─── Blink → upload → match → one redirect ────────────────

    def test_blink_triggers_single_cycle_and_redirect(self):
        engine = self._engine()
        self.frames = _blink_sequence()

        events = self._tick_all(engine)

        self.assertEqual(len(events), 1)
        self.uploader.upload.assert_called_once()
        blob = self.uploader.upload.call_args.args[0]
        self.assertEqual(blob[:2], b"\xff\xd8")
        self.redirect.assert_called_once_with("E123")
        self.assertFalse(engine.gate.busy)
        self.assertEqual(engine.gate.cycles_completed, 1)
        self.assertEqual(engine.status().display.severity, "success")

    def test_no_blink_before_face_confirmed(self):
        engine = self._engine()
        self.frames = _blink_sequence(settle=4)

        self.assertEqual(self._tick_all(engine), [])
        self.uploader.upload.assert_not_called()
        self.assertEqual(engine.status().prompt, PROMPT_POSITION)

    # ─── Detector errors are "no face" for that frame ─────────

    def test_detector_errors_then_open_eyes(self):
        engine = self._engine()
        self.detector.detect.side_effect = [RuntimeError("x"), RuntimeError("y")] + [[_FACE]] * 5
        self.frames = [_frame(i * 0.033) for i in range(7)]

        self._tick_all(engine)

        self.assertEqual(engine.state.consecutive_face_frames, 5)
        self.assertFalse(engine.state.face_detected)
        self.assertFalse(engine.disabled)

    def test_invalid_frame_skips_analysis(self):
        engine = self._engine()
        self.assertIsNone(engine.tick())
        self.detector.detect.assert_not_called()

    # ─── Store timeout → error shown, gate released, retry works ─

    def test_store_timeout_then_fresh_cycle(self):
        store = MagicMock()
        http = MagicMock()
        http.post.return_value.ok = True
        http.post.return_value.json.return_value = {"message": "Face matched", "employeeId": "E7"}
        store.put_object.side_effect = [ReadTimeoutError(endpoint_url="https://s3"), {}]
        pipeline = UploadPipeline.from_config(DEFAULT_CONFIG["upload"], store_client=store, http=http)
        engine = self._engine(uploader=pipeline)

        self.frames = _blink_sequence()
        self._tick_all(engine)

        display = engine.status().display
        self.assertEqual(display.severity, "error")
        self.assertIn("timed out", display.message)
        self.assertFalse(engine.gate.busy)
        http.post.assert_not_called()
        self.redirect.assert_not_called()

        # Next blink, past the cooldown, starts a brand-new cycle
        self.frames = _blink_sequence(t0=2.0)
        events = self._tick_all(engine)

        self.assertEqual(len(events), 1)
        self.assertEqual(store.put_object.call_count, 2)
        keys = [c.kwargs["Key"] for c in store.put_object.call_args_list]
        self.assertNotEqual(keys[0], keys[1])
        self.redirect.assert_called_once_with("E7")
        self.assertEqual(engine.gate.cycles_completed, 2)

    # ─── Single flight: analysis frozen while a cycle is active ─

    def test_gate_blocks_analysis_while_cycle_in_flight(self):
        engine = self._engine(inline=False)
        self.frames = _blink_sequence()
        self._tick_all(engine)
        self.assertEqual(len(self.pending), 1)
        self.assertTrue(engine.gate.busy)
        self.assertEqual(engine.status().prompt, PROMPT_PROCESSING)

        calls_before = self.detector.detect.call_count
        self.frames = _blink_sequence(t0=2.0)
        self.assertEqual(self._tick_all(engine), [])
        self.assertEqual(self.detector.detect.call_count, calls_before)
        self.assertIsNotNone(engine.latest_frame())

        self.pending.pop()()
        self.assertFalse(engine.gate.busy)
        self.uploader.upload.assert_called_once()

    def test_blink_while_busy_is_dropped(self):
        engine = self._engine(inline=False)
        engine.gate.try_enter()
        engine._on_blink(MagicMock(difference=50.0))
        self.assertEqual(self.pending, [])
        self.assertEqual(engine.gate.rejected, 1)

    # ─── Teardown discards the in-flight result ───────────────

    def test_result_discarded_after_stop(self):
        engine = self._engine(inline=False)
        self.frames = _blink_sequence()
        self._tick_all(engine)

        engine.stop()
        self.pending.pop()()

        self.uploader.upload.assert_called_once()
        self.redirect.assert_not_called()
        self.assertIsNone(self.sink.display)
        self.assertFalse(engine.gate.busy)
        self.source.release.assert_called()
        self.detector.release.assert_called()

    def test_tick_after_stop_does_nothing(self):
        engine = self._engine()
        engine.stop()
        self.frames = _blink_sequence()
        self.assertIsNone(engine.tick())
        self.source.read_frame.assert_not_called()

    def test_close_cancels_scheduled_redirect(self):
        self.sink = ResultSink(self.redirect, redirect_delay_s=0.2)
        engine = self._engine()
        self.frames = _blink_sequence()
        self._tick_all(engine)
        self.assertEqual(engine.status().display.severity, "success")

        engine.close()
        time.sleep(0.4)

        self.redirect.assert_not_called()
        self.assertEqual(self.sink.redirects_issued, 0)

    def test_stop_during_result_handoff_waits_then_cancels_redirect(self):
        timers = []

        def factory(*args, **kwargs):
            timers.append(_HeldTimer(*args, **kwargs))
            return timers[-1]

        self.sink = ResultSink(self.redirect, timer_factory=factory)
        engine = self._engine()
        stopper = threading.Thread(target=engine.stop)
        handle = self.sink.handle
        blocked = []

        def handle_with_concurrent_stop(result):
            stopper.start()
            stopper.join(timeout=0.2)
            blocked.append(stopper.is_alive())
            return handle(result)

        self.sink.handle = handle_with_concurrent_stop
        self.frames = _blink_sequence()
        self._tick_all(engine)
        stopper.join(timeout=2.0)

        self.assertEqual(blocked, [True], "stop() must wait for the handoff to finish")
        self.assertFalse(stopper.is_alive())
        self.assertEqual(len(timers), 1)
        self.assertTrue(timers[0].cancelled)
        timers[0].fire()
        self.redirect.assert_not_called()

    # ─── stop → start re-initializes in place ─────────────────

    def test_stop_then_start_reopens_camera(self):
        captures = [_mock_capture(), _mock_capture()]
        with patch("facegate_camera.cv2.VideoCapture", side_effect=captures) as open_cap:
            engine = self._engine(frame_source_factory=lambda: FrameSource())
            engine.stop()
            self.assertFalse(engine.is_ready)
            captures[0].release.assert_called_once()

            self.assertTrue(engine.start(run_loop=False))
            self.assertTrue(engine.is_ready)
            engine.tick()

        self.assertEqual(open_cap.call_count, 2)
        self.assertEqual(self.detector.load.call_count, 2)
        self.detector.detect.assert_called_once()
        self.assertIsNotNone(engine.latest_frame())
        self.assertEqual(engine.state.consecutive_face_frames, 1)
        engine.close()
        captures[1].release.assert_called_once()

    # ─── Compression failure aborts only this cycle ───────────

    def test_encoding_error_becomes_error_result(self):
        compressor = MagicMock(spec=ImageCompressor)
        compressor.max_width, compressor.max_height = 640, 480
        compressor.compress.side_effect = EncodingError("Image compression failed: image load failed")
        engine = self._engine(compressor=compressor)

        self.frames = _blink_sequence()
        self._tick_all(engine)

        self.uploader.upload.assert_not_called()
        self.assertEqual(engine.status().display.severity, "error")
        self.assertFalse(engine.gate.busy)
        self.assertFalse(engine.disabled)

    # ─── Terminal errors disable liveness ─────────────────────

    def test_model_load_error_disables(self):
        self.detector.load.side_effect = ModelLoadError("Failed to load face landmark model: boom")
        engine = FaceGateEngine(
            frame_source_factory=lambda: self.source,
            detector=self.detector,
            uploader=self.uploader,
            result_sink=self.sink,
            audit_logger=self.audit,
        )

        self.assertFalse(engine.start(run_loop=False))
        self.assertTrue(engine.disabled)
        self.assertFalse(engine.state.models_loaded)
        self.source.start.assert_not_called()
        self.assertIn("boom", engine.status().error)
        self.assertEqual(self.sink.display.severity, "error")

        self.frames = _blink_sequence()
        self.assertIsNone(engine.tick())
        self.source.read_frame.assert_not_called()
        self.assertFalse(engine.start(run_loop=False), "Stays disabled until restart")

    def test_device_error_disables_then_restart_recovers(self):
        self.source.start.side_effect = DeviceError("Webcam error: access denied")
        engine = FaceGateEngine(
            frame_source_factory=lambda: self.source,
            detector=self.detector,
            uploader=self.uploader,
            result_sink=self.sink,
            audit_logger=self.audit,
        )

        self.assertFalse(engine.start(run_loop=False))
        self.assertTrue(engine.disabled)
        self.assertTrue(engine.status().prompt.startswith("Webcam error"))
        self.audit.error.assert_called_once()

        self.source.start.side_effect = None
        engine.ticker = MagicMock()
        self.assertTrue(engine.restart())
        self.assertFalse(engine.disabled)
        self.assertTrue(engine.is_ready)

    # ─── Status and audit trail ───────────────────────────────

    def test_status_prompts_follow_state(self):
        engine = self._engine()
        self.frames = [_frame(i * 0.033) for i in range(6)]
        self._tick_all(engine)

        status = engine.status()
        self.assertEqual(status.prompt, PROMPT_BLINK)
        self.assertTrue(status.face_detected)
        self.assertEqual(status.phase, "FACE_CONFIRMED")
        self.assertEqual(status.camera_health, {"fps_actual": 30.0})

    def test_audit_log_records_result(self):
        engine = self._engine()
        self.frames = _blink_sequence()
        self._tick_all(engine)

        logged = [c.args[0] for c in self.audit.log.call_args_list]
        results = [e for e in logged if e.get("event") == "authentication_result"]
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0]["status"], AuthStatus.MATCHED.value)
        self.assertEqual(results[0]["employee_id"], "E123")

    def test_close_stops_and_closes_logger(self):
        engine = self._engine()
        engine.close()
        self.assertFalse(engine.running)
        self.audit.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
