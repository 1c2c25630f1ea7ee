"""
FaceGate — Result Sink
=======================
Turns an AuthenticationResult into what the user sees and, on a match,
hands the employee id to the legacy session login exactly once.

The redirect is an injected callable. The default, BrowserFormRedirect,
reproduces the portal's expected form POST through the system browser so
that the session cookie lands in the browser, not in this process.
"""

from __future__ import annotations

import html
import logging
import tempfile
import threading
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from facegate_errors import FaceGateError
from facegate_types import AuthStatus, AuthenticationResult

_log = logging.getLogger("FaceGateResult")

RedirectCallback = Callable[[str], None]


@dataclass
class ResultDisplay:
    """What the HUD should show for the latest outcome."""
    severity: str                 # "success" | "warning" | "error"
    message: str
    details: list[str] = field(default_factory=list)


class ResultSink:
    """Renders outcomes and triggers the post-match redirect."""

    def __init__(
        self,
        redirect: RedirectCallback,
        redirect_delay_s: float = 1.0,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        on_render: Optional[Callable[[ResultDisplay], None]] = None,
    ) -> None:
        self._redirect = redirect
        self._delay = redirect_delay_s
        self._timer_factory = timer_factory
        self._on_render = on_render
        self._lock = threading.Lock()
        self._pending = None
        self.display: Optional[ResultDisplay] = None
        self.redirects_issued = 0

    def handle(self, result: AuthenticationResult) -> ResultDisplay:
        if result.status is AuthStatus.MATCHED:
            employee_id = (result.employee_id or "").strip()
            if not employee_id:
                display = ResultDisplay("error", "Authentication failed: match returned no employee id")
                self._render(display)
                return display

            confidence = f"{result.confidence:g}%" if result.confidence is not None else "N/A"
            display = ResultDisplay(
                "success",
                result.message,
                [
                    f"Employee ID: {employee_id}",
                    f"Confidence: {confidence}",
                    f"Face ID: {result.face_id or 'N/A'}",
                ],
            )
            self._render(display)
            self._schedule_redirect(employee_id)
            return display

        if result.status is AuthStatus.NOT_MATCHED:
            display = ResultDisplay("warning", result.message or "Unknown error")
        else:
            display = ResultDisplay("error", result.message or "Authentication failed")
        self._render(display)
        return display

    def show_error(self, error: FaceGateError) -> ResultDisplay:
        display = ResultDisplay("error", str(error) or error.user_message)
        self._render(display)
        return display

    def clear(self) -> None:
        self.cancel_pending()
        with self._lock:
            self.display = None

    def cancel_pending(self) -> bool:
        """Cancel a scheduled redirect that has not fired yet."""
        with self._lock:
            timer, self._pending = self._pending, None
        if timer is None:
            return False
        timer.cancel()
        _log.info("Pending redirect cancelled")
        return True

    # ── Private helpers ───────────────────────────────────────

    def _render(self, display: ResultDisplay) -> None:
        with self._lock:
            self.display = display
        log = _log.info if display.severity == "success" else _log.warning
        log("%s %s", display.message, " | ".join(display.details))
        if self._on_render is not None:
            self._on_render(display)

    def _schedule_redirect(self, employee_id: str) -> None:
        timer = self._timer_factory(self._delay, self._fire_redirect, args=(employee_id,))
        timer.daemon = True
        with self._lock:
            previous, self._pending = self._pending, timer
        # One redirect per sink at a time
        if previous is not None:
            previous.cancel()
        timer.start()

    def _fire_redirect(self, employee_id: str) -> None:
        with self._lock:
            # Cancelled after the timer had already started running
            if self._pending is None:
                return
            self._pending = None
            self.redirects_issued += 1
        try:
            self._redirect(employee_id)
        except Exception as e:
            _log.error("Redirect failed for employee %s: %s", employee_id, e)


class BrowserFormRedirect:
    """Form-encoded POST {employeeId} via browser navigation."""

    _TEMPLATE = """<!DOCTYPE html>
<html><body onload="document.forms[0].submit()">
<form method="POST" action="{action}">
<input type="hidden" name="employeeId" value="{employee_id}">
<noscript><button type="submit">Continue</button></noscript>
</form>
</body></html>
"""

    def __init__(self, url: str, opener: Callable[[str], bool] = webbrowser.open) -> None:
        self.url = url
        self._opener = opener

    def render_form(self, employee_id: str) -> str:
        return self._TEMPLATE.format(
            action=html.escape(self.url, quote=True),
            employee_id=html.escape(employee_id, quote=True),
        )

    def __call__(self, employee_id: str) -> None:
        with tempfile.NamedTemporaryFile(
            "w", suffix=".html", prefix="facegate_login_", delete=False, encoding="utf-8"
        ) as f:
            f.write(self.render_form(employee_id))
            path = Path(f.name)
        _log.info("Submitting session login for employee %s to %s", employee_id, self.url)
        if not self._opener(path.as_uri()):
            _log.warning("No browser available to open %s", path)
