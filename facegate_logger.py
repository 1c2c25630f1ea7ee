"""
FaceGate — Structured Audit Logger
===================================
Records every liveness decision, authentication attempt and terminal
error as JSONL for post-mortem analysis.

Key Features:
  - JSONL (Newline Delimited JSON) format
  - Thread-safe writes (tick loop and upload worker share one file)
  - Levels: AUDIT, WARN, ERROR, SYSTEM
  - NumPy-aware serialization
"""

import json
import logging
import os
import sys
import threading
import time
from typing import Any, Dict, Optional

import numpy as np

# Console handlers are installed by the launcher (setup_logger), not on import
_log = logging.getLogger("FaceGateAudit")


class FaceGateJSONEncoder(json.JSONEncoder):
    """Handles NumPy types for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, BaseException):
            return f"{type(obj).__name__}: {obj}"
        return super().default(obj)


class AuditLogger:
    """
    Append-only audit trail for a FaceGate process.
    One entry per line: {timestamp, level, event, data}.
    """

    def __init__(self, log_dir: str = "logs", filename: str = "facegate_audit.jsonl"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, filename)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform,
        }, level="SYSTEM")

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append log entry."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        }
        line = json.dumps(entry, cls=FaceGateJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def warn(self, message: str, context: Optional[Dict] = None):
        """Log structured warning."""
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[BaseException] = None):
        """Log structured error with exception details."""
        _log.error(message)
        err_details = str(exception) if exception else None
        self.log({"message": message, "exception": err_details}, level="ERROR", event="system_error")

    def close(self):
        """Clean shutdown."""
        if self._file.closed:
            return
        self.log({"message": "Logger shutting down"}, level="SYSTEM", event="system_shutdown")
        with self._lock:
            self._file.close()


# Shared instance for the process
_logger = None


def get_logger(log_dir: str = "logs") -> AuditLogger:
    global _logger
    if _logger is None or _logger._file.closed:
        _logger = AuditLogger(log_dir)
    return _logger
