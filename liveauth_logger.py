"""
LiveAuth - Structured Audit Logger
==================================
Console logging setup plus an append-only JSONL audit trail of every
security decision: session lifecycle, challenge transitions, failures,
enrollments and match results.

Key Features:
  - JSONL (Newline Delimited JSON) format
  - Thread-safe writes (the frame pump and the caller share one logger)
  - Levels: AUDIT, WARN, ERROR, SYSTEM
  - NumPy-aware serialization

Raw descriptors are never written here; log their length instead.
"""

import json
import logging
import os
import sys
import threading
import time
from typing import Any, Dict, Optional

import numpy as np

_LOG_FORMAT = "[%(asctime)s] %(name)-18s %(levelname)-7s %(message)s"


def setup_logger(name: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """Attach a stream handler to `name` (root logger if None) once."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class AuditJSONEncoder(json.JSONEncoder):
    """Handles NumPy types and str-Enums for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        return super().default(obj)


class AuditLogger:
    """Append-only JSONL audit trail."""

    def __init__(self, log_dir: str = "logs", filename: str = "liveauth_audit.jsonl"):
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
        """Append one entry."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        }
        line = json.dumps(entry, cls=AuditJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def warn(self, message: str, context: Optional[Dict] = None):
        logging.getLogger("AuditLogger").warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[Exception] = None):
        logging.getLogger("AuditLogger").error(message)
        err_details = str(exception) if exception else None
        self.log({"message": message, "exception": err_details}, level="ERROR", event="system_error")

    def close(self):
        """Clean shutdown. Idempotent."""
        if self._file.closed:
            return
        self.log({"message": "Audit logger shutting down"}, level="SYSTEM", event="system_shutdown")
        with self._lock:
            self._file.close()


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger(log_dir: str = "logs") -> AuditLogger:
    """Process-wide singleton."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(log_dir)
    return _audit_logger
