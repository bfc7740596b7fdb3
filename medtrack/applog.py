# medtrack/applog.py
import logging
from collections import deque
from pathlib import Path
from threading import RLock
from typing import Optional

_LOG_LOCK = RLock()

# -------------------------
# Logging ring buffer
# -------------------------
class _RingLog:
    """Last `max_lines` formatted log lines, kept for an in-app log view."""

    def __init__(self, max_lines=800):
        self._lines = deque(maxlen=int(max_lines))
        self._lock = RLock()

    def add(self, line: str):
        line = (line or "").rstrip("\n")
        if line:
            with self._lock:
                self._lines.append(line)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def clear(self):
        with self._lock:
            self._lines.clear()

_RING = _RingLog()

class _FileAndRingHandler(logging.Handler):
    """Formats each record once, keeps it in the ring and appends it to the log file (if any)."""

    def __init__(self, log_path: Optional[Path] = None):
        super().__init__()
        self.log_path = log_path
        self._fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    def emit(self, record):
        try:
            msg = self._fmt.format(record)
        except Exception:
            msg = str(record.getMessage())
        _RING.add(msg)
        if self.log_path is None:
            return
        try:
            with _LOG_LOCK:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with self.log_path.open("a", encoding="utf-8") as f:
                    f.write(msg + "\n")
        except OSError:
            self.handleError(record)

logger = logging.getLogger("medtrack")
logger.setLevel(logging.INFO)
if not any(isinstance(h, _FileAndRingHandler) for h in logger.handlers):
    logger.addHandler(_FileAndRingHandler())

def configure_logging(log_path: Optional[Path]) -> logging.Logger:
    """Point the ring handler at a log file. Safe to call more than once."""
    for h in logger.handlers:
        if isinstance(h, _FileAndRingHandler):
            h.log_path = log_path
    return logger

def ring_text() -> str:
    return _RING.text()

def clear_log(log_path: Optional[Path] = None):
    _RING.clear()
    if log_path is not None:
        log_path.unlink(missing_ok=True)
    logger.info("log cleared")
