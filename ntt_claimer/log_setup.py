from __future__ import annotations

import datetime as dt
import logging
import sys
from pathlib import Path
from typing import Callable, Optional

LOG_FILE_PREFIX = "claimer"

_LEVEL_NAMES = {
    logging.WARNING: "WARN",
    logging.CRITICAL: "ERROR",
}


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ClaimerFormatter(logging.Formatter):
    """``[2024-01-01T00:00:00.000Z] [INFO] message``"""

    def format(self, record: logging.LogRecord) -> str:
        stamp = dt.datetime.fromtimestamp(record.created, tz=dt.timezone.utc)
        iso = stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"
        level = _LEVEL_NAMES.get(record.levelno, record.levelname)
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return f"[{iso}] [{level}] {message}"


class DailyFileHandler(logging.Handler):
    """Appends to ``<dir>/claimer-YYYY-MM-DD.log``, switching files at UTC midnight.

    Write failures are dropped; the console stream remains the primary channel.
    """

    def __init__(self, log_dir: str, now: Callable[[], dt.datetime] = _utcnow) -> None:
        super().__init__()
        self.log_dir = Path(log_dir)
        self._now = now

    def path_for(self, day: dt.date) -> Path:
        return self.log_dir / f"{LOG_FILE_PREFIX}-{day.isoformat()}.log"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with self.path_for(self._now().date()).open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError:
            pass


def configure_logging(log_dir: Optional[str] = "logs", level: str = "INFO") -> logging.Logger:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = ClaimerFormatter()
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir:
        daily = DailyFileHandler(log_dir)
        daily.setFormatter(formatter)
        root.addHandler(daily)

    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    # aiohttp access chatter is not useful in the claimer log
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    return root
