from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path


LOG_DIR = Path("/data/logs")
LOG_PREFIX = "recurtask"


def _safe_level(level: str | None, default: str = "INFO") -> int:
    raw = (level or default).strip().upper()
    lvl = getattr(logging, raw, logging.INFO)
    return lvl if isinstance(lvl, int) else logging.INFO


class DailyDateFileHandler(logging.Handler):
    """Write logs to <log_dir>/recurtask-YYYY-MM-DD.log.

    The handler checks the date on each emit and transparently rolls over to a
    new file when the local date changes.
    """

    def __init__(self, *, base_dir: Path = LOG_DIR, prefix: str = LOG_PREFIX, level: int = logging.INFO):
        super().__init__(level=level)
        self.base_dir = Path(base_dir)
        self.prefix = str(prefix)
        self._lock = threading.RLock()
        self._current_date = self._today()
        self._stream = None
        self._open_for_date(self._current_date)

    def _today(self) -> str:
        return datetime.now().strftime("%Y-%m-%d")

    def path_for_date(self, date_str: str) -> Path:
        return self.base_dir / f"{self.prefix}-{date_str}.log"

    def _open_for_date(self, date_str: str) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        # Line-buffered text mode.
        self._stream = open(self.path_for_date(date_str), "a", encoding="utf-8", buffering=1)

    def _close_stream(self) -> None:
        if self._stream:
            try:
                self._stream.flush()
            finally:
                self._stream.close()
        self._stream = None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
        except Exception:
            self.handleError(record)
            return

        with self._lock:
            try:
                today = self._today()
                if today != self._current_date:
                    self._close_stream()
                    self._current_date = today
                    self._open_for_date(today)

                if not self._stream:
                    self._open_for_date(self._current_date)

                self._stream.write(msg + "\n")
            except Exception:
                self.handleError(record)

    def close(self) -> None:
        with self._lock:
            self._close_stream()
        super().close()


_FILE_HANDLER: DailyDateFileHandler | None = None


def setup_logging(*, level: str = "INFO", log_dir: str | Path | None = LOG_DIR) -> None:
    """Attach a stdout handler and a daily file handler.

    Safe to call multiple times. Pass `log_dir=None` to skip the file handler.
    """

    global _FILE_HANDLER

    lvl = _safe_level(level)

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = logging.getLogger()
    root.setLevel(lvl)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in root.handlers):
        sh = logging.StreamHandler()
        sh.setLevel(lvl)
        sh.setFormatter(formatter)
        root.addHandler(sh)

    if log_dir is not None:
        wanted = Path(log_dir)
        if _FILE_HANDLER is not None and _FILE_HANDLER.base_dir != wanted:
            root.removeHandler(_FILE_HANDLER)
            _FILE_HANDLER.close()
            _FILE_HANDLER = None

        if _FILE_HANDLER is None:
            fh = DailyDateFileHandler(base_dir=wanted, level=lvl)
            fh.setFormatter(formatter)
            root.addHandler(fh)
            _FILE_HANDLER = fh
        else:
            _FILE_HANDLER.setLevel(lvl)
            _FILE_HANDLER.setFormatter(formatter)

    # Make framework loggers propagate to root so they also hit the file.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "apscheduler"):
        logging.getLogger(name).propagate = True
