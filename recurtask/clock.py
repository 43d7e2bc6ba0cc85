from __future__ import annotations

import threading
from datetime import datetime
from typing import Protocol

from .utils.time_utils import now_utc


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as naive UTC."""
        ...

    def wait(self, seconds: float, cancelled: threading.Event) -> bool:
        """Sleep up to `seconds`; return True if `cancelled` was set meanwhile."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return now_utc()

    def wait(self, seconds: float, cancelled: threading.Event) -> bool:
        return cancelled.wait(max(0.0, float(seconds)))
