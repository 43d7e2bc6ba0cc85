from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from zoneinfo import ZoneInfo

from .clock import Clock, SystemClock
from .errors import DeliveryError, PersistenceError
from .notifications import NotificationSink, build_reminder_notification
from .reminders import ReminderDueSelector
from .repository import TaskRepository


logger = logging.getLogger("recurtask.dispatch")


def _describe(e: Exception) -> str:
    if isinstance(e, (DeliveryError, PersistenceError)):
        return str(e)
    msg = str(e)
    return f"{type(e).__name__}: {msg}" if msg else type(e).__name__


@dataclass
class DispatchReport:
    """Outcome of one poll."""

    checked_at_utc: datetime
    delivered: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    # Delivered, but the task was completed, re-dated or marked elsewhere meanwhile.
    unmarked: list[int] = field(default_factory=list)


def dispatch_due_reminders(
    selector: ReminderDueSelector,
    repository: TaskRepository,
    sink: NotificationSink,
    *,
    owner_id: int,
    now: datetime,
    tz: ZoneInfo,
) -> DispatchReport:
    """Deliver every due reminder for one account, then write its sent-marker.

    Failures are isolated per task: the failing task keeps no marker and is
    retried on the next poll; the rest of the batch carries on.
    """
    report = DispatchReport(checked_at_utc=now)

    try:
        due = selector.due_reminders(owner_id, now)
    except Exception:
        logger.exception("Failed to select due reminders for user %s", owner_id)
        return report

    for task in due:
        task_id = int(task.id)
        try:
            sink.deliver(build_reminder_notification(task, now=now, tz=tz))
        except Exception as e:
            # DeliveryError from sinks; anything else a sink raises counts the same.
            logger.warning("Reminder delivery failed for task %s: %s", task_id, _describe(e))
            report.failed[task_id] = _describe(e)
            continue

        try:
            marked = repository.mark_notification_sent(task, when_utc=now)
        except Exception as e:
            # PersistenceError: delivered but unmarked, so it is offered again next poll.
            logger.warning("Reminder for task %s delivered but not marked sent: %s", task_id, _describe(e))
            report.failed[task_id] = _describe(e)
            continue

        if not marked:
            logger.info("Reminder for task %s delivered but the task changed before it could be marked", task_id)
            report.unmarked.append(task_id)
            continue

        report.delivered.append(task_id)

    if report.delivered or report.failed:
        logger.info(
            "Reminder poll for user %s: %d delivered, %d failed",
            owner_id,
            len(report.delivered),
            len(report.failed),
        )
    return report


class NotificationDispatchLoop:
    """Cancellable polling loop delivering reminders for one account.

    Enabling starts a worker thread that polls immediately and then once per
    interval. Disabling or closing stops future polls; a poll already running
    finishes, and missed polls are never replayed.
    """

    def __init__(
        self,
        *,
        selector: ReminderDueSelector,
        repository: TaskRepository,
        sink: NotificationSink,
        owner_id: int,
        tz: ZoneInfo,
        clock: Clock | None = None,
        interval_seconds: float = 60.0,
    ):
        if float(interval_seconds) <= 0:
            raise ValueError("interval_seconds must be greater than 0")
        self.selector = selector
        self.repository = repository
        self.sink = sink
        self.owner_id = int(owner_id)
        self.tz = tz
        self.clock = clock or SystemClock()
        self.interval_seconds = float(interval_seconds)

        self._state_lock = threading.Lock()
        # Serializes polls so a quick disable/enable cannot overlap two of them.
        self._tick_lock = threading.Lock()
        self._cancelled: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def enabled(self) -> bool:
        with self._state_lock:
            return self._cancelled is not None and not self._cancelled.is_set()

    def set_enabled(self, enabled: bool) -> None:
        with self._state_lock:
            running = self._cancelled is not None and not self._cancelled.is_set()
            if bool(enabled) == running:
                return

            if not enabled:
                self._cancelled.set()
                logger.info("Reminder dispatch disabled for user %s", self.owner_id)
                return

            # Each activation gets its own event; an old worker stays cancelled.
            cancelled = threading.Event()
            thread = threading.Thread(
                target=self.run,
                args=(cancelled,),
                name=f"recurtask-dispatch-{self.owner_id}",
                daemon=True,
            )
            self._cancelled = cancelled
            self._thread = thread
            thread.start()
            logger.info(
                "Reminder dispatch enabled for user %s (every %ss)", self.owner_id, self.interval_seconds
            )

    def close(self, *, timeout: float = 5.0) -> None:
        self.set_enabled(False)
        self.join(timeout=timeout)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the current worker to exit; True when no worker is running."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def tick(self) -> DispatchReport:
        with self._tick_lock:
            return dispatch_due_reminders(
                self.selector,
                self.repository,
                self.sink,
                owner_id=self.owner_id,
                now=self.clock.now(),
                tz=self.tz,
            )

    def run(self, cancelled: threading.Event) -> None:
        """Worker body: poll now, then once per interval until cancelled."""
        while not cancelled.is_set():
            try:
                self.tick()
            except Exception:
                # dispatch_due_reminders already isolates failures; keep the loop alive regardless.
                logger.exception("Reminder poll crashed for user %s", self.owner_id)
            if self.clock.wait(self.interval_seconds, cancelled):
                break
