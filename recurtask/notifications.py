from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol
from urllib import parse, request
from urllib.error import HTTPError, URLError
from zoneinfo import ZoneInfo

from .config import NotificationSettings
from .errors import DeliveryError
from .models import Task
from .utils.time_utils import format_dt_display


logger = logging.getLogger("recurtask.notifications")

# ---- Sink types --------------------------------------------------------------------
#
# Values accepted for `notifications.sink` in settings.yml.
#
SINK_LOG = "log"
SINK_WEBHOOK = "webhook"
SINK_NTFY = "ntfy"
SINK_GOTIFY = "gotify"

SINK_TYPES = [SINK_LOG, SINK_WEBHOOK, SINK_NTFY, SINK_GOTIFY]


@dataclass(frozen=True)
class ReminderNotification:
    task_id: int
    title: str
    body: str
    due_at_utc: datetime | None

    def as_payload(self) -> dict:
        return {
            "event": "reminder",
            "task_id": int(self.task_id),
            "title": self.title,
            "body": self.body,
            "due_at_utc": self.due_at_utc.isoformat() if self.due_at_utc else None,
        }


def build_reminder_notification(task: Task, *, now: datetime, tz: ZoneInfo) -> ReminderNotification:
    """Derive the notification title and body from a due task."""
    due = task.due_at_utc
    body = ""
    if due is not None:
        minutes_left = int((due - now).total_seconds() // 60)
        if minutes_left > 0:
            body = f"Due in {minutes_left} minutes"
        elif minutes_left == 0:
            body = "Due now!"
        else:
            body = f"Due: {format_dt_display(due, tz)}"
    return ReminderNotification(
        task_id=int(task.id),
        title=f"\U0001F4CB {task.title}",
        body=body,
        due_at_utc=due,
    )


class NotificationSink(Protocol):
    def deliver(self, notification: ReminderNotification) -> None:
        """Hand the notification to the user; raise DeliveryError on failure."""
        ...


# ---- HTTP helpers ------------------------------------------------------------------


def _truncate(s: str, n: int) -> str:
    txt = str(s or "")
    if len(txt) <= int(n):
        return txt
    return txt[: max(0, int(n) - 1)] + "…"


def _safe_url_for_log(url: str) -> str:
    """Return a log-safe URL string.

    Omits query strings and redacts token-like path segments.
    """

    raw = str(url or "")
    tokenish = re.compile(r"^[A-Za-z0-9._~-]{24,}$")

    p = parse.urlparse(raw)
    if not (p.scheme and p.netloc):
        return _truncate(raw, 200)

    parts = [seg for seg in (p.path or "").split("/") if seg]
    redacted = ["<redacted>" if tokenish.match(seg) else seg for seg in parts]
    safe = f"{p.scheme}://{p.netloc}/" + "/".join(redacted)
    return _truncate(safe, 200)


def _http_request(
    *,
    url: str,
    method: str = "POST",
    headers: dict[str, str] | None = None,
    data: bytes | None = None,
    timeout: int = 10,
) -> tuple[int, str]:
    # Only allow network calls over HTTP(S). Sink URLs come from settings and
    # must never reach file:/ or other custom schemes.
    parsed = parse.urlparse(str(url))
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise DeliveryError("Invalid notification URL")

    hdrs = {"User-Agent": "Recurtask"}
    if headers:
        for k, v in headers.items():
            if k and v is not None:
                hdrs[str(k)] = str(v)
    req = request.Request(url=str(url), data=data, headers=hdrs, method=str(method).upper())

    safe_url = _safe_url_for_log(str(url))
    try:
        with request.urlopen(req, timeout=timeout) as resp:  # nosec B310
            body = resp.read() or b""
            status = int(getattr(resp, "status", 200))
            text = body.decode("utf-8", errors="replace")
    except HTTPError as e:
        status = int(getattr(e, "code", 0) or 0)
        body = e.read() or b""
        snippet = _truncate(body.decode("utf-8", errors="replace").strip(), 300)
        raise DeliveryError(f"HTTP {status} from {safe_url}: {snippet}") from None
    except URLError as e:
        reason = getattr(e, "reason", None)
        raise DeliveryError(f"Request to {safe_url} failed: {reason or e}") from None
    except OSError as e:
        raise DeliveryError(f"Request to {safe_url} failed: {e}") from None

    if status < 200 or status >= 300:
        raise DeliveryError(f"HTTP {status} from {safe_url}: {_truncate(text.strip(), 300)}")

    return status, text


# ---- Sinks -------------------------------------------------------------------------


class LogSink:
    """Writes reminders to the application log."""

    def __init__(self, name: str = "recurtask.reminders.delivery"):
        self._logger = logging.getLogger(name)

    def deliver(self, notification: ReminderNotification) -> None:
        self._logger.info("Reminder for task %s: %s | %s", notification.task_id, notification.title, notification.body)


@dataclass
class MemorySink:
    """Keeps delivered notifications in memory."""

    delivered: list[ReminderNotification] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def deliver(self, notification: ReminderNotification) -> None:
        with self._lock:
            self.delivered.append(notification)


class WebhookSink:
    def __init__(self, url: str, *, secret: str = ""):
        if not str(url or "").strip():
            raise ValueError("Webhook sink requires webhook_url")
        self.url = str(url).strip()
        self.secret = str(secret or "").strip()

    def deliver(self, notification: ReminderNotification) -> None:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Recurtask-Secret"] = self.secret
        data = json.dumps(notification.as_payload()).encode("utf-8")
        _http_request(url=self.url, headers=headers, data=data)


class NtfySink:
    def __init__(self, *, base_url: str, topic: str, token: str = ""):
        if not str(topic or "").strip():
            raise ValueError("ntfy sink requires ntfy_topic")
        self.base_url = str(base_url or "https://ntfy.sh").strip().rstrip("/")
        self.topic = str(topic).strip()
        self.token = str(token or "").strip()

    def deliver(self, notification: ReminderNotification) -> None:
        url = f"{self.base_url}/{parse.quote(self.topic)}"
        headers: dict[str, str] = {
            # HTTP headers must be latin-1; keep the emoji in the body only.
            "Title": notification.title.encode("ascii", errors="ignore").decode("ascii").strip(),
            "Content-Type": "text/plain; charset=utf-8",
            "Tags": "alarm_clock",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        message = f"{notification.title}\n{notification.body}".strip()
        _http_request(url=url, headers=headers, data=message.encode("utf-8"))


class GotifySink:
    def __init__(self, *, base_url: str, token: str, priority: int = 5):
        if not str(base_url or "").strip() or not str(token or "").strip():
            raise ValueError("Gotify sink requires gotify_base_url and gotify_token")
        self.base_url = str(base_url).strip().rstrip("/")
        self.token = str(token).strip()
        self.priority = min(10, max(0, int(priority)))

    def deliver(self, notification: ReminderNotification) -> None:
        payload = {"title": notification.title, "message": notification.body, "priority": self.priority}
        _http_request(
            url=f"{self.base_url}/message",
            headers={"Content-Type": "application/json", "X-Gotify-Key": self.token},
            data=json.dumps(payload).encode("utf-8"),
        )


def build_sink(cfg: NotificationSettings) -> NotificationSink:
    kind = str(cfg.sink or SINK_LOG).strip().lower()
    if kind == SINK_LOG:
        return LogSink()
    if kind == SINK_WEBHOOK:
        return WebhookSink(cfg.webhook_url)
    if kind == SINK_NTFY:
        return NtfySink(base_url=cfg.ntfy_base_url, topic=cfg.ntfy_topic, token=cfg.ntfy_token)
    if kind == SINK_GOTIFY:
        return GotifySink(base_url=cfg.gotify_base_url, token=cfg.gotify_token, priority=cfg.gotify_priority)
    raise ValueError(f"Unknown notification sink: {cfg.sink!r}. Expected one of {', '.join(SINK_TYPES)}")
